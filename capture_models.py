"""
Page Gobbler - Capture Models

Pydantic models and plain data holders shared by the capture orchestrator
and the image pipeline.
"""

import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from PIL import Image
from pydantic import BaseModel, Field


class SnapshotFormat(str, Enum):
    """Format requested from the snapshot primitive"""
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"  # Captured as PNG, browsers cannot snapshot to WebP


class CompressionStrategy(str, Enum):
    """Section compression strategy"""
    AUTO = "auto"  # Lossy ladders, then downscaling
    AGGRESSIVE = "aggressive"  # Same search as auto
    LOSSLESS = "lossless"  # Single PNG encode, size unconstrained


class CapturePhase(str, Enum):
    """Capture session state machine phases"""
    IDLE = "idle"
    MEASURING = "measuring"
    SCROLLING = "scrolling"
    SETTLING = "settling"
    CAPTURING = "capturing"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


TERMINAL_PHASES = (CapturePhase.DONE, CapturePhase.ERROR)

DEFAULT_MAX_SECTION_BYTES = 3 * 1024 * 1024  # 3 MB
DEFAULT_SECTION_MAX_HEIGHT_PX = 4096
DEFAULT_SETTLE_DELAY_MS = 350


class Settings(BaseModel):
    """Capture settings, immutable for the duration of one run"""
    target_format: SnapshotFormat = SnapshotFormat.PNG
    base_quality: float = Field(0.92, ge=0.0, le=1.0)
    max_section_bytes: int = Field(DEFAULT_MAX_SECTION_BYTES, gt=0)
    section_max_height_px: int = Field(DEFAULT_SECTION_MAX_HEIGHT_PX, gt=0)
    split_enabled: bool = True
    compression_strategy: CompressionStrategy = CompressionStrategy.AUTO

    enable_ocr: bool = True
    settle_delay_ms: int = Field(DEFAULT_SETTLE_DELAY_MS, ge=0, le=10000)
    session_timeout_s: float = Field(120.0, gt=0, le=3600)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "target_format": "png",
                "base_quality": 0.92,
                "max_section_bytes": 3145728,
                "section_max_height_px": 4096,
                "split_enabled": True,
                "compression_strategy": "auto",
                "enable_ocr": True,
                "settle_delay_ms": 350,
                "session_timeout_s": 120.0
            }
        }


class PageMetrics(BaseModel):
    """Page dimensions measured once at the start of a capture"""
    total_height_px: int = Field(..., gt=0)
    viewport_height_px: int = Field(..., gt=0)
    device_pixel_ratio: float = Field(1.0, gt=0)
    viewport_width_px: Optional[int] = None

    class Config:
        frozen = True

    @property
    def scaled_height_px(self) -> int:
        """Full page height in device pixels"""
        return math.ceil(self.total_height_px * self.device_pixel_ratio)


class ViewportCapture(BaseModel):
    """One bitmap of the visible page region at a scroll offset"""
    bitmap: bytes = Field(..., repr=False)
    scroll_offset_y: int = Field(..., ge=0)
    viewport_height_px: int = Field(..., gt=0)
    clip_height_px: int = Field(..., gt=0)
    sequence_index: int = Field(..., ge=0)
    # Browsers clamp the last scroll to (total - viewport); rows above the
    # requested offset are then skipped when stitching.
    actual_scroll_y: Optional[int] = None

    @property
    def source_offset_px(self) -> int:
        """CSS pixels between the top of the bitmap and scroll_offset_y"""
        if self.actual_scroll_y is None:
            return 0
        return max(0, self.scroll_offset_y - self.actual_scroll_y)


class Heading(BaseModel):
    level: int
    text: str
    offset_top: int = 0


class PageLink(BaseModel):
    href: str
    text: str


class StructuredDataItem(BaseModel):
    """One JSON-LD block, or the grouped Open Graph / Twitter Card tags"""
    type: str  # json-ld, open-graph, twitter-card
    data: Any = None


class FormField(BaseModel):
    tag: str
    type: str = ""
    name: str = ""
    id: str = ""
    placeholder: str = ""
    required: bool = False
    options: List[Dict[str, str]] = Field(default_factory=list)


class PageForm(BaseModel):
    action: str = ""
    method: str = "get"
    id: str = ""
    name: str = ""
    fields: List[FormField] = Field(default_factory=list)


class ImageAsset(BaseModel):
    src: str = ""
    alt: str = ""
    width: int = 0
    height: int = 0
    loading: str = "eager"


class BackgroundImage(BaseModel):
    src: str
    element: str = ""
    class_name: str = ""


class ImageAssets(BaseModel):
    """<img> elements plus CSS background images"""
    images: List[ImageAsset] = Field(default_factory=list)
    background_images: List[BackgroundImage] = Field(default_factory=list)


class ExternalResources(BaseModel):
    """Scripts, stylesheets, fonts and resource hints referenced by the page"""
    scripts: List[Dict[str, Any]] = Field(default_factory=list)
    stylesheets: List[Dict[str, Any]] = Field(default_factory=list)
    fonts: List[Dict[str, Any]] = Field(default_factory=list)
    preloads: List[Dict[str, Any]] = Field(default_factory=list)


class Stylesheet(BaseModel):
    type: str  # inline or external
    index: Optional[int] = None
    href: Optional[str] = None
    css: Optional[str] = None  # None for cross-origin sheets
    cross_origin: bool = False


class DesignTokens(BaseModel):
    colors: List[Dict[str, Any]] = Field(default_factory=list)
    fonts: List[Dict[str, Any]] = Field(default_factory=list)
    custom_properties: Dict[str, str] = Field(default_factory=dict)


class ConsoleEntry(BaseModel):
    level: str
    timestamp: str = ""
    message: str = ""


class PageMetadata(BaseModel):
    """Page metadata collected once, after the last viewport"""
    url: str = ""
    title: str = ""
    language: str = "unknown"
    headings: List[Heading] = Field(default_factory=list)
    meta_tags: Dict[str, str] = Field(default_factory=dict)
    links: List[PageLink] = Field(default_factory=list)
    link_count: int = 0
    visible_text: str = ""
    viewport_width_px: Optional[int] = None
    dom_structure: str = ""
    image_assets: ImageAssets = Field(default_factory=ImageAssets)
    structured_data: List[StructuredDataItem] = Field(default_factory=list)
    design_tokens: Optional[DesignTokens] = None
    stylesheets: List[Stylesheet] = Field(default_factory=list)
    external_resources: ExternalResources = Field(default_factory=ExternalResources)
    forms: List[PageForm] = Field(default_factory=list)
    console_logs: List[ConsoleEntry] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=datetime.now)


class CaptureProgress(BaseModel):
    """Snapshot of session progress for observers"""
    phase: CapturePhase = CapturePhase.IDLE
    current: int = 0
    total: int = 0
    error: Optional[str] = None
    session_id: Optional[str] = None


class CompressedSection(BaseModel):
    """An encoded section sized against max_section_bytes"""
    data: bytes = Field(..., repr=False)
    mime_format: str
    quality_used: float
    was_scaled: bool = False
    scale_factor: float = 1.0
    size_bytes: int
    over_budget: bool = False
    sequence_index: int = 0
    start_y: int = 0
    end_y: int = 0
    width: int = 0
    height: int = 0

    @property
    def extension(self) -> str:
        return self.mime_format.split("/")[-1]


@dataclass
class StitchedImage:
    """Full-page bitmap assembled from viewport captures"""
    image: Image.Image
    device_pixel_ratio: float = 1.0
    capture_count: int = 0

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


@dataclass
class Section:
    """Height-bounded slice [start_y, end_y) of a stitched image"""
    image: Image.Image
    start_y: int
    end_y: int
    sequence_index: int

    @property
    def height(self) -> int:
        return self.end_y - self.start_y


@dataclass
class CaptureSession:
    """
    State of one capture run.

    Owned by the CaptureOrchestrator; nothing else mutates it.
    """
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    phase: CapturePhase = CapturePhase.IDLE
    captures: List[ViewportCapture] = field(default_factory=list)
    expected_count: int = 0
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    last_error: Optional[str] = None
    metrics: Optional[PageMetrics] = None
    metadata: Optional[PageMetadata] = None

    @property
    def is_active(self) -> bool:
        return self.phase not in TERMINAL_PHASES

    @property
    def elapsed_ms(self) -> int:
        end = self.completed_at or time.time()
        return int((end - self.started_at) * 1000)

    def to_progress(self) -> CaptureProgress:
        return CaptureProgress(
            phase=self.phase,
            current=len(self.captures),
            total=self.expected_count,
            error=self.last_error,
            session_id=self.session_id,
        )


@dataclass
class CaptureResult:
    """Everything the orchestrator hands to the image pipeline"""
    captures: List[ViewportCapture]
    metrics: PageMetrics
    metadata: PageMetadata
    elapsed_ms: int
    session_id: str


@dataclass
class TextExtractionResult:
    """Uniform result of every text source"""
    text: str
    confidence: float
    method: str


@dataclass
class PipelineResult:
    """Output of one pipeline run, ready for export"""
    sections: List[CompressedSection]
    metadata: Dict[str, Any]
    text: str
    page: PageMetadata
    stitched_width: int
    stitched_height: int

    @property
    def total_size_bytes(self) -> int:
        return sum(s.size_bytes for s in self.sections)
