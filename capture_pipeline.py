"""
Page Gobbler - Capture Pipeline
Turns a CaptureResult into sized, encoded sections plus page text and a
metadata document.

Stages run sequentially: stitch -> section -> compress -> extract text.
Any exception aborts the remaining stages.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from adaptive_compressor import AdaptiveCompressor
from capture_models import (
    CaptureResult,
    CompressedSection,
    PipelineResult,
    Settings,
    StitchedImage,
    TextExtractionResult,
)
from screenshot_stitcher import ScreenshotStitcher
from smart_sectioner import SmartSectioner
from text_extractor import TextExtractor

logger = logging.getLogger(__name__)

MAX_STRUCTURE_LINKS = 20


class CapturePipeline:
    """
    Image pipeline for one capture run
    """

    def __init__(
        self,
        stitcher: Optional[ScreenshotStitcher] = None,
        sectioner: Optional[SmartSectioner] = None,
        compressor: Optional[AdaptiveCompressor] = None,
        text_extractor: Optional[TextExtractor] = None,
    ):
        self.stitcher = stitcher or ScreenshotStitcher()
        self.sectioner = sectioner or SmartSectioner()
        self.compressor = compressor or AdaptiveCompressor()
        self.text_extractor = text_extractor or TextExtractor()

    def process(self, capture: CaptureResult, settings: Settings) -> PipelineResult:
        """
        Run every stage on a completed capture

        Args:
            capture: Captures, metrics and metadata from the orchestrator
            settings: The same settings the capture ran with

        Returns:
            PipelineResult ready for export
        """
        started = time.time()
        metrics = capture.metrics

        stitched = self.stitcher.stitch(capture.captures, metrics)

        sections = self.sectioner.section(
            stitched.image,
            settings.section_max_height_px,
            device_pixel_ratio=metrics.device_pixel_ratio,
            split_enabled=settings.split_enabled,
        )

        compressed = []
        for section in sections:
            result = self.compressor.compress(section, settings)
            compressed.append(result)
            logger.info(
                f"[CapturePipeline] Section {section.sequence_index + 1}/{len(sections)}: "
                f"{result.mime_format} q={result.quality_used} {result.size_bytes / (1024 * 1024):.2f}MB"
                f"{' (over budget)' if result.over_budget else ''}"
            )

        text = self.text_extractor.extract(stitched.image, capture.metadata, enable_ocr=settings.enable_ocr)

        processing_ms = int((time.time() - started) * 1000)
        metadata = self.build_metadata(capture, stitched, compressed, text, settings, processing_ms)

        logger.info(
            f"[CapturePipeline] Done: {len(compressed)} section(s), "
            f"{sum(c.size_bytes for c in compressed) / (1024 * 1024):.2f}MB total in {processing_ms}ms"
        )

        return PipelineResult(
            sections=compressed,
            metadata=metadata,
            text=text.text,
            page=capture.metadata,
            stitched_width=stitched.width,
            stitched_height=stitched.height,
        )

    def build_metadata(
        self,
        capture: CaptureResult,
        stitched: StitchedImage,
        sections: List[CompressedSection],
        text: TextExtractionResult,
        settings: Settings,
        processing_ms: int,
    ) -> Dict[str, Any]:
        """JSON-serializable description of the capture and its outputs"""
        page = capture.metadata
        metrics = capture.metrics

        return {
            "source": {
                "url": page.url,
                "title": page.title,
                "captured_at": page.captured_at.isoformat(),
                "language": page.language,
            },
            "dimensions": {
                "page_width": page.viewport_width_px or metrics.viewport_width_px,
                "page_height": metrics.total_height_px,
                "device_pixel_ratio": metrics.device_pixel_ratio,
                "captured_width": stitched.width,
                "captured_height": stitched.height,
            },
            "sections": [
                {
                    "index": s.sequence_index,
                    "format": s.mime_format,
                    "quality": s.quality_used,
                    "size_mb": round(s.size_bytes / (1024 * 1024), 2),
                    "scaled": s.was_scaled,
                    "scale_factor": s.scale_factor,
                    "over_budget": s.over_budget,
                    "start_y": s.start_y,
                    "end_y": s.end_y,
                    "height_px": s.end_y - s.start_y,
                }
                for s in sections
            ],
            "page_structure": {
                "headings": [h.model_dump() for h in page.headings],
                "link_count": page.link_count,
                "top_links": [l.model_dump() for l in page.links[:MAX_STRUCTURE_LINKS]],
            },
            "meta": dict(page.meta_tags),
            "processing": {
                "session_id": capture.session_id,
                "elapsed_ms": capture.elapsed_ms,
                "processing_ms": processing_ms,
                "total_captures": len(capture.captures),
                "compression_strategy": settings.compression_strategy.value,
                "ocr_enabled": settings.enable_ocr,
                "text_method": text.method,
                "text_confidence": text.confidence,
            },
        }
