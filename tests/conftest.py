"""Shared fixtures for Page Gobbler tests.

Provides in-memory stand-ins for the page driver and the snapshot
primitive, plus image factories, so no browser is needed.
"""

import asyncio
import io
from typing import List, Optional

import numpy as np
import pytest
from PIL import Image

from capture_models import PageMetadata, PageMetrics, PageLink, Heading, Settings, ViewportCapture
from capture_orchestrator import CaptureOrchestrator
from page_driver import PageDriver, SnapshotSource
from rate_limiter import RateLimiter
from utils.error_handler import MeasurementError


def page_row_image(width: int, top: int, height: int) -> Image.Image:
    """RGB image whose row r has grey level (top + r) % 251"""
    levels = (np.arange(top, top + height) % 251).astype(np.uint8)
    pixels = np.repeat(levels[:, None], width, axis=1)
    return Image.fromarray(np.stack([pixels] * 3, axis=2))


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_capture(
    index: int,
    viewport: int,
    total: int,
    width: int = 8,
    dpr: float = 1.0,
    clamp: bool = False,
) -> ViewportCapture:
    """Capture of a page whose rows are numbered by page y"""
    offset = index * viewport
    actual = min(offset, total - viewport) if clamp else offset
    image = page_row_image(round(width * dpr), round(actual * dpr), round(viewport * dpr))
    return ViewportCapture(
        bitmap=encode_png(image),
        scroll_offset_y=offset,
        actual_scroll_y=actual,
        viewport_height_px=viewport,
        clip_height_px=min(viewport, total - offset),
        sequence_index=index,
    )


class FakePageDriver(PageDriver):
    """Scriptable page: records every call and clamps scrolling like a browser"""

    def __init__(
        self,
        total_height: int = 3000,
        viewport_height: int = 1000,
        dpr: float = 1.0,
        overlays: int = 2,
        fail_measure: bool = False,
        fail_scroll_at: Optional[int] = None,
        hang_on_scroll_at: Optional[int] = None,
    ):
        self.total_height = total_height
        self.viewport_height = viewport_height
        self.dpr = dpr
        self.overlays = overlays
        self.fail_measure = fail_measure
        self.fail_scroll_at = fail_scroll_at
        self.hang_on_scroll_at = hang_on_scroll_at

        self.calls: List[str] = []
        self.scroll_y = 0
        self.scrolls: List[int] = []
        self.hidden = False
        self.restored = 0

    async def prepare(self):
        self.calls.append("prepare")

    async def measure(self) -> PageMetrics:
        self.calls.append("measure")
        if self.fail_measure:
            raise MeasurementError("Cannot determine page dimensions (height=0, viewport=0)")
        return PageMetrics(
            total_height_px=self.total_height,
            viewport_height_px=self.viewport_height,
            device_pixel_ratio=self.dpr,
            viewport_width_px=8,
        )

    async def scroll_to(self, y: int) -> int:
        index = len(self.scrolls)
        self.calls.append(f"scroll:{y}")
        if self.fail_scroll_at is not None and index == self.fail_scroll_at:
            raise RuntimeError("Execution context was destroyed")
        if self.hang_on_scroll_at is not None and index == self.hang_on_scroll_at:
            await asyncio.sleep(3600)
        self.scrolls.append(y)
        self.scroll_y = min(y, max(0, self.total_height - self.viewport_height))
        return self.scroll_y

    async def wait_for_frame(self):
        self.calls.append("frame")

    async def detect_overlays(self) -> int:
        self.calls.append("detect_overlays")
        return self.overlays

    async def hide_overlays(self):
        self.calls.append("hide_overlays")
        self.hidden = True

    async def collect_metadata(self) -> PageMetadata:
        self.calls.append("collect_metadata")
        return PageMetadata(
            url="https://example.com/article",
            title="Example Article",
            language="en",
            headings=[Heading(level=1, text="Example Article", offset_top=0)],
            links=[PageLink(href="https://example.com/", text="Home")],
            link_count=1,
            visible_text="Example Article\nBody text",
        )

    async def restore(self):
        self.calls.append("restore")
        self.hidden = False
        self.restored += 1


class FakeSnapshotSource(SnapshotSource):
    """Snapshots of the fake page's current viewport"""

    def __init__(self, driver: FakePageDriver, width: int = 8, fail_at: Optional[int] = None):
        self.driver = driver
        self.width = width
        self.fail_at = fail_at
        self.calls = 0
        self.overlays_hidden_at: List[bool] = []

    async def capture_visible_region(self, fmt, quality) -> bytes:
        index = self.calls
        self.calls += 1
        self.overlays_hidden_at.append(self.driver.hidden)
        if self.fail_at is not None and index == self.fail_at:
            raise RuntimeError("Tab was closed")
        dpr = self.driver.dpr
        image = page_row_image(
            round(self.width * dpr),
            round(self.driver.scroll_y * dpr),
            round(self.driver.viewport_height * dpr),
        )
        return encode_png(image)


@pytest.fixture
def fast_settings():
    """Settings without settle delay"""
    return Settings(settle_delay_ms=0, session_timeout_s=5)


@pytest.fixture
def orchestrator():
    """Orchestrator with no rate limiting and a short grace period"""
    return CaptureOrchestrator(rate_limiter=RateLimiter(min_interval_ms=0), release_grace_s=0.05)


@pytest.fixture
def sample_metadata():
    return PageMetadata(
        url="https://example.com/docs?page=1",
        title="Docs: Getting Started!",
        language="en-US",
        headings=[
            Heading(level=1, text="Getting Started", offset_top=0),
            Heading(level=2, text="Install", offset_top=400),
        ],
        meta_tags={"description": "How to get started"},
        links=[PageLink(href="https://example.com/a", text="A"), PageLink(href="https://example.com/b", text="B")],
        link_count=2,
        visible_text="Getting Started\nInstall the package.",
    )
