"""
Page Gobbler - Capture Service
Runs a complete capture of a URL: browser -> orchestrator -> pipeline.
"""

import asyncio
import logging
from typing import Callable, Optional

from capture_models import PipelineResult, Settings
from capture_orchestrator import CaptureOrchestrator
from capture_pipeline import CapturePipeline
from page_driver import PlaywrightPageDriver, PlaywrightSnapshotSource, open_page
from settings_manager import SettingsManager
from utils.error_handler import CaptureInProgressError, NoCaptureResultError

logger = logging.getLogger(__name__)


class CaptureService:
    """
    Captures URLs and keeps the last result for download
    """

    def __init__(
        self,
        orchestrator: CaptureOrchestrator,
        pipeline: CapturePipeline,
        settings_manager: SettingsManager,
        page_opener: Callable = open_page,
        driver_factory: Callable = PlaywrightPageDriver,
        snapshot_factory: Callable = PlaywrightSnapshotSource,
        headless: bool = True,
    ):
        """
        Initialize capture service

        Args:
            orchestrator: Orchestrator owning the capture session
            pipeline: Image pipeline run on each completed capture
            settings_manager: Source of the settings for each run
            page_opener: Async context manager factory yielding a Playwright page
            driver_factory: Builds the PageDriver for an opened page
            snapshot_factory: Builds the SnapshotSource for an opened page
            headless: Launch the browser without a window
        """
        self.orchestrator = orchestrator
        self.pipeline = pipeline
        self.settings_manager = settings_manager
        self.page_opener = page_opener
        self.driver_factory = driver_factory
        self.snapshot_factory = snapshot_factory
        self.headless = headless
        self._last_result: Optional[PipelineResult] = None

        logger.info("[CaptureService] Initialized")

    @property
    def last_result(self) -> PipelineResult:
        if self._last_result is None:
            raise NoCaptureResultError()
        return self._last_result

    async def capture_url(
        self,
        url: str,
        viewport_width: int = 1280,
        viewport_height: int = 800,
        device_scale_factor: float = 1.0,
        settings: Optional[Settings] = None,
    ) -> PipelineResult:
        """
        Capture a URL end to end

        Args:
            url: Page to capture
            viewport_width: Browser viewport width in CSS pixels
            viewport_height: Browser viewport height in CSS pixels
            device_scale_factor: Device pixel ratio of the browser
            settings: Override for the stored settings

        Returns:
            PipelineResult (also kept as last_result)
        """
        # Reject before launching a browser
        if self.orchestrator.is_busy:
            raise CaptureInProgressError(session_id=self.orchestrator.session.session_id)

        settings = settings or self.settings_manager.load_settings()
        logger.info(f"[CaptureService] Capturing {url}")

        async with self.page_opener(
            url,
            viewport_width=viewport_width,
            viewport_height=viewport_height,
            device_scale_factor=device_scale_factor,
            headless=self.headless,
        ) as page:
            capture = await self.orchestrator.capture(
                self.driver_factory(page),
                self.snapshot_factory(page),
                settings,
            )

        try:
            result = await asyncio.to_thread(self.pipeline.process, capture, settings)
        finally:
            # Captures are consumed (or the pipeline failed); no need to wait for the grace period
            self.orchestrator.release_session()

        self._last_result = result
        return result
