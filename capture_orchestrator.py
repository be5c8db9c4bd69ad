"""
Page Gobbler - Capture Orchestrator
Drives viewport-by-viewport acquisition of a scrollable page.

Two actors exchange CaptureMessage values over asyncio queues:

    executor (CaptureOrchestrator)          driver (ScrollCaptureDriver)
        begin              ------------------>  measure, scroll to 0, settle
                           <------------------  status / capture-viewport
        rate limit, snapshot
        next               ------------------>  scroll, settle
                           <------------------  capture-viewport ... complete
        done | error       ------------------>  restore page state

Only the executor mutates the CaptureSession. The driver restores every page
mutation in a finally block, on success, error, timeout and cancellation.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from capture_models import (
    CapturePhase,
    CaptureProgress,
    CaptureResult,
    CaptureSession,
    DEFAULT_SETTLE_DELAY_MS,
    PageMetadata,
    PageMetrics,
    Settings,
    ViewportCapture,
)
from page_driver import PageDriver, SnapshotSource
from rate_limiter import RateLimiter, get_rate_limiter
from utils.error_handler import (
    CaptureInProgressError,
    CaptureTimeoutError,
    DriverDisconnectedError,
    PageGobblerError,
    SnapshotError,
)

logger = logging.getLogger(__name__)

DEFAULT_RELEASE_GRACE_S = 3.0


def compute_expected_count(total_height_px: int, viewport_height_px: int) -> int:
    """Number of viewports needed to cover the page"""
    return math.ceil(total_height_px / viewport_height_px)


def plan_viewports(metrics: PageMetrics) -> List[Tuple[int, int]]:
    """
    Scroll plan as (scroll_offset_y, clip_height_px) pairs.

    Every clip is in (0, viewport]; the last one covers only what is left
    of the page.
    """
    viewport = metrics.viewport_height_px
    total = metrics.total_height_px
    plan = []
    for i in range(compute_expected_count(total, viewport)):
        offset = i * viewport
        plan.append((offset, min(viewport, total - offset)))
    return plan


class MessageAction(str, Enum):
    """Actions exchanged between executor and driver"""
    BEGIN = "begin"  # executor -> driver
    STATUS = "status"  # driver -> executor
    CAPTURE_VIEWPORT = "capture-viewport"  # driver -> executor
    NEXT = "next"  # executor -> driver
    COMPLETE = "complete"  # driver -> executor
    ERROR = "error"  # both directions
    DONE = "done"  # executor -> driver


@dataclass
class CaptureMessage:
    action: MessageAction
    payload: Dict[str, Any] = field(default_factory=dict)


class ScrollCaptureDriver:
    """
    Driver actor: scrolls the page and asks the executor for snapshots.

    Runs as its own task; reads commands from inbox and writes requests to
    the outbox passed to run().
    """

    def __init__(self, page: PageDriver, settle_delay_ms: int = DEFAULT_SETTLE_DELAY_MS):
        self.page = page
        self.settle_delay_ms = settle_delay_ms
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._outbox: Optional[asyncio.Queue] = None
        self._plan: List[Tuple[int, int]] = []
        self._index = 0
        self._viewport_height = 0

    async def run(self, outbox: asyncio.Queue):
        """Process executor commands until done, error or cancellation"""
        self._outbox = outbox
        try:
            while True:
                msg = await self.inbox.get()

                if msg.action == MessageAction.BEGIN:
                    await self._begin()
                elif msg.action == MessageAction.NEXT:
                    await self._next()
                elif msg.action == MessageAction.ERROR:
                    logger.warning(f"[ScrollCaptureDriver] Capture aborted: {msg.payload.get('error')}")
                    return
                elif msg.action == MessageAction.DONE:
                    return

        except Exception as e:
            logger.error(f"[ScrollCaptureDriver] Driver failed: {e}")
            await outbox.put(CaptureMessage(MessageAction.ERROR, {"error": e}))

        finally:
            try:
                await self.page.restore()
            except Exception as restore_error:
                logger.warning(f"[ScrollCaptureDriver] Failed to restore page state: {restore_error}")

    async def _send(self, action: MessageAction, **payload):
        await self._outbox.put(CaptureMessage(action, payload))

    async def _begin(self):
        await self._send(MessageAction.STATUS, phase=CapturePhase.MEASURING)
        await self.page.prepare()
        metrics = await self.page.measure()

        self._plan = plan_viewports(metrics)
        self._viewport_height = metrics.viewport_height_px
        self._index = 0
        await self.page.detect_overlays()

        await self._send(
            MessageAction.STATUS,
            phase=CapturePhase.MEASURING,
            metrics=metrics,
            expected_count=len(self._plan),
        )
        await self._scroll_and_request()

    async def _next(self):
        self._index += 1

        # Fixed headers/footers belong to the first frame only
        if self._index == 1:
            await self.page.hide_overlays()

        if self._index >= len(self._plan):
            await self._send(MessageAction.STATUS, phase=CapturePhase.FINALIZING)
            metadata = await self.page.collect_metadata()
            await self._send(MessageAction.COMPLETE, metadata=metadata)
            return

        await self._scroll_and_request()

    async def _scroll_and_request(self):
        offset, clip_height = self._plan[self._index]

        await self._send(MessageAction.STATUS, phase=CapturePhase.SCROLLING, index=self._index)
        actual_y = await self.page.scroll_to(offset)

        await self._send(MessageAction.STATUS, phase=CapturePhase.SETTLING, index=self._index)
        await self.page.wait_for_frame()
        await asyncio.sleep(self.settle_delay_ms / 1000)

        await self._send(
            MessageAction.CAPTURE_VIEWPORT,
            scroll_offset_y=offset,
            actual_scroll_y=actual_y,
            viewport_height_px=self._viewport_height,
            clip_height_px=clip_height,
            sequence_index=self._index,
        )


class CaptureOrchestrator:
    """
    Executor actor: owns the snapshot primitive, the rate limiter and the
    single live CaptureSession.

    A capture request while a session is active is rejected with
    CaptureInProgressError. Finished sessions stay readable for
    release_grace_s so progress observers see the final state once.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        release_grace_s: float = DEFAULT_RELEASE_GRACE_S,
    ):
        """
        Initialize capture orchestrator

        Args:
            rate_limiter: Limiter guarding the snapshot primitive (shared instance by default)
            release_grace_s: How long a finished session stays observable
        """
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.release_grace_s = release_grace_s
        self._session: Optional[CaptureSession] = None
        self._release_handle: Optional[asyncio.TimerHandle] = None

        logger.info("[CaptureOrchestrator] Initialized")

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def is_busy(self) -> bool:
        return self._session is not None and self._session.is_active

    def get_progress(self) -> CaptureProgress:
        """Current progress, or idle when no session is held"""
        if self._session is None:
            return CaptureProgress()
        return self._session.to_progress()

    def release_session(self):
        """Drop the finished session (its output has been consumed)"""
        if self._release_handle is not None:
            self._release_handle.cancel()
            self._release_handle = None
        if self._session is not None and not self._session.is_active:
            logger.debug(f"[CaptureOrchestrator] Released session {self._session.session_id}")
            self._session = None

    async def capture(
        self,
        page: PageDriver,
        snapshot: SnapshotSource,
        settings: Settings,
    ) -> CaptureResult:
        """
        Capture every viewport of the page.

        Args:
            page: Driver for the target page
            snapshot: Snapshot primitive for the same page
            settings: Capture settings for this run

        Returns:
            CaptureResult with captures ordered by scroll offset

        Raises:
            CaptureInProgressError, MeasurementError, SnapshotError,
            DriverDisconnectedError, CaptureTimeoutError
        """
        if self.is_busy:
            raise CaptureInProgressError(session_id=self._session.session_id)

        self.release_session()
        session = CaptureSession()
        self._session = session

        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.session_timeout_s

        driver = ScrollCaptureDriver(page, settle_delay_ms=settings.settle_delay_ms)
        outbox: asyncio.Queue = asyncio.Queue()
        driver_task = asyncio.create_task(driver.run(outbox))

        logger.info(f"[CaptureOrchestrator] Starting session {session.session_id}")
        session.phase = CapturePhase.MEASURING
        await driver.inbox.put(CaptureMessage(MessageAction.BEGIN))

        try:
            while True:
                msg = await self._receive(session, outbox, driver_task, deadline, settings)

                if msg.action == MessageAction.STATUS:
                    self._apply_status(session, msg.payload)

                elif msg.action == MessageAction.CAPTURE_VIEWPORT:
                    await self._capture_viewport(session, snapshot, settings, msg.payload, deadline)
                    await driver.inbox.put(CaptureMessage(MessageAction.NEXT))

                elif msg.action == MessageAction.COMPLETE:
                    session.metadata = msg.payload.get("metadata") or PageMetadata()
                    session.phase = CapturePhase.DONE
                    session.completed_at = time.time()
                    await driver.inbox.put(CaptureMessage(MessageAction.DONE))
                    break

                elif msg.action == MessageAction.ERROR:
                    error = msg.payload.get("error")
                    if isinstance(error, PageGobblerError):
                        raise error
                    raise DriverDisconnectedError(
                        f"Page driver reported an error: {error}", session_id=session.session_id
                    )

        except (Exception, asyncio.CancelledError) as e:
            session.phase = CapturePhase.ERROR
            session.last_error = str(e) or e.__class__.__name__
            session.completed_at = time.time()
            logger.error(f"[CaptureOrchestrator] Session {session.session_id} failed: {session.last_error}")
            await driver.inbox.put(CaptureMessage(MessageAction.ERROR, {"error": session.last_error}))
            raise

        finally:
            await self._join_driver(driver_task)
            self._schedule_release(session)

        session.captures.sort(key=lambda c: c.scroll_offset_y)
        logger.info(
            f"[CaptureOrchestrator] Session {session.session_id} complete: "
            f"{len(session.captures)} captures in {session.elapsed_ms}ms"
        )
        return CaptureResult(
            captures=list(session.captures),
            metrics=session.metrics,
            metadata=session.metadata,
            elapsed_ms=session.elapsed_ms,
            session_id=session.session_id,
        )

    def _apply_status(self, session: CaptureSession, payload: Dict[str, Any]):
        session.phase = payload.get("phase", session.phase)
        if "metrics" in payload:
            session.metrics = payload["metrics"]
            session.expected_count = payload["expected_count"]
            logger.info(
                f"[CaptureOrchestrator] {session.metrics.total_height_px}px page, "
                f"{session.expected_count} viewports of {session.metrics.viewport_height_px}px"
            )

    async def _capture_viewport(
        self,
        session: CaptureSession,
        snapshot: SnapshotSource,
        settings: Settings,
        payload: Dict[str, Any],
        deadline: float,
    ):
        index = payload["sequence_index"]
        session.phase = CapturePhase.CAPTURING

        await self.rate_limiter.acquire()

        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise CaptureTimeoutError(
                f"Capture timed out after {settings.session_timeout_s}s", timeout_s=settings.session_timeout_s
            )

        try:
            bitmap = await asyncio.wait_for(
                snapshot.capture_visible_region(settings.target_format, settings.base_quality),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            raise CaptureTimeoutError(
                f"Capture timed out after {settings.session_timeout_s}s waiting for snapshot {index}",
                timeout_s=settings.session_timeout_s,
            )
        except Exception as e:
            raise SnapshotError(f"Snapshot {index} failed: {e}", sequence_index=index) from e

        if not bitmap:
            raise SnapshotError(f"Snapshot {index} returned no data", sequence_index=index)

        session.captures.append(ViewportCapture(bitmap=bitmap, **payload))
        logger.debug(
            f"[CaptureOrchestrator] Captured {index + 1}/{session.expected_count} "
            f"at y={payload['scroll_offset_y']} (clip {payload['clip_height_px']}px)"
        )

    async def _receive(
        self,
        session: CaptureSession,
        outbox: asyncio.Queue,
        driver_task: asyncio.Task,
        deadline: float,
        settings: Settings,
    ) -> CaptureMessage:
        """Next driver message; raises if the driver is gone or time is up"""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining > 0:
            get_task = asyncio.ensure_future(outbox.get())
            try:
                done, _ = await asyncio.wait(
                    {get_task, driver_task}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not get_task.done():
                    get_task.cancel()
            if get_task in done:
                return get_task.result()

            if driver_task in done:
                # The driver may have queued an error just before exiting
                if not outbox.empty():
                    return outbox.get_nowait()
                raise DriverDisconnectedError(
                    "Page driver became unreachable before the capture completed",
                    session_id=session.session_id,
                )

        raise CaptureTimeoutError(
            f"Capture timed out after {settings.session_timeout_s}s", timeout_s=settings.session_timeout_s
        )

    async def _join_driver(self, driver_task: asyncio.Task):
        """Give the driver time to restore the page, then cancel it"""
        done, _ = await asyncio.wait({driver_task}, timeout=self.release_grace_s)
        if not done:
            logger.warning("[CaptureOrchestrator] Driver did not stop in time, cancelling")
            driver_task.cancel()
            await asyncio.gather(driver_task, return_exceptions=True)

    def _schedule_release(self, session: CaptureSession):
        loop = asyncio.get_running_loop()

        def _release():
            if self._session is session and not session.is_active:
                logger.debug(f"[CaptureOrchestrator] Grace period over, releasing {session.session_id}")
                self._session = None
            self._release_handle = None

        self._release_handle = loop.call_later(self.release_grace_s, _release)
