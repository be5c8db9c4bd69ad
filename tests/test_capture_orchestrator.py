"""Tests for capture_orchestrator.py.

Drives the orchestrator against the in-memory page driver and snapshot
source from conftest.py.
"""

import asyncio

import pytest

from capture_models import CapturePhase, PageMetrics, Settings
from capture_orchestrator import (
    CaptureOrchestrator,
    compute_expected_count,
    plan_viewports,
)
from rate_limiter import RateLimiter
from utils.error_handler import (
    CaptureInProgressError,
    CaptureTimeoutError,
    DriverDisconnectedError,
    MeasurementError,
    SnapshotError,
)
from tests.conftest import FakePageDriver, FakeSnapshotSource


class CountingRateLimiter(RateLimiter):
    def __init__(self):
        super().__init__(min_interval_ms=0)
        self.count = 0

    async def acquire(self):
        self.count += 1
        await super().acquire()


class TestViewportPlanning:
    """Tests for compute_expected_count() and plan_viewports()."""

    @pytest.mark.parametrize(
        "total,viewport,expected",
        [(10000, 1000, 10), (2500, 1000, 3), (999, 1000, 1), (1000, 1000, 1), (1001, 1000, 2), (1, 7, 1)],
    )
    def test_expected_count(self, total, viewport, expected):
        """expected_count == ceil(total / viewport)."""
        assert compute_expected_count(total, viewport) == expected

    @pytest.mark.parametrize("total,viewport", [(10000, 1000), (2500, 1000), (1234, 321), (50, 800)])
    def test_last_clip_height(self, total, viewport):
        """Last clip is total - (n-1) * viewport, in (0, viewport]."""
        plan = plan_viewports(PageMetrics(total_height_px=total, viewport_height_px=viewport))
        n = len(plan)

        assert plan[-1][1] == total - (n - 1) * viewport
        assert all(0 < clip <= viewport for _, clip in plan)
        assert [offset for offset, _ in plan] == [i * viewport for i in range(n)]


class TestCaptureSuccess:
    """Tests for successful capture sessions."""

    @pytest.mark.asyncio
    async def test_ten_viewport_page(self, orchestrator, fast_settings):
        """A 10000px page with 1000px viewports yields 10 captures."""
        driver = FakePageDriver(total_height=10000, viewport_height=1000)
        snapshot = FakeSnapshotSource(driver)

        result = await orchestrator.capture(driver, snapshot, fast_settings)

        assert len(result.captures) == 10
        assert [c.scroll_offset_y for c in result.captures] == list(range(0, 10000, 1000))
        assert [c.sequence_index for c in result.captures] == list(range(10))
        assert result.captures[-1].clip_height_px == 1000
        assert result.metrics.total_height_px == 10000
        assert result.metadata.title == "Example Article"
        assert snapshot.calls == 10

    @pytest.mark.asyncio
    async def test_partial_last_viewport(self, orchestrator, fast_settings):
        """The last clip covers only the remainder; the clamped scroll is recorded."""
        driver = FakePageDriver(total_height=2500, viewport_height=1000)

        result = await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)

        last = result.captures[-1]
        assert len(result.captures) == 3
        assert last.scroll_offset_y == 2000
        assert last.clip_height_px == 500
        assert last.actual_scroll_y == 1500
        assert last.source_offset_px == 500

    @pytest.mark.asyncio
    async def test_single_viewport_page(self, orchestrator, fast_settings):
        """A page shorter than the viewport needs one capture."""
        driver = FakePageDriver(total_height=600, viewport_height=1000)

        result = await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)

        assert len(result.captures) == 1
        assert result.captures[0].clip_height_px == 600

    @pytest.mark.asyncio
    async def test_snapshots_in_scroll_order_and_rate_limited(self, fast_settings):
        """Every snapshot goes through the rate limiter, in increasing offset order."""
        limiter = CountingRateLimiter()
        orch = CaptureOrchestrator(rate_limiter=limiter, release_grace_s=0.05)
        driver = FakePageDriver(total_height=4200, viewport_height=1000)

        await orch.capture(driver, FakeSnapshotSource(driver), fast_settings)

        assert limiter.count == 5
        assert driver.scrolls == sorted(driver.scrolls)
        assert driver.scrolls == [0, 1000, 2000, 3000, 4000]

    @pytest.mark.asyncio
    async def test_overlays_hidden_after_first_capture(self, orchestrator, fast_settings):
        """Fixed elements appear in the first frame only and are restored at the end."""
        driver = FakePageDriver(total_height=3000, viewport_height=1000)
        snapshot = FakeSnapshotSource(driver)

        await orchestrator.capture(driver, snapshot, fast_settings)

        assert snapshot.overlays_hidden_at == [False, True, True]
        assert driver.calls.count("hide_overlays") == 1
        assert driver.hidden is False
        assert driver.restored == 1

    @pytest.mark.asyncio
    async def test_metadata_collected_once_before_restore(self, orchestrator, fast_settings):
        """Metadata is collected after the last viewport, then the page is restored."""
        driver = FakePageDriver(total_height=2000, viewport_height=1000)

        await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)

        assert driver.calls.count("collect_metadata") == 1
        assert driver.calls[-2:] == ["collect_metadata", "restore"]

    @pytest.mark.asyncio
    async def test_progress_after_completion(self, orchestrator, fast_settings):
        """A finished session reports done with full counts."""
        driver = FakePageDriver(total_height=3000, viewport_height=1000)

        await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)
        progress = orchestrator.get_progress()

        assert progress.phase == CapturePhase.DONE
        assert progress.current == 3
        assert progress.total == 3
        assert progress.error is None


class TestCaptureFailures:
    """Tests for failing capture sessions."""

    @pytest.mark.asyncio
    async def test_snapshot_failure(self, orchestrator, fast_settings):
        """A snapshot failure ends the session in error and restores the page."""
        driver = FakePageDriver(total_height=5000, viewport_height=1000)
        snapshot = FakeSnapshotSource(driver, fail_at=2)

        with pytest.raises(SnapshotError) as exc_info:
            await orchestrator.capture(driver, snapshot, fast_settings)

        assert "Tab was closed" in str(exc_info.value)
        assert exc_info.value.details["sequence_index"] == 2
        assert orchestrator.session.phase == CapturePhase.ERROR
        assert "Tab was closed" in orchestrator.get_progress().error
        assert driver.restored == 1
        assert driver.hidden is False
        assert snapshot.calls == 3

    @pytest.mark.asyncio
    async def test_measurement_failure(self, orchestrator, fast_settings):
        """Invalid page dimensions surface as MeasurementError."""
        driver = FakePageDriver(fail_measure=True)
        snapshot = FakeSnapshotSource(driver)

        with pytest.raises(MeasurementError):
            await orchestrator.capture(driver, snapshot, fast_settings)

        assert snapshot.calls == 0
        assert driver.restored == 1
        assert orchestrator.get_progress().phase == CapturePhase.ERROR

    @pytest.mark.asyncio
    async def test_driver_error(self, orchestrator, fast_settings):
        """An unexpected driver failure is reported as a disconnect."""
        driver = FakePageDriver(total_height=3000, viewport_height=1000, fail_scroll_at=1)

        with pytest.raises(DriverDisconnectedError) as exc_info:
            await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)

        assert "Execution context was destroyed" in str(exc_info.value)
        assert driver.restored == 1

    @pytest.mark.asyncio
    async def test_session_timeout(self, orchestrator):
        """A hung driver is abandoned after session_timeout_s."""
        settings = Settings(settle_delay_ms=0, session_timeout_s=0.2)
        driver = FakePageDriver(total_height=3000, viewport_height=1000, hang_on_scroll_at=1)

        with pytest.raises(CaptureTimeoutError):
            await orchestrator.capture(driver, FakeSnapshotSource(driver), settings)

        assert orchestrator.get_progress().phase == CapturePhase.ERROR
        assert driver.restored == 1


class TestSessionLifecycle:
    """Tests for session ownership and release."""

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, orchestrator):
        """Starting a capture while one is running raises CaptureInProgressError."""
        settings = Settings(settle_delay_ms=0, session_timeout_s=30)
        slow_driver = FakePageDriver(total_height=3000, viewport_height=1000, hang_on_scroll_at=1)
        first = asyncio.create_task(orchestrator.capture(slow_driver, FakeSnapshotSource(slow_driver), settings))

        while not orchestrator.is_busy:
            await asyncio.sleep(0.01)

        other = FakePageDriver()
        with pytest.raises(CaptureInProgressError):
            await orchestrator.capture(other, FakeSnapshotSource(other), settings)
        assert other.calls == []

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert slow_driver.restored == 1
        assert orchestrator.session.phase == CapturePhase.ERROR

    @pytest.mark.asyncio
    async def test_session_released_after_grace_period(self, orchestrator, fast_settings):
        """The finished session stays observable for the grace period only."""
        driver = FakePageDriver(total_height=2000, viewport_height=1000)

        await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)
        assert orchestrator.session is not None

        await asyncio.sleep(0.15)

        assert orchestrator.session is None
        assert orchestrator.get_progress().phase == CapturePhase.IDLE

    @pytest.mark.asyncio
    async def test_release_session_immediately(self, orchestrator, fast_settings):
        """release_session() drops a finished session without waiting."""
        driver = FakePageDriver(total_height=2000, viewport_height=1000)

        await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)
        orchestrator.release_session()

        assert orchestrator.session is None

    @pytest.mark.asyncio
    async def test_new_capture_after_failure(self, orchestrator, fast_settings):
        """A failed session does not block the next capture."""
        broken = FakePageDriver(fail_measure=True)
        with pytest.raises(MeasurementError):
            await orchestrator.capture(broken, FakeSnapshotSource(broken), fast_settings)

        driver = FakePageDriver(total_height=2000, viewport_height=1000)
        result = await orchestrator.capture(driver, FakeSnapshotSource(driver), fast_settings)

        assert len(result.captures) == 2
        assert result.session_id == orchestrator.session.session_id
