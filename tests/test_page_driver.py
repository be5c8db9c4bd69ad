"""Tests for page_driver.py with a mocked Playwright page."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from capture_models import SnapshotFormat
import page_driver
from page_driver import (
    ARTIFACT_LIMITS,
    MAX_CONSOLE_ENTRIES,
    MAX_LINKS,
    MAX_VISIBLE_TEXT_CHARS,
    PlaywrightPageDriver,
    PlaywrightSnapshotSource,
    open_page,
)
from utils.error_handler import MeasurementError


@pytest.fixture
def mock_page():
    page = MagicMock()
    page.evaluate = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    return page


class TestPlaywrightPageDriver:
    """Tests for PlaywrightPageDriver."""

    @pytest.mark.asyncio
    async def test_measure(self, mock_page):
        mock_page.evaluate.return_value = {
            "pageHeight": 5400,
            "viewportHeight": 900,
            "viewportWidth": 1440,
            "devicePixelRatio": 2,
        }

        metrics = await PlaywrightPageDriver(mock_page).measure()

        assert metrics.total_height_px == 5400
        assert metrics.viewport_height_px == 900
        assert metrics.viewport_width_px == 1440
        assert metrics.device_pixel_ratio == 2.0

    @pytest.mark.asyncio
    async def test_measure_zero_height(self, mock_page):
        mock_page.evaluate.return_value = {"pageHeight": 0, "viewportHeight": 900}

        with pytest.raises(MeasurementError) as exc_info:
            await PlaywrightPageDriver(mock_page).measure()

        assert exc_info.value.details["metrics"]["pageHeight"] == 0

    @pytest.mark.asyncio
    async def test_measure_script_failure(self, mock_page):
        mock_page.evaluate.side_effect = RuntimeError("Execution context was destroyed")

        with pytest.raises(MeasurementError, match="measuring page dimensions"):
            await PlaywrightPageDriver(mock_page).measure()

    @pytest.mark.asyncio
    async def test_scroll_returns_actual_position(self, mock_page):
        mock_page.evaluate.return_value = 1500.4

        actual = await PlaywrightPageDriver(mock_page).scroll_to(2000)

        assert actual == 1500
        assert mock_page.evaluate.call_args.args[1] == 2000

    @pytest.mark.asyncio
    async def test_hide_overlays_skipped_when_none_found(self, mock_page):
        mock_page.evaluate.return_value = 0
        driver = PlaywrightPageDriver(mock_page)

        await driver.detect_overlays()
        await driver.hide_overlays()

        assert mock_page.evaluate.await_count == 1

    @pytest.mark.asyncio
    async def test_hide_overlays_when_found(self, mock_page):
        mock_page.evaluate.return_value = 3
        driver = PlaywrightPageDriver(mock_page)

        assert await driver.detect_overlays() == 3
        await driver.hide_overlays()

        assert mock_page.evaluate.await_count == 2

    @pytest.mark.asyncio
    async def test_collect_metadata_caps_text(self, mock_page):
        mock_page.evaluate.side_effect = [{
            "url": "https://example.com",
            "title": "Example",
            "language": "en",
            "headings": [{"level": 1, "text": "Example", "offset_top": 10}],
            "meta_tags": {"description": "d"},
            "links": [{"href": "https://example.com/a", "text": "A"}],
            "link_count": 1,
            "visible_text": "x" * (MAX_VISIBLE_TEXT_CHARS + 100),
            "viewport_width_px": 1280,
        }, {}]

        metadata = await PlaywrightPageDriver(mock_page).collect_metadata()

        assert metadata.title == "Example"
        assert metadata.headings[0].offset_top == 10
        assert len(metadata.visible_text) == MAX_VISIBLE_TEXT_CHARS
        assert mock_page.evaluate.call_args_list[0].args[1] == MAX_LINKS
        assert mock_page.evaluate.call_args_list[1].args[1] == ARTIFACT_LIMITS

    @pytest.mark.asyncio
    async def test_collect_metadata_parses_artifacts(self, mock_page):
        mock_page.evaluate.side_effect = [
            {"url": "https://example.com", "title": "Example"},
            {
                "dom_structure": "<html>\n  <body />\n</html>\n",
                "image_assets": {
                    "images": [{"src": "https://example.com/a.png", "alt": "A", "width": 10, "height": 5}],
                    "background_images": [{"src": "https://example.com/bg.jpg", "element": "section", "class_name": "hero"}],
                },
                "structured_data": [
                    {"type": "json-ld", "data": {"@type": "Article"}},
                    {"type": "open-graph", "data": {"og:title": "Example"}},
                ],
                "design_tokens": {"colors": [{"color": "rgb(0, 0, 0)", "count": 4}], "custom_properties": {"--brand": "#f00"}},
                "stylesheets": [{"type": "external", "href": "https://cdn.example/x.css", "css": None, "cross_origin": True}],
                "external_resources": {"scripts": [{"src": "https://example.com/app.js", "async": True}]},
                "forms": [{"action": "/search", "fields": [{"tag": "input", "type": "text", "name": "q"}]}],
                "console_logs": [{"level": "warn", "timestamp": "2024-01-01T00:00:00Z", "message": "deprecated"}],
            },
        ]

        metadata = await PlaywrightPageDriver(mock_page).collect_metadata()

        assert metadata.image_assets.background_images[0].class_name == "hero"
        assert [item.type for item in metadata.structured_data] == ["json-ld", "open-graph"]
        assert metadata.design_tokens.custom_properties == {"--brand": "#f00"}
        assert metadata.stylesheets[0].cross_origin is True
        assert metadata.external_resources.scripts[0]["src"] == "https://example.com/app.js"
        assert metadata.forms[0].fields[0].name == "q"
        assert metadata.forms[0].method == "get"
        assert metadata.console_logs[0].level == "warn"

    @pytest.mark.asyncio
    async def test_artifact_failure_keeps_core_metadata(self, mock_page):
        mock_page.evaluate.side_effect = [
            {"url": "https://example.com", "title": "Example", "link_count": 3},
            RuntimeError("Execution context was destroyed"),
        ]

        metadata = await PlaywrightPageDriver(mock_page).collect_metadata()

        assert metadata.title == "Example"
        assert metadata.link_count == 3
        assert metadata.forms == []
        assert metadata.design_tokens is None

    @pytest.mark.asyncio
    async def test_restore_runs_script(self, mock_page):
        await PlaywrightPageDriver(mock_page).restore()

        assert "__gobbleState" in mock_page.evaluate.call_args.args[0]


class TestPlaywrightSnapshotSource:
    """Tests for PlaywrightSnapshotSource."""

    @pytest.mark.asyncio
    async def test_png(self, mock_page):
        data = await PlaywrightSnapshotSource(mock_page).capture_visible_region(SnapshotFormat.PNG, 0.92)

        assert data == b"\x89PNG"
        mock_page.screenshot.assert_awaited_once_with(type="png")

    @pytest.mark.asyncio
    async def test_jpeg_quality(self, mock_page):
        await PlaywrightSnapshotSource(mock_page).capture_visible_region(SnapshotFormat.JPEG, 0.85)

        mock_page.screenshot.assert_awaited_once_with(type="jpeg", quality=85)

    @pytest.mark.asyncio
    async def test_webp_captured_as_png(self, mock_page):
        await PlaywrightSnapshotSource(mock_page).capture_visible_region("webp", 0.92)

        mock_page.screenshot.assert_awaited_once_with(type="png")


class FakePlaywright:
    """Stands in for async_playwright() and records the browser calls"""

    def __init__(self):
        self.calls = []
        self.page = MagicMock()
        self.page.goto = AsyncMock(side_effect=lambda *a, **kw: self.calls.append("goto"))

        context = MagicMock()
        context.add_init_script = AsyncMock(side_effect=lambda script: self.calls.append("init_script"))
        context.new_page = AsyncMock(side_effect=lambda: self.calls.append("new_page") or self.page)
        self.context_kwargs = {}

        async def new_context(**kwargs):
            self.context_kwargs = kwargs
            return context

        browser = MagicMock()
        browser.new_context = new_context
        browser.close = AsyncMock(side_effect=lambda: self.calls.append("close"))
        self.chromium = MagicMock()
        self.chromium.launch = AsyncMock(return_value=browser)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestOpenPage:
    """Tests for open_page()."""

    @pytest.mark.asyncio
    async def test_console_capture_installed_before_load(self, monkeypatch):
        fake = FakePlaywright()
        monkeypatch.setattr(page_driver, "async_playwright", lambda: fake)

        async with open_page("https://example.com", viewport_width=800, device_scale_factor=2.0) as page:
            assert page is fake.page

        assert fake.calls == ["init_script", "new_page", "goto", "close"]
        assert fake.context_kwargs["viewport"]["width"] == 800
        assert fake.context_kwargs["device_scale_factor"] == 2.0

    @pytest.mark.asyncio
    async def test_browser_closed_on_error(self, monkeypatch):
        fake = FakePlaywright()
        monkeypatch.setattr(page_driver, "async_playwright", lambda: fake)

        with pytest.raises(RuntimeError):
            async with open_page("https://example.com"):
                raise RuntimeError("capture failed")

        assert fake.calls[-1] == "close"

    def test_console_capture_is_capped(self):
        assert f"entries.length < {MAX_CONSOLE_ENTRIES}" in page_driver._CONSOLE_CAPTURE_JS
