"""
Page Gobbler - Screenshot Stitcher
Composites ordered viewport captures into one full-page bitmap.

Every capture is placed at its scroll offset (scaled by the device pixel
ratio), so the result does not depend on the order captures arrived in.
Only the clip rows of each capture are copied; the last viewport usually
covers less than a full screen.
"""

import io
import logging
from typing import List

from PIL import Image

from capture_models import PageMetrics, StitchedImage, ViewportCapture
from capture_orchestrator import compute_expected_count
from utils.error_handler import ErrorContext, StitchError

logger = logging.getLogger(__name__)

ROUNDING_SLACK_ROWS = 2  # Bitmap rows lost to rounding at fractional dpr


class ScreenshotStitcher:
    """
    Stitches viewport captures vertically by scroll offset
    """

    def stitch(self, captures: List[ViewportCapture], metrics: PageMetrics) -> StitchedImage:
        """
        Build the full-page image

        Args:
            captures: Viewport captures in any order
            metrics: Page metrics measured at the start of the capture

        Returns:
            StitchedImage of width = capture width, height = ceil(total × dpr)

        Raises:
            StitchError: Missing capture, width mismatch or undecodable bitmap
        """
        ordered = sorted(captures, key=lambda c: c.scroll_offset_y)
        self._validate_sequence(ordered, metrics)

        dpr = metrics.device_pixel_ratio
        images = [self._decode(capture) for capture in ordered]

        width = images[0].width
        height = metrics.scaled_height_px

        for capture, img in zip(ordered, images):
            if img.width != width:
                raise StitchError(
                    f"Capture {capture.sequence_index} is {img.width}px wide, expected {width}px",
                    sequence_index=capture.sequence_index,
                )

        logger.info(f"[ScreenshotStitcher] Stitching {len(ordered)} captures -> {width}x{height}px (dpr {dpr})")

        stitched = Image.new('RGB', (width, height))
        dest_starts = [round(capture.scroll_offset_y * dpr) for capture in ordered]
        dest_ends = dest_starts[1:] + [height]

        for capture, img, dest_y, dest_end in zip(ordered, images, dest_starts, dest_ends):
            src_top = round(capture.source_offset_px * dpr)

            # Rows run to where the next capture starts (canvas bottom for the last)
            rows = min(dest_end, height) - dest_y
            available = min(rows, img.height - src_top)
            if available <= 0:
                logger.warning(
                    f"[ScreenshotStitcher] Capture {capture.sequence_index} contributes no rows "
                    f"(offset {capture.scroll_offset_y}, clip {capture.clip_height_px})"
                )
                continue

            stitched.paste(img.crop((0, src_top, width, src_top + available)), (0, dest_y))
            if 0 < rows - available <= ROUNDING_SLACK_ROWS:
                # Bitmap height rounded down at a fractional dpr: repeat its last row
                last_row = img.crop((0, src_top + available - 1, width, src_top + available))
                stitched.paste(last_row.resize((width, rows - available)), (0, dest_y + available))
            logger.debug(
                f"  Capture {capture.sequence_index}: rows {src_top}-{src_top + available} -> y={dest_y}"
            )

        return StitchedImage(image=stitched, device_pixel_ratio=dpr, capture_count=len(ordered))

    def _validate_sequence(self, ordered: List[ViewportCapture], metrics: PageMetrics):
        """Require exactly one capture per planned viewport"""
        if not ordered:
            raise StitchError("No captures to stitch")

        expected = compute_expected_count(metrics.total_height_px, metrics.viewport_height_px)
        if len(ordered) != expected:
            raise StitchError(f"Expected {expected} captures, got {len(ordered)}")

        indices = [c.sequence_index for c in ordered]
        if indices != list(range(expected)):
            missing = sorted(set(range(expected)) - set(indices))
            raise StitchError(
                f"Capture sequence is not contiguous (missing {missing or 'none'}, got {indices})",
                sequence_index=missing[0] if missing else None,
            )

    def _decode(self, capture: ViewportCapture) -> Image.Image:
        with ErrorContext(f"decoding capture {capture.sequence_index}", raise_as=StitchError):
            img = Image.open(io.BytesIO(capture.bitmap))
            img.load()
        if img.mode != 'RGB':
            img = img.convert('RGB')
        return img
