"""
Page Gobbler - Smart Sectioner
Splits a tall stitched image into height-bounded sections.

Each cut is snapped to the most uniform row (lowest colour variance) near
the naive cut line, so boundaries land on whitespace or dividers instead of
bisecting text and images.
"""

import logging
import math
from typing import List

import numpy as np
from PIL import Image

from capture_models import Section
from utils.error_handler import SectionError

logger = logging.getLogger(__name__)

SEARCH_RANGE_PX = 200  # Image pixels either side of the naive cut
ROW_STEP = 4
MIN_SECTION_RATIO = 0.7  # Never cut above 70% of the max height


class SmartSectioner:
    """
    Finds natural break points in full-page images
    """

    def __init__(self, search_range_px: int = SEARCH_RANGE_PX, row_step: int = ROW_STEP):
        self.search_range_px = search_range_px
        self.row_step = row_step

    def section(
        self,
        image: Image.Image,
        max_height_px: int,
        device_pixel_ratio: float = 1.0,
        split_enabled: bool = True,
    ) -> List[Section]:
        """
        Split image into sections

        Args:
            image: Stitched full-page image
            max_height_px: Target section height in image pixels
            device_pixel_ratio: Ratio the image was captured at (logged only;
                the search window is in image pixels)
            split_enabled: False returns the whole image as one section

        Returns:
            Sections ordered top to bottom, covering [0, height) exactly
        """
        height = image.height

        if not split_enabled or height <= max_height_px:
            return [Section(image=image, start_y=0, end_y=height, sequence_index=0)]

        pixels = np.asarray(image.convert('RGB'), dtype=np.float32)

        sections = []
        start_y = 0
        while start_y < height:
            target_end = min(start_y + max_height_px, height)

            if target_end < height:
                end_y = self._find_break_point(pixels, start_y, target_end, max_height_px)
            else:
                end_y = target_end

            if end_y <= start_y:
                end_y = target_end

            sections.append(Section(
                image=image.crop((0, start_y, image.width, end_y)),
                start_y=start_y,
                end_y=end_y,
                sequence_index=len(sections),
            ))
            logger.debug(f"[SmartSectioner] Section {len(sections) - 1}: {start_y}-{end_y} (target {target_end})")
            start_y = end_y

        self._check_coverage(sections, height)
        logger.info(
            f"[SmartSectioner] Split {image.width}x{height}px (dpr {device_pixel_ratio}) into {len(sections)} sections"
        )
        return sections

    def _find_break_point(
        self,
        pixels: np.ndarray,
        start_y: int,
        target_end: int,
        max_height_px: int,
    ) -> int:
        """Row with the lowest colour variance in the window around target_end"""
        height = pixels.shape[0]
        scan_start = max(start_y + math.floor(max_height_px * MIN_SECTION_RATIO), target_end - self.search_range_px)
        scan_end = min(target_end + self.search_range_px, height)

        rows = np.arange(scan_start, scan_end, self.row_step)
        if rows.size == 0:
            return target_end

        variances = row_variance(pixels[rows])
        # argmin returns the first minimum, i.e. the topmost row on ties
        best = int(rows[int(np.argmin(variances))])
        logger.debug(
            f"[SmartSectioner] Break at y={best} (variance {variances.min():.1f}, "
            f"scanned {scan_start}-{scan_end})"
        )
        return best

    def _check_coverage(self, sections: List[Section], height: int):
        expected_start = 0
        for s in sections:
            if s.start_y != expected_start or s.end_y <= s.start_y:
                raise SectionError(
                    f"Section {s.sequence_index} [{s.start_y}, {s.end_y}) breaks contiguity at {expected_start}",
                    start_y=s.start_y,
                )
            expected_start = s.end_y
        if expected_start != height:
            raise SectionError(f"Sections end at {expected_start}, image height is {height}", start_y=expected_start)


def row_variance(rows: np.ndarray) -> np.ndarray:
    """
    Colour variance of each row

    Args:
        rows: Array of shape (n, width, 3)

    Returns:
        Array of n values: mean over pixels of the summed squared RGB
        deviation from the row's mean colour
    """
    mean = rows.mean(axis=1, keepdims=True)
    return ((rows - mean) ** 2).sum(axis=2).mean(axis=1)
