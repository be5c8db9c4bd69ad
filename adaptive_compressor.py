"""
Page Gobbler - Adaptive Compressor
Encodes each section so it fits within max_section_bytes.

The search walks an ordered ladder of (format, quality, scale) candidates
and keeps the first one that fits. When nothing fits, a last-resort encode
is returned flagged over_budget; size alone is never a hard failure.
"""

import io
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from capture_models import CompressedSection, CompressionStrategy, Section, Settings
from utils.error_handler import get_error_with_hint

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
}

# Quality ladders (0-1 scale)
WEBP_START, WEBP_FLOOR = 0.92, 0.30
JPEG_START, JPEG_FLOOR = 0.85, 0.30
QUALITY_STEP = 0.10
SCALE_START, SCALE_FLOOR, SCALE_STEP = 0.75, 0.25, 0.10
SCALED_QUALITIES = (0.80, 0.65, 0.50)
LAST_RESORT_SCALE, LAST_RESORT_QUALITY = 0.5, 0.3

# Largest width or height each encoder accepts
MAX_DIMENSION_PX = {
    "WEBP": 16383,
    "JPEG": 65500,
}


def descending(start: float, floor: float, step: float) -> List[float]:
    """start, start - step, ... while >= floor, rounded to avoid float drift"""
    values = []
    i = 0
    while True:
        value = round(start - i * step, 2)
        if value < floor - 1e-9:
            return values
        values.append(value)
        i += 1


@dataclass(frozen=True)
class CompressionStep:
    fmt: str  # PIL format name
    quality: float
    scale: float = 1.0


@dataclass(frozen=True)
class CompressionPlan:
    """
    Ordered candidate ladder for one strategy.

    size_limited plans accept the first candidate within budget and fall
    back to last_resort; unlimited plans return their first candidate.
    """
    strategy: CompressionStrategy
    steps: Tuple[CompressionStep, ...]
    size_limited: bool = True
    last_resort: Optional[CompressionStep] = None

    @classmethod
    def lossless(cls) -> "CompressionPlan":
        return cls(
            strategy=CompressionStrategy.LOSSLESS,
            steps=(CompressionStep("PNG", 1.0),),
            size_limited=False,
        )

    @classmethod
    def auto(cls) -> "CompressionPlan":
        return cls(strategy=CompressionStrategy.AUTO, steps=_lossy_ladder(), last_resort=_last_resort())

    @classmethod
    def aggressive(cls) -> "CompressionPlan":
        return cls(strategy=CompressionStrategy.AGGRESSIVE, steps=_lossy_ladder(), last_resort=_last_resort())

    @classmethod
    def for_strategy(cls, strategy: CompressionStrategy) -> "CompressionPlan":
        factories = {
            CompressionStrategy.LOSSLESS: cls.lossless,
            CompressionStrategy.AUTO: cls.auto,
            CompressionStrategy.AGGRESSIVE: cls.aggressive,
        }
        return factories[CompressionStrategy(strategy)]()


def _lossy_ladder() -> Tuple[CompressionStep, ...]:
    steps = [CompressionStep("WEBP", q) for q in descending(WEBP_START, WEBP_FLOOR, QUALITY_STEP)]
    steps += [CompressionStep("JPEG", q) for q in descending(JPEG_START, JPEG_FLOOR, QUALITY_STEP)]
    for scale in descending(SCALE_START, SCALE_FLOOR, SCALE_STEP):
        steps += [CompressionStep("WEBP", q, scale) for q in SCALED_QUALITIES]
    return tuple(steps)


def _last_resort() -> CompressionStep:
    return CompressionStep("WEBP", LAST_RESORT_QUALITY, LAST_RESORT_SCALE)


def scaled_size(image: Image.Image, scale: float) -> Tuple[int, int]:
    if scale >= 1.0:
        return image.width, image.height
    return max(1, round(image.width * scale)), max(1, round(image.height * scale))


def fits_format(image: Image.Image, step: CompressionStep) -> bool:
    """True when the step's scaled size is within its encoder's dimension limit"""
    limit = MAX_DIMENSION_PX.get(step.fmt)
    return limit is None or max(scaled_size(image, step.scale)) <= limit


def fit_to_format(image: Image.Image, step: CompressionStep) -> CompressionStep:
    """Shrink a step's scale until its output fits the encoder's dimension limit"""
    if fits_format(image, step):
        return step
    limit = MAX_DIMENSION_PX[step.fmt]
    scale = math.floor(limit / max(image.width, image.height) * 1000) / 1000
    return CompressionStep(step.fmt, step.quality, min(step.scale, scale))


class AdaptiveCompressor:
    """
    Searches format/quality/scale space per section
    """

    def compress(self, section: Section, settings: Settings) -> CompressedSection:
        """
        Encode a section against settings.max_section_bytes

        Args:
            section: Section to encode
            settings: Run settings (strategy and byte budget)

        Returns:
            CompressedSection; over_budget=True only for the last-resort encode
        """
        plan = CompressionPlan.for_strategy(settings.compression_strategy)
        budget = settings.max_section_bytes
        image = section.image if section.image.mode in ('RGB', 'RGBA') else section.image.convert('RGB')
        scaled_cache: Dict[float, Image.Image] = {}

        for attempt, step in enumerate(plan.steps, start=1):
            if not fits_format(image, step):
                logger.debug(
                    f"[AdaptiveCompressor] Section {section.sequence_index}: skipping {step.fmt} "
                    f"scale={step.scale}, {image.width}x{image.height}px exceeds the format limit"
                )
                continue

            candidate = self._scaled(image, step.scale, scaled_cache)
            try:
                data = self._encode(candidate, step.fmt, step.quality)
            except (OSError, ValueError) as e:
                logger.warning(
                    f"[AdaptiveCompressor] Section {section.sequence_index}: {step.fmt} q={step.quality} "
                    f"scale={step.scale} failed to encode: {e}"
                )
                continue

            if not plan.size_limited or len(data) <= budget:
                logger.debug(
                    f"[AdaptiveCompressor] Section {section.sequence_index}: {step.fmt} q={step.quality} "
                    f"scale={step.scale} -> {len(data)} bytes (attempt {attempt})"
                )
                return self._result(section, candidate, step, data)

        step = fit_to_format(image, plan.last_resort or CompressionStep("PNG", 1.0))
        candidate = self._scaled(image, step.scale, scaled_cache)
        try:
            data = self._encode(candidate, step.fmt, step.quality)
        except (OSError, ValueError) as e:
            logger.warning(
                f"[AdaptiveCompressor] Section {section.sequence_index}: last resort {step.fmt} "
                f"failed to encode ({e}), using PNG"
            )
            step = CompressionStep("PNG", 1.0, step.scale)
            data = self._encode(candidate, step.fmt, step.quality)

        hint = get_error_with_hint("compression_over_budget")
        logger.warning(
            f"[AdaptiveCompressor] Section {section.sequence_index} is {len(data)} bytes after "
            f"{len(plan.steps)} attempts, budget {budget}. {hint['hint']}"
        )
        return self._result(section, candidate, step, data, over_budget=True)

    def _scaled(self, image: Image.Image, scale: float, cache: Dict[float, Image.Image]) -> Image.Image:
        if scale >= 1.0:
            return image
        if scale not in cache:
            width, height = scaled_size(image, scale)
            resized = cv2.resize(np.asarray(image), (width, height), interpolation=cv2.INTER_AREA)
            cache[scale] = Image.fromarray(resized)
        return cache[scale]

    def _encode(self, image: Image.Image, fmt: str, quality: float) -> bytes:
        buffer = io.BytesIO()
        if fmt == "PNG":
            image.save(buffer, format="PNG", optimize=True)
        elif fmt == "JPEG":
            if image.mode != 'RGB':
                image = image.convert('RGB')
            image.save(buffer, format="JPEG", quality=int(round(quality * 100)), optimize=True)
        else:
            image.save(buffer, format=fmt, quality=int(round(quality * 100)))
        return buffer.getvalue()

    def _result(
        self,
        section: Section,
        image: Image.Image,
        step: CompressionStep,
        data: bytes,
        over_budget: bool = False,
    ) -> CompressedSection:
        return CompressedSection(
            data=data,
            mime_format=MIME_TYPES[step.fmt],
            quality_used=step.quality,
            was_scaled=step.scale < 1.0,
            scale_factor=step.scale,
            size_bytes=len(data),
            over_budget=over_budget,
            sequence_index=section.sequence_index,
            start_y=section.start_y,
            end_y=section.end_y,
            width=image.width,
            height=image.height,
        )
