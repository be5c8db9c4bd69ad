"""
Page Gobbler - Text Extractor
Pluggable text sources for captured pages.

TesseractTextSource recognizes text in the stitched image; DomTextSource
formats the text collected from the page DOM. TextExtractor picks the image
recognizer when it is enabled and available and falls back to DOM text
otherwise. Extraction never fails the capture.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import pytesseract
from PIL import Image

from capture_models import PageMetadata, TextExtractionResult

logger = logging.getLogger(__name__)

MAX_KEY_LINKS = 30

# ISO 639-1 prefixes to Tesseract language packs
TESSERACT_LANGS = {
    "en": "eng",
    "de": "deu",
    "fr": "fra",
    "es": "spa",
    "it": "ita",
    "pt": "por",
    "nl": "nld",
}


class TextSource(ABC):
    """A capability that turns a page into text"""

    method = "unknown"

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the source can run in this environment"""

    @abstractmethod
    def extract(self, image: Optional[Image.Image], metadata: PageMetadata) -> TextExtractionResult:
        """Extract text; confidence is a percentage (0 when unknown)"""


class TesseractTextSource(TextSource):
    """Image text recognition through the Tesseract binary"""

    method = "tesseract"

    def __init__(self):
        self._available: Optional[bool] = None

    def is_available(self) -> bool:
        if self._available is None:
            try:
                version = pytesseract.get_tesseract_version()
                logger.info(f"[TesseractTextSource] Tesseract {version} available")
                self._available = True
            except (pytesseract.TesseractNotFoundError, OSError) as e:
                logger.info(f"[TesseractTextSource] Tesseract not available: {e}")
                self._available = False
        return self._available

    def extract(self, image: Optional[Image.Image], metadata: PageMetadata) -> TextExtractionResult:
        if image is None:
            return TextExtractionResult(text="", confidence=0.0, method=self.method)

        lang = tesseract_lang(metadata.language)
        data = pytesseract.image_to_data(image, lang=lang, output_type=pytesseract.Output.DICT)

        words = [w for w in data.get("text", []) if w and w.strip()]
        confidences = [float(c) for c in data.get("conf", []) if float(c) >= 0]
        confidence = sum(confidences) / len(confidences) if confidences else 0.0

        return TextExtractionResult(text=" ".join(words).strip(), confidence=confidence, method=self.method)


class DomTextSource(TextSource):
    """Markdown-ish text built from the page DOM metadata"""

    method = "dom"

    def is_available(self) -> bool:
        return True

    def extract(self, image: Optional[Image.Image], metadata: PageMetadata) -> TextExtractionResult:
        return TextExtractionResult(text=build_dom_text(metadata), confidence=0.0, method=self.method)


def tesseract_lang(language: str) -> str:
    """Map a document language ('en-US', 'unknown') to a Tesseract pack"""
    prefix = (language or "").split("-")[0].lower()
    return TESSERACT_LANGS.get(prefix, "eng")


def build_dom_text(metadata: PageMetadata) -> str:
    """Format page metadata as readable text"""
    parts = []
    if metadata.title:
        parts.append(f"# {metadata.title}\n")
    if metadata.url:
        parts.append(f"URL: {metadata.url}\n")

    description = metadata.meta_tags.get("description")
    if description:
        parts.append(f"## Description\n{description}\n")

    if metadata.headings:
        parts.append("## Page Structure\n")
        for h in metadata.headings:
            parts.append(f"{'#' * h.level} {h.text}")
        parts.append("")

    if metadata.visible_text:
        parts.append("## Full Page Text\n")
        parts.append(metadata.visible_text)
        parts.append("")

    if metadata.links:
        parts.append("## Key Links\n")
        for link in metadata.links[:MAX_KEY_LINKS]:
            parts.append(f"- [{link.text}]({link.href})")

    return "\n".join(parts)


class TextExtractor:
    """
    Chooses a text source by availability
    """

    def __init__(self, recognizer: Optional[TextSource] = None, fallback: Optional[TextSource] = None):
        self.recognizer = recognizer or TesseractTextSource()
        self.fallback = fallback or DomTextSource()

    def extract(self, image: Optional[Image.Image], metadata: PageMetadata, enable_ocr: bool = True) -> TextExtractionResult:
        """
        Extract page text

        Args:
            image: Stitched full-page image (may be None)
            metadata: Page metadata collected during the capture
            enable_ocr: Try the image recognizer first

        Returns:
            TextExtractionResult; text carries a trailing note on fallback
        """
        if not enable_ocr:
            result = self.fallback.extract(image, metadata)
            result.text += "\n\n--- OCR disabled, text extracted from DOM metadata ---"
            return result

        if not self.recognizer.is_available():
            result = self.fallback.extract(image, metadata)
            result.text += "\n\n--- OCR engine unavailable, text extracted from DOM ---"
            return result

        try:
            result = self.recognizer.extract(image, metadata)
        except Exception as e:
            logger.warning(f"[TextExtractor] OCR failed, using DOM text: {e}")
            result = self.fallback.extract(image, metadata)
            result.text += "\n\n--- OCR engine failed, text extracted from DOM ---"
            return result

        if not result.text:
            logger.info("[TextExtractor] OCR returned no text, using DOM text")
            fallback = self.fallback.extract(image, metadata)
            fallback.text += "\n\n--- OCR found no text, text extracted from DOM ---"
            return fallback

        result.text += f"\n\n--- OCR Confidence: {result.confidence:.1f}% ({result.method}) ---"
        return result
