"""Tesseract text extraction backend."""

import asyncio

import pytesseract
from loguru import logger
from PIL import Image

from .errors import EnrichmentLanguageError, EnrichmentResourceError, ExtractionError, classify_extraction_error
from .languages import Language


class TesseractExtractor:
    """Runs pytesseract in a worker thread and classifies its failures."""

    def __init__(self, config: str = "", timeout_s: float = 60.0):
        self.config = config
        self.timeout_s = timeout_s

    def _available_languages(self) -> set:
        try:
            return set(pytesseract.get_languages(config=self.config))
        except pytesseract.TesseractError:
            return set()

    def _extract_sync(self, image: Image.Image, language: Language) -> str:
        available = self._available_languages()
        if available and language.value not in available:
            raise EnrichmentLanguageError(f"Failed loading language '{language.value}'")
        try:
            return pytesseract.image_to_string(
                image,
                lang=language.value,
                config=self.config,
                timeout=self.timeout_s,
            )
        except MemoryError as e:
            raise EnrichmentResourceError("tesseract ran out of memory") from e
        except RuntimeError as e:
            # pytesseract signals its timeout with a bare RuntimeError
            raise ExtractionError(f"tesseract timed out after {self.timeout_s}s") from e
        except pytesseract.TesseractError as e:
            raise classify_extraction_error(e) from e

    async def extract(self, image: Image.Image, language: Language) -> str:
        logger.debug(f"Extracting text ({image.width}x{image.height}, {language.value})")
        return await asyncio.to_thread(self._extract_sync, image, language)
