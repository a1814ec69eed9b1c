"""
Tesseract OCR engine for statement screenshots.
Uses pytesseract to turn an image into line-ordered text.
"""

import asyncio
import io
import time

import pytesseract
import structlog
from PIL import Image, UnidentifiedImageError

from ledgerline.config import settings
from ledgerline.engines.base import CapabilityError, OcrCapability
from ledgerline.observability.metrics import capability_latency_seconds

logger = structlog.get_logger(__name__)


class TesseractOcrEngine(OcrCapability):
    """
    Tesseract OCR engine.
    Screenshots are a single column of messages, so psm 6 (uniform block) works best.
    """

    engine_name = "tesseract"
    engine_version = "5.x"

    def __init__(self, lang: str = None, psm: int = 6):
        """
        Args:
            lang: Tesseract language code
            psm: Page segmentation mode (6 = uniform block of text)
        """
        self.lang = lang or settings.TESSERACT_LANG
        self.psm = psm
        pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    def _ocr(self, image: bytes) -> str:
        try:
            img = Image.open(io.BytesIO(image))
            img = img.convert("L")
        except (UnidentifiedImageError, OSError) as e:
            raise CapabilityError(self.engine_name, "BAD_IMAGE", f"cannot open image: {e}") from e

        try:
            return pytesseract.image_to_string(img, lang=self.lang, config=f"--psm {self.psm}")
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            raise CapabilityError(self.engine_name, "OCR_FAILED", str(e)) from e

    async def image_to_text(self, image: bytes) -> str:
        """Run OCR in a thread so the event loop stays responsive."""
        started = time.monotonic()
        try:
            text = await asyncio.to_thread(self._ocr, image)
        finally:
            capability_latency_seconds.labels(capability=self.capability).observe(
                time.monotonic() - started
            )
        logger.info("ocr_complete", chars=len(text), lang=self.lang)
        return text

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(pytesseract.get_tesseract_version)
            return True
        except (pytesseract.TesseractNotFoundError, OSError):
            return False
