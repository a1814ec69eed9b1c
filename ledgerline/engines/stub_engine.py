"""
Stub capability engines for tests and local development.
Return canned output so the extraction flow can be exercised
without network access or a Tesseract install.
"""

import asyncio
from typing import Any, Optional

from ledgerline.engines.base import AiCapability, CapabilityError, OcrCapability


class StubAiEngine(AiCapability):
    """
    Fake AI adapter.

    candidates: returned verbatim from extract()
    fail: raise CapabilityError instead
    delay: seconds to sleep first (to exercise timeouts)
    """

    def __init__(
        self,
        candidates: Optional[list[dict[str, Any]]] = None,
        fail: bool = False,
        delay: float = 0.0,
    ):
        self.candidates = candidates or []
        self.fail = fail
        self.delay = delay
        self.calls = 0

    @property
    def engine_name(self) -> str:
        return "stub-ai"

    @property
    def engine_version(self) -> str:
        return "0.1.0"

    async def extract(self, text: str) -> list[dict[str, Any]]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise CapabilityError(self.engine_name, "STUB_FAILURE", "forced failure")
        return [dict(c) for c in self.candidates]

    async def health_check(self) -> bool:
        return not self.fail


class StubOcrEngine(OcrCapability):
    """Fake OCR adapter that returns a fixed transcript."""

    def __init__(self, text: str = "", fail: bool = False):
        self.text = text
        self.fail = fail

    @property
    def engine_name(self) -> str:
        return "stub-ocr"

    @property
    def engine_version(self) -> str:
        return "0.1.0"

    async def image_to_text(self, image: bytes) -> str:
        if self.fail:
            raise CapabilityError(self.engine_name, "STUB_FAILURE", "forced failure")
        return self.text

    async def health_check(self) -> bool:
        return not self.fail
