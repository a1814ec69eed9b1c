"""
Abstract base classes for optional external capabilities.
The core pipeline works without any of them.
"""

from abc import ABC, abstractmethod
from typing import Any


class CapabilityEngine(ABC):
    """
    Common surface for AI and OCR engines.

    Every engine must:
    1. Report its name and version
    2. Raise CapabilityError on failure (never return partial/corrupt data)
    3. Answer health_check() without side effects
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier: 'claude', 'tesseract', 'stub'"""
        ...

    @property
    @abstractmethod
    def engine_version(self) -> str:
        """Model or library version string."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify engine is available and responding."""
        ...


class AiCapability(CapabilityEngine):
    """AI-assisted statement extraction."""

    capability = "ai"

    @abstractmethod
    async def extract(self, text: str) -> list[dict[str, Any]]:
        """
        Return candidate transactions found in the text.

        Each candidate is a dict with any of: reference, date, time, type, amount,
        counterparty, counterparty_phone, account_number, transaction_cost,
        balance_after, raw_text, confidence.
        Must raise CapabilityError when the service is unavailable.
        """
        ...


class OcrCapability(CapabilityEngine):
    """Image to text for statement screenshots."""

    capability = "ocr"

    @abstractmethod
    async def image_to_text(self, image: bytes) -> str:
        """Must raise CapabilityError when OCR fails."""
        ...


class CapabilityError(Exception):
    """Raised when an optional capability fails."""

    def __init__(self, engine_name: str, error_code: str, message: str):
        self.engine_name = engine_name
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{engine_name}] {error_code}: {message}")
