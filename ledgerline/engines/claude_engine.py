"""
AI-assisted statement extraction using Claude.

Sends the raw statement text with a fixed system prompt and expects a JSON
array of transactions back. Any transport or parse failure surfaces as
CapabilityError so the extractor can fall back to the rule-based parser.
"""

import json
import time
from typing import Any, Optional

import structlog

from ledgerline.config import settings
from ledgerline.engines.base import AiCapability, CapabilityError
from ledgerline.observability.metrics import capability_latency_seconds

logger = structlog.get_logger(__name__)

_SYSTEM_PROMPT = (
    "You are extracting transactions from Kenyan M-PESA statement text.\n"
    "For each transaction message, return an object with:\n"
    "- reference: the 10 character receipt code, or null\n"
    "- date: day-first date as written (dd/mm/yy or dd/mm/yyyy)\n"
    "- time: time as written, or null\n"
    "- type: one of received, sent, paybill, buy_goods, withdrawal, "
    "deposit, airtime, fuliza\n"
    "- amount: the transaction amount as a plain number string, no currency\n"
    "- counterparty: the other party's name, or null\n"
    "- counterparty_phone: phone number as written, or null\n"
    "- account_number: paybill account or till number, or null\n"
    "- transaction_cost: fee as a number string, or null\n"
    "- balance_after: new balance as a number string, or null\n"
    "- raw_text: the exact source message\n"
    "- confidence: your confidence 0-1\n\n"
    "Respond as a JSON array only. No explanation. Skip lines that are not transactions."
)


def _strip_fences(text: str) -> str:
    """Strip markdown fences if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        start = 1 if lines[0].startswith("```") else 0
        end = -1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[start:end]).strip()
    return text


def parse_reply(text: str) -> list[dict[str, Any]]:
    """Decode the model reply into a list of candidate dicts."""
    try:
        decoded = json.loads(_strip_fences(text))
    except json.JSONDecodeError as e:
        raise CapabilityError("claude", "BAD_JSON", f"reply is not JSON: {e}") from e

    if not isinstance(decoded, list):
        raise CapabilityError("claude", "BAD_SHAPE", f"expected list, got {type(decoded).__name__}")
    return [item for item in decoded if isinstance(item, dict)]


class ClaudeStatementEngine(AiCapability):
    """Anthropic Messages API adapter."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.AI_MODEL
        self._client = None

    @property
    def engine_name(self) -> str:
        return "claude"

    @property
    def engine_version(self) -> str:
        return self.model

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise CapabilityError(self.engine_name, "NO_API_KEY", "ANTHROPIC_API_KEY is not set")
            import anthropic

            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def extract(self, text: str) -> list[dict[str, Any]]:
        client = self._get_client()
        started = time.monotonic()
        try:
            message = await client.messages.create(
                model=self.model,
                max_tokens=settings.AI_MAX_TOKENS,
                system=_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": text}],
            )
        except Exception as e:
            logger.warning("claude_request_failed", error=str(e)[:200])
            raise CapabilityError(self.engine_name, "REQUEST_FAILED", str(e)) from e
        finally:
            capability_latency_seconds.labels(capability=self.capability).observe(
                time.monotonic() - started
            )

        reply = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
        candidates = parse_reply(reply)
        logger.info("claude_extracted", candidates=len(candidates), model=self.model)
        return candidates

    async def health_check(self) -> bool:
        return bool(self.api_key)
