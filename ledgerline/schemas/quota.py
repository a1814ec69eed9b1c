"""
Quota window schemas.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ledgerline.models.enums import QuotaGranularity


class QuotaWindow(BaseModel):
    tenant_id: str
    capability: str
    granularity: QuotaGranularity
    window_start: datetime
    window_end: datetime
    limit: int
    used: int = 0

    def is_active(self, now: datetime) -> bool:
        return self.window_start <= now < self.window_end

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


class QuotaDecision(BaseModel):
    """Result of check_and_increment across every window of one capability."""
    allowed: bool
    tenant_id: str
    capability: str
    windows: list[QuotaWindow] = []
    # Set on denial: the window that blocked the call
    exhausted_granularity: Optional[QuotaGranularity] = None
    reset_at: Optional[datetime] = None
