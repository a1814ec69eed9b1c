"""
Shared test fixtures.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from ledgerline.models.enums import TxDirection
from ledgerline.quota.manager import QuotaManager
from ledgerline.schemas.transactions import TransactionDraft
from ledgerline.storage.memory import InMemoryStorage

TENANT = "tenant-a"

RECEIVED_MSG = (
    "QAB1CD2EF3 Confirmed.You have received Ksh500.00 from JOHN DOE 0712345678 "
    "on 15/1/25 at 3:04 PM New M-PESA balance is Ksh1,500.00."
)
SENT_MSG = (
    "QAB1CD2EF4 Confirmed. Ksh1,200.00 sent to JANE WANJIKU 0722000111 on 16/1/25 "
    "at 9:15 AM. New M-PESA balance is Ksh300.00. Transaction cost, Ksh13.00."
)
PAYBILL_MSG = (
    "QAB1CD2EF5 Confirmed. Ksh2,500.00 sent to KPLC PREPAID for account 37194212345 "
    "on 17/1/25 at 10:00 AM New M-PESA balance is Ksh800.00."
)
BUY_GOODS_MSG = (
    "QAB1CD2EF6 Confirmed. Ksh350.00 paid to NAIVAS SUPERMARKET. on 18/1/25 at 6:45 PM."
    "New M-PESA balance is Ksh450.00."
)
AIRTIME_MSG = (
    "QAB1CD2EF8 Confirmed. You bought Ksh100.00 of airtime on 20/1/25 at 8:00 AM. "
    "New M-PESA balance is Ksh100.00."
)
FULIZA_MSG = "Fuliza M-PESA amount is Ksh 300.00. Access fee charged Ksh 3.00 on 12/2/25"
NOISE_MSG = "Hello, your M-PESA PIN was changed"


@pytest.fixture
def tenant_id():
    return TENANT


@pytest.fixture
def messages():
    """Sample confirmation messages keyed by shape."""
    return {
        "received": RECEIVED_MSG,
        "sent": SENT_MSG,
        "paybill": PAYBILL_MSG,
        "buy_goods": BUY_GOODS_MSG,
        "airtime": AIRTIME_MSG,
        "fuliza": FULIZA_MSG,
        "noise": NOISE_MSG,
    }


@pytest.fixture
def statement_text():
    """Four well-formed confirmations and one line that is not a transaction."""
    return "\n".join([RECEIVED_MSG, SENT_MSG, PAYBILL_MSG, BUY_GOODS_MSG, NOISE_MSG])


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def unlimited_quota():
    return QuotaManager(limits={})


@pytest.fixture
def make_draft():
    """Factory for normalized-looking drafts with sensible defaults."""

    def _make(
        amount="100.00",
        direction=TxDirection.SENT,
        timestamp=datetime(2025, 1, 15, 10, 0),
        counterparty_name="JOHN DOE",
        tenant_id=TENANT,
        **fields,
    ) -> TransactionDraft:
        return TransactionDraft(
            tenant_id=tenant_id,
            amount=Decimal(amount) if amount is not None else None,
            direction=direction,
            timestamp=timestamp,
            counterparty_name=counterparty_name,
            raw_text=fields.pop("raw_text", f"{direction} {amount} {counterparty_name} {timestamp}"),
            confidence=fields.pop("confidence", 1.0),
            **fields,
        )

    return _make
