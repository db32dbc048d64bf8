from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from receipt_recon.interfaces import LedgerGateway
from receipt_recon.models import LedgerCandidate, Receipt
from receipt_recon.state_store import SqliteReceiptStore


def make_receipt(receipt_id="r1", amount="30000", at=datetime(2024, 1, 15, 14, 30),
                 merchant="신한택시", **kwargs) -> Receipt:
    kwargs.setdefault("is_verified", True)
    return Receipt(
        receipt_id=receipt_id,
        total_amount=Decimal(amount),
        transaction_at=at,
        merchant_name=merchant,
        **kwargs,
    )


def make_candidate(ledger_id="L1", amount="30000", on=date(2024, 1, 15), account_code="51110",
                   description="신한택시 교통비", **kwargs) -> LedgerCandidate:
    kwargs.setdefault("account_name", "여비교통비")
    return LedgerCandidate(
        ledger_id=ledger_id,
        account_code=account_code,
        amount=Decimal(amount) if amount is not None else None,
        accounting_date=on,
        description=description,
        **kwargs,
    )


@pytest.fixture
def store(tmp_path):
    return SqliteReceiptStore(str(tmp_path / "recon.db"))


@pytest.fixture
def gateway():
    gw = MagicMock(spec=LedgerGateway)
    gw.get_ledger_info.side_effect = lambda ledger_id: make_candidate(ledger_id=ledger_id)
    gw.get_open_ledgers.return_value = []
    return gw
