from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import make_receipt
from receipt_recon.exceptions import (
    InvalidMatch,
    LedgerEntryNotFound,
    MatchNotFound,
    MatchStateError,
    ReceiptNotFound,
)
from receipt_recon.match_service import MatchService, validate_match_request
from receipt_recon.models import (
    ApprovalStatus,
    Match,
    MatchRequest,
    MatchResult,
    MatchStatus,
    MatchType,
    PartialMatchItem,
)
from receipt_recon.outbox import LedgerOutbox

NOW = datetime(2024, 1, 16, 10, 0)


@pytest.fixture
def service(store, gateway):
    store.save_receipt(make_receipt(amount="30000"))
    return MatchService(store, gateway, LedgerOutbox(store, gateway), clock=lambda: NOW)


def _request(amount, ledger_id="L1", **kwargs) -> MatchRequest:
    return MatchRequest(ledger_id=ledger_id, account_code="51110", account_name="여비교통비",
                        matched_amount=Decimal(amount), **kwargs)


def test_conservation_across_sequential_matches(service):
    service.match_receipt("r1", _request("20000"), "kim")
    with pytest.raises(InvalidMatch):
        service.match_receipt("r1", _request("15000"), "kim")
    service.match_receipt("r1", _request("10000"), "kim")
    assert service.get_remaining_amount("r1") == Decimal("0")


def test_cancelled_match_frees_amount(service):
    m = service.match_receipt("r1", _request("30000"), "kim")
    service.cancel_match(m.match_id, "잘못된 전표")
    assert service.get_remaining_amount("r1") == Decimal("30000")
    assert service.get_remaining_amount("r1", exclude_match_id=m.match_id) == Decimal("30000")


def test_concurrent_matches_never_exceed_total(service):
    def attempt(i):
        try:
            service.match_receipt("r1", _request("10000", ledger_id=f"L{i}"), "kim")
            return True
        except InvalidMatch:
            return False

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(attempt, range(5)))

    assert results.count(True) == 3
    assert service.get_remaining_amount("r1") == Decimal("0")


def test_not_found_errors(service, gateway):
    with pytest.raises(ReceiptNotFound):
        service.match_receipt("nope", _request("100"), "kim")
    with pytest.raises(MatchNotFound):
        service.approve_match("nope", "boss")

    gateway.get_ledger_info.side_effect = None
    gateway.get_ledger_info.return_value = None
    with pytest.raises(LedgerEntryNotFound):
        service.match_receipt("r1", _request("100", ledger_id="ghost"), "kim")


def test_manual_match_records_audit_and_outbox(service, store):
    m = service.match_receipt("r1", _request("5000", notes="택시비"), "kim")
    stored = store.get_match(m.match_id)
    assert stored.match_status == MatchStatus.MATCHED
    assert stored.approval_status == ApprovalStatus.PENDING
    assert stored.matched_by == "kim"
    assert stored.matched_at == NOW
    assert [e["event_type"] for e in store.outbox_events(m.match_id)] == ["MATCHED"]
    assert store.get_audit_log(m.match_id)[0]["action"] == "match_created"


def test_approve_then_reject_lifecycle(service, store):
    m = service.match_receipt("r1", _request("5000"), "kim")
    approved = service.approve_match(m.match_id, "boss", "확인")
    assert approved.approval_status == ApprovalStatus.APPROVED

    with pytest.raises(MatchStateError):
        service.approve_match(m.match_id, "boss")

    rejected = service.reject_match(m.match_id, "auditor", "증빙 불일치")
    assert rejected.match_status == MatchStatus.CANCELLED
    assert rejected.approval_status == ApprovalStatus.REJECTED
    assert store.get_match(m.match_id).rejection_reason == "증빙 불일치"
    assert [e["event_type"] for e in store.outbox_events(m.match_id)] == ["MATCHED", "APPROVED", "REJECTED"]


def test_cancel_is_unconditional(service):
    m = service.match_receipt("r1", _request("5000"), "kim")
    service.approve_match(m.match_id, "boss")
    cancelled = service.cancel_match(m.match_id, "중복 처리", actor="admin")
    assert cancelled.match_status == MatchStatus.CANCELLED
    assert "Cancelled: 중복 처리" in cancelled.notes


def test_create_auto_match_without_approval(service, store):
    result = MatchResult(
        ledger_id="L7", account_code="51110", account_name="여비교통비", cost_center="CC1",
        matched_amount=Decimal("30000"), confidence_score=97.5, matching_rule="EXACT_MATCH",
        match_reasons=["금액 일치", "날짜 일치"],
    )
    m = service.create_auto_match(store.get_receipt("r1"), result, require_approval=False)
    assert m.match_type == MatchType.AUTO
    assert m.approval_status == ApprovalStatus.APPROVED
    assert m.match_criteria == "금액 일치, 날짜 일치"
    assert m.notes == "자동 매칭: EXACT_MATCH"
    assert m.matched_by == "SYSTEM"


def test_verify_receipt(service, store):
    store.save_receipt(make_receipt(receipt_id="r2", is_verified=False))
    r = service.verify_receipt("r2")
    assert r.is_verified
    assert store.get_receipt("r2").verified_at == NOW
    assert store.get_receipt("r2").verification_method == "MANUAL"


def test_validate_match_request():
    validate_match_request(_request("100"))

    with pytest.raises(InvalidMatch):
        validate_match_request(MatchRequest("L1", "51A10", "여비교통비", Decimal("100")))
    with pytest.raises(InvalidMatch):
        validate_match_request(_request("0"))
    with pytest.raises(InvalidMatch):
        validate_match_request(_request("100", is_partial_match=True))
    with pytest.raises(InvalidMatch):
        validate_match_request(_request(
            "100", is_partial_match=True,
            partial_match_items=[PartialMatchItem("택시", Decimal("60")), PartialMatchItem("팁", Decimal("30"))],
        ))
    validate_match_request(_request(
        "100", is_partial_match=True,
        partial_match_items=[PartialMatchItem("택시", Decimal("70")), PartialMatchItem("팁", Decimal("30"))],
    ))


def test_update_match_only_while_pending(service, store):
    draft = store.save_match(Match(receipt_id="r1", ledger_id="L1", matched_amount=Decimal("1000")))
    updated = service.update_match(draft.match_id, "51210", "복리후생비", "CC2", Decimal("2000"), "수정", "kim")
    assert store.get_match(draft.match_id).matched_amount == Decimal("2000")
    assert updated.version == 1

    matched = service.match_receipt("r1", _request("5000"), "kim")
    with pytest.raises(MatchStateError):
        service.update_match(matched.match_id, "51210", "복리후생비", None, Decimal("100"), None, "kim")


def test_receipt_match_helpers(service, store):
    receipt = store.get_receipt("r1")
    assert not receipt.is_matched([])
    first = service.match_receipt("r1", _request("1000"), "kim")
    second = service.match_receipt("r1", _request("2000"), "kim")
    service.cancel_match(second.match_id, "중복")

    matches = store.find_matches_by_receipt("r1")
    assert receipt.is_matched(matches)
    assert receipt.latest_match(matches).match_id == first.match_id
    assert [m.match_id for m in service.get_active_matches("r1")] == [first.match_id]
