from datetime import datetime

import pytest

from conftest import make_candidate, make_receipt
from receipt_recon.batch_matcher import (
    NO_CANDIDATE_REASON,
    STATUS_COMPLETED,
    STATUS_FAILED,
    AutoMatcher,
    AutoMatchRequest,
)
from receipt_recon.config_loader import MatchingConfig
from receipt_recon.exceptions import ExternalGatewayFailure
from receipt_recon.match_service import MatchService
from receipt_recon.models import ApprovalStatus, MatchStatus
from receipt_recon.outbox import LedgerOutbox

START = datetime(2024, 1, 1)
END = datetime(2024, 1, 31)


@pytest.fixture
def matcher(store, gateway):
    store.save_receipt(make_receipt(receipt_id="r1", amount="30000", card_id="C1"))
    store.save_receipt(make_receipt(receipt_id="r2", amount="50000", merchant="대한상사",
                                    at=datetime(2024, 1, 14, 9, 0), card_id="C2"))
    gateway.get_open_ledgers.return_value = [make_candidate(ledger_id="L1", amount="30000")]
    outbox = LedgerOutbox(store, gateway)
    service = MatchService(store, gateway, outbox)
    return AutoMatcher(store, gateway, service, outbox, MatchingConfig(max_workers=2))


def _comparable(result):
    return (
        [(m.receipt_id, m.ledger_id, m.confidence_score, m.match_reasons) for m in result.match_results],
        [(u.receipt_id, u.failure_reasons) for u in result.unmatched_receipts],
        result.errors,
    )


def test_dry_run_is_repeatable_and_writes_nothing(matcher, store, gateway):
    request = AutoMatchRequest(start_date=START, end_date=END, dry_run=True)
    first = matcher.auto_match(request)
    second = matcher.auto_match(request)

    assert first.status == STATUS_COMPLETED
    assert _comparable(first) == _comparable(second)
    assert first.match_results[0].match_id is None
    assert store.find_matches_by_receipt("r1") == []
    gateway.send_matching_info.assert_not_called()


def test_auto_match_creates_match_and_reports_unmatched(matcher, store, gateway):
    result = matcher.auto_match(AutoMatchRequest(start_date=START, end_date=END))

    assert result.status == STATUS_COMPLETED
    assert result.statistics.eligible_receipts == 2
    assert result.statistics.successful_matches == 1
    assert result.statistics.failed_matches == 1

    matched = result.match_results[0]
    assert matched.receipt_id == "r1"
    assert matched.matching_rule == "EXACT_MATCH"
    assert matched.requires_approval is True
    stored = store.get_match(matched.match_id)
    assert stored.match_status == MatchStatus.MATCHED
    assert stored.approval_status == ApprovalStatus.PENDING

    unmatched = result.unmatched_receipts[0]
    assert unmatched.receipt_id == "r2"
    assert unmatched.failure_reasons == ["신뢰도 부족: 57.00", "금액 불일치"]

    # 매칭 결과는 배치 종료 시 ERP로 전송
    gateway.send_matching_info.assert_called_once()

    # 이미 매칭된 영수증은 다음 배치 대상에서 제외
    rerun = matcher.auto_match(AutoMatchRequest(start_date=START, end_date=END))
    assert rerun.statistics.eligible_receipts == 1


def test_no_candidates_reason(matcher, gateway):
    gateway.get_open_ledgers.return_value = []
    result = matcher.auto_match(AutoMatchRequest(start_date=START, end_date=END, dry_run=True))
    assert all(u.failure_reasons == [NO_CANDIDATE_REASON] for u in result.unmatched_receipts)
    assert len(result.unmatched_receipts) == 2


def test_candidate_pool_failure_fails_batch(matcher, gateway):
    gateway.get_open_ledgers.side_effect = ExternalGatewayFailure("get_open_ledgers", "connection refused")
    result = matcher.auto_match(AutoMatchRequest(start_date=START, end_date=END))
    assert result.status == STATUS_FAILED
    assert "connection refused" in result.errors[0]
    assert result.match_results == []


def test_single_receipt_failure_does_not_abort_batch(matcher):
    def boom(receipt, best, require_approval=True):
        raise RuntimeError("boom")

    matcher.service.create_auto_match = boom
    result = matcher.auto_match(AutoMatchRequest(start_date=START, end_date=END))

    assert result.status == STATUS_COMPLETED
    assert result.errors == ["Receipt r1: boom"]
    assert [u.receipt_id for u in result.unmatched_receipts] == ["r2"]
    assert result.statistics.successful_matches == 0


def test_explicit_receipt_ids_and_card_filter(matcher):
    result = matcher.auto_match(AutoMatchRequest(receipt_ids=["r2", "r1"], card_ids=["C1"], dry_run=True))
    assert [m.receipt_id for m in result.match_results] == ["r1"]
    assert result.unmatched_receipts == []


def test_min_score_override(matcher):
    result = matcher.auto_match(
        AutoMatchRequest(start_date=START, end_date=END, min_confidence_score=50, dry_run=True)
    )
    assert {m.receipt_id for m in result.match_results} == {"r1", "r2"}
    assert result.statistics.average_confidence_score == pytest.approx((100 + 57) / 2)
