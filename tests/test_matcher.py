from datetime import date, datetime
from decimal import Decimal

import pytest

from conftest import make_candidate, make_receipt
from receipt_recon.config_loader import MatchingConfig
from receipt_recon.matcher import (
    amount_score,
    date_score,
    description_score,
    find_best_match,
    merchant_account_score,
    rank_candidates,
    score_match,
)
from receipt_recon.taxonomy import default_taxonomy


CFG = MatchingConfig()


def test_amount_score_exact_and_tolerance_edges():
    assert amount_score(Decimal("10000"), Decimal("10000")) == 1.0
    # 허용 오차 경계 = 0점, 절반 = 0.5점
    assert amount_score(Decimal("10000"), Decimal("10100")) == pytest.approx(0.0)
    assert amount_score(Decimal("10000"), Decimal("10050")) == pytest.approx(0.5)


def test_amount_score_beyond_tolerance_decays_by_ratio():
    assert amount_score(Decimal("50000"), Decimal("60000")) == pytest.approx(0.8)
    assert amount_score(Decimal("50000"), Decimal("150000")) == 0.0


def test_amount_score_missing_amount():
    assert amount_score(None, Decimal("100")) == 0.0
    assert amount_score(Decimal("100"), None) == 0.0


def test_date_score_bands():
    tx = datetime(2024, 1, 15, 23, 59)
    assert date_score(tx, date(2024, 1, 15)) == 1.0
    assert date_score(tx, date(2024, 1, 18)) == pytest.approx(0.7)
    assert date_score(tx, date(2024, 1, 20)) == pytest.approx(0.4)
    assert date_score(tx, date(2024, 1, 22)) == 0.0
    assert date_score(tx, None) == 0.0


def test_merchant_account_score_uses_taxonomy():
    tax = default_taxonomy()
    assert merchant_account_score("신한택시", None, "51110", tax) == 1.0
    # 같은 계정 그룹
    assert merchant_account_score("신한택시", None, "51199", tax) == pytest.approx(0.7)
    assert merchant_account_score("신한택시", None, "52000", tax) == pytest.approx(0.3)
    assert merchant_account_score("알수없는상호", None, "51110", tax) == pytest.approx(0.3)
    assert merchant_account_score("신한택시", None, None, tax) == 0.0


def test_description_score():
    assert description_score("신한택시", "신한택시 교통비") == 1.0
    assert description_score("Blue Bottle Coffee", "coffee beans blue") == pytest.approx(0.5)
    assert description_score("신한택시", "") == 0.0
    assert description_score("!!!", "교통비") == 0.0


def test_exact_taxi_match_scores_high():
    receipt = make_receipt(amount="50000")
    result = score_match(receipt, make_candidate(amount="50000"), CFG)
    assert result.confidence_score >= 95
    assert result.matching_rule == "EXACT_MATCH"
    assert "금액 일치" in result.match_reasons
    assert "가맹점-계정과목 매칭" in result.match_reasons
    assert result.mismatch_reasons == []


def test_amount_off_by_twenty_percent_falls_below_threshold():
    receipt = make_receipt(amount="50000", merchant="대한상사")
    candidate = make_candidate(amount="60000", description="기타 비용")
    result = score_match(receipt, candidate, CFG)
    assert result.sub_scores["amount"] == pytest.approx(0.8)
    assert "금액 유사" in result.match_reasons
    assert result.confidence_score < CFG.min_confidence_score


def test_large_amount_gap_reports_mismatch():
    result = score_match(make_receipt(amount="50000"), make_candidate(amount="150000"), CFG)
    assert result.sub_scores["amount"] == 0.0
    assert "금액 불일치" in result.mismatch_reasons


def test_rank_candidates_descending_and_stable():
    receipt = make_receipt()
    c1 = make_candidate(ledger_id="A")
    c2 = make_candidate(ledger_id="B")
    c3 = make_candidate(ledger_id="C", amount="90000")
    ranked = rank_candidates(receipt, [c3, c1, c2], CFG)
    assert [r.ledger_id for r in ranked] == ["A", "B", "C"]


def test_find_best_match_respects_min_score():
    receipt = make_receipt()
    candidates = [make_candidate(ledger_id="far", amount="90000", on=date(2024, 3, 1))]
    assert find_best_match(receipt, candidates, 80, CFG) is None

    candidates.append(make_candidate(ledger_id="near"))
    best = find_best_match(receipt, candidates, 80, CFG)
    assert best.ledger_id == "near"
    assert best.confidence_score >= 80


def test_find_best_match_empty():
    assert find_best_match(make_receipt(), [], 0) is None
