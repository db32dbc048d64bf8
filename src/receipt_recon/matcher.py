import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Set

from receipt_recon.config_loader import MatchingConfig
from receipt_recon.models import LedgerCandidate, MatchResult, Receipt
from receipt_recon.taxonomy import MerchantTaxonomy

logger = logging.getLogger(__name__)

WEIGHTS = {"amount": 40, "date": 30, "merchant": 20, "description": 10}

# 분류되지 않은 가맹점도 0점 처리하지 않는다
UNCLASSIFIED_MERCHANT_SCORE = 0.3
GROUP_MATCH_SCORE = 0.7

_DEFAULT_CONFIG = MatchingConfig()


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def normalize_text(text: str) -> str:
    s = text.lower()
    s = re.sub(r"[^가-힣a-z0-9\s]", "", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def _tokenize(text: str) -> Set[str]:
    return {t for t in text.split() if len(t) > 1}


def amount_score(tx_amount: Optional[Decimal], ledger_amount: Optional[Decimal],
                 tolerance_ratio: Decimal = Decimal("0.01")) -> float:
    if tx_amount is None or ledger_amount is None:
        return 0.0
    if tx_amount == ledger_amount:
        return 1.0
    base = abs(tx_amount)
    if base == 0:
        return 0.0

    diff = abs(tx_amount - ledger_amount)
    diff_ratio = diff / base
    if diff <= base * tolerance_ratio:
        # 허용 오차 안에서는 경계까지 선형 감소
        return float(1 - diff_ratio / tolerance_ratio)
    return max(0.0, float(1 - diff_ratio))


def date_score(tx_date, ledger_date, tolerance_days: int = 3) -> float:
    d1, d2 = _as_date(tx_date), _as_date(ledger_date)
    if d1 is None or d2 is None:
        return 0.0

    days = abs((d1 - d2).days)
    if days == 0:
        return 1.0
    if days <= tolerance_days:
        return 1.0 - days * 0.1
    if days <= tolerance_days * 2:
        return 0.5 - (days - tolerance_days) * 0.05
    return 0.0


def merchant_account_score(merchant_name: Optional[str], merchant_category: Optional[str],
                           account_code: Optional[str], taxonomy: MerchantTaxonomy) -> float:
    if not merchant_name or not account_code:
        return 0.0

    key = taxonomy.classify(merchant_name, merchant_category)
    if key is None:
        return UNCLASSIFIED_MERCHANT_SCORE

    expected = taxonomy.expected_accounts(key)
    if account_code in expected:
        return 1.0

    group = account_code[:3]
    if any(code.startswith(group) for code in expected):
        return GROUP_MATCH_SCORE
    return UNCLASSIFIED_MERCHANT_SCORE


def description_score(merchant_name: Optional[str], description: Optional[str]) -> float:
    if not merchant_name or not description:
        return 0.0

    m = normalize_text(merchant_name)
    d = normalize_text(description)
    if not m or not d:
        return 0.0
    if m in d or d in m:
        return 1.0

    mt, dt = _tokenize(m), _tokenize(d)
    shared = mt & dt
    if not shared:
        return 0.0
    return len(shared) / len(mt | dt)


def determine_matching_rule(amount: float, date_: float, merchant: float) -> str:
    if amount >= 0.95 and date_ >= 0.9:
        return "EXACT_MATCH"
    if amount >= 0.8 and date_ >= 0.7 and merchant >= 0.7:
        return "HIGH_CONFIDENCE"
    if amount >= 0.7 and date_ >= 0.5:
        return "MEDIUM_CONFIDENCE"
    return "LOW_CONFIDENCE"


def score_match(receipt: Receipt, candidate: LedgerCandidate,
                cfg: Optional[MatchingConfig] = None) -> MatchResult:
    cfg = cfg or _DEFAULT_CONFIG
    reasons: List[str] = []
    mismatches: List[str] = []

    # amount
    a = amount_score(receipt.total_amount, candidate.amount, cfg.amount_tolerance_ratio)
    if a >= 0.95:
        reasons.append("금액 일치")
    elif a >= 0.8:
        reasons.append("금액 유사")
    else:
        mismatches.append("금액 불일치")

    # date
    d = date_score(receipt.transaction_at, candidate.accounting_date, cfg.date_tolerance_days)
    if d >= 0.9:
        reasons.append("날짜 일치")
    elif d >= 0.7:
        reasons.append("날짜 근접")
    else:
        mismatches.append("날짜 차이 큼")

    # merchant / account
    m = merchant_account_score(receipt.merchant_name, receipt.merchant_category,
                               candidate.account_code, cfg.taxonomy)
    if m >= 0.8:
        reasons.append("가맹점-계정과목 매칭")
    elif m >= 0.5:
        reasons.append("가맹점-계정과목 부분 매칭")

    # description
    s = description_score(receipt.merchant_name, candidate.description)
    if s >= 0.7:
        reasons.append("설명 일치")

    total = (
        a * WEIGHTS["amount"]
        + d * WEIGHTS["date"]
        + m * WEIGHTS["merchant"]
        + s * WEIGHTS["description"]
    )
    return MatchResult(
        ledger_id=candidate.ledger_id,
        account_code=candidate.account_code,
        account_name=candidate.account_name,
        cost_center=candidate.cost_center,
        matched_amount=candidate.amount,
        confidence_score=total,
        matching_rule=determine_matching_rule(a, d, m),
        match_reasons=reasons,
        mismatch_reasons=mismatches,
        sub_scores={"amount": a, "date": d, "merchant": m, "description": s},
    )


def rank_candidates(receipt: Receipt, candidates: Iterable[LedgerCandidate],
                    cfg: Optional[MatchingConfig] = None) -> List[MatchResult]:
    """전체 후보를 채점해 점수 내림차순으로 반환 (동점은 입력 순서)"""
    scored = [score_match(receipt, c, cfg) for c in candidates]
    scored.sort(key=lambda r: r.confidence_score, reverse=True)
    return scored


def find_best_match(receipt: Receipt, candidates: Iterable[LedgerCandidate], min_score: float,
                    cfg: Optional[MatchingConfig] = None) -> Optional[MatchResult]:
    if receipt is None or not candidates:
        return None

    ranked = [r for r in rank_candidates(receipt, candidates, cfg) if r.confidence_score >= min_score]
    if not ranked:
        logger.debug("No matches found for receipt %s with min score %s", receipt.receipt_id, min_score)
        return None

    best = ranked[0]
    logger.info("Best match found for receipt %s: ledger %s score %.2f",
                receipt.receipt_id, best.ledger_id, best.confidence_score)
    return best
