"""
배치 자동매칭

적격 영수증 전체를 한 번 조회한 미결 전표 후보와 대조한다.
영수증 단위 처리 결과는 Matched / Unmatched / Failed 중 하나로 수집되며,
한 영수증의 실패가 배치 전체를 중단시키지 않는다.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from receipt_recon.config_loader import MatchingConfig
from receipt_recon.interfaces import LedgerGateway
from receipt_recon.match_service import MatchService
from receipt_recon.matcher import rank_candidates
from receipt_recon.models import LedgerCandidate, MatchingStrategy, Receipt
from receipt_recon.outbox import LedgerOutbox
from receipt_recon.state_store import SqliteReceiptStore

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

NO_CANDIDATE_REASON = "매칭 가능한 전표를 찾을 수 없음"


@dataclass
class AutoMatchRequest:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    receipt_ids: List[str] = field(default_factory=list)
    card_ids: List[str] = field(default_factory=list)
    min_confidence_score: Optional[float] = None
    max_matches_per_receipt: int = 1
    dry_run: bool = False
    require_approval: bool = True
    strategy: MatchingStrategy = MatchingStrategy.CONSERVATIVE
    # 아직 채점 단계에서 사용하지 않음
    custom_rules: List[Dict] = field(default_factory=list)
    exclusions: Optional[Dict] = None


@dataclass
class MatchedOutcome:
    receipt_id: str
    receipt_number: Optional[str]
    match_id: Optional[str]
    ledger_id: str
    account_code: Optional[str]
    account_name: Optional[str]
    confidence_score: float
    matching_strategy: str
    matching_rule: str
    match_reasons: List[str]
    requires_approval: bool
    matched_at: Optional[datetime]


@dataclass
class UnmatchedOutcome:
    receipt_id: str
    receipt_number: Optional[str]
    merchant_name: str
    transaction_date: datetime
    failure_reasons: List[str]


@dataclass
class FailedOutcome:
    receipt_id: str
    error: str


Outcome = Union[MatchedOutcome, UnmatchedOutcome, FailedOutcome]


@dataclass
class MatchingStatistics:
    total_receipts: int = 0
    eligible_receipts: int = 0
    successful_matches: int = 0
    failed_matches: int = 0
    average_confidence_score: float = 0.0


@dataclass
class BatchResult:
    batch_id: str
    status: str
    executed_at: datetime
    statistics: Optional[MatchingStatistics] = None
    match_results: List[MatchedOutcome] = field(default_factory=list)
    unmatched_receipts: List[UnmatchedOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    processing_time_ms: int = 0


class AutoMatcher:
    def __init__(self, store: SqliteReceiptStore, gateway: LedgerGateway, service: MatchService,
                 outbox: Optional[LedgerOutbox] = None, cfg: Optional[MatchingConfig] = None):
        self.store = store
        self.gateway = gateway
        self.service = service
        self.outbox = outbox
        self.cfg = cfg or MatchingConfig()

    def _window(self, request: AutoMatchRequest):
        end = request.end_date or datetime.now()
        start = request.start_date or end - timedelta(days=self.cfg.lookback_days)
        return start, end

    def _eligible_receipts(self, request: AutoMatchRequest, start: datetime, end: datetime) -> List[Receipt]:
        if request.receipt_ids:
            receipts = self.store.find_by_ids(request.receipt_ids)
        else:
            receipts = self.store.find_eligible_for_auto_match(start, end, limit=self.cfg.batch_receipt_cap)
        if request.card_ids:
            receipts = [r for r in receipts if r.card_id in request.card_ids]
        return receipts

    def _match_one(self, receipt: Receipt, candidates: Sequence[LedgerCandidate],
                   request: AutoMatchRequest, min_score: float) -> Outcome:
        try:
            ranked = rank_candidates(receipt, candidates, self.cfg)
            best = ranked[0] if ranked else None

            if best is None or best.confidence_score < min_score:
                if best is None:
                    reasons = [NO_CANDIDATE_REASON]
                else:
                    reasons = [f"신뢰도 부족: {best.confidence_score:.2f}"] + best.mismatch_reasons
                return UnmatchedOutcome(
                    receipt_id=receipt.receipt_id,
                    receipt_number=receipt.receipt_number,
                    merchant_name=receipt.merchant_name,
                    transaction_date=receipt.transaction_at,
                    failure_reasons=reasons,
                )

            match_id = None
            matched_at = None
            if not request.dry_run:
                match = self.service.create_auto_match(receipt, best, request.require_approval)
                match_id, matched_at = match.match_id, match.matched_at

            return MatchedOutcome(
                receipt_id=receipt.receipt_id,
                receipt_number=receipt.receipt_number,
                match_id=match_id,
                ledger_id=best.ledger_id,
                account_code=best.account_code,
                account_name=best.account_name,
                confidence_score=best.confidence_score,
                matching_strategy=request.strategy.value,
                matching_rule=best.matching_rule,
                match_reasons=list(best.match_reasons),
                requires_approval=request.require_approval,
                matched_at=matched_at,
            )
        except Exception as e:
            logger.exception("Error matching receipt %s", receipt.receipt_id)
            return FailedOutcome(receipt_id=receipt.receipt_id, error=f"Receipt {receipt.receipt_id}: {e}")

    def auto_match(self, request: AutoMatchRequest) -> BatchResult:
        logger.info("Starting auto-match process (dry_run=%s, strategy=%s)", request.dry_run, request.strategy.value)
        started = time.monotonic()
        result = BatchResult(batch_id=str(uuid.uuid4()), status=STATUS_COMPLETED, executed_at=datetime.now())
        min_score = (
            request.min_confidence_score
            if request.min_confidence_score is not None
            else self.cfg.min_confidence_score
        )
        if request.custom_rules or request.exclusions:
            logger.debug("custom_rules/exclusions accepted but not applied to candidate scoring")

        try:
            start, end = self._window(request)
            receipts = self._eligible_receipts(request, start, end)
            logger.info("Found %d receipts for auto-matching", len(receipts))

            # 후보 전표는 배치 전체가 공유 (읽기 전용)
            candidates = tuple(self.gateway.get_open_ledgers(start, end))

            with ThreadPoolExecutor(max_workers=max(1, self.cfg.max_workers)) as pool:
                outcomes = list(pool.map(lambda r: self._match_one(r, candidates, request, min_score), receipts))
        except Exception as e:
            logger.exception("Auto-match process failed")
            result.status = STATUS_FAILED
            result.errors.append(str(e))
            result.processing_time_ms = int((time.monotonic() - started) * 1000)
            return result

        stats = MatchingStatistics(total_receipts=len(receipts), eligible_receipts=len(receipts))
        for outcome in outcomes:
            if isinstance(outcome, MatchedOutcome):
                result.match_results.append(outcome)
                stats.successful_matches += 1
            elif isinstance(outcome, UnmatchedOutcome):
                result.unmatched_receipts.append(outcome)
                stats.failed_matches += 1
            else:
                result.errors.append(outcome.error)

        if result.match_results:
            stats.average_confidence_score = (
                sum(m.confidence_score for m in result.match_results) / len(result.match_results)
            )
        result.statistics = stats

        if not request.dry_run and self.outbox is not None:
            self.outbox.dispatch()

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info("Auto-match completed: %d successful, %d failed, %d errors",
                    stats.successful_matches, stats.failed_matches, len(result.errors))
        return result
