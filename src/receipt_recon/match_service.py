import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from receipt_recon import lifecycle
from receipt_recon.exceptions import (
    InvalidMatch,
    LedgerEntryNotFound,
    MatchNotFound,
    ReceiptNotFound,
)
from receipt_recon.execution_lock import ReceiptLocks
from receipt_recon.interfaces import LedgerGateway
from receipt_recon.models import ApprovalStatus, Match, MatchRequest, MatchResult, MatchType, Receipt
from receipt_recon.outbox import (
    EVENT_APPROVED,
    EVENT_CANCELLED,
    EVENT_MATCHED,
    EVENT_REJECTED,
    LedgerOutbox,
)
from receipt_recon.state_store import SqliteReceiptStore

logger = logging.getLogger(__name__)

SYSTEM_USER = "SYSTEM"

_ACCOUNT_CODE_RE = re.compile(r"^[0-9]{4,8}$")


def validate_match_request(request: MatchRequest):
    """수동 매칭 요청 검증"""
    if not request.ledger_id:
        raise InvalidMatch("ERP 전표번호는 필수입니다")
    if not request.account_code or not _ACCOUNT_CODE_RE.match(request.account_code):
        raise InvalidMatch(f"계정과목 코드 형식이 올바르지 않습니다: {request.account_code}")
    if not request.account_name:
        raise InvalidMatch("계정과목명은 필수입니다")
    if request.matched_amount is None or request.matched_amount <= 0:
        raise InvalidMatch("매칭 금액은 0보다 커야 합니다")
    if request.notes and len(request.notes) > 1000:
        raise InvalidMatch("비고는 1000자를 초과할 수 없습니다")

    if request.is_partial_match:
        if not request.partial_match_items:
            raise InvalidMatch("부분 매칭 항목이 필요합니다")
        partial_total = sum((item.amount for item in request.partial_match_items), Decimal("0"))
        if partial_total != request.matched_amount:
            raise InvalidMatch("부분 매칭 금액의 합이 전체 매칭 금액과 일치하지 않습니다")


class MatchService:
    """매칭 생성/수정/승인/반려/취소

    보존 불변식 검사와 저장은 영수증 잠금 + 저장소 트랜잭션 안에서 함께 수행한다.
    ERP 전송은 outbox에 기록만 하고 즉시 호출하지 않는다.
    """

    def __init__(self, store: SqliteReceiptStore, gateway: LedgerGateway, outbox: LedgerOutbox,
                 locks: Optional[ReceiptLocks] = None, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.gateway = gateway
        self.outbox = outbox
        self.locks = locks or ReceiptLocks()
        self.clock = clock

    def _get_receipt(self, receipt_id: str) -> Receipt:
        receipt = self.store.get_receipt(receipt_id)
        if receipt is None:
            raise ReceiptNotFound(receipt_id)
        return receipt

    def get_match(self, match_id: str) -> Match:
        match = self.store.get_match(match_id)
        if match is None:
            raise MatchNotFound(match_id)
        return match

    def get_active_matches(self, receipt_id: str) -> List[Match]:
        self._get_receipt(receipt_id)
        return self.store.find_active_matches(receipt_id)

    def get_remaining_amount(self, receipt_id: str, exclude_match_id: Optional[str] = None) -> Decimal:
        receipt = self._get_receipt(receipt_id)
        return lifecycle.remaining_amount(
            receipt.total_amount, self.store.find_matches_by_receipt(receipt_id), exclude_match_id
        )

    def verify_receipt(self, receipt_id: str, method: str = "MANUAL") -> Receipt:
        receipt = self._get_receipt(receipt_id)
        receipt.is_verified = True
        receipt.verified_at = self.clock()
        receipt.verification_method = method
        self.store.save_receipt(receipt)
        logger.info("Receipt %s verified (%s)", receipt_id, method)
        return receipt

    def _create(self, receipt: Receipt, match: Match) -> Match:
        with self.locks.hold(receipt.receipt_id):
            lifecycle.mark_matched(match, self.clock())
            self.store.add_match_within_total(match, receipt.total_amount)

        self.store.write_audit(
            "INFO", match.matched_by or SYSTEM_USER, "match_created",
            [match.match_id, receipt.receipt_id, match.ledger_id], match.confidence_score, "matched",
        )
        self.outbox.record(EVENT_MATCHED, match.match_id)
        return match

    def match_receipt(self, receipt_id: str, request: MatchRequest, actor: str) -> Match:
        logger.info("Starting manual match for receipt %s", receipt_id)
        receipt = self._get_receipt(receipt_id)
        validate_match_request(request)

        ledger = self.gateway.get_ledger_info(request.ledger_id)
        if ledger is None:
            raise LedgerEntryNotFound(request.ledger_id)

        match = Match(
            receipt_id=receipt.receipt_id,
            ledger_id=request.ledger_id,
            account_code=request.account_code,
            account_name=request.account_name,
            cost_center=request.cost_center,
            project_code=request.project_code,
            matched_amount=request.matched_amount,
            match_type=request.match_type,
            matched_by=actor,
            notes=request.notes,
        )
        self._create(receipt, match)
        logger.info("Match %s created for receipt %s", match.match_id, receipt_id)
        return match

    def create_auto_match(self, receipt: Receipt, result: MatchResult, require_approval: bool = True) -> Match:
        match = Match(
            receipt_id=receipt.receipt_id,
            ledger_id=result.ledger_id,
            account_code=result.account_code,
            account_name=result.account_name,
            cost_center=result.cost_center,
            matched_amount=result.matched_amount,
            match_type=MatchType.AUTO,
            approval_status=ApprovalStatus.PENDING if require_approval else ApprovalStatus.APPROVED,
            confidence_score=result.confidence_score,
            match_criteria=", ".join(result.match_reasons),
            notes=f"자동 매칭: {result.matching_rule}",
            matched_by=SYSTEM_USER,
        )
        return self._create(receipt, match)

    def update_match(self, match_id: str, account_code: str, account_name: str, cost_center: Optional[str],
                     amount: Decimal, notes: Optional[str], actor: str) -> Match:
        match = self.get_match(match_id)
        expected = match.version
        lifecycle.update(match, account_code, account_name, cost_center, amount, notes, self.clock())
        self.store.save_match(match, expected_version=expected)
        self.store.write_audit("INFO", actor, "match_updated", [match_id], match.confidence_score, "updated")
        return match

    def approve_match(self, match_id: str, approver: str, notes: Optional[str] = None) -> Match:
        match = self.get_match(match_id)
        expected = match.version
        lifecycle.approve(match, approver, notes, self.clock())
        self.store.save_match(match, expected_version=expected)
        self.store.write_audit("INFO", approver, "match_approved", [match_id], match.confidence_score, "approved")
        self.outbox.record(EVENT_APPROVED, match_id)
        logger.info("Match %s approved by %s", match_id, approver)
        return match

    def reject_match(self, match_id: str, rejector: str, reason: Optional[str]) -> Match:
        match = self.get_match(match_id)
        expected = match.version
        lifecycle.reject(match, rejector, reason, self.clock())
        self.store.save_match(match, expected_version=expected)
        self.store.write_audit("INFO", rejector, "match_rejected", [match_id], match.confidence_score, "rejected")
        self.outbox.record(EVENT_REJECTED, match_id)
        logger.info("Match %s rejected by %s", match_id, rejector)
        return match

    def cancel_match(self, match_id: str, reason: Optional[str], actor: str = SYSTEM_USER) -> Match:
        match = self.get_match(match_id)
        expected = match.version
        lifecycle.cancel(match, reason, self.clock())
        self.store.save_match(match, expected_version=expected)
        self.store.write_audit("INFO", actor, "match_cancelled", [match_id], match.confidence_score, "cancelled")
        self.outbox.record(EVENT_CANCELLED, match_id)
        logger.info("Match %s cancelled", match_id)
        return match
