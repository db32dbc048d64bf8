from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    CANCELLED = "CANCELLED"
    PARTIAL = "PARTIAL"


class MatchType(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"
    RULE_BASED = "RULE_BASED"
    AI_SUGGESTED = "AI_SUGGESTED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"


class MatchingStrategy(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    BALANCED = "BALANCED"
    AGGRESSIVE = "AGGRESSIVE"


ACTIVE_STATUSES = (MatchStatus.MATCHED, MatchStatus.PARTIAL)


@dataclass
class Receipt:
    receipt_id: str
    total_amount: Decimal
    transaction_at: datetime
    merchant_name: str
    merchant_category: Optional[str] = None
    currency: str = "KRW"
    is_verified: bool = False
    receipt_number: Optional[str] = None
    card_id: Optional[str] = None
    approval_number: Optional[str] = None
    verified_at: Optional[datetime] = None
    verification_method: Optional[str] = None

    def is_matched(self, matches: Iterable["Match"]) -> bool:
        return any(m.match_status != MatchStatus.CANCELLED for m in matches)

    def latest_match(self, matches: Iterable["Match"]) -> Optional["Match"]:
        live = [m for m in matches if m.match_status != MatchStatus.CANCELLED]
        if not live:
            return None
        return max(live, key=lambda m: m.created_at or datetime.min)


@dataclass(frozen=True)
class LedgerCandidate:
    """ERP 미결 전표의 읽기 전용 투영"""

    ledger_id: str
    account_code: Optional[str]
    account_name: Optional[str] = None
    cost_center: Optional[str] = None
    amount: Optional[Decimal] = None
    accounting_date: Optional[date] = None
    description: Optional[str] = None
    status: str = "OPEN"


@dataclass
class Match:
    receipt_id: str
    ledger_id: str
    matched_amount: Decimal
    account_code: Optional[str] = None
    account_name: Optional[str] = None
    cost_center: Optional[str] = None
    project_code: Optional[str] = None
    match_id: Optional[str] = None
    match_status: MatchStatus = MatchStatus.PENDING
    match_type: MatchType = MatchType.MANUAL
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    confidence_score: Optional[float] = None
    match_criteria: Optional[str] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    matched_by: Optional[str] = None
    approved_by: Optional[str] = None
    matched_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def is_editable(self) -> bool:
        return (
            self.match_status == MatchStatus.PENDING
            and self.approval_status == ApprovalStatus.PENDING
        )

    def can_approve(self) -> bool:
        return (
            self.match_status == MatchStatus.MATCHED
            and self.approval_status == ApprovalStatus.PENDING
        )


@dataclass
class MatchResult:
    """후보 전표 하나에 대한 채점 결과"""

    ledger_id: str
    account_code: Optional[str]
    account_name: Optional[str]
    cost_center: Optional[str]
    matched_amount: Optional[Decimal]
    confidence_score: float
    matching_rule: str
    match_reasons: List[str] = field(default_factory=list)
    mismatch_reasons: List[str] = field(default_factory=list)
    sub_scores: dict = field(default_factory=dict)


@dataclass
class PartialMatchItem:
    description: str
    amount: Decimal
    account_code: Optional[str] = None


@dataclass
class MatchRequest:
    """수동 매칭 요청"""

    ledger_id: str
    account_code: str
    account_name: str
    matched_amount: Decimal
    cost_center: Optional[str] = None
    project_code: Optional[str] = None
    notes: Optional[str] = None
    match_type: MatchType = MatchType.MANUAL
    is_partial_match: bool = False
    partial_match_items: List[PartialMatchItem] = field(default_factory=list)
