"""
매칭 상태 전이

상태: PENDING -> {MATCHED, CANCELLED}, MATCHED -> CANCELLED
승인: PENDING -> {APPROVED, REJECTED, REVIEW_REQUIRED}
모든 함수는 Match 객체만 변경하며 저장/ERP 전송은 호출자가 담당한다.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from receipt_recon.exceptions import InvalidMatch, MatchStateError
from receipt_recon.models import ApprovalStatus, Match, MatchStatus


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now()


def _touch(match: Match, ts: datetime):
    match.updated_at = ts
    match.version += 1


def _append_note(notes: Optional[str], line: str) -> str:
    return f"{notes}\n{line}" if notes else line


def remaining_amount(total: Decimal, matches: Iterable[Match], exclude_match_id: Optional[str] = None) -> Decimal:
    """영수증 총액에서 MATCHED 상태 매칭 금액 합계를 뺀 잔액 (저장하지 않는 파생값)"""
    matched = sum(
        (
            m.matched_amount
            for m in matches
            if m.match_status == MatchStatus.MATCHED
            and (exclude_match_id is None or m.match_id != exclude_match_id)
        ),
        Decimal("0"),
    )
    return total - matched


def ensure_within_remaining(total: Decimal, matches: Iterable[Match], requested: Decimal,
                            exclude_match_id: Optional[str] = None) -> Decimal:
    if requested is None or requested <= 0:
        raise InvalidMatch(f"매칭 금액은 0보다 커야 합니다: {requested}")

    remaining = remaining_amount(total, matches, exclude_match_id)
    if requested > remaining:
        raise InvalidMatch(f"매칭 금액이 잔액을 초과합니다. 잔액: {remaining}, 요청: {requested}")
    return remaining


def mark_matched(match: Match, now: Optional[datetime] = None) -> Match:
    ts = _now(now)
    match.match_status = MatchStatus.MATCHED
    match.matched_at = ts
    if match.created_at is None:
        match.created_at = ts
    match.updated_at = ts
    return match


def update(match: Match, account_code: str, account_name: str, cost_center: Optional[str],
           amount: Decimal, notes: Optional[str], now: Optional[datetime] = None) -> Match:
    if not match.is_editable():
        raise MatchStateError(match.match_id, "update", match.match_status.value, match.approval_status.value)
    if amount is None or amount <= 0:
        raise InvalidMatch(f"매칭 금액은 0보다 커야 합니다: {amount}")

    ts = _now(now)
    match.account_code = account_code
    match.account_name = account_name
    match.cost_center = cost_center
    match.matched_amount = amount
    match.notes = notes
    match.matched_at = ts
    _touch(match, ts)
    return match


def approve(match: Match, approver_id: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> Match:
    if not match.can_approve():
        raise MatchStateError(match.match_id, "approve", match.match_status.value, match.approval_status.value)

    ts = _now(now)
    match.approval_status = ApprovalStatus.APPROVED
    match.approved_by = approver_id
    match.approved_at = ts
    if notes:
        match.notes = _append_note(match.notes, f"승인: {notes}")
    _touch(match, ts)
    return match


def reject(match: Match, rejector_id: str, reason: Optional[str], now: Optional[datetime] = None) -> Match:
    # 오매칭을 언제든 되돌릴 수 있도록 사전 조건 없음
    ts = _now(now)
    match.approval_status = ApprovalStatus.REJECTED
    match.approved_by = rejector_id
    match.approved_at = ts
    match.rejection_reason = reason
    match.match_status = MatchStatus.CANCELLED
    _touch(match, ts)
    return match


def cancel(match: Match, reason: Optional[str], now: Optional[datetime] = None) -> Match:
    ts = _now(now)
    match.match_status = MatchStatus.CANCELLED
    match.notes = _append_note(match.notes, f"Cancelled: {reason}")
    _touch(match, ts)
    return match
