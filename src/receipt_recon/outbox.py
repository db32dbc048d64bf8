"""
ERP 전송 대기열

상태 전이와 함께 이벤트를 기록해 두고, dispatch()에서 게이트웨이로 전달한다.
전송 실패는 로그만 남기고 로컬 매칭은 그대로 유지한다 (최종 일관성).
"""

import logging
from typing import Dict, Optional

from receipt_recon.interfaces import LedgerGateway
from receipt_recon.state_store import SqliteReceiptStore

logger = logging.getLogger(__name__)

EVENT_MATCHED = "MATCHED"
EVENT_APPROVED = "APPROVED"
EVENT_REJECTED = "REJECTED"
EVENT_CANCELLED = "CANCELLED"


class LedgerOutbox:
    def __init__(self, store: SqliteReceiptStore, gateway: LedgerGateway, max_attempts: int = 5):
        self.store = store
        self.gateway = gateway
        self.max_attempts = max_attempts

    def record(self, event_type: str, match_id: str) -> int:
        event_id = self.store.put_outbox_event(event_type, match_id)
        logger.debug("Queued %s event %s for match %s", event_type, event_id, match_id)
        return event_id

    def _deliver(self, event: Dict):
        match = self.store.get_match(event["match_id"])
        if match is None:
            raise LookupError(f"match {event['match_id']} no longer exists")

        event_type = event["event_type"]
        if event_type == EVENT_MATCHED:
            self.gateway.send_matching_info(match, self.store.get_receipt(match.receipt_id))
        elif event_type == EVENT_APPROVED:
            self.gateway.send_approval_info(match)
        elif event_type == EVENT_REJECTED:
            self.gateway.send_rejection_info(match)
        elif event_type == EVENT_CANCELLED:
            self.gateway.send_cancellation_info(match)
        else:
            raise ValueError(f"unknown ledger event type: {event_type}")

    def dispatch(self, limit: Optional[int] = None) -> Dict[str, int]:
        """대기 중인 이벤트를 순서대로 전송. 실패 건은 재시도 대상으로 남는다."""
        sent = failed = 0
        for event in self.store.pending_outbox_events(limit):
            try:
                self._deliver(event)
            except Exception as e:
                logger.exception("Failed to push %s event for match %s", event["event_type"], event["match_id"])
                self.store.mark_outbox_failed(event["event_id"], str(e), self.max_attempts)
                failed += 1
                continue
            self.store.mark_outbox_sent(event["event_id"])
            sent += 1

        if sent or failed:
            logger.info("Ledger outbox dispatched: %d sent, %d failed", sent, failed)
        return {"sent": sent, "failed": failed}
