"""엔진이 사용하는 외부 협력 객체의 계약"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from receipt_recon.models import LedgerCandidate, Match, Receipt


class LedgerGateway(ABC):
    """ERP 전표 조회 및 매칭 이벤트 전송"""

    @abstractmethod
    def get_ledger_info(self, ledger_id: str) -> Optional[LedgerCandidate]:
        ...

    @abstractmethod
    def get_open_ledgers(self, start_date: datetime, end_date: datetime) -> List[LedgerCandidate]:
        ...

    @abstractmethod
    def send_matching_info(self, match: Match, receipt: Optional[Receipt] = None):
        ...

    @abstractmethod
    def send_approval_info(self, match: Match):
        ...

    @abstractmethod
    def send_rejection_info(self, match: Match):
        ...

    @abstractmethod
    def send_cancellation_info(self, match: Match):
        ...


class ReceiptStore(ABC):
    @abstractmethod
    def find_eligible_for_auto_match(self, start_date: datetime, end_date: datetime,
                                     limit: int = 1000) -> List[Receipt]:
        ...

    @abstractmethod
    def find_by_ids(self, receipt_ids: Sequence[str]) -> List[Receipt]:
        ...

    @abstractmethod
    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        ...

    @abstractmethod
    def save_receipt(self, receipt: Receipt) -> Receipt:
        ...

    @abstractmethod
    def get_match(self, match_id: str) -> Optional[Match]:
        ...

    @abstractmethod
    def find_matches_by_receipt(self, receipt_id: str) -> List[Match]:
        ...

    @abstractmethod
    def save_match(self, match: Match, expected_version: Optional[int] = None) -> Match:
        ...

    @abstractmethod
    def add_match_within_total(self, match: Match, receipt_total: Decimal) -> Match:
        """보존 불변식 검사와 저장을 하나의 트랜잭션으로 수행"""
