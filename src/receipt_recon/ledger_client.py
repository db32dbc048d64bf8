import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter, Retry

from receipt_recon.exceptions import ExternalGatewayFailure
from receipt_recon.interfaces import LedgerGateway
from receipt_recon.models import LedgerCandidate, Match, Receipt

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y%m%d"


def _parse_amount(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_date(value) -> Optional[date]:
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d", DATE_FORMAT):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return datetime.fromisoformat(value).date()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ErpLedgerClient(LedgerGateway):
    """ERP 전표 API 클라이언트"""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10,
                 max_retries: int = 3, backoff_factor: float = 1.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        retry = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "POST"}),
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retry))
        self.session.mount("https://", HTTPAdapter(max_retries=retry))

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Request-ID": str(uuid.uuid4()),
        }

    def _post(self, operation: str, path: str, payload: Dict) -> Dict:
        try:
            response = self.session.post(
                f"{self.base_url}{path}", headers=self._headers(), json=payload, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExternalGatewayFailure(operation, str(e)) from e
        return self._json(operation, response)

    @staticmethod
    def _json(operation: str, response) -> Dict:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            # 프록시 오류 페이지 등 JSON이 아닌 본문
            raise ExternalGatewayFailure(operation, f"invalid JSON response: {e}") from e

    @staticmethod
    def to_candidate(data: Dict) -> LedgerCandidate:
        return LedgerCandidate(
            ledger_id=str(data.get("ledgerId")),
            account_code=data.get("accountCode"),
            account_name=data.get("accountName"),
            cost_center=data.get("costCenter"),
            amount=_parse_amount(data.get("amount")),
            accounting_date=_parse_date(data.get("accountingDate")),
            description=data.get("description"),
            status=data.get("status") or "OPEN",
        )

    def _to_candidates(self, operation: str, items: List[Dict]) -> List[LedgerCandidate]:
        try:
            return [self.to_candidate(item) for item in items]
        except (ValueError, AttributeError) as e:
            raise ExternalGatewayFailure(operation, f"malformed ledger data: {e}") from e

    def get_ledger_info(self, ledger_id: str) -> Optional[LedgerCandidate]:
        logger.info("Fetching ERP ledger info: %s", ledger_id)
        try:
            response = self.session.get(
                f"{self.base_url}/api/ledger/{ledger_id}", headers=self._headers(), timeout=self.timeout
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExternalGatewayFailure("get_ledger_info", str(e)) from e
        return self._to_candidates("get_ledger_info", [self._json("get_ledger_info", response)])[0]

    def get_open_ledgers(self, start_date: datetime, end_date: datetime) -> List[LedgerCandidate]:
        logger.info("Fetching open ledgers from %s to %s", start_date, end_date)
        data = self._post("get_open_ledgers", "/api/ledgers/open", {
            "startDate": start_date.strftime(DATE_FORMAT),
            "endDate": end_date.strftime(DATE_FORMAT),
            "status": "OPEN",
            "pageSize": 1000,
        })
        return self._to_candidates("get_open_ledgers", data.get("ledgers") or [])

    def send_matching_info(self, match: Match, receipt: Optional[Receipt] = None):
        logger.info("Sending matching info to ERP: %s", match.match_id)
        self._post("send_matching_info", "/api/matching/create", {
            "ledgerId": match.ledger_id,
            "receiptId": match.receipt_id,
            "receiptNumber": receipt.receipt_number if receipt else None,
            "matchedAmount": str(match.matched_amount),
            "matchedDate": _iso(match.matched_at),
            "matchedBy": match.matched_by,
            "matchType": match.match_type.value,
            "notes": match.notes,
        })

    def send_approval_info(self, match: Match):
        logger.info("Sending approval info to ERP: %s", match.match_id)
        self._post("send_approval_info", "/api/matching/approve", {
            "matchId": match.match_id,
            "ledgerId": match.ledger_id,
            "approvedBy": match.approved_by,
            "approvedAt": _iso(match.approved_at),
            "status": "APPROVED",
        })

    def send_rejection_info(self, match: Match):
        logger.info("Sending rejection info to ERP: %s", match.match_id)
        self._post("send_rejection_info", "/api/matching/reject", {
            "matchId": match.match_id,
            "ledgerId": match.ledger_id,
            "rejectedBy": match.approved_by,
            "rejectedAt": _iso(match.approved_at),
            "reason": match.rejection_reason,
            "status": "REJECTED",
        })

    def send_cancellation_info(self, match: Match):
        logger.info("Sending cancellation info to ERP: %s", match.match_id)
        self._post("send_cancellation_info", "/api/matching/cancel", {
            "matchId": match.match_id,
            "ledgerId": match.ledger_id,
            "cancelledAt": _iso(match.updated_at),
            "notes": match.notes,
            "status": "CANCELLED",
        })
