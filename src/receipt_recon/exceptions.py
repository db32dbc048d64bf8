"""대사 엔진 예외 정의"""


class ReconciliationError(Exception):
    """대사 처리 중 발생하는 모든 예외의 기반 클래스"""


class NotFound(ReconciliationError):
    """참조한 영수증/전표/매칭이 존재하지 않음"""


class ReceiptNotFound(NotFound):
    def __init__(self, receipt_id: str):
        super().__init__(f"Receipt not found: {receipt_id}")
        self.receipt_id = receipt_id


class MatchNotFound(NotFound):
    def __init__(self, match_id: str):
        super().__init__(f"Match not found: {match_id}")
        self.match_id = match_id


class LedgerEntryNotFound(NotFound):
    def __init__(self, ledger_id: str):
        super().__init__(f"ERP 전표를 찾을 수 없습니다: {ledger_id}")
        self.ledger_id = ledger_id


class InvalidMatch(ReconciliationError):
    """보존 불변식 위반 또는 잘못된 매칭 요청"""


class MatchStateError(InvalidMatch):
    """현재 상태에서 허용되지 않는 전이"""

    def __init__(self, match_id: str, action: str, match_status: str, approval_status: str):
        super().__init__(
            f"Cannot {action} match {match_id} in status {match_status}/{approval_status}"
        )
        self.match_id = match_id
        self.action = action


class ExternalGatewayFailure(ReconciliationError):
    """ERP 연동 실패 (조회/전송)"""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
