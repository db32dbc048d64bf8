import csv
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

from receipt_recon.models import Receipt
from receipt_recon.state_store import SqliteReceiptStore

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "y", "yes", "예", "확인"}


class CardTransactionImporter:
    """카드사 거래내역 CSV를 영수증으로 적재

    필수 컬럼: 영수증ID, 거래일시, 가맹점명, 금액
    선택 컬럼: 업종, 통화, 카드ID, 승인번호, 영수증번호, 검증여부
    """

    def __init__(self, store: SqliteReceiptStore, encoding: str = "utf-8-sig"):
        self.store = store
        self.encoding = encoding

    def _parse_amount(self, amount_str: str) -> Decimal:
        if not amount_str:
            return Decimal("0")
        # 콤마, 통화 기호 제거
        return Decimal(amount_str.replace(",", "").replace("원", "").replace("₩", "").strip())

    def _parse_datetime(self, value: str) -> datetime:
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y%m%d%H%M%S", "%Y-%m-%d", "%Y%m%d"):
            try:
                return datetime.strptime(value.strip(), fmt)
            except ValueError:
                continue
        raise ValueError(f"지원하지 않는 거래일시 형식: {value}")

    def _row_to_receipt(self, row: Dict[str, str]) -> Receipt:
        return Receipt(
            receipt_id=row["영수증ID"].strip(),
            total_amount=self._parse_amount(row["금액"]),
            transaction_at=self._parse_datetime(row["거래일시"]),
            merchant_name=row["가맹점명"].strip(),
            merchant_category=(row.get("업종") or "").strip() or None,
            currency=(row.get("통화") or "KRW").strip() or "KRW",
            card_id=(row.get("카드ID") or "").strip() or None,
            approval_number=(row.get("승인번호") or "").strip() or None,
            receipt_number=(row.get("영수증번호") or "").strip() or None,
            is_verified=(row.get("검증여부") or "").strip().lower() in _TRUE_VALUES,
        )

    def read_receipts(self, file_path: str) -> List[Receipt]:
        receipts = []
        with open(Path(file_path), "r", encoding=self.encoding, newline="") as f:
            reader = csv.DictReader(f)
            for line_no, row in enumerate(reader, start=2):
                try:
                    receipts.append(self._row_to_receipt(row))
                except (KeyError, ValueError, ArithmeticError) as e:
                    logger.warning("Skipping line %d of %s: %s", line_no, file_path, e)
        return receipts

    def import_file(self, file_path: str) -> int:
        receipts = self.read_receipts(file_path)
        for receipt in receipts:
            self.store.save_receipt(receipt)
        logger.info("Imported %d receipts from %s", len(receipts), file_path)
        return len(receipts)
