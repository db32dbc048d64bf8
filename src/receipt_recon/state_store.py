import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from receipt_recon.exceptions import InvalidMatch
from receipt_recon.interfaces import ReceiptStore
from receipt_recon.lifecycle import ensure_within_remaining
from receipt_recon.models import ApprovalStatus, Match, MatchStatus, MatchType, Receipt

logger = logging.getLogger(__name__)

_MATCH_COLUMNS = (
    "match_id", "receipt_id", "ledger_id", "account_code", "account_name", "cost_center",
    "project_code", "matched_amount", "match_status", "match_type", "approval_status",
    "confidence_score", "match_criteria", "notes", "rejection_reason", "matched_by",
    "approved_by", "matched_at", "approved_at", "created_at", "updated_at", "version",
)

_RECEIPT_COLUMNS = (
    "receipt_id", "total_amount", "currency", "transaction_at", "merchant_name",
    "merchant_category", "is_verified", "receipt_number", "card_id", "approval_number",
    "verified_at", "verification_method",
)

OUTBOX_PENDING = "PENDING"
OUTBOX_SENT = "SENT"
OUTBOX_FAILED = "FAILED"


def _ts(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value) -> Optional[str]:
    return str(value) if value is not None else None


class SqliteReceiptStore(ReceiptStore):
    """영수증, 매칭, 감사 로그, ERP 전송 대기열을 SQLite에 보관"""

    def __init__(self, db_path: str = "receipt_recon.db"):
        self.db_path = db_path
        self.init_db()

    @contextmanager
    def _conn(self, immediate: bool = False):
        con = sqlite3.connect(self.db_path, timeout=30, isolation_level=None if immediate else "")
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        try:
            if immediate:
                # 쓰기 잠금을 먼저 잡아 검사-저장 사이에 다른 쓰기가 끼어들지 못하게 함
                con.execute("BEGIN IMMEDIATE")
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS receipts (
                  receipt_id TEXT PRIMARY KEY,
                  total_amount TEXT NOT NULL,
                  currency TEXT,
                  transaction_at TEXT NOT NULL,
                  merchant_name TEXT,
                  merchant_category TEXT,
                  is_verified INTEGER DEFAULT 0,
                  receipt_number TEXT,
                  card_id TEXT,
                  approval_number TEXT,
                  verified_at TEXT,
                  verification_method TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                  match_id TEXT PRIMARY KEY,
                  receipt_id TEXT NOT NULL REFERENCES receipts(receipt_id),
                  ledger_id TEXT,
                  account_code TEXT,
                  account_name TEXT,
                  cost_center TEXT,
                  project_code TEXT,
                  matched_amount TEXT NOT NULL,
                  match_status TEXT NOT NULL,
                  match_type TEXT NOT NULL,
                  approval_status TEXT,
                  confidence_score REAL,
                  match_criteria TEXT,
                  notes TEXT,
                  rejection_reason TEXT,
                  matched_by TEXT,
                  approved_by TEXT,
                  matched_at TEXT,
                  approved_at TEXT,
                  created_at TEXT,
                  updated_at TEXT,
                  version INTEGER DEFAULT 0
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_matches_receipt ON matches(receipt_id);")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  ts TEXT,
                  level TEXT,
                  actor TEXT,
                  action TEXT,
                  target_ids TEXT,
                  score REAL,
                  result TEXT,
                  error TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_outbox (
                  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  event_type TEXT NOT NULL,
                  match_id TEXT NOT NULL,
                  status TEXT NOT NULL,
                  attempts INTEGER DEFAULT 0,
                  last_error TEXT,
                  created_at TEXT,
                  sent_at TEXT
                );
                """
            )

    # --- receipts ---------------------------------------------------------

    def _row_to_receipt(self, row) -> Receipt:
        return Receipt(
            receipt_id=row["receipt_id"],
            total_amount=Decimal(row["total_amount"]),
            currency=row["currency"] or "KRW",
            transaction_at=_parse_ts(row["transaction_at"]),
            merchant_name=row["merchant_name"],
            merchant_category=row["merchant_category"],
            is_verified=bool(row["is_verified"]),
            receipt_number=row["receipt_number"],
            card_id=row["card_id"],
            approval_number=row["approval_number"],
            verified_at=_parse_ts(row["verified_at"]),
            verification_method=row["verification_method"],
        )

    def save_receipt(self, receipt: Receipt) -> Receipt:
        values = (
            receipt.receipt_id, _dec(receipt.total_amount), receipt.currency,
            _ts(receipt.transaction_at), receipt.merchant_name, receipt.merchant_category,
            int(receipt.is_verified), receipt.receipt_number, receipt.card_id,
            receipt.approval_number, _ts(receipt.verified_at), receipt.verification_method,
        )
        with self._conn() as con:
            con.execute(
                f"INSERT OR REPLACE INTO receipts({', '.join(_RECEIPT_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _RECEIPT_COLUMNS)})",
                values,
            )
        return receipt

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        with self._conn() as con:
            row = con.execute("SELECT * FROM receipts WHERE receipt_id=?", (receipt_id,)).fetchone()
        return self._row_to_receipt(row) if row else None

    def find_by_ids(self, receipt_ids: Sequence[str]) -> List[Receipt]:
        if not receipt_ids:
            return []
        placeholders = ", ".join("?" for _ in receipt_ids)
        with self._conn() as con:
            rows = con.execute(
                f"SELECT * FROM receipts WHERE receipt_id IN ({placeholders})", tuple(receipt_ids)
            ).fetchall()
        by_id = {row["receipt_id"]: self._row_to_receipt(row) for row in rows}
        # 요청 순서 유지
        return [by_id[rid] for rid in receipt_ids if rid in by_id]

    def find_eligible_for_auto_match(self, start_date: datetime, end_date: datetime,
                                     limit: int = 1000) -> List[Receipt]:
        with self._conn() as con:
            rows = con.execute(
                """
                SELECT r.* FROM receipts r
                WHERE r.transaction_at BETWEEN ? AND ?
                  AND r.is_verified = 1
                  AND NOT EXISTS (
                    SELECT 1 FROM matches m
                    WHERE m.receipt_id = r.receipt_id
                      AND m.match_status IN ('MATCHED', 'PARTIAL')
                  )
                ORDER BY r.transaction_at DESC
                LIMIT ?
                """,
                (_ts(start_date), _ts(end_date), limit),
            ).fetchall()
        return [self._row_to_receipt(row) for row in rows]

    # --- matches ----------------------------------------------------------

    def _row_to_match(self, row) -> Match:
        return Match(
            match_id=row["match_id"],
            receipt_id=row["receipt_id"],
            ledger_id=row["ledger_id"],
            account_code=row["account_code"],
            account_name=row["account_name"],
            cost_center=row["cost_center"],
            project_code=row["project_code"],
            matched_amount=Decimal(row["matched_amount"]),
            match_status=MatchStatus(row["match_status"]),
            match_type=MatchType(row["match_type"]),
            approval_status=ApprovalStatus(row["approval_status"]),
            confidence_score=row["confidence_score"],
            match_criteria=row["match_criteria"],
            notes=row["notes"],
            rejection_reason=row["rejection_reason"],
            matched_by=row["matched_by"],
            approved_by=row["approved_by"],
            matched_at=_parse_ts(row["matched_at"]),
            approved_at=_parse_ts(row["approved_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            version=row["version"],
        )

    def _match_values(self, match: Match) -> tuple:
        return (
            match.match_id, match.receipt_id, match.ledger_id, match.account_code,
            match.account_name, match.cost_center, match.project_code,
            _dec(match.matched_amount), match.match_status.value, match.match_type.value,
            match.approval_status.value, match.confidence_score, match.match_criteria,
            match.notes, match.rejection_reason, match.matched_by, match.approved_by,
            _ts(match.matched_at), _ts(match.approved_at), _ts(match.created_at),
            _ts(match.updated_at), match.version,
        )

    def _insert_match(self, con, match: Match):
        if match.match_id is None:
            match.match_id = uuid.uuid4().hex
        con.execute(
            f"INSERT INTO matches({', '.join(_MATCH_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _MATCH_COLUMNS)})",
            self._match_values(match),
        )

    def get_match(self, match_id: str) -> Optional[Match]:
        with self._conn() as con:
            row = con.execute("SELECT * FROM matches WHERE match_id=?", (match_id,)).fetchone()
        return self._row_to_match(row) if row else None

    def find_matches_by_receipt(self, receipt_id: str) -> List[Match]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM matches WHERE receipt_id=? ORDER BY created_at", (receipt_id,)
            ).fetchall()
        return [self._row_to_match(row) for row in rows]

    def find_active_matches(self, receipt_id: str) -> List[Match]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM matches WHERE receipt_id=? AND match_status != 'CANCELLED' "
                "ORDER BY created_at DESC",
                (receipt_id,),
            ).fetchall()
        return [self._row_to_match(row) for row in rows]

    def add_match_within_total(self, match: Match, receipt_total: Decimal) -> Match:
        with self._conn(immediate=True) as con:
            rows = con.execute(
                "SELECT * FROM matches WHERE receipt_id=?", (match.receipt_id,)
            ).fetchall()
            ensure_within_remaining(receipt_total, [self._row_to_match(r) for r in rows], match.matched_amount)
            self._insert_match(con, match)
        return match

    def save_match(self, match: Match, expected_version: Optional[int] = None) -> Match:
        with self._conn() as con:
            if match.match_id is None:
                self._insert_match(con, match)
                return match

            assignments = ", ".join(f"{c}=?" for c in _MATCH_COLUMNS[1:])
            sql = f"UPDATE matches SET {assignments} WHERE match_id=?"
            params = self._match_values(match)[1:] + (match.match_id,)
            if expected_version is not None:
                sql += " AND version=?"
                params += (expected_version,)
            cur = con.execute(sql, params)
            if cur.rowcount == 0:
                if expected_version is not None:
                    logger.warning("Version conflict on match %s (expected %s)", match.match_id, expected_version)
                    raise InvalidMatch(f"Match {match.match_id} was modified concurrently")
                self._insert_match(con, match)
        return match

    def find_low_confidence_matches(self, threshold: float, match_type: MatchType = MatchType.AUTO) -> List[Match]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM matches WHERE match_type=? AND confidence_score < ? "
                "AND approval_status='PENDING' ORDER BY confidence_score",
                (match_type.value, threshold),
            ).fetchall()
        return [self._row_to_match(row) for row in rows]

    def _summary(self, group_column: str, start: datetime, end: datetime) -> List[Dict]:
        with self._conn() as con:
            rows = con.execute(
                f"SELECT {group_column} AS key, matched_amount FROM matches "
                f"WHERE match_status='MATCHED' AND {group_column} IS NOT NULL "
                f"AND matched_at BETWEEN ? AND ?",
                (_ts(start), _ts(end)),
            ).fetchall()

        # TEXT로 저장된 금액을 Decimal로 합산
        totals: Dict[str, Dict] = {}
        for row in rows:
            entry = totals.setdefault(row["key"], {group_column: row["key"], "count": 0, "total": Decimal("0")})
            entry["count"] += 1
            entry["total"] += Decimal(row["matched_amount"])
        return sorted(totals.values(), key=lambda e: e["total"], reverse=True)

    def matching_summary_by_account(self, start: datetime, end: datetime) -> List[Dict]:
        return self._summary("account_code", start, end)

    def matching_summary_by_cost_center(self, start: datetime, end: datetime) -> List[Dict]:
        return self._summary("cost_center", start, end)

    # --- audit ------------------------------------------------------------

    def write_audit(self, level: str, actor: str, action: str, target_ids: list,
                    score: Optional[float], result: str, error: Optional[str] = None):
        with self._conn() as con:
            con.execute(
                "INSERT INTO audit_log(ts, level, actor, action, target_ids, score, result, error) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (datetime.now().isoformat(), level, actor, action, json.dumps(target_ids), score, result, error),
            )

    def get_audit_log(self, target_id: Optional[str] = None) -> List[Dict]:
        with self._conn() as con:
            rows = con.execute("SELECT * FROM audit_log ORDER BY rowid").fetchall()
        entries = [dict(row) | {"target_ids": json.loads(row["target_ids"] or "[]")} for row in rows]
        if target_id is not None:
            entries = [e for e in entries if target_id in e["target_ids"]]
        return entries

    # --- ledger outbox ----------------------------------------------------

    def put_outbox_event(self, event_type: str, match_id: str) -> int:
        with self._conn() as con:
            cur = con.execute(
                "INSERT INTO ledger_outbox(event_type, match_id, status, attempts, created_at) "
                "VALUES (?,?,?,0,?)",
                (event_type, match_id, OUTBOX_PENDING, datetime.now().isoformat()),
            )
            return cur.lastrowid

    def pending_outbox_events(self, limit: Optional[int] = None) -> List[Dict]:
        sql = "SELECT * FROM ledger_outbox WHERE status=? ORDER BY event_id"
        params: tuple = (OUTBOX_PENDING,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        with self._conn() as con:
            return [dict(row) for row in con.execute(sql, params).fetchall()]

    def outbox_events(self, match_id: Optional[str] = None) -> List[Dict]:
        with self._conn() as con:
            if match_id is None:
                rows = con.execute("SELECT * FROM ledger_outbox ORDER BY event_id").fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM ledger_outbox WHERE match_id=? ORDER BY event_id", (match_id,)
                ).fetchall()
        return [dict(row) for row in rows]

    def mark_outbox_sent(self, event_id: int):
        with self._conn() as con:
            con.execute(
                "UPDATE ledger_outbox SET status=?, attempts=attempts+1, sent_at=?, last_error=NULL "
                "WHERE event_id=?",
                (OUTBOX_SENT, datetime.now().isoformat(), event_id),
            )

    def mark_outbox_failed(self, event_id: int, error: str, max_attempts: int):
        with self._conn() as con:
            con.execute(
                "UPDATE ledger_outbox SET attempts=attempts+1, last_error=?, "
                "status=CASE WHEN attempts+1 >= ? THEN ? ELSE status END WHERE event_id=?",
                (error, max_attempts, OUTBOX_FAILED, event_id),
            )
