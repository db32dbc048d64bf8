import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional

from receipt_recon.batch_matcher import AutoMatcher, AutoMatchRequest, BatchResult
from receipt_recon.config_loader import MatchingConfig, load_matching_config
from receipt_recon.data_importer import CardTransactionImporter
from receipt_recon.exceptions import ReconciliationError
from receipt_recon.execution_lock import ExecutionLock
from receipt_recon.ledger_client import ErpLedgerClient
from receipt_recon.match_service import MatchService
from receipt_recon.models import MatchingStrategy
from receipt_recon.outbox import LedgerOutbox
from receipt_recon.state_store import SqliteReceiptStore

logger = logging.getLogger(__name__)


def _json_default(value):
    if isinstance(value, (datetime,)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"not serializable: {type(value)}")


def _dump(data) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=_json_default)


def _parse_dt(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # 날짜만 주어진 종료일은 그날 전체를 포함
    if end_of_day and len(value.strip()) == 10:
        return datetime.combine(parsed.date(), time.max)
    return parsed


def save_results(result: BatchResult, filename: Optional[str] = None) -> str:
    """배치 결과를 JSON 파일로 저장"""
    filename = filename or f"auto_match_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
    with open(filename, "w", encoding="utf-8") as f:
        f.write(_dump(asdict(result)))
    logger.info("Saved batch result to %s", filename)
    return filename


def build_components(cfg: MatchingConfig):
    if not cfg.erp_base_url or not cfg.erp_api_key:
        raise SystemExit("ERP_BASE_URL and ERP_API_KEY must be set")

    store = SqliteReceiptStore(cfg.db_path)
    gateway = ErpLedgerClient(
        cfg.erp_base_url, cfg.erp_api_key,
        timeout=cfg.erp_timeout_seconds,
        max_retries=cfg.erp_max_retries,
        backoff_factor=cfg.erp_backoff_factor,
    )
    outbox = LedgerOutbox(store, gateway, max_attempts=cfg.outbox_max_attempts)
    service = MatchService(store, gateway, outbox)
    matcher = AutoMatcher(store, gateway, service, outbox, cfg)
    return store, service, matcher, outbox


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="receipt_recon", description="영수증-ERP 전표 대사")
    parser.add_argument("--config", help="matching.yml 경로")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)

    am = sub.add_parser("auto-match", help="배치 자동매칭")
    am.add_argument("--start", help="시작일시 (ISO)")
    am.add_argument("--end", help="종료일시 (ISO)")
    am.add_argument("--receipt-id", action="append", default=[])
    am.add_argument("--card-id", action="append", default=[])
    am.add_argument("--min-score", type=float)
    am.add_argument("--dry-run", action="store_true")
    am.add_argument("--no-approval", action="store_true", help="승인 없이 바로 승인완료 처리")
    am.add_argument("--strategy", choices=[s.value for s in MatchingStrategy],
                    default=MatchingStrategy.CONSERVATIVE.value)
    am.add_argument("--output", help="결과 JSON 저장 경로")

    ap = sub.add_parser("approve", help="매칭 승인")
    ap.add_argument("match_id")
    ap.add_argument("--user", required=True)
    ap.add_argument("--notes")

    rj = sub.add_parser("reject", help="매칭 반려")
    rj.add_argument("match_id")
    rj.add_argument("--user", required=True)
    rj.add_argument("--reason", required=True)

    cc = sub.add_parser("cancel", help="매칭 취소")
    cc.add_argument("match_id")
    cc.add_argument("--reason", required=True)
    cc.add_argument("--user", default="SYSTEM")

    sub.add_parser("dispatch-outbox", help="ERP 미전송 이벤트 재전송")

    im = sub.add_parser("import-receipts", help="카드 거래내역 CSV 적재")
    im.add_argument("csv_path")
    im.add_argument("--encoding", default="utf-8-sig")

    sm = sub.add_parser("summary", help="계정과목/코스트센터별 매칭 요약")
    sm.add_argument("--days", type=int, default=30)
    return parser


def _run_auto_match(args, matcher: AutoMatcher) -> int:
    lock = ExecutionLock("auto_match")
    process_id = f"{os.getpid()}-{datetime.now().strftime('%Y%m%d%H%M%S')}"
    if not lock.acquire_lock(process_id, {"dry_run": args.dry_run}):
        logger.error("Another auto-match batch is running")
        return 2

    try:
        result = matcher.auto_match(AutoMatchRequest(
            start_date=_parse_dt(args.start),
            end_date=_parse_dt(args.end, end_of_day=True),
            receipt_ids=args.receipt_id,
            card_ids=args.card_id,
            min_confidence_score=args.min_score,
            dry_run=args.dry_run,
            require_approval=not args.no_approval,
            strategy=MatchingStrategy(args.strategy),
        ))
    finally:
        lock.release_lock(process_id)

    if args.output:
        save_results(result, args.output)
    print(_dump(asdict(result)))
    return 0 if result.status == "COMPLETED" else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_matching_config(args.config)

    if args.command == "import-receipts":
        store = SqliteReceiptStore(cfg.db_path)
        count = CardTransactionImporter(store, encoding=args.encoding).import_file(args.csv_path)
        print(_dump({"imported": count}))
        return 0

    if args.command == "summary":
        store = SqliteReceiptStore(cfg.db_path)
        end = datetime.now()
        start = end - timedelta(days=args.days)
        print(_dump({
            "by_account": store.matching_summary_by_account(start, end),
            "by_cost_center": store.matching_summary_by_cost_center(start, end),
        }))
        return 0

    store, service, matcher, outbox = build_components(cfg)
    try:
        if args.command == "auto-match":
            return _run_auto_match(args, matcher)
        if args.command == "approve":
            match = service.approve_match(args.match_id, args.user, args.notes)
        elif args.command == "reject":
            match = service.reject_match(args.match_id, args.user, args.reason)
        elif args.command == "cancel":
            match = service.cancel_match(args.match_id, args.reason, args.user)
        else:
            print(_dump(outbox.dispatch()))
            return 0
    except ReconciliationError as e:
        logger.error("%s", e)
        return 1

    outbox.dispatch()
    print(_dump(asdict(match)))
    return 0


if __name__ == "__main__":
    sys.exit(main())
