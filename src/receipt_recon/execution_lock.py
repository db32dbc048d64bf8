"""
실행 잠금
- ReceiptLocks: 영수증 단위 매칭 생성 상호배제 (프로세스 내)
- ExecutionLock: 배치 자동매칭 중복 실행 방지 (파일 기반)
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ReceiptLocks:
    """영수증별 잠금. 같은 영수증에 대한 매칭 생성은 한 번에 하나만 진행된다.

    대기/보유 중인 스레드가 없어지면 항목을 지운다.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, receipt_id: str):
        with self._guard:
            lock = self._locks.setdefault(receipt_id, threading.Lock())
            self._waiters[receipt_id] = self._waiters.get(receipt_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[receipt_id] -= 1
                if self._waiters[receipt_id] == 0:
                    del self._waiters[receipt_id]
                    del self._locks[receipt_id]


class ExecutionLock:
    """배치 실행 잠금 (잠금 파일 + 타임아웃)

    잠금 파일은 O_EXCL로 생성하므로 동시에 시도해도 한 프로세스만 획득한다.
    타임아웃이 지난 잠금은 제거 후 한 번 더 시도한다.
    """

    def __init__(self, lock_name: str, timeout: int = 3600, lock_dir: str = "."):
        self.lock_name = lock_name
        self.timeout = timeout
        self.lock_file = os.path.join(lock_dir, f".{lock_name}_lock.json")

    def acquire_lock(self, process_id: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        lock_data = {
            "process_id": process_id,
            "timestamp": datetime.now().isoformat(),
            "timeout": self.timeout,
            "metadata": metadata or {},
        }

        for _ in range(2):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                existing_lock = self._load_lock()
                if not self._is_stale(existing_lock):
                    holder = existing_lock.get("process_id") if existing_lock else None
                    logger.warning("Lock %s is held by %s", self.lock_name, holder)
                    return False
                logger.warning("Lock %s timed out, previous holder %s",
                               self.lock_name, existing_lock.get("process_id") if existing_lock else None)
                self._remove_lock()
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(lock_data, f, ensure_ascii=False, indent=2)
            logger.info("Lock %s acquired by %s", self.lock_name, process_id)
            return True

        # 제거 직후 다른 프로세스가 먼저 획득
        logger.warning("Lock %s was taken over by another process", self.lock_name)
        return False

    def _is_stale(self, lock_data: Optional[Dict[str, Any]]) -> bool:
        if lock_data and lock_data.get("timestamp"):
            lock_time = datetime.fromisoformat(lock_data["timestamp"])
            return datetime.now() - lock_time >= timedelta(seconds=self.timeout)

        # 생성 직후라 아직 내용이 기록되지 않은 파일은 수정 시각으로 판단
        try:
            age = time.time() - os.path.getmtime(self.lock_file)
        except FileNotFoundError:
            return True
        return age >= self.timeout

    def release_lock(self, process_id: str) -> bool:
        existing_lock = self._load_lock()

        if not existing_lock:
            logger.warning("Lock %s does not exist", self.lock_name)
            return False

        if existing_lock.get("process_id") != process_id:
            logger.error("Lock %s is owned by %s, not %s",
                         self.lock_name, existing_lock.get("process_id"), process_id)
            return False

        self._remove_lock()
        logger.info("Lock %s released by %s", self.lock_name, process_id)
        return True

    def get_lock_info(self) -> Optional[Dict[str, Any]]:
        return self._load_lock()

    def _load_lock(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return None

    def _remove_lock(self):
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass
