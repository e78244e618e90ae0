"""
数据库模块
提供人工预约记录与核验记录的 SQLite 持久化
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import ManualRecordAlreadyCompleted, ManualRecordNotFound
from .models import MANUAL_COMPLETED, MANUAL_PENDING, ManualBookingRecord, VerificationRecord


logger = logging.getLogger(__name__)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DatabaseManager:
    """数据库管理器

    每次操作独立开连接，单条语句或单个事务内完成读改写，
    多个并发预约流程共享同一个文件也不会互相覆盖半条记录。
    """

    def __init__(self, db_path: str = "data/museum.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self):
        """初始化数据库表"""
        with self._connect() as conn:
            cursor = conn.cursor()

            # 人工预约记录表
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS manual_bookings (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    booking_data TEXT NOT NULL,
                    instructions TEXT NOT NULL,
                    deadline TEXT,
                    official_reference TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_manual_bookings_status ON manual_bookings (status)"
            )

            # 预约核验记录表
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS verification_records (
                    booking_id TEXT PRIMARY KEY,
                    visitor_name TEXT,
                    id_number TEXT,
                    found INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT,
                    found_at TEXT,
                    last_endpoint TEXT
                )
            """)

    # -------------------- 人工预约 --------------------

    async def save_manual_booking(self, record: ManualBookingRecord) -> None:
        """保存人工预约记录"""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO manual_bookings (
                    id, status, booking_data, instructions, deadline,
                    official_reference, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.status,
                json.dumps(record.data, ensure_ascii=False),
                record.instructions,
                _iso(record.deadline),
                record.official_reference,
                _iso(record.created_at) or now,
                _iso(record.updated_at) or now,
            ))

    @staticmethod
    def _manual_from_row(row: sqlite3.Row) -> ManualBookingRecord:
        return ManualBookingRecord(
            id=row["id"],
            status=row["status"],
            data=json.loads(row["booking_data"]),
            instructions=row["instructions"],
            deadline=_parse_dt(row["deadline"]),
            official_reference=row["official_reference"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    async def load_manual_booking(self, record_id: str) -> Optional[ManualBookingRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM manual_bookings WHERE id = ?", (record_id,)).fetchone()
        return self._manual_from_row(row) if row else None

    async def list_manual_bookings(self, status: Optional[str] = None) -> List[ManualBookingRecord]:
        """按状态列出人工预约记录，最新的在前"""
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM manual_bookings WHERE status = ? ORDER BY created_at DESC, id",
                    (status,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM manual_bookings ORDER BY created_at DESC, id"
                ).fetchall()
        return [self._manual_from_row(row) for row in rows]

    async def complete_manual_booking(self, record_id: str, official_reference: str) -> ManualBookingRecord:
        """回填官方预约号，pending -> completed 只允许发生一次"""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE manual_bookings
                SET status = ?, official_reference = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (MANUAL_COMPLETED, official_reference, now, record_id, MANUAL_PENDING))
            changed = cursor.rowcount
            row = conn.execute("SELECT * FROM manual_bookings WHERE id = ?", (record_id,)).fetchone()

        if row is None:
            raise ManualRecordNotFound(record_id)
        if not changed:
            raise ManualRecordAlreadyCompleted(record_id)
        return self._manual_from_row(row)

    # -------------------- 核验记录 --------------------

    async def record_verification_attempt(
        self,
        booking_id: str,
        visitor_name: str,
        id_number: str,
        *,
        found: bool,
        endpoint: Optional[str] = None,
    ) -> VerificationRecord:
        """记一次核验尝试；计数单调递增，已确认的记录不会被改回未找到"""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO verification_records (
                    booking_id, visitor_name, id_number, found, attempts,
                    last_attempt_at, found_at, last_endpoint
                ) VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(booking_id) DO UPDATE SET
                    visitor_name = excluded.visitor_name,
                    id_number = excluded.id_number,
                    attempts = verification_records.attempts + 1,
                    last_attempt_at = excluded.last_attempt_at,
                    found = MAX(verification_records.found, excluded.found),
                    found_at = COALESCE(verification_records.found_at, excluded.found_at),
                    last_endpoint = COALESCE(excluded.last_endpoint, verification_records.last_endpoint)
            """, (
                booking_id,
                visitor_name,
                id_number,
                1 if found else 0,
                now,
                now if found else None,
                endpoint,
            ))
            row = conn.execute(
                "SELECT * FROM verification_records WHERE booking_id = ?", (booking_id,)
            ).fetchone()
        return self._verification_from_row(row)

    @staticmethod
    def _verification_from_row(row: sqlite3.Row) -> VerificationRecord:
        return VerificationRecord(
            booking_id=row["booking_id"],
            visitor_name=row["visitor_name"],
            id_number=row["id_number"],
            found=bool(row["found"]),
            attempts=int(row["attempts"]),
            last_attempt_at=_parse_dt(row["last_attempt_at"]),
            found_at=_parse_dt(row["found_at"]),
            last_endpoint=row["last_endpoint"],
        )

    async def load_verification(self, booking_id: str) -> Optional[VerificationRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_records WHERE booking_id = ?", (booking_id,)
            ).fetchone()
        return self._verification_from_row(row) if row else None

    async def list_pending_verifications(self) -> List[VerificationRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM verification_records WHERE found = 0 ORDER BY last_attempt_at DESC"
            ).fetchall()
        return [self._verification_from_row(row) for row in rows]


# 全局数据库管理器实例
_db_manager: Optional[DatabaseManager] = None


def get_db_manager(db_path: Optional[str] = None) -> DatabaseManager:
    """获取数据库管理器实例"""
    global _db_manager
    if _db_manager is None or (db_path and Path(db_path) != _db_manager.db_path):
        if db_path is None:
            import config as CFG  # pylint: disable=import-outside-toplevel

            db_path = CFG.DB_PATH
        _db_manager = DatabaseManager(db_path)
    return _db_manager
