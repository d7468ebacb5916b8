"""Durable audit log of every proxied completion exchange.

Each exchange is one row in a SQLite ``requests`` table. The row is inserted
before the request is dispatched upstream and updated exactly once when the
exchange finishes, so a request that never completes still leaves a row with
empty completion fields.

Design principles:
- One connection, one lock: every store operation runs under the same
  asyncio.Lock, which makes id assignment linearizable (the id read after an
  insert is always the id of that insert).
- The lock is held for a single statement, never across a network call.
- Completion bookkeeping is best-effort; failures are logged, not raised.
"""

import asyncio
import json
import logging
import os
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_logger = logging.getLogger("aiswitch")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    provider_id TEXT NOT NULL,
    chat BOOLEAN DEFAULT FALSE,
    request TEXT NOT NULL,
    response TEXT,
    request_time TIMESTAMP NOT NULL,
    response_time TIMESTAMP,
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    model TEXT NOT NULL,
    speed INTEGER
)
"""

SORTABLE_COLUMNS = (
    "timestamp",
    "provider_id",
    "prompt_tokens",
    "completion_tokens",
    "request_time",
    "response_time",
    "chat",
    "model",
    "speed",
)

DEFAULT_PAGE_SIZE = 10


class AuditUnavailable(Exception):
    """Raised when an audit row cannot be created."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


@dataclass
class AuditSummary:
    """One row of the log listing."""

    id: int
    provider_id: str
    model: str
    chat: bool
    request_time: str
    response_time: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    speed: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class AuditRecord:
    """A full audit row with decoded request and response bodies."""

    id: int
    provider_id: str
    chat: bool
    model: str
    request: Any
    request_time: str
    response_time: Optional[str] = None
    response: Any = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    speed: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["response_time"] = self.response_time or ""
        for key in ("response", "prompt_tokens", "completion_tokens", "speed"):
            if data[key] is None:
                del data[key]
        return data


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_body(raw: Optional[str]) -> Any:
    """Decode a stored body as JSON, falling back to the raw text."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_sort(sort: Optional[str]) -> Tuple[str, str]:
    """Parse ``column[,asc|desc]`` into a whitelisted ORDER BY pair.

    Unknown columns fall back to newest-first by timestamp.
    """
    if not sort:
        return "timestamp", "DESC"
    column, _, direction = sort.partition(",")
    column = column.strip()
    if column not in SORTABLE_COLUMNS:
        return "timestamp", "DESC"
    return column, "DESC" if direction.strip().lower() == "desc" else "ASC"


class AuditLog:
    """SQLite-backed audit store with serialized access."""

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        if str(db_path) != ":memory:":
            os.makedirs(self._db_path.parent, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(db_path), check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(_SCHEMA)
        self._conn.commit()
        self._lock = asyncio.Lock()

    async def insert(
        self,
        *,
        provider_id: str,
        is_chat: bool,
        request_body: str,
        model: str,
    ) -> int:
        """Record the start of an exchange and return its row id.

        Raises:
            AuditUnavailable: If the store is closed or the insert fails.
        """
        async with self._lock:
            if self._conn is None:
                raise AuditUnavailable("Audit log is closed.")
            try:
                cursor = self._conn.execute(
                    "INSERT INTO requests (provider_id, chat, request, request_time, model) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (provider_id, is_chat, request_body, _now(), model),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise AuditUnavailable("Audit insert failed: {}".format(exc)) from exc
            return int(cursor.lastrowid)

    async def complete(
        self,
        record_id: int,
        *,
        response_body: str,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        tokens_per_second: Optional[int] = None,
    ) -> None:
        """Record the end of an exchange. Never raises."""
        async with self._lock:
            if self._conn is None:
                _logger.warning(
                    "Audit log closed; dropping completion for request %d", record_id
                )
                return
            try:
                self._conn.execute(
                    "UPDATE requests SET response = ?, response_time = ?, "
                    "prompt_tokens = ?, completion_tokens = ?, speed = ? WHERE id = ?",
                    (
                        response_body,
                        _now(),
                        prompt_tokens,
                        completion_tokens,
                        tokens_per_second,
                        record_id,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                _logger.warning(
                    "Failed to record completion for request %d: %s", record_id, exc
                )

    async def list_records(
        self,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
        sort: Optional[str] = None,
    ) -> Tuple[int, List[AuditSummary]]:
        """Return the number of completed rows and one page of them."""
        column, direction = parse_sort(sort)
        size = size if size > 0 else DEFAULT_PAGE_SIZE
        offset = max(page, 0) * size
        async with self._lock:
            if self._conn is None:
                return 0, []
            total = self._conn.execute(
                "SELECT COUNT(*) FROM requests WHERE response_time IS NOT NULL"
            ).fetchone()[0]
            rows = self._conn.execute(
                "SELECT id, provider_id, prompt_tokens, completion_tokens, request_time, "
                "response_time, chat, model, speed FROM requests "
                "WHERE response_time IS NOT NULL "
                "ORDER BY {} {}, id {} LIMIT ? OFFSET ?".format(
                    column, direction, direction
                ),
                (size, offset),
            ).fetchall()

        summaries = [
            AuditSummary(
                id=row["id"],
                provider_id=row["provider_id"],
                model=row["model"],
                chat=bool(row["chat"]),
                request_time=row["request_time"],
                response_time=row["response_time"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                speed=row["speed"],
            )
            for row in rows
        ]
        return int(total), summaries

    async def get_record(self, record_id: int) -> Optional[AuditRecord]:
        async with self._lock:
            if self._conn is None:
                return None
            row = self._conn.execute(
                "SELECT id, provider_id, chat, model, request, response, request_time, "
                "response_time, prompt_tokens, completion_tokens, speed "
                "FROM requests WHERE id = ?",
                (record_id,),
            ).fetchone()

        if row is None:
            return None
        return AuditRecord(
            id=row["id"],
            provider_id=row["provider_id"],
            chat=bool(row["chat"]),
            model=row["model"],
            request=_decode_body(row["request"]),
            request_time=row["request_time"],
            response_time=row["response_time"],
            response=_decode_body(row["response"]),
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            speed=row["speed"],
        )

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
