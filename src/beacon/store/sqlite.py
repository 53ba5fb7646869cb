"""SQLite-backed record store.

Inputs:
  - db_path: path to a SQLite database file holding a ``dns_records`` table.

Outputs:
  - SqliteRecordStore implementing the BaseRecordStore filters.

Notes:
  - sqlite3 connections must not be shared across threads, so each handler
    thread lazily opens its own connection. A ":memory:" database is therefore
    private to each thread and only useful for single-threaded tests.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from typing import Any, List, Optional

from ..errors import StoreUnavailable
from ..models import Record
from .base import (
    BaseRecordStore,
    ByIPv4,
    ByIPv6,
    ByNameAndType,
    ipv6_where_clause,
    row_to_record,
)

logger = logging.getLogger(__name__)

COLUMNS = "name, type, ipv4address, ipv6address, cname, priority"

SCHEMA = """
CREATE TABLE IF NOT EXISTS dns_records (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    type        TEXT NOT NULL,
    ipv4address TEXT NULL,
    ipv6address TEXT NULL,
    cname       TEXT NULL,
    priority    INTEGER NULL
)
"""

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_dns_records_name_type ON dns_records(name, type)",
    "CREATE INDEX IF NOT EXISTS idx_dns_records_ipv4 ON dns_records(ipv4address)",
    "CREATE INDEX IF NOT EXISTS idx_dns_records_ipv6 ON dns_records(ipv6address)",
)


class SqliteRecordStore(BaseRecordStore):
    """SQLite implementation of the record store.

    Inputs (constructor):
      - db_path: Database file path; parent directories are created.
      - timeout_ms: Busy timeout; a lookup blocked longer than this fails with
        StoreUnavailable.
      - create_schema: Create the dns_records table when missing.

    Raises (constructor):
      - StoreUnavailable: the directory or database cannot be created.

    Outputs:
      - Initialized store.
    """

    aliases = ("sqlite", "sqlite3")

    def __init__(
        self,
        db_path: str,
        timeout_ms: int = 2000,
        create_schema: bool = True,
        **_: Any,
    ) -> None:
        self._db_path = db_path
        self._timeout = max(0.0, int(timeout_ms) / 1000.0)
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

        try:
            if db_path != ":memory:":
                dir_path = os.path.dirname(os.path.abspath(db_path))
                if dir_path:
                    os.makedirs(dir_path, exist_ok=True)

            if create_schema:
                conn = self._connection()
                conn.execute(SCHEMA)
                for stmt in INDEXES:
                    conn.execute(stmt)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            self.close()
            raise StoreUnavailable(f"cannot open sqlite store {db_path}: {e}") from e

    def _connection(self) -> sqlite3.Connection:
        conn: Optional[sqlite3.Connection] = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._db_path, timeout=self._timeout, check_same_thread=False
            )
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def _select(self, where: str, params: List[Any]) -> List[Record]:
        cur = self._connection().execute(
            f"SELECT {COLUMNS} FROM dns_records WHERE {where} ORDER BY id",
            params,
        )
        try:
            return [row_to_record(row) for row in cur.fetchall()]
        finally:
            cur.close()

    def _by_name_and_type(self, f: ByNameAndType) -> List[Record]:
        return self._select(
            "lower(name) = ? AND upper(type) = ?", [f.name.lower(), f.type]
        )

    def _by_ipv4(self, f: ByIPv4) -> List[Record]:
        return self._select("ipv4address = ?", [f.address])

    def _by_ipv6(self, f: ByIPv6) -> List[Record]:
        clause, params = ipv6_where_clause(f, "?")
        if clause is None:
            return []
        return self._select(clause, params)

    def close(self) -> None:
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error:  # pragma: no cover
                logger.debug("Error closing sqlite connection", exc_info=True)
        self._local = threading.local()
