"""In-memory record store.

Brief:
  Holds a fixed list of Record values. Used for ``memory://`` store URLs and
  throughout the tests.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable, List, Optional

from ..models import Record
from .base import BaseRecordStore, ByIPv4, ByIPv6, ByNameAndType


class MemoryRecordStore(BaseRecordStore):
    """Record store backed by a Python list.

    Inputs (constructor):
      - records: Optional initial records.

    Outputs:
      - Initialized store.

    Example:
      >>> store = MemoryRecordStore([Record("www", "A", ipv4_address="10.0.0.5")])
      >>> [r.ipv4_address for r in store.by_name_and_type("www", "A")]
      ['10.0.0.5']
    """

    aliases = ("memory", "mem")

    def __init__(self, records: Optional[Iterable[Record]] = None, **_: Any) -> None:
        self._lock = threading.Lock()
        self._records: List[Record] = list(records or [])

    def add(self, record: Record) -> None:
        with self._lock:
            self._records.append(record)

    def _snapshot(self) -> List[Record]:
        with self._lock:
            return list(self._records)

    def _by_name_and_type(self, f: ByNameAndType) -> List[Record]:
        name = f.name.lower()
        return [
            r
            for r in self._snapshot()
            if r.name.lower() == name and r.type.upper() == f.type
        ]

    def _by_ipv4(self, f: ByIPv4) -> List[Record]:
        return [r for r in self._snapshot() if r.ipv4_address == f.address]

    def _by_ipv6(self, f: ByIPv6) -> List[Record]:
        v6 = {c.lower() for c in f.ipv6}
        v4 = set(f.ipv4)
        return [
            r
            for r in self._snapshot()
            if (r.ipv6_address is not None and r.ipv6_address.lower() in v6)
            or (r.ipv4_address is not None and r.ipv4_address in v4)
        ]
