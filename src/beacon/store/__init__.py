"""Record store backends and the URL-based loader.

Inputs:
  - A store URL such as ``sqlite:///var/lib/beacon/records.db``,
    ``postgresql://dns@db/zone`` or ``memory://``.

Outputs:
  - open_store(): a BaseRecordStore instance for the URL's scheme.
"""

from __future__ import annotations

import logging
from typing import Dict, Type

from ..errors import ConfigError, StoreUnavailable
from .base import BaseRecordStore, ByIPv4, ByIPv6, ByNameAndType, RecordFilter
from .memory import MemoryRecordStore
from .postgresql import PostgresRecordStore
from .sqlite import SqliteRecordStore

logger = logging.getLogger(__name__)

__all__ = [
    "BaseRecordStore",
    "ByIPv4",
    "ByIPv6",
    "ByNameAndType",
    "MemoryRecordStore",
    "PostgresRecordStore",
    "RecordFilter",
    "SqliteRecordStore",
    "StoreUnavailable",
    "discover_backends",
    "open_store",
]


def discover_backends() -> Dict[str, Type[BaseRecordStore]]:
    """Brief: Map every URL scheme alias to its backend class.

    Inputs:
      - None.

    Outputs:
      - dict: alias -> BaseRecordStore subclass.
    """

    registry: Dict[str, Type[BaseRecordStore]] = {}
    for cls in (SqliteRecordStore, PostgresRecordStore, MemoryRecordStore):
        for alias in cls.aliases:
            registry[alias] = cls
    return registry


def open_store(url: str, timeout_ms: int = 2000) -> BaseRecordStore:
    """Brief: Construct the record store described by *url*.

    Inputs:
      - url: Store URL; the scheme selects the backend.
      - timeout_ms: Per-lookup timeout passed to the backend.

    Outputs:
      - BaseRecordStore instance.

    Raises:
      - ConfigError: missing/unknown scheme, or an unusable URL.

    Example:
      >>> open_store("memory://").by_ipv4("10.0.0.1")
      []
    """

    if not isinstance(url, str) or "://" not in url:
        raise ConfigError(f"store url must look like scheme://..., got {url!r}")
    scheme, rest = url.split("://", 1)
    scheme = scheme.strip().lower()
    # SQLAlchemy-style driver suffixes (postgresql+psycopg://) select the base scheme.
    base_scheme = scheme.split("+", 1)[0]

    cls = discover_backends().get(base_scheme)
    if cls is None:
        raise ConfigError(f"unsupported record store scheme {scheme!r}")

    logger.debug("Opening %s record store", cls.__name__)
    if cls is SqliteRecordStore:
        if not rest:
            raise ConfigError("sqlite store url needs a database path")
        return SqliteRecordStore(rest, timeout_ms=timeout_ms)
    if cls is PostgresRecordStore:
        return PostgresRecordStore(f"postgresql://{rest}", timeout_ms=timeout_ms)
    return cls()
