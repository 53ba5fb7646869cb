"""
Brief: Global pytest configuration enforcing per-test 10s timeout.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys

import pytest

# Ensure 'src' is on sys.path so 'beacon' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from beacon.models import Record  # noqa: E402
from beacon.servers.transports import tcp as tcp_transport  # noqa: E402
from beacon.store.memory import MemoryRecordStore  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


@pytest.fixture(autouse=True)
def reset_tcp_pools():
    """
    Brief: Drop pooled upstream TCP connections between tests.

    Inputs:
      - None

    Outputs:
      - None
    """
    yield
    with tcp_transport._POOLS_LOCK:
        pools = list(tcp_transport._POOLS.values())
        tcp_transport._POOLS.clear()
    for pool in pools:
        pool.close()


@pytest.fixture
def zone_store():
    """
    Brief: Memory store seeded with a small internal.example zone.

    Inputs:
      - None

    Outputs:
      - MemoryRecordStore
    """
    return MemoryRecordStore(
        [
            Record("www", "A", ipv4_address="10.0.0.5"),
            Record("www", "A", ipv4_address="10.0.0.6"),
            Record("www", "AAAA", ipv6_address="fd00::5"),
            Record("alias", "CNAME", cname="www.internal.example"),
            Record("alias", "CNAME", cname="other.internal.example"),
            Record("mail", "MX", cname="mx1.internal.example", priority=5),
            Record("mail", "MX", cname="mx2.internal.example"),
            Record("legacy", "A", ipv4_address="1.2.3.4"),
            Record("broken", "A", ipv4_address="not-an-ip"),
        ]
    )
