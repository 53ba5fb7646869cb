"""
Brief: Tests for beacon.main CLI bootstrap.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import signal
import textwrap
import threading

import pytest
from dnslib import RCODE, DNSRecord

import beacon.main as main_mod
from beacon.config.config_parser import build_resolver_config


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


def _config_file(tmp_path, udp="true", tcp="false"):
    path = tmp_path / "config.yaml"
    path.write_text(
        textwrap.dedent(
            f"""
            server:
              host: 127.0.0.1
              port: 0
              udp: {udp}
              tcp: {tcp}
            zone:
              suffix: internal.example
            store:
              url: memory://
            upstreams: []
            logging:
              stderr: false
            """
        )
    )
    return str(path)


def test_build_resolver_wires_pipeline(zone_store):
    """Brief: build_resolver answers local names from the given store."""
    config = build_resolver_config(
        {"zone": {"suffix": "internal.example", "ttl": 42}, "store": {"url": "memory://"}}
    )
    resolver = main_mod.build_resolver(config, zone_store)
    q = DNSRecord.question("www.internal.example", "A")
    resp = DNSRecord.parse(resolver(q.pack(), "127.0.0.1"))
    assert [str(rr.rdata) for rr in resp.rr] == ["10.0.0.5", "10.0.0.6"]
    assert resp.rr[0].ttl == 42

    q2 = DNSRecord.question("example.com", "A")
    assert DNSRecord.parse(resolver(q2.pack(), "127.0.0.1")).header.rcode == RCODE.SERVFAIL


def test_main_bad_config_returns_1(tmp_path, capsys):
    """Brief: Configuration errors print a message and exit with 1."""
    path = tmp_path / "config.yaml"
    path.write_text("zone: {suffix: internal.example}\n")
    assert main_mod.main(["--config", str(path)]) == 1
    assert "store" in capsys.readouterr().out


def test_main_bad_store_returns_1(tmp_path):
    """Brief: An unsupported store URL exits with 1."""
    path = tmp_path / "config.yaml"
    path.write_text("zone: {suffix: internal.example}\nstore: {url: 'mysql://db'}\nlogging: {stderr: false}\n")
    assert main_mod.main(["--config", str(path)]) == 1


def test_main_unopenable_sqlite_store_returns_1(tmp_path):
    """Brief: A sqlite path that cannot be created exits with 1, not a traceback."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    path = tmp_path / "config.yaml"
    path.write_text(
        "zone: {suffix: internal.example}\n"
        f"store: {{url: 'sqlite:///{blocker}/sub/records.db'}}\n"
        "logging: {stderr: false}\n"
    )
    assert main_mod.main(["--config", str(path)]) == 1


def test_main_exits_when_udp_listener_stops(tmp_path, monkeypatch):
    """Brief: main returns once the UDP listener thread ends and closes the server."""
    events = []

    class _DummyServer:
        def __init__(self, host, port, resolver):
            events.append(("init", host, port))
            self.port = 5399

        def serve_forever(self):
            events.append("serve")

        def stop(self):
            events.append("stop")

    monkeypatch.setattr(main_mod, "DNSServer", _DummyServer)
    previous = signal.getsignal(signal.SIGTERM)

    assert main_mod.main(["--config", _config_file(tmp_path)]) == 0
    assert events == [("init", "127.0.0.1", 0), "serve", "stop"]
    assert signal.getsignal(signal.SIGTERM) == previous


def test_main_sigterm_sets_exit_code(tmp_path, monkeypatch):
    """Brief: SIGTERM triggers a coordinated shutdown with exit code 2."""
    stopped = threading.Event()

    class _BlockingServer:
        def __init__(self, host, port, resolver):
            self.port = 5399

        def serve_forever(self):
            stopped.wait(5.0)

        def stop(self):
            stopped.set()

    monkeypatch.setattr(main_mod, "DNSServer", _BlockingServer)
    real_signal = signal.signal
    installed = {}

    def capture(signum, handler):
        installed[signum] = handler
        return real_signal(signum, handler)

    monkeypatch.setattr(main_mod.signal, "signal", capture)
    timer = threading.Timer(0.2, lambda: installed[signal.SIGTERM](signal.SIGTERM, None))
    timer.start()
    try:
        assert main_mod.main(["--config", _config_file(tmp_path)]) == 2
    finally:
        timer.cancel()
    assert stopped.is_set()


def test_main_starts_tcp_listener(tmp_path, monkeypatch):
    """Brief: listen.tcp starts the asyncio TCP listener on the resolved port."""
    started = []

    monkeypatch.setattr(
        main_mod,
        "_start_asyncio_server",
        lambda factory, name, on_permission_error=None: started.append(name),
    )

    class _DummyServer:
        def __init__(self, host, port, resolver):
            self.port = 5399

        def serve_forever(self):
            return None

        def stop(self):
            return None

    monkeypatch.setattr(main_mod, "DNSServer", _DummyServer)
    assert main_mod.main(["--config", _config_file(tmp_path, tcp="true")]) == 0
    assert started == ["beacon-tcp"]
