from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import threading
from typing import Callable, Dict, List, Optional

from .config.config_parser import ResolverConfig, load_config
from .config.logging_config import init_logging
from .errors import ConfigError, StoreUnavailable
from .forwarder import UpstreamForwarder
from .handlers import ResolutionHandlers
from .router import QueryRouter, build_rules
from .servers.server import DNSServer, Resolver
from .servers.tcp_server import serve_tcp, serve_tcp_threaded
from .store import open_store
from .store.base import BaseRecordStore


def build_resolver(config: ResolverConfig, store: BaseRecordStore) -> Resolver:
    """
    Brief: Wire handlers, router and forwarder into a Resolver.

    Inputs:
      - config: ResolverConfig (suffix, ttl, upstreams, timeouts).
      - store: Opened record store.

    Outputs:
      - Resolver usable as the UDP/TCP listeners' resolver callable.
    """
    handlers = ResolutionHandlers(store, config.suffix, config.ttl)
    router = QueryRouter(build_rules(config.suffix, handlers))
    forwarder = UpstreamForwarder(
        config.endpoints, timeout_ms=config.timeout_ms, pool_tcp=config.pool_tcp
    )
    return Resolver(router, forwarder)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="beacon",
        description="Authoritative-plus-forwarding DNS resolver",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=(
            "Path to YAML config. When omitted the server is configured from "
            "DNS_SUFFIX, DNS_PORT, DNS_TTL, DATABASE_URL and UPSTREAM_DNS* "
            "environment variables."
        ),
    )
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a config variable (overrides the environment); repeatable",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "error", "crit"],
        help="Override logging.level from the config",
    )
    return parser


def _start_asyncio_server(
    coro_factory: Callable, name: str, *, on_permission_error: Callable = None
) -> threading.Thread:
    """Run an asyncio server coroutine on its own event loop in a daemon thread."""

    def runner():
        try:
            loop = asyncio.new_event_loop()
        except PermissionError:
            # Sandboxes that forbid the loop's self-pipe get the threaded fallback.
            if on_permission_error is not None:
                on_permission_error()
            else:
                logging.getLogger("beacon.main").error(
                    "Asyncio loop creation failed for %s; no fallback provided", name
                )
            return
        try:
            asyncio.set_event_loop(loop)
            loop.run_until_complete(coro_factory())
        except Exception:
            logging.getLogger("beacon.main").exception("%s listener stopped", name)
        finally:
            loop.close()

    t = threading.Thread(target=runner, name=name, daemon=True)
    t.start()
    return t


def main(argv: List[str] | None = None) -> int:
    """
    Brief: Run the resolver until a shutdown signal arrives.
    Loads configuration, opens the record store, then serves UDP and TCP
    on the configured listen address.

    Inputs:
      - argv: Command-line arguments (defaults to sys.argv[1:]).

    Outputs:
      - int exit code: 0 after SIGHUP or KeyboardInterrupt, 1 on configuration
        or startup errors, 2 after SIGTERM/SIGINT.

    Example:
      beacon --config config/config.yaml -v DNS_PORT=5353
      DNS_SUFFIX=internal.example DATABASE_URL=sqlite:///records.db \\
        UPSTREAM_DNS1_IP=1.1.1.1 DNS_PORT=5353 beacon
    """
    args = _build_parser().parse_args(argv)

    try:
        config = load_config(args.config, cli_vars=args.var)
    except ConfigError as exc:
        print(str(exc))
        return 1

    init_logging(config.logging, level=args.log_level)
    logger = logging.getLogger("beacon.main")
    logger.info("Loaded config from %s", args.config or "environment")

    try:
        store = open_store(config.store.url, timeout_ms=config.store.timeout_ms)
    except (ConfigError, StoreUnavailable) as exc:
        logger.error("Cannot open record store: %s", exc)
        return 1

    resolver = build_resolver(config, store)

    logger.info("Serving zone %s with ttl %d", config.suffix, config.ttl)
    if config.upstreams:
        logger.info(
            "Upstreams: [%s], timeout: %dms",
            ", ".join(str(e) for e in config.endpoints),
            config.timeout_ms,
        )
    else:
        logger.warning("No upstreams configured; forwarded queries get SERVFAIL")

    host, port = config.listen.host, config.listen.port
    server: Optional[DNSServer] = None
    udp_thread: Optional[threading.Thread] = None
    udp_error: Optional[Exception] = None
    shutdown_event = threading.Event()
    exit_code = 0

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        shutdown_event.set()
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)

    handlers: Dict[int, Callable] = {
        signal.SIGHUP: lambda _s, _f: _request_shutdown("SIGHUP", 0),
        signal.SIGTERM: lambda _s, _f: _request_shutdown("SIGTERM", 2),
        signal.SIGINT: lambda _s, _f: _request_shutdown("SIGINT", 2),
    }
    previous: Dict[int, object] = {}
    for signum, handler in handlers.items():
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not the main thread (embedded use); rely on KeyboardInterrupt.
            logger.debug("Could not install handler for signal %d", signum)

    try:
        if config.listen.udp:
            try:
                server = DNSServer(host, port, resolver)
            except OSError as e:
                logger.error("Failed to start UDP listener on %s:%d: %s", host, port, e)
                return 1

            def _run_udp() -> None:
                nonlocal udp_error
                try:
                    server.serve_forever()
                except Exception as e:  # pragma: no cover - propagated via udp_error
                    udp_error = e

            logger.info("Starting UDP listener on %s:%d", host, server.port)
            udp_thread = threading.Thread(target=_run_udp, name="beacon-udp", daemon=True)
            udp_thread.start()

        if config.listen.tcp:
            idle = config.listen.tcp_idle_timeout
            # Port 0: share the port the UDP listener was given.
            tport = server.port if server is not None else port
            logger.info("Starting TCP listener on %s:%d", host, tport)
            _start_asyncio_server(
                lambda: serve_tcp(host, tport, resolver, idle_timeout=idle),
                name="beacon-tcp",
                on_permission_error=lambda: serve_tcp_threaded(
                    host, tport, resolver, idle_timeout=idle
                ),
            )

        logger.info("Resolver ready")

        while not shutdown_event.is_set():
            if udp_error is not None:
                logger.error("Unhandled exception in UDP listener: %s", udp_error)
                exit_code = 1
                break
            if udp_thread is not None and not udp_thread.is_alive():
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        shutdown_event.set()
    finally:
        if server is not None:
            server.stop()
        if udp_thread is not None:
            udp_thread.join(timeout=5.0)
        store.close()
        for signum, old in previous.items():
            if old is not None:
                signal.signal(signum, old)

    return exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
