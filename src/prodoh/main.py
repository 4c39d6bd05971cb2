from __future__ import annotations

import logging
import signal
import threading
from typing import List

from .config.config_parser import build_config
from .config.logging_config import init_logging
from .errors import ConfigError
from .servers.server import DNSServer


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the proxy.
    Parses flags, configures logging, binds the UDP listener and serves until
    SIGINT or SIGTERM.

    Args:
        argv: Command-line arguments (sys.argv[1:] when None).

    Returns:
        0 after a signal-driven shutdown, 1 on configuration or bind errors.

    Example use:
        CLI:
            prodoh -address 127.0.0.1:5354 -upstream https://dns.google/resolve
    """
    try:
        config = build_config(argv)
    except ConfigError as exc:
        init_logging(None)
        logging.getLogger("prodoh.main").error("Fatal: %s", exc)
        return 1

    init_logging(config.log_config)
    logger = logging.getLogger("prodoh.main")

    try:
        server = DNSServer(config)
    except OSError as exc:
        logger.error("Could not listen on %s: %s", config.address, exc)
        return 1

    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame) -> None:
        if shutdown_event.is_set():
            return
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _request_shutdown)
        except (ValueError, OSError):  # pragma: no cover - not the main thread
            logger.warning("Could not install %s handler", sig.name)

    logger.info(
        "Upstreams: [%s], timeout: %s",
        ", ".join(config.upstreams),
        f"{config.timeout:g}s" if config.timeout else "disabled",
    )
    logger.info("Listening at %s", config.address)

    udp_thread = threading.Thread(
        target=server.serve_forever, name="prodoh-udp", daemon=True
    )
    udp_thread.start()

    exit_code = 0
    while not shutdown_event.wait(1.0):
        if not udp_thread.is_alive():
            logger.error("UDP listener stopped unexpectedly")
            exit_code = 1
            break

    server.stop()
    udp_thread.join(timeout=5.0)
    logger.info("Shutdown complete")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
