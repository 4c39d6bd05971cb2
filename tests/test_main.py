"""
Brief: Tests for prodoh.main startup, signal handling and shutdown.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import signal

import pytest

import prodoh.main as main_mod


class _DummyServer:
    """DNSServer stand-in whose serve loop fires a captured signal handler."""

    instances = []

    def __init__(self, config, resolver=None):
        self.config = config
        self.stopped = False
        self.served = False
        type(self).instances.append(self)

    def serve_forever(self):
        self.served = True
        handler = _captured.get(signal.SIGTERM)
        if handler is not None:
            handler(signal.SIGTERM, None)

    def stop(self):
        self.stopped = True


_captured = {}


@pytest.fixture
def patched_main(monkeypatch):
    """
    Brief: Replace DNSServer, logging and signal registration in prodoh.main.

    Outputs:
      - dict of captured signal handlers
    """
    _captured.clear()
    _DummyServer.instances.clear()
    logging_cfgs = []

    def fake_signal(sig, handler):
        _captured[sig] = handler
        return None

    monkeypatch.setattr(main_mod, "DNSServer", _DummyServer)
    monkeypatch.setattr(main_mod, "init_logging", lambda cfg: logging_cfgs.append(cfg))
    monkeypatch.setattr(main_mod.signal, "signal", fake_signal)
    return {"handlers": _captured, "logging": logging_cfgs}


def test_main_serves_until_sigterm_then_stops(patched_main):
    """
    Brief: main() binds, installs SIGINT/SIGTERM handlers, and stops on SIGTERM.

    Inputs:
      - patched_main fixture

    Outputs:
      - None: Asserts exit code 0 and server.stop() called
    """
    rc = main_mod.main(
        ["-address", "127.0.0.1:5399", "-upstream", "https://dns.google/resolve"]
    )
    assert rc == 0
    assert set(patched_main["handlers"]) == {signal.SIGINT, signal.SIGTERM}
    (server,) = _DummyServer.instances
    assert server.served and server.stopped
    assert server.config.port == 5399
    assert server.config.upstreams == ("https://dns.google/resolve",)


def test_main_passes_log_level_to_init_logging(patched_main):
    main_mod.main(["-upstream", "https://dns.google/resolve", "--log-level", "debug"])
    assert patched_main["logging"][-1]["level"] == "debug"


def test_main_without_upstream_fails_before_binding(patched_main):
    rc = main_mod.main(["-address", "127.0.0.1:5399"])
    assert rc == 1
    assert _DummyServer.instances == []
    assert patched_main["handlers"] == {}


def test_main_bind_failure_returns_one(monkeypatch, patched_main):
    class _Unbindable:
        def __init__(self, config, resolver=None):
            raise OSError("Address already in use")

    monkeypatch.setattr(main_mod, "DNSServer", _Unbindable)
    assert main_mod.main(["-upstream", "https://dns.google/resolve"]) == 1


def test_main_returns_one_when_listener_dies(monkeypatch, patched_main):
    class _Crashing(_DummyServer):
        def serve_forever(self):
            raise RuntimeError("socket gone")

    monkeypatch.setattr(main_mod, "DNSServer", _Crashing)
    assert main_mod.main(["-upstream", "https://dns.google/resolve"]) == 1
    assert _Crashing.instances[-1].stopped


def test_signal_handler_is_idempotent(monkeypatch, patched_main, caplog):
    class _DoubleSignal(_DummyServer):
        def serve_forever(self):
            handler = _captured[signal.SIGINT]
            handler(signal.SIGINT, None)
            handler(signal.SIGTERM, None)

    monkeypatch.setattr(main_mod, "DNSServer", _DoubleSignal)
    caplog.set_level(logging.INFO, logger="prodoh.main")
    assert main_mod.main(["-upstream", "https://dns.google/resolve"]) == 0
    shutdown_logs = [r for r in caplog.records if "shutting down" in r.getMessage()]
    assert len(shutdown_logs) == 1
    assert "SIGINT" in shutdown_logs[0].getMessage()
