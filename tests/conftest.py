"""
Brief: Global pytest configuration and shared fixtures.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys

import pytest
from dnslib import RR

# Ensure 'src' is on sys.path so 'prodoh' is importable without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from prodoh.config.config_parser import ProxyConfig  # noqa: E402


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


@pytest.fixture
def proxy_config():
    """
    Brief: Two-upstream ProxyConfig bound to an ephemeral localhost port.

    Outputs:
      - ProxyConfig
    """
    return ProxyConfig(
        upstreams=("https://u1.example/resolve", "https://u2.example/resolve"),
        host="127.0.0.1",
        port=0,
        timeout=1.0,
    )


@pytest.fixture
def a_record():
    """Brief: The example.com A record most tests resolve to."""
    return RR.fromZone("example.com. 300 IN A 93.184.216.34")[0]
