"""Command-line and YAML configuration for prodoh.

The result of parsing is a single frozen ``ProxyConfig`` built once at
startup and handed to the UDP listener; nothing here is mutated afterwards.

Example YAML file (every key optional, flags override it)::

    address: "127.0.0.1:5354"
    upstream:
      - https://dns.google/resolve
      - https://cloudflare-dns.com/dns-query
    timeout: 5
    tls:
      verify: true
    logging:
      level: info
      file: ./prodoh.log
"""

from __future__ import annotations

import argparse
import urllib.parse
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ConfigError


DEFAULT_ADDRESS = ":5354"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class ProxyConfig:
    """
    Brief: Immutable runtime configuration shared by all query handlers.

    Inputs:
      - upstreams: ordered DoH endpoint URLs (at least one).
      - host/port: UDP bind address; host "" binds all interfaces.
      - timeout: per-upstream deadline in seconds, None for no deadline.
      - verify_tls: verify upstream certificates.
      - log_config: mapping passed to init_logging().

    Outputs:
      - ProxyConfig instance.
    """

    upstreams: Tuple[str, ...]
    host: str = ""
    port: int = 5354
    timeout: Optional[float] = DEFAULT_TIMEOUT
    verify_tls: bool = True
    log_config: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def address(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


class ListenModel(BaseModel):
    host: str = ""
    port: int = Field(default=5354, ge=0, le=65535)


class TLSModel(BaseModel):
    verify: bool = True


class ConfigFileModel(BaseModel):
    """Brief: Typed schema of the optional YAML configuration file."""

    model_config = ConfigDict(extra="forbid")

    address: Optional[str] = None
    listen: Optional[ListenModel] = None
    upstream: List[str] = Field(default_factory=list)
    timeout: Optional[float] = None
    tls: TLSModel = Field(default_factory=TLSModel)
    logging: Dict[str, Any] = Field(default_factory=dict)


def normalize_timeout(value: Optional[float]) -> Optional[float]:
    """Return the timeout in seconds, or None when it is missing, zero or negative."""
    if value is None:
        return None
    value = float(value)
    return value if value > 0 else None


def parse_address(address: str) -> Tuple[str, int]:
    """
    Brief: Split a ``host:port`` listen address.

    Inputs:
      - address: e.g. '127.0.0.1:53', ':5354' or '[::1]:5354'.

    Outputs:
      - (host, port) with IPv6 brackets stripped; '' means all interfaces.

    Example:
        >>> parse_address(":5354")
        ('', 5354)
    """
    host, sep, port_str = str(address).strip().rpartition(":")
    if not sep:
        raise ConfigError(f"address must be host:port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"IPv6 address must be bracketed, got {address!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigError(f"invalid port in address {address!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in address {address!r}")
    return host, port


def validate_upstream_url(url: str) -> str:
    """Return url stripped of whitespace; raise ConfigError unless it is http(s) with a host."""
    url = str(url).strip()
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("https", "http") or not parsed.hostname:
        raise ConfigError(f"upstream must be an http(s) URL, got {url!r}")
    return url


def load_config_file(path: str) -> ConfigFileModel:
    """
    Brief: Read and validate a YAML configuration file.

    Inputs:
      - path: filesystem path to the YAML document.

    Outputs:
      - ConfigFileModel; an empty document yields all defaults.

    Raises ConfigError when the file cannot be read, is not YAML or does not
    match ConfigFileModel.
    """
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    try:
        return ConfigFileModel.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration in {path}: {e}") from e


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI parser. Single-dash long flags match the classic spelling."""
    parser = argparse.ArgumentParser(
        prog="prodoh",
        description="DNS over UDP to DNS-over-HTTPS (JSON API) proxy",
    )
    parser.add_argument(
        "-address",
        "--address",
        default=None,
        help=f"UDP address to listen on, host:port (default {DEFAULT_ADDRESS})",
    )
    parser.add_argument(
        "-upstream",
        "--upstream",
        action="append",
        default=None,
        help="DoH JSON upstream URL; repeat for fallback upstreams (required)",
    )
    parser.add_argument(
        "-timeout",
        "--timeout",
        type=float,
        default=None,
        help=(
            f"Timeout in seconds for each upstream request (default {DEFAULT_TIMEOUT:g}); "
            "zero or negative disables the deadline"
        ),
    )
    parser.add_argument("--config", default=None, help="Optional YAML config file")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "warning", "error", "crit", "critical"],
        help="Logging level (default info)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Do not verify upstream TLS certificates",
    )
    return parser


def build_config(argv: Optional[Sequence[str]] = None) -> ProxyConfig:
    """
    Brief: Produce the runtime ProxyConfig from flags and an optional file.

    Inputs:
      - argv: command-line arguments (sys.argv[1:] when None).

    Outputs:
      - ProxyConfig

    Flags win over file values; -upstream flags replace the file's list.
    Raises ConfigError when no upstream is configured or a value is invalid.
    """
    args = build_arg_parser().parse_args(argv)
    file_cfg = load_config_file(args.config) if args.config else ConfigFileModel()

    if args.address is not None:
        host, port = parse_address(args.address)
    elif file_cfg.address is not None:
        host, port = parse_address(file_cfg.address)
    elif file_cfg.listen is not None:
        host, port = file_cfg.listen.host, file_cfg.listen.port
    else:
        host, port = parse_address(DEFAULT_ADDRESS)

    raw_upstreams = args.upstream or file_cfg.upstream
    if not raw_upstreams:
        raise ConfigError("-upstream is required")
    upstreams = tuple(validate_upstream_url(u) for u in raw_upstreams)

    if args.timeout is not None:
        timeout = normalize_timeout(args.timeout)
    elif file_cfg.timeout is not None:
        timeout = normalize_timeout(file_cfg.timeout)
    else:
        timeout = DEFAULT_TIMEOUT

    log_config: Dict[str, Any] = dict(file_cfg.logging)
    if args.log_level:
        log_config["level"] = args.log_level

    return ProxyConfig(
        upstreams=upstreams,
        host=host,
        port=port,
        timeout=timeout,
        verify_tls=file_cfg.tls.verify and not args.insecure,
        log_config=MappingProxyType(log_config),
    )
