"""Exception hierarchy shared by the prodoh resolver pipeline.

Per-upstream failures (``UnsupportedType`` and the ``DoHError`` family) are
caught by the failover loop and turned into "try the next upstream". Only
``AllUpstreamsFailed`` and ``InvalidRequest`` reach the DNS handler, and both
are answered with SERVFAIL.
"""

from __future__ import annotations


class ProdohError(Exception):
    """Base class for all prodoh errors."""


class ConfigError(ProdohError):
    """Startup configuration is missing or invalid."""


class UnsupportedType(ProdohError):
    """
    Brief: A DNS record type is outside the supported mnemonic table.

    Inputs:
      - rtype: numeric type code or mnemonic that could not be mapped.

    Outputs:
      - Exception instance exposing ``rtype``.
    """

    def __init__(self, rtype) -> None:
        self.rtype = rtype
        super().__init__(f"Unsupported type {rtype}")


class DoHError(ProdohError):
    """Failure while talking to a single DNS-over-HTTPS upstream."""


class NetworkError(DoHError):
    """Transport failure: refused connection, timeout, TLS or HTTP error."""


class DecodeError(DoHError):
    """The upstream body is not a well-formed DNS JSON envelope."""


class UpstreamRejected(DoHError):
    """
    Brief: The upstream answered with a non-zero DNS status.

    Inputs:
      - status: DNS response code reported in the JSON ``Status`` field.

    Outputs:
      - Exception instance exposing ``status``.
    """

    def __init__(self, status: int) -> None:
        self.status = int(status)
        super().__init__(f"DoH failed response code {self.status}")


class RecordParseError(DoHError):
    """A synthesized master-file line could not be turned into a record."""


class AllUpstreamsFailed(ProdohError):
    """
    Brief: Every configured upstream failed for one question.

    Inputs:
      - qname: query name that could not be resolved.
      - qtype: numeric query type.
      - attempts: number of upstreams tried.

    Outputs:
      - Exception instance; carries no upstream error detail.
    """

    def __init__(self, qname: str, qtype: int, attempts: int) -> None:
        self.qname = qname
        self.qtype = qtype
        self.attempts = attempts
        super().__init__(
            f"All {attempts} upstream(s) failed for {qname} type {qtype}"
        )


class InvalidRequest(ProdohError):
    """The DNS request has no questions or is not a standard query."""
