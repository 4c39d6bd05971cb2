"""DNS-over-HTTPS client for the JSON flavour of the protocol.

Upstreams such as https://dns.google/resolve and
https://cloudflare-dns.com/dns-query answer ``GET ?name=...&type=...`` with
an ``application/dns-json`` body. Each answer is rebuilt as a dnslib ``RR``
by formatting it as a master-file line and parsing that line.
"""

from __future__ import annotations

import importlib.metadata
import json
import logging
import time
from typing import List, Mapping, Optional

import requests
from dnslib import RR
from dnslib.label import DNSBuffer
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...errors import DecodeError, NetworkError, RecordParseError, UpstreamRejected
from ...qtypes import code_to_mnemonic

logger = logging.getLogger("prodoh.transports.doh_json")

DNS_JSON = "application/dns-json"

try:
    PRODOH_VERSION = importlib.metadata.version("prodoh")
except importlib.metadata.PackageNotFoundError:  # pragma: no cover - source checkout
    PRODOH_VERSION = "unknown"

# Mnemonics dnslib cannot parse directly but which share another type's
# master-file syntax.
_ZONE_SYNTAX = {"SPF": "TXT"}

_READ_CHUNK = 1


class DoHQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    rtype: int = Field(alias="type")


class DoHAnswer(BaseModel):
    """Brief: Single entry of the JSON ``Answer`` list."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    rtype: int = Field(alias="type")
    ttl: int = Field(alias="TTL")
    data: str


class DoHResponse(BaseModel):
    """
    Brief: Decoded DNS JSON envelope.

    Inputs:
      - Status: DNS response code, 0 on success (required).
      - TC/RD/RA/AD/CD: header flags, default False when absent.
      - Question/Answer: echoed questions and answer records.

    Outputs:
      - DoHResponse instance; unknown keys (Authority, Comment, ...) ignored.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: int = Field(alias="Status")
    truncated: bool = Field(default=False, alias="TC")
    recursion_desired: bool = Field(default=False, alias="RD")
    recursion_available: bool = Field(default=False, alias="RA")
    authenticated_data: bool = Field(default=False, alias="AD")
    checking_disabled: bool = Field(default=False, alias="CD")
    question: List[DoHQuestion] = Field(default_factory=list, alias="Question")
    answer: List[DoHAnswer] = Field(default_factory=list, alias="Answer")


def _effective_timeout(timeout: Optional[float]) -> Optional[float]:
    """Zero, negative or missing timeouts mean no deadline."""
    if timeout is None:
        return None
    timeout = float(timeout)
    return timeout if timeout > 0 else None


def _read_body(resp, deadline: Optional[float]) -> bytes:
    """
    Brief: Read a streamed response body, giving up once the deadline passes.

    Inputs:
      - resp: requests.Response opened with stream=True
      - deadline: time.monotonic() value, or None for no limit

    Outputs:
      - bytes: the complete body

    The deadline covers the whole body; requests itself bounds only the
    connect and each individual socket read.
    """
    chunks = []
    if deadline is not None and time.monotonic() > deadline:
        raise NetworkError("Deadline exceeded before response body")
    # Single-byte reads return as soon as anything arrives
    for chunk in resp.iter_content(chunk_size=_READ_CHUNK):
        if deadline is not None and time.monotonic() > deadline:
            raise NetworkError("Deadline exceeded while reading response body")
        chunks.append(chunk)
    return b"".join(chunks)


def format_master_file_line(name: str, ttl: int, mnemonic: str, data: str) -> str:
    """
    Brief: Render one record as master-file text.

    Example:
        >>> format_master_file_line("example.com.", 300, "A", "93.184.216.34")
        'example.com. 300 IN A 93.184.216.34'
    """
    return f"{name} {ttl} IN {mnemonic} {data}"


def answer_to_rr(answer: DoHAnswer) -> RR:
    """
    Brief: Convert a JSON answer into a wire-ready dnslib RR.

    Inputs:
      - answer: DoHAnswer from the upstream envelope.

    Outputs:
      - RR equivalent to ``<name> <TTL> IN <TYPE> <data>``.

    Raises UnsupportedType when the answer type has no mnemonic and
    RecordParseError when the synthesized line does not parse into exactly
    one record that packs to wire format.
    """
    mnemonic = code_to_mnemonic(answer.rtype)
    line = format_master_file_line(answer.name, answer.ttl, mnemonic, answer.data)
    zone_line = format_master_file_line(
        answer.name, answer.ttl, _ZONE_SYNTAX.get(mnemonic, mnemonic), answer.data
    )
    try:
        records = RR.fromZone(zone_line)
        if len(records) != 1:
            raise ValueError(f"expected 1 record, parsed {len(records)}")
        rr = records[0]
        rr.rtype = int(answer.rtype)
        # Packing catches rdata that parses but cannot be encoded
        rr.pack(DNSBuffer())
    except Exception as e:
        raise RecordParseError(f"Invalid record {line!r}: {e}") from e
    return rr


def doh_json_query(
    url: str,
    name: str,
    qtype: int,
    *,
    timeout: Optional[float] = None,
    verify: bool = True,
    headers: Optional[Mapping[str, str]] = None,
    session: Optional[requests.Session] = None,
) -> List[RR]:
    """
    Brief: Resolve one question against a single DNS JSON upstream.

    Inputs:
      - url: upstream endpoint, e.g. https://dns.google/resolve
      - name: fully-qualified query name
      - qtype: numeric query type
      - timeout: deadline in seconds for the whole call; None/<=0 disables it
      - verify: verify the upstream TLS certificate
      - headers: optional extra request headers
      - session: optional requests.Session to reuse connections

    Outputs:
      - List[RR]: answers in the order the upstream returned them

    Raises UnsupportedType, NetworkError, DecodeError, UpstreamRejected or
    RecordParseError. No retries are attempted.

    Example:
        >>> try:
        ...     doh_json_query('https://example.invalid/resolve', 'example.com.', 1)
        ... except NetworkError:
        ...     pass
    """
    params = {"name": name, "type": code_to_mnemonic(qtype)}
    hdrs = {"User-Agent": f"prodoh/{PRODOH_VERSION}", **(headers or {})}
    hdrs["Accept"] = DNS_JSON

    limit = _effective_timeout(timeout)
    deadline = None if limit is None else time.monotonic() + limit
    http = session if session is not None else requests
    try:
        resp = http.get(
            url,
            params=params,
            headers=hdrs,
            timeout=limit,
            verify=verify,
            stream=True,
        )
        try:
            resp.raise_for_status()
            raw = _read_body(resp, deadline)
        finally:
            resp.close()
        body = raw.decode(resp.encoding or "utf-8")
    except requests.RequestException as e:
        raise NetworkError(f"Network error: {e}") from e
    except (UnicodeDecodeError, LookupError) as e:
        raise NetworkError(f"Undecodable response body: {e}") from e

    try:
        envelope = DoHResponse.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        raise DecodeError(f"Malformed DNS JSON response: {e}") from e

    if envelope.status != 0:
        raise UpstreamRejected(envelope.status)

    records = [answer_to_rr(answer) for answer in envelope.answer]
    logger.debug(
        "%s answered %s %s with %d record(s)", url, name, params["type"], len(records)
    )
    return records
