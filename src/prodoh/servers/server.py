import ipaddress
import logging
import socket
import socketserver
from typing import Callable, List, Optional, Sequence

from dnslib import OPCODE, RCODE, RR, DNSError, DNSHeader, DNSRecord
from dnslib.label import DNSBuffer

from prodoh.config.config_parser import ProxyConfig
from prodoh.errors import (
    AllUpstreamsFailed,
    DoHError,
    InvalidRequest,
    UnsupportedType,
)
from prodoh.servers.transports.doh_json import doh_json_query

from .udp_server import DNSUDPHandler

logger = logging.getLogger("prodoh.server")

# resolver(upstreams, qname, qtype, timeout, **query_kwargs) -> records
Resolver = Callable[..., List[RR]]


def resolve_with_failover(
    upstreams: Sequence[str],
    qname: str,
    qtype: int,
    timeout: Optional[float] = None,
    *,
    query_fn: Callable[..., List[RR]] = doh_json_query,
    **query_kwargs,
) -> List[RR]:
    """
    Resolve one question by trying upstreams strictly in configured order.

    Args:
        upstreams: DoH endpoint URLs; iteration always starts at index 0.
        qname: The query name.
        qtype: The numeric query type.
        timeout: Per-upstream deadline in seconds (None disables it).
        query_fn: Single-upstream client, doh_json_query by default.
        **query_kwargs: Extra keyword arguments forwarded to query_fn.

    Returns:
        The first successful upstream's records, possibly empty. Answers
        from different upstreams are never merged.

    Raises:
        AllUpstreamsFailed: when every upstream raised a per-upstream error.
    """
    attempts = 0
    for upstream in upstreams:
        attempts += 1
        try:
            records = query_fn(upstream, qname, qtype, timeout=timeout, **query_kwargs)
        except (UnsupportedType, DoHError) as e:
            logger.warning("%s DoH query failed for %s type %s: %s", upstream, qname, qtype, e)
            continue
        logger.debug("%s resolved %s type %s", upstream, qname, qtype)
        return records

    logger.warning(
        "All upstreams failed for %s type %s (%d tried)", qname, qtype, attempts
    )
    raise AllUpstreamsFailed(qname, qtype, attempts)


class _UncompressedBuffer(DNSBuffer):
    """DNSBuffer that writes every domain name in full, without pointers."""

    def encode_name(self, name):
        self.encode_name_nocompress(name)


def pack_uncompressed(record: DNSRecord) -> bytes:
    """Pack a DNSRecord to wire format with name compression disabled.

    Inputs:
      - record: DNSRecord to encode.
    Outputs:
      - bytes: wire-format message.
    """
    record.set_header_qa()
    buffer = _UncompressedBuffer()
    record.header.pack(buffer)
    for section in (record.questions, record.rr, record.auth, record.ar):
        for item in section:
            item.pack(buffer)
    return bytes(buffer.data)


def make_reply(request: DNSRecord) -> DNSRecord:
    """Build an empty NOERROR reply mirroring the request header.

    The transaction ID, opcode, RD and CD bits are copied, QR and RA are set
    and only the first question is echoed.
    """
    header = DNSHeader(
        id=request.header.id,
        bitmap=request.header.bitmap,
        qr=1,
        aa=0,
        tc=0,
        ra=1,
    )
    header.rcode = RCODE.NOERROR
    return DNSRecord(header, questions=list(request.questions[:1]))


def make_servfail_response(request: DNSRecord) -> bytes:
    """
    Create SERVFAIL response for the given request.

    Inputs:
        - request (DNSRecord): Original DNS request.

    Outputs:
        - response_wire (bytes): SERVFAIL response wire data.
    """
    reply = make_reply(request)
    reply.header.rcode = RCODE.SERVFAIL
    return pack_uncompressed(reply)


def _servfail_from_raw(data: bytes) -> bytes:
    """SERVFAIL for a packet dnslib cannot parse; empty when no header exists."""
    if len(data) < 12:
        return b""
    header = DNSHeader(
        id=int.from_bytes(data[:2], "big"),
        qr=1,
        opcode=(data[2] >> 3) & 0xF,
        rcode=RCODE.SERVFAIL,
    )
    buffer = DNSBuffer()
    header.pack(buffer)
    return bytes(buffer.data)


def validate_request(request: DNSRecord) -> None:
    """Raise InvalidRequest unless the request is a standard query with questions."""
    if not request.questions:
        raise InvalidRequest("request carries no questions")
    if request.header.opcode != OPCODE.QUERY:
        raise InvalidRequest(f"unsupported opcode {request.header.opcode}")


def handle_request(
    request: DNSRecord, config: ProxyConfig, resolver: Optional[Resolver] = None
) -> DNSRecord:
    """Answer a parsed DNS request from the configured upstreams.

    Inputs:
      - request: parsed DNS query.
      - config: immutable proxy configuration (upstreams, timeout, TLS).
      - resolver: failover callable, resolve_with_failover by default.
    Outputs:
      - DNSRecord reply holding the records of the first question that
        resolved. Later questions are not looked up once one succeeds.

    Raises InvalidRequest for requests without questions or with a non-QUERY
    opcode and AllUpstreamsFailed when no question could be resolved.
    """
    validate_request(request)
    resolve = resolver or resolve_with_failover
    reply = make_reply(request)

    last_error: Optional[AllUpstreamsFailed] = None
    for question in request.questions:
        qname = str(question.qname)
        qtype = int(question.qtype)
        try:
            records = resolve(
                config.upstreams, qname, qtype, config.timeout, verify=config.verify_tls
            )
        except AllUpstreamsFailed as e:
            last_error = e
            continue
        for rr in records:
            reply.add_answer(rr)
        return reply

    raise last_error


def resolve_query_bytes(
    data: bytes,
    config: ProxyConfig,
    *,
    client_ip: Optional[str] = None,
    resolver: Optional[Resolver] = None,
) -> bytes:
    """Resolve a single DNS wire query and return the wire response.

    Inputs:
      - data: Wire-format DNS query bytes.
      - config: ProxyConfig shared by all handler threads.
      - client_ip: Optional client address used for logging.
      - resolver: Optional failover callable (tests inject stubs here).
    Outputs:
      - bytes: Wire-format DNS response, or b"" when the packet is too short
        to carry a DNS header and no reply can be addressed.

    Every parsable request gets an answer: records on success, SERVFAIL for
    invalid requests, exhausted upstreams and unexpected errors.

    Example:
      >>> resp = resolve_query_bytes(query_bytes, config)
    """
    try:
        request = DNSRecord.parse(data)
    except DNSError as e:
        logger.debug("Unparsable DNS packet from %s: %s", client_ip, e)
        return _servfail_from_raw(data)

    try:
        reply = handle_request(request, config, resolver)
        return pack_uncompressed(reply)
    except InvalidRequest as e:
        logger.debug("Invalid request %d from %s: %s", request.header.id, client_ip, e)
    except AllUpstreamsFailed as e:
        logger.debug("SERVFAIL for request %d from %s: %s", request.header.id, client_ip, e)
    except Exception:
        logger.exception("Unexpected error answering request from %s", client_ip)
    return make_servfail_response(request)


class _ProxyUDPServer(socketserver.ThreadingUDPServer):
    """ThreadingUDPServer carrying the proxy configuration for its handlers."""

    daemon_threads = True

    def __init__(
        self,
        server_address,
        handler_cls,
        config: ProxyConfig,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self.config = config
        self.resolver = resolver
        super().__init__(server_address, handler_cls)


class _ProxyUDPServerV6(_ProxyUDPServer):
    address_family = socket.AF_INET6


def _server_class_for(host: str):
    try:
        if ipaddress.ip_address(host).version == 6:
            return _ProxyUDPServerV6
    except ValueError:
        pass
    return _ProxyUDPServer


class DNSServer:
    """A UDP DNS listener answering from DNS JSON upstreams.

    Example use:
        >>> from prodoh.servers.server import DNSServer
        >>> import threading
        >>> server = DNSServer(config)
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()
        >>> server.stop()
    """

    def __init__(self, config: ProxyConfig, resolver: Optional[Resolver] = None) -> None:
        """Bind the UDP socket.

        Inputs:
            config: Proxy configuration; config.host/config.port are bound.
            resolver: Optional failover callable used instead of
                resolve_with_failover.
        """
        server_cls = _server_class_for(config.host)
        try:
            self.server = server_cls(
                (config.host, config.port), DNSUDPHandler, config, resolver
            )
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s. Try a port >1024 or run with elevated privileges. Original error: %s",
                config.address,
                e,
            )
            raise
        logger.debug("DNS UDP server bound to %s:%d", *self.server_address[:2])

    @property
    def server_address(self):
        """Actual bound (host, port, ...) tuple; useful when port 0 was requested."""
        return self.server.server_address

    def serve_forever(self) -> None:
        """Run the UDP receive loop until stop() is called."""
        self.server.serve_forever()

    def stop(self) -> None:
        """Stop accepting queries and close the listening socket.

        Must not be called from the thread running serve_forever().
        """
        try:
            self.server.shutdown()
        except Exception:
            logger.exception("Error while shutting down UDP server")
        try:
            self.server.server_close()
        except Exception:
            logger.exception("Error while closing UDP server socket")
