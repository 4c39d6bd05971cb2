"""
Brief: End-to-end tests of DNSServer over a real UDP socket.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest
from dnslib import RCODE, DNSRecord

from prodoh.errors import AllUpstreamsFailed
from prodoh.servers.server import DNSServer


@pytest.fixture
def running_server(proxy_config, a_record):
    """
    Brief: DNSServer on an ephemeral port answering example.com from a stub.

    Outputs:
      - (host, port, calls) where calls records resolver invocations
    """
    calls = []

    def resolver(upstreams, qname, qtype, timeout, **kwargs):
        calls.append(qname)
        if qname == "example.com.":
            return [a_record]
        raise AllUpstreamsFailed(qname, qtype, len(upstreams))

    server = DNSServer(proxy_config, resolver=resolver)
    host, port = server.server_address[:2]
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        yield host, port, calls
    finally:
        server.stop()
        t.join(timeout=2)


def _exchange(host, port, payload: bytes) -> bytes:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.settimeout(2)
        sock.sendto(payload, (host, port))
        data, _ = sock.recvfrom(4096)
        return data
    finally:
        sock.close()


def test_udp_roundtrip_answers_query(running_server):
    host, port, calls = running_server
    query = DNSRecord.question("example.com.", "A")
    reply = DNSRecord.parse(_exchange(host, port, query.pack()))
    assert reply.header.id == query.header.id
    assert reply.header.rcode == RCODE.NOERROR
    assert [str(rr.rdata) for rr in reply.rr] == ["93.184.216.34"]
    assert calls == ["example.com."]


def test_udp_failure_is_servfail(running_server):
    host, port, _ = running_server
    query = DNSRecord.question("nowhere.example.", "A")
    reply = DNSRecord.parse(_exchange(host, port, query.pack()))
    assert reply.header.id == query.header.id
    assert reply.header.rcode == RCODE.SERVFAIL


def test_concurrent_queries_are_all_answered(running_server):
    host, port, _ = running_server
    results = []

    def worker():
        q = DNSRecord.question("example.com.", "A")
        r = DNSRecord.parse(_exchange(host, port, q.pack()))
        results.append(r.header.id == q.header.id and len(r.rr) == 1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert results == [True] * 8


def test_stop_closes_socket(proxy_config):
    server = DNSServer(proxy_config, resolver=lambda *a, **kw: [])
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    server.stop()
    t.join(timeout=2)
    assert not t.is_alive()
    assert server.server.socket.fileno() == -1


def test_serve_forever_propagates_loop_errors(proxy_config, monkeypatch):
    server = DNSServer(proxy_config, resolver=lambda *a, **kw: [])

    def broken_loop(*a, **kw):
        raise KeyboardInterrupt

    monkeypatch.setattr(server.server, "serve_forever", broken_loop)
    try:
        with pytest.raises(KeyboardInterrupt):
            server.serve_forever()
    finally:
        server.server.server_close()
