import logging
import socketserver

logger = logging.getLogger("prodoh.server")


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests.
    socketserver instantiates this class in a fresh thread for every datagram.

    Configuration is read from the owning server (``self.server.config`` and
    ``self.server.resolver``) rather than from class attributes, so several
    listeners with different upstreams can coexist in one process.
    """

    def handle(self):
        """Resolve one datagram and send the reply back to its source address."""
        data, sock = self.request
        client_ip = self.client_address[0]

        from . import server as _server_mod

        wire = _server_mod.resolve_query_bytes(
            data,
            self.server.config,
            client_ip=client_ip,
            resolver=getattr(self.server, "resolver", None),
        )
        # Packets shorter than a DNS header cannot be answered
        if not wire:
            return
        try:
            sock.sendto(wire, self.client_address)
        except OSError as e:
            logger.warning("Failed to send reply to %s: %s", client_ip, e)
