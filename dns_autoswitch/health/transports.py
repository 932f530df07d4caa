# dns_autoswitch/health/transports.py
"""Ways of performing one round trip to a DNS server"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from twisted.internet import defer, endpoints, ssl
from twisted.internet.abstract import isIPv6Address
from twisted.internet.interfaces import IHandshakeListener
from twisted.internet.protocol import Protocol
from twisted.names import client, dns
from zope.interface import implementer

from ..constants import DNS_DEFAULT_PORT, DNS_OVER_TLS_PORT, PROBE_QUERY_NAME

logger = logging.getLogger(__name__)


class ProbeTransport(ABC):
    """A single bounded exchange with a DNS server"""

    port = DNS_DEFAULT_PORT

    @abstractmethod
    def exchange(self, address: str, timeout: float, hostname: Optional[str] = None):
        """
        Perform one round trip

        Returns:
            Deferred that fires when the exchange completed and errbacks with
            the underlying network error otherwise. Cancelling it abandons
            the exchange.
        """
        pass

    @abstractmethod
    def name(self) -> str:
        pass

    def _tcp_endpoint(self, reactor, address: str, port: int, timeout: float):
        if isIPv6Address(address):
            return endpoints.TCP6ClientEndpoint(reactor, address, port, timeout=timeout)
        return endpoints.TCP4ClientEndpoint(reactor, address, port, timeout=timeout)


class TcpConnectTransport(ProbeTransport):
    """Measures the TCP handshake with the server's DNS port"""

    def __init__(self, reactor, port: int = DNS_DEFAULT_PORT):
        self.reactor = reactor
        self.port = port

    def exchange(self, address: str, timeout: float, hostname: Optional[str] = None):
        endpoint = self._tcp_endpoint(self.reactor, address, self.port, timeout)
        d = endpoints.connectProtocol(endpoint, Protocol())
        d.addCallback(self._disconnect)
        return d

    def _disconnect(self, protocol):
        protocol.transport.loseConnection()

    def name(self) -> str:
        return "tcp"


class DnsQueryTransport(ProbeTransport):
    """Sends a real A query over UDP and waits for the answer"""

    def __init__(self, reactor, query_name: str = PROBE_QUERY_NAME, port: int = DNS_DEFAULT_PORT):
        self.reactor = reactor
        self.query_name = query_name
        self.port = port

    def exchange(self, address: str, timeout: float, hostname: Optional[str] = None):
        resolver = client.Resolver(servers=[(address, self.port)], reactor=self.reactor)
        query = dns.Query(self.query_name, dns.A, dns.IN)
        return resolver.query(query, timeout=(timeout,))

    def name(self) -> str:
        return "dns"


@implementer(IHandshakeListener)
class _HandshakeProtocol(Protocol):
    """Fires completed once the TLS handshake is done, then hangs up"""

    def __init__(self):
        self._finished = False
        self.completed = defer.Deferred(canceller=self._cancel)

    def _cancel(self, d):
        self._finished = True
        if self.transport is not None:
            self.transport.abortConnection()

    def handshakeCompleted(self):
        if not self._finished:
            self._finished = True
            self.completed.callback(None)
        self.transport.loseConnection()

    def connectionLost(self, reason):
        if not self._finished:
            self._finished = True
            self.completed.errback(reason)


class TlsHandshakeTransport(ProbeTransport):
    """Completes a DNS-over-TLS handshake, verifying the server certificate"""

    def __init__(self, reactor, port: int = DNS_OVER_TLS_PORT):
        self.reactor = reactor
        self.port = port

    def exchange(self, address: str, timeout: float, hostname: Optional[str] = None):
        options = ssl.optionsForClientTLS(hostname or address)
        endpoint = endpoints.wrapClientTLS(
            options, self._tcp_endpoint(self.reactor, address, self.port, timeout)
        )
        d = endpoints.connectProtocol(endpoint, _HandshakeProtocol())
        d.addCallback(lambda protocol: protocol.completed)
        return d

    def name(self) -> str:
        return "tls"


TRANSPORTS = {
    "tcp": TcpConnectTransport,
    "dns": DnsQueryTransport,
    "tls": TlsHandshakeTransport,
}


def create_transport(name: str, reactor, query_name: str = PROBE_QUERY_NAME) -> ProbeTransport:
    """Build a transport by its configuration name"""
    try:
        transport_class = TRANSPORTS[name]
    except KeyError:
        raise ValueError(f"Unknown probe transport '{name}' (choose from {', '.join(TRANSPORTS)})")
    if transport_class is DnsQueryTransport:
        return DnsQueryTransport(reactor, query_name=query_name)
    return transport_class(reactor)
