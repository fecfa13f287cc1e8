"""
Conversational transports.

Three interchangeable strategies behind one interface, plus the probe that
picks between them.
"""

from bewerbungstrainer.transport.base import TransportEvent, TransportStrategy
from bewerbungstrainer.transport.connectivity import ConnectivityProbe, ProbeCache
from bewerbungstrainer.transport.http_turns import HttpTurnTransport
from bewerbungstrainer.transport.native import NativeSdkTransport
from bewerbungstrainer.transport.proxy import ProxyTransport

__all__ = [
    "TransportEvent",
    "TransportStrategy",
    "ConnectivityProbe",
    "ProbeCache",
    "HttpTurnTransport",
    "NativeSdkTransport",
    "ProxyTransport",
]
