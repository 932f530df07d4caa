# dns_autoswitch/health/__init__.py
"""Probing, history, switching policy and the monitor loop"""

from .errors import ErrorKind, classify_failure
from .history import SampleHistory
from .monitor import MonitorLoop
from .policy import PendingSwitchCandidate, PolicyState, SwitchOutcome, SwitchPolicyEngine
from .prober import Prober, ProbeResult
from .transports import (
    DnsQueryTransport,
    ProbeTransport,
    TcpConnectTransport,
    TlsHandshakeTransport,
    create_transport,
)

__all__ = [
    "ErrorKind",
    "classify_failure",
    "SampleHistory",
    "MonitorLoop",
    "PendingSwitchCandidate",
    "PolicyState",
    "SwitchOutcome",
    "SwitchPolicyEngine",
    "Prober",
    "ProbeResult",
    "ProbeTransport",
    "TcpConnectTransport",
    "DnsQueryTransport",
    "TlsHandshakeTransport",
    "create_transport",
]
