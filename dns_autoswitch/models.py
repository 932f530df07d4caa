# dns_autoswitch/models.py
"""Data model shared by the prober, history, policy engine and monitor"""

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from .health.errors import ErrorKind

SECONDARY_SUFFIX = "-secondary"


@dataclass(frozen=True)
class DnsCandidate:
    """A configured DNS server that can be probed and activated"""

    id: str
    display_name: str
    primary_address: str
    secondary_address: Optional[str] = None
    enabled: bool = True
    tls_hostname: Optional[str] = None  # Only used by the DNS-over-TLS probe

    def with_enabled(self, enabled: bool) -> "DnsCandidate":
        return replace(self, enabled=enabled)

    def __str__(self):
        return f"{self.display_name} ({self.primary_address})"


DEFAULT_CANDIDATES = (
    DnsCandidate("google", "Google DNS", "8.8.8.8", "8.8.4.4", tls_hostname="dns.google"),
    DnsCandidate(
        "cloudflare", "Cloudflare DNS", "1.1.1.1", "1.0.0.1", tls_hostname="cloudflare-dns.com"
    ),
    DnsCandidate("quad9", "Quad9 DNS", "9.9.9.9", "149.112.112.112", tls_hostname="dns.quad9.net"),
    DnsCandidate("opendns", "OpenDNS", "208.67.222.222", "208.67.220.220"),
)


def expand_secondary_candidates(candidates: Iterable[DnsCandidate]) -> List[DnsCandidate]:
    """
    Add each candidate's secondary address as an independently scored candidate

    The secondary inherits the enabled flag of its primary and is probed on
    its own, so a flaky secondary never drags down the primary's statistics.
    """
    expanded = []
    for candidate in candidates:
        expanded.append(candidate)
        if candidate.secondary_address:
            expanded.append(
                DnsCandidate(
                    id=f"{candidate.id}{SECONDARY_SUFFIX}",
                    display_name=f"{candidate.display_name} (secondary)",
                    primary_address=candidate.secondary_address,
                    enabled=candidate.enabled,
                    tls_hostname=candidate.tls_hostname,
                )
            )
    return expanded


@dataclass(frozen=True)
class LatencySample:
    """One probe outcome. latency_ms is None when the probe failed."""

    server_id: str
    timestamp_ms: int
    latency_ms: Optional[float]
    succeeded: bool
    error_kind: Optional["ErrorKind"] = None


@dataclass(frozen=True)
class ServerStats:
    """Summary of the current history window for one server"""

    server_id: str
    moving_average_latency_ms: Optional[float]
    success_ratio: float
    sample_count: int
    last_sample_at: Optional[int]
    last_succeeded: Optional[bool] = None
    consecutive_failures: int = 0
    median_latency_ms: Optional[float] = None

    @classmethod
    def empty(cls, server_id: str) -> "ServerStats":
        """The "no data" sentinel returned for a server without samples"""
        return cls(
            server_id=server_id,
            moving_average_latency_ms=None,
            success_ratio=0.0,
            sample_count=0,
            last_sample_at=None,
        )

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0

    def as_dict(self) -> dict:
        """Statistics formatted for display"""
        avg = self.moving_average_latency_ms
        median = self.median_latency_ms
        if self.last_sample_at:
            last = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.last_sample_at / 1000))
        else:
            last = "Never"
        return {
            "server_id": self.server_id,
            "samples": self.sample_count,
            "success_rate": f"{self.success_ratio * 100:.1f}%",
            "average_latency": f"{avg:.1f}ms" if avg is not None else "N/A",
            "median_latency": f"{median:.1f}ms" if median is not None else "N/A",
            "consecutive_failures": self.consecutive_failures,
            "last_sample": last,
        }


class SwitchReason(Enum):
    """Why the active server changed"""

    AUTO_SWITCH = "auto_switch"
    FAILURE_DETECTED = "failure_detected"
    MANUAL_OVERRIDE = "manual_override"


@dataclass(frozen=True)
class SwitchEvent:
    """Audit record of a committed switch"""

    timestamp_ms: int
    from_server_id: Optional[str]
    to_server_id: str
    reason: SwitchReason
    previous_latency_ms: Optional[float]
    new_latency_ms: Optional[float]
    improvement_ms: Optional[float]

    def to_dict(self) -> dict:
        return {
            "timestamp_ms": self.timestamp_ms,
            "from_server_id": self.from_server_id,
            "to_server_id": self.to_server_id,
            "reason": self.reason.value,
            "previous_latency_ms": self.previous_latency_ms,
            "new_latency_ms": self.new_latency_ms,
            "improvement_ms": self.improvement_ms,
        }
