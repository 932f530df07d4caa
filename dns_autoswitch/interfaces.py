# dns_autoswitch/interfaces.py
"""
Boundaries to the collaborators the engine does not own

The engine receives these at construction time. The small implementations
below cover running as a daemon and testing; an embedding application
supplies its own.
"""

import json
import logging
import os
import shlex
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Sequence

from twisted.internet import defer, utils

if TYPE_CHECKING:
    from .models import DnsCandidate, LatencySample, SwitchEvent
    from .settings import SwitchStrategy

logger = logging.getLogger(__name__)


class ConnectivityProvider(ABC):
    """Tells the prober whether the device has a usable network at all"""

    @abstractmethod
    def has_usable_network(self) -> bool:
        pass


class TunnelController(ABC):
    """Redirects DNS traffic to the chosen server"""

    @abstractmethod
    def apply_active_server(self, candidate: "DnsCandidate"):
        """
        Point traffic at candidate

        Returns:
            True/False, or a Deferred firing with True/False. Raising or
            errbacking counts as failure.
        """
        pass


class SettingsStore(ABC):
    """Source of the switching strategy and per-server enabled flags"""

    @abstractmethod
    def get_strategy(self) -> "SwitchStrategy":
        pass

    @abstractmethod
    def is_enabled(self, server_id: str, default: bool = True) -> bool:
        pass

    @abstractmethod
    def add_observer(self, observer):
        """Register observer(strategy, enabled_flags), called on every change"""
        pass

    @abstractmethod
    def remove_observer(self, observer):
        pass


class PersistenceStore(ABC):
    """Write sink for samples and switch events; never read back for decisions"""

    @abstractmethod
    def record_sample(self, sample: "LatencySample"):
        pass

    @abstractmethod
    def record_switch_event(self, event: "SwitchEvent"):
        pass


class StaticConnectivity(ConnectivityProvider):
    """Connectivity fixed by the caller"""

    def __init__(self, online: bool = True):
        self.online = online

    def has_usable_network(self) -> bool:
        return self.online


class RouteTableConnectivity(ConnectivityProvider):
    """Reports a usable network when the kernel has a default route"""

    def __init__(self, route_file: str = "/proc/net/route", ipv6_route_file: str = "/proc/net/ipv6_route"):
        self.route_file = route_file
        self.ipv6_route_file = ipv6_route_file

    def has_usable_network(self) -> bool:
        found_table = False
        for path, has_default in (
            (self.route_file, self._ipv4_default),
            (self.ipv6_route_file, self._ipv6_default),
        ):
            try:
                with open(path, "r") as f:
                    lines = f.read().splitlines()
            except OSError:
                continue
            found_table = True
            if has_default(lines):
                return True

        if not found_table:
            # No routing table to inspect; let the probe fail on its own
            logger.debug("No routing table available, assuming network is usable")
            return True
        return False

    @staticmethod
    def _ipv4_default(lines: List[str]) -> bool:
        # Iface Destination Gateway Flags ... Mask
        for line in lines[1:]:
            fields = line.split()
            if len(fields) >= 8 and fields[1] == "00000000" and fields[7] == "00000000":
                if int(fields[3], 16) & 0x1:  # RTF_UP
                    return True
        return False

    @staticmethod
    def _ipv6_default(lines: List[str]) -> bool:
        for line in lines:
            fields = line.split()
            if len(fields) >= 10 and fields[0] == "0" * 32 and fields[1] == "00":
                if fields[9] != "lo":
                    return True
        return False


class LoggingTunnelController(TunnelController):
    """Dry-run controller: only logs which server would be applied"""

    def __init__(self):
        self.applied: List["DnsCandidate"] = []

    def apply_active_server(self, candidate: "DnsCandidate"):
        self.applied.append(candidate)
        logger.info(f"[dry-run] would redirect DNS traffic to {candidate}")
        return True


class CommandTunnelController(TunnelController):
    """
    Runs a hook command to apply the new server

    The command receives the primary and secondary address as arguments and
    DNS_AUTOSWITCH_SERVER_ID in its environment. Exit status 0 means success.
    """

    def __init__(self, command: str, reactor=None):
        argv = shlex.split(command)
        if not argv:
            raise ValueError("Tunnel command must not be empty")
        self.executable = argv[0]
        self.base_args = argv[1:]
        if reactor is None:
            from twisted.internet import reactor
        self.reactor = reactor

    @defer.inlineCallbacks
    def apply_active_server(self, candidate: "DnsCandidate"):
        args: Sequence[str] = self.base_args + [
            candidate.primary_address,
            candidate.secondary_address or "",
        ]
        env: Dict[str, str] = dict(os.environ)
        env["DNS_AUTOSWITCH_SERVER_ID"] = candidate.id

        exit_code = yield utils.getProcessValue(
            self.executable, args=args, env=env, reactor=self.reactor
        )
        if exit_code != 0:
            logger.warning(f"Tunnel command {self.executable} exited with status {exit_code}")
            return False
        return True


class InMemoryPersistence(PersistenceStore):
    """Keeps everything in lists"""

    def __init__(self):
        self.samples: List["LatencySample"] = []
        self.switch_events: List["SwitchEvent"] = []

    def record_sample(self, sample: "LatencySample"):
        self.samples.append(sample)

    def record_switch_event(self, event: "SwitchEvent"):
        self.switch_events.append(event)


class JsonLinesPersistence(PersistenceStore):
    """Appends one JSON object per line; sample writes are optional"""

    def __init__(self, path: str, record_samples: bool = True):
        self.path = path
        self.record_samples = record_samples

        log_dir = os.path.dirname(path)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, mode=0o755)

    def record_sample(self, sample: "LatencySample"):
        if not self.record_samples:
            return
        self._append(
            {
                "type": "sample",
                "server_id": sample.server_id,
                "timestamp_ms": sample.timestamp_ms,
                "latency_ms": sample.latency_ms,
                "succeeded": sample.succeeded,
                "error_kind": sample.error_kind.value if sample.error_kind else None,
            }
        )

    def record_switch_event(self, event: "SwitchEvent"):
        record = event.to_dict()
        record["type"] = "switch"
        self._append(record)

    def _append(self, record: dict):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True) + "\n")
