# dns_autoswitch/health/prober.py
"""Latency probe with retries, backoff and classified failures"""

import logging
from dataclasses import dataclass
from typing import Optional

from twisted.internet import defer, task

from ..constants import PROBE_MAX_RETRIES, PROBE_TIMEOUT, RETRY_BASE_DELAY, RETRY_MAX_DELAY
from ..interfaces import ConnectivityProvider
from .errors import ErrorKind, classify_failure
from .transports import ProbeTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of probe(): either a latency or the kind of failure"""

    latency_ms: Optional[float]
    error_kind: Optional[ErrorKind] = None
    attempts: int = 1
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, latency_ms: float, attempts: int = 1) -> "ProbeResult":
        return cls(latency_ms=latency_ms, attempts=attempts)

    @classmethod
    def failure(
        cls, kind: ErrorKind, attempts: int = 1, message: Optional[str] = None
    ) -> "ProbeResult":
        return cls(latency_ms=None, error_kind=kind, attempts=attempts, error_message=message)


def _raise_timeout(result, timeout):
    raise defer.TimeoutError(f"No answer within {timeout}s")


class Prober:
    """
    Measures the round-trip latency to one DNS server

    The prober keeps no per-call state, so any number of probes may run at
    the same time. Recording the result is up to the caller.
    """

    def __init__(
        self,
        transport: ProbeTransport,
        clock,
        connectivity: Optional[ConnectivityProvider] = None,
        base_delay: float = RETRY_BASE_DELAY,
        max_delay: float = RETRY_MAX_DELAY,
    ):
        self.transport = transport
        self.clock = clock
        self.connectivity = connectivity
        self.base_delay = base_delay
        self.max_delay = max_delay

    def retry_delay(self, kind: ErrorKind, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (0-based)"""
        return min(self.base_delay * kind.backoff_factor**attempt, self.max_delay)

    @defer.inlineCallbacks
    def probe(
        self,
        address: str,
        timeout: float = PROBE_TIMEOUT,
        max_retries: int = PROBE_MAX_RETRIES,
        hostname: Optional[str] = None,
    ):
        """
        Probe address, retrying retryable failures

        Returns:
            Deferred firing with a ProbeResult. Network failures never
            errback; cancelling the Deferred errbacks with CancelledError.
        """
        if self.connectivity is not None and not self.connectivity.has_usable_network():
            logger.debug(f"No usable network, not probing {address}")
            return ProbeResult.failure(ErrorKind.HOST_UNREACHABLE, attempts=0, message="No network")

        attempt = 0
        while True:
            started = self.clock.seconds()
            try:
                yield self._attempt(address, timeout, hostname)
            except defer.CancelledError:
                raise
            except Exception as e:
                kind = classify_failure(e)
                if not kind.retryable or attempt >= max_retries:
                    logger.debug(
                        f"Probe of {address} failed: {kind.value} after {attempt + 1} attempt(s) ({e})"
                    )
                    return ProbeResult.failure(kind, attempts=attempt + 1, message=str(e))

                delay = self.retry_delay(kind, attempt)
                logger.debug(
                    f"Probe of {address} failed ({kind.value}), retry {attempt + 1}/{max_retries} "
                    f"in {delay:.2f}s"
                )
                yield task.deferLater(self.clock, delay, lambda: None)
                attempt += 1
                continue

            latency_ms = (self.clock.seconds() - started) * 1000.0
            logger.debug(f"Probe of {address} OK ({latency_ms:.1f}ms)")
            return ProbeResult.success(latency_ms, attempts=attempt + 1)

    def _attempt(self, address: str, timeout: float, hostname: Optional[str]):
        """One exchange bounded by timeout; outside cancellation surfaces as CancelledError"""
        cancelled = []
        d = self.transport.exchange(address, timeout, hostname)
        d.addTimeout(timeout, self.clock, onTimeoutCancel=_raise_timeout)

        def cancel(_):
            cancelled.append(True)
            d.cancel()

        attempt = defer.Deferred(canceller=cancel)

        def forward_failure(failure):
            if cancelled:
                # The canceller already errbacked attempt with CancelledError
                return None
            attempt.errback(failure)

        d.addCallbacks(attempt.callback, forward_failure)
        return attempt
