# dns_autoswitch/health/policy.py
"""Switching policy: hysteresis, debounce, stability period and failure override"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from twisted.internet import defer

from ..constants import FAILURE_SUCCESS_RATIO, TUNNEL_APPLY_TIMEOUT, TUNNEL_FAILURE_LIMIT
from ..errors import UnknownServerError
from ..interfaces import PersistenceStore, TunnelController
from ..models import DnsCandidate, ServerStats, SwitchEvent, SwitchReason
from ..settings import SwitchStrategy
from .history import SampleHistory

logger = logging.getLogger(__name__)


class PolicyState(Enum):
    """Where the engine stands between ticks"""

    IDLE = "idle"  # No candidate waiting for confirmation
    PENDING = "pending"  # A candidate beat the threshold, awaiting confirmation
    COOLDOWN = "cooldown"  # A switch just happened, improvements are ignored


@dataclass
class PendingSwitchCandidate:
    candidate_server_id: str
    first_observed_better_at: float  # Clock seconds
    consecutive_better_count: int = 1


@dataclass(frozen=True)
class SwitchOutcome:
    """Result of a commit attempt, returned instead of raising"""

    committed: bool
    target_server_id: str
    reason: SwitchReason
    event: Optional[SwitchEvent] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "committed": self.committed,
            "target_server_id": self.target_server_id,
            "reason": self.reason.value,
            "event": self.event.to_dict() if self.event else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class SwitchErrorState:
    """Raised after repeated tunnel failures; needs someone to look at it"""

    target_server_id: str
    failures: int
    message: str
    since: float

    @property
    def suggested_action(self) -> str:
        return "Check the tunnel configuration, then acknowledge the error or switch manually"


def is_healthy(stats: ServerStats) -> bool:
    """A server is healthy when its last probe worked and most probes work"""
    return (
        stats.has_data
        and stats.last_succeeded is True
        and stats.moving_average_latency_ms is not None
        and stats.success_ratio >= FAILURE_SUCCESS_RATIO
    )


def is_failing(stats: ServerStats) -> bool:
    """The active server is failing when its last probe failed or most probes fail"""
    if not stats.has_data:
        return False
    return stats.last_succeeded is False or stats.success_ratio < FAILURE_SUCCESS_RATIO


class SwitchPolicyEngine:
    """
    Decides when to move traffic to a different DNS server

    evaluate() is meant to be called by exactly one caller, the monitor loop,
    once per tick. Commits (automatic or manual) are serialized so at most
    one tunnel reconfiguration is in flight.
    """

    def __init__(
        self,
        history: SampleHistory,
        tunnel: TunnelController,
        candidates: Iterable[DnsCandidate],
        clock,
        strategy: Optional[SwitchStrategy] = None,
        persistence: Optional[PersistenceStore] = None,
        active_server_id: Optional[str] = None,
        failure_limit: int = TUNNEL_FAILURE_LIMIT,
        tunnel_timeout: float = TUNNEL_APPLY_TIMEOUT,
    ):
        self.history = history
        self.tunnel = tunnel
        self.clock = clock
        self.strategy = strategy or SwitchStrategy()
        self.persistence = persistence
        self.failure_limit = failure_limit
        self.tunnel_timeout = tunnel_timeout

        self.candidates: Dict[str, DnsCandidate] = {}
        for candidate in candidates:
            self.candidates[candidate.id] = candidate

        self.active_server_id: Optional[str] = None
        self.pending: Optional[PendingSwitchCandidate] = None
        self.cooldown_until: Optional[float] = None
        self.switch_error: Optional[SwitchErrorState] = None
        self.switch_events: List[SwitchEvent] = []
        self._tunnel_failures = 0
        self._commit_lock = defer.DeferredLock()
        self._commit_generation = 0  # Bumped by every committed switch

        self._initialize_active(active_server_id)

    def _initialize_active(self, requested: Optional[str]):
        enabled = self.enabled_candidates()
        if requested is not None:
            if requested not in self.candidates:
                raise UnknownServerError(requested)
            if self.candidates[requested].enabled:
                self.active_server_id = requested
                return
            logger.warning(f"Configured active server {requested} is disabled")
        if enabled:
            self.active_server_id = enabled[0].id
        if self.active_server_id:
            logger.info(f"Active DNS server: {self.active_candidate}")

    # State inspection

    @property
    def active_candidate(self) -> Optional[DnsCandidate]:
        if self.active_server_id is None:
            return None
        return self.candidates[self.active_server_id]

    def enabled_candidates(self) -> List[DnsCandidate]:
        return [c for c in self.candidates.values() if c.enabled]

    def in_cooldown(self, now: Optional[float] = None) -> bool:
        if self.cooldown_until is None:
            return False
        if now is None:
            now = self.clock.seconds()
        return now < self.cooldown_until

    def state_at(self, now: float) -> PolicyState:
        if self.in_cooldown(now):
            return PolicyState.COOLDOWN
        if self.pending is not None:
            return PolicyState.PENDING
        return PolicyState.IDLE

    @property
    def state(self) -> PolicyState:
        return self.state_at(self.clock.seconds())

    # Configuration updates (called by the monitor between ticks)

    def update_strategy(self, strategy: SwitchStrategy):
        self.strategy = strategy

    def set_candidate_enabled(self, server_id: str, enabled: bool):
        if server_id not in self.candidates:
            raise UnknownServerError(server_id)
        self.candidates[server_id] = self.candidates[server_id].with_enabled(enabled)
        if not enabled and self.pending and self.pending.candidate_server_id == server_id:
            self.pending = None
        if self.active_server_id is None and enabled:
            self.active_server_id = server_id
            logger.info(f"Active DNS server: {self.active_candidate}")

    def acknowledge_error(self):
        """Clear the tunnel error state and resume automatic switching"""
        if self.switch_error is not None:
            logger.info("Tunnel error acknowledged, automatic switching resumed")
        self.switch_error = None
        self._tunnel_failures = 0

    def apply_active(self):
        """Push the current active server to the tunnel (used at startup)"""
        candidate = self.active_candidate
        if candidate is None:
            return defer.succeed(False)
        d = self._apply(candidate)

        def failed(failure):
            logger.error(f"Could not apply initial DNS server {candidate}: {failure.getErrorMessage()}")
            return False

        d.addErrback(failed)
        return d

    # Decisions

    def evaluate(self, now: Optional[float] = None, stats: Optional[Dict[str, ServerStats]] = None):
        """
        Run the state machine once for this tick

        Args:
            now: Clock seconds of the tick (defaults to clock.seconds())
            stats: Snapshot of server stats; read from history if omitted

        Returns:
            Deferred firing with a SwitchOutcome when a commit was attempted,
            None otherwise.
        """
        if now is None:
            now = self.clock.seconds()
        active = self.active_candidate
        if active is None:
            logger.debug("No active DNS server, nothing to evaluate")
            return defer.succeed(None)

        strategy = self.strategy
        others = [c for c in self.enabled_candidates() if c.id != active.id]
        if stats is None:
            stats = self.history.snapshot([active.id] + [c.id for c in others], int(now * 1000))
        active_stats = stats.get(active.id) or ServerStats.empty(active.id)

        if self.switch_error is not None:
            logger.debug("Automatic switching suspended until the tunnel error is acknowledged")
            return defer.succeed(None)

        # Failure override, the only path around pending confirmation
        active_unusable = not active.enabled
        if active_unusable or (strategy.switch_on_failure and is_failing(active_stats)):
            cause = "disabled" if active_unusable else "failing"
            target = self._best_healthy(others, stats)
            if target is not None:
                logger.warning(
                    f"Active server {active.id} is {cause}, switching to {target.id} "
                    f"({stats[target.id].moving_average_latency_ms:.1f}ms)"
                )
                return self._commit(target, SwitchReason.FAILURE_DETECTED, active_stats, stats[target.id])
            logger.warning(f"Active server {active.id} is {cause} but no healthy alternative exists")

        if not strategy.auto_switch_enabled:
            self._reset_pending("auto switching disabled")
            return defer.succeed(None)

        if self.in_cooldown(now):
            logger.debug(f"In stability period for another {self.cooldown_until - now:.0f}s")
            return defer.succeed(None)

        active_avg = active_stats.moving_average_latency_ms
        if active_avg is None:
            self._reset_pending("no latency data for active server")
            return defer.succeed(None)

        threshold = strategy.improvement_threshold
        best = None
        best_improvement = None
        for candidate in others:
            candidate_stats = stats.get(candidate.id)
            if candidate_stats is None or not is_healthy(candidate_stats):
                continue
            improvement = active_avg - candidate_stats.moving_average_latency_ms
            if improvement >= threshold and (best is None or improvement > best_improvement):
                best, best_improvement = candidate, improvement

        if best is None:
            self._reset_pending("no candidate beats the threshold")
            return defer.succeed(None)

        pending = self.pending
        if pending is None or pending.candidate_server_id != best.id:
            pending = self.pending = PendingSwitchCandidate(best.id, now, 1)
        else:
            pending.consecutive_better_count += 1

        required = strategy.effective_consecutive_checks
        elapsed = now - pending.first_observed_better_at
        logger.debug(
            f"{best.id} beats {active.id} by {best_improvement:.1f}ms (threshold {threshold}ms): "
            f"{pending.consecutive_better_count}/{required} checks, "
            f"{elapsed:.0f}/{strategy.stability_period_seconds:.0f}s"
        )

        if (
            pending.consecutive_better_count >= required
            and elapsed >= strategy.stability_period_seconds
        ):
            logger.info(
                f"{best.id} consistently faster than {active.id} by {best_improvement:.1f}ms, switching"
            )
            return self._commit(best, SwitchReason.AUTO_SWITCH, active_stats, stats[best.id])

        return defer.succeed(None)

    def manual_switch(self, server_id: str):
        """
        Switch immediately, bypassing the state machine

        Returns:
            Deferred firing with a SwitchOutcome
        """
        if server_id not in self.candidates:
            raise UnknownServerError(server_id)
        target = self.candidates[server_id]
        if not target.enabled:
            return defer.succeed(
                SwitchOutcome(
                    committed=False,
                    target_server_id=server_id,
                    reason=SwitchReason.MANUAL_OVERRIDE,
                    error=f"{server_id} is disabled",
                )
            )
        now_ms = int(self.clock.seconds() * 1000)
        from_stats = None
        if self.active_server_id:
            from_stats = self.history.stats(self.active_server_id, now_ms)
        return self._commit(
            target, SwitchReason.MANUAL_OVERRIDE, from_stats, self.history.stats(server_id, now_ms)
        )

    def _reset_pending(self, why: str):
        if self.pending is not None:
            logger.debug(
                f"Dropping pending switch to {self.pending.candidate_server_id} "
                f"after {self.pending.consecutive_better_count} check(s): {why}"
            )
            self.pending = None

    def _best_healthy(
        self, candidates: List[DnsCandidate], stats: Dict[str, ServerStats]
    ) -> Optional[DnsCandidate]:
        """Highest success ratio first, then lowest moving average"""
        healthy = [c for c in candidates if c.id in stats and is_healthy(stats[c.id])]
        if not healthy:
            return None
        return min(
            healthy,
            key=lambda c: (-stats[c.id].success_ratio, stats[c.id].moving_average_latency_ms),
        )

    # Commit

    def _commit(
        self,
        target: DnsCandidate,
        reason: SwitchReason,
        from_stats: Optional[ServerStats],
        to_stats: Optional[ServerStats],
    ):
        return self._commit_lock.run(
            self._do_commit, target, reason, from_stats, to_stats, self._commit_generation
        )

    def _apply(self, candidate: DnsCandidate):
        """Tunnel call bounded by tunnel_timeout"""
        d = defer.maybeDeferred(self.tunnel.apply_active_server, candidate)
        d.addTimeout(self.tunnel_timeout, self.clock, onTimeoutCancel=self._tunnel_timed_out)
        return d

    def _tunnel_timed_out(self, result, timeout):
        raise defer.TimeoutError(f"tunnel controller did not answer within {timeout}s")

    @defer.inlineCallbacks
    def _do_commit(self, target, reason, from_stats, to_stats, generation):
        previous_id = self.active_server_id
        if target.id == previous_id:
            return SwitchOutcome(
                committed=False,
                target_server_id=target.id,
                reason=reason,
                error=f"{target.id} is already active",
            )

        if generation != self._commit_generation:
            # Another switch landed while this one waited for the lock
            if reason is not SwitchReason.MANUAL_OVERRIDE:
                logger.info(
                    f"Dropping {reason.value} switch to {target.id}: decided before "
                    f"{previous_id} became active"
                )
                return SwitchOutcome(
                    committed=False,
                    target_server_id=target.id,
                    reason=reason,
                    error=f"stale decision, {previous_id} became active in the meantime",
                )
            from_stats = self.history.stats(previous_id, int(self.clock.seconds() * 1000))

        error = None
        try:
            applied = yield self._apply(target)
        except Exception as e:
            applied = False
            error = f"{type(e).__name__}: {e}"

        if not applied:
            return self._rollback(target, reason, error or "tunnel controller reported failure")

        self._tunnel_failures = 0
        self._commit_generation += 1
        now = self.clock.seconds()
        previous_latency = from_stats.moving_average_latency_ms if from_stats else None
        new_latency = to_stats.moving_average_latency_ms if to_stats else None
        improvement = None
        if previous_latency is not None and new_latency is not None:
            improvement = previous_latency - new_latency

        event = SwitchEvent(
            timestamp_ms=int(now * 1000),
            from_server_id=previous_id,
            to_server_id=target.id,
            reason=reason,
            previous_latency_ms=previous_latency,
            new_latency_ms=new_latency,
            improvement_ms=improvement,
        )

        self.active_server_id = target.id
        self.pending = None
        if reason is SwitchReason.MANUAL_OVERRIDE:
            self.cooldown_until = None
            self.switch_error = None
        else:
            self.cooldown_until = now + self.strategy.stability_period_seconds
        self.switch_events.append(event)
        self._persist(event)

        logger.info(
            f"Switched DNS from {previous_id} to {target.id} ({reason.value}"
            + (f", {improvement:.1f}ms faster)" if improvement is not None else ")")
        )
        return SwitchOutcome(committed=True, target_server_id=target.id, reason=reason, event=event)

    def _rollback(self, target: DnsCandidate, reason: SwitchReason, error: str) -> SwitchOutcome:
        """Leave active server and state untouched, count the failure"""
        self._tunnel_failures += 1
        logger.warning(
            f"Switch to {target.id} rolled back: {error} "
            f"(failure {self._tunnel_failures}/{self.failure_limit})"
        )
        if self._tunnel_failures >= self.failure_limit and self.switch_error is None:
            self.switch_error = SwitchErrorState(
                target_server_id=target.id,
                failures=self._tunnel_failures,
                message=error,
                since=self.clock.seconds(),
            )
            logger.error(
                f"Tunnel reconfiguration failed {self._tunnel_failures} times in a row; "
                f"automatic switching suspended. {self.switch_error.suggested_action}"
            )
        return SwitchOutcome(committed=False, target_server_id=target.id, reason=reason, error=error)

    def _persist(self, event: SwitchEvent):
        if self.persistence is None:
            return
        try:
            self.persistence.record_switch_event(event)
        except Exception as e:
            logger.warning(f"Could not persist switch event: {e}")
