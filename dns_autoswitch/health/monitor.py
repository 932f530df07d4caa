# dns_autoswitch/health/monitor.py
"""Periodic probing of DNS candidates and policy evaluation"""

import logging
from typing import Dict, Optional

from twisted.internet import defer

from ..constants import (
    PROBE_MAX_CONCURRENCY,
    PROBE_MAX_RETRIES,
    PROBE_TIMEOUT,
    TICK_DEADLINE_MARGIN,
    TICK_DEADLINE_RATIO,
)
from ..interfaces import PersistenceStore, SettingsStore
from ..models import SECONDARY_SUFFIX, DnsCandidate, LatencySample
from ..settings import SwitchStrategy
from .history import SampleHistory
from .policy import SwitchPolicyEngine
from .prober import Prober, ProbeResult

logger = logging.getLogger(__name__)


def tick_deadline(interval: float) -> float:
    """Seconds after tick start at which the policy is evaluated at the latest"""
    return min(interval * TICK_DEADLINE_RATIO, interval - TICK_DEADLINE_MARGIN)


class MonitorLoop:
    """Drives the prober, history and policy engine on the reactor's clock"""

    def __init__(
        self,
        engine: SwitchPolicyEngine,
        prober: Prober,
        history: SampleHistory,
        clock,
        settings: Optional[SettingsStore] = None,
        persistence: Optional[PersistenceStore] = None,
        probe_timeout: float = PROBE_TIMEOUT,
        max_retries: int = PROBE_MAX_RETRIES,
        max_concurrency: int = PROBE_MAX_CONCURRENCY,
    ):
        self.engine = engine
        self.prober = prober
        self.history = history
        self.clock = clock
        self.settings = settings
        self.persistence = persistence
        self.probe_timeout = probe_timeout
        self.max_retries = max_retries

        self.strategy: SwitchStrategy = engine.strategy
        self._next_strategy: Optional[SwitchStrategy] = None
        if settings is not None:
            self.strategy = settings.get_strategy()
            engine.update_strategy(self.strategy)
            for candidate in list(engine.candidates.values()):
                enabled = settings.is_enabled(candidate.id, default=candidate.enabled)
                if enabled != candidate.enabled:
                    engine.set_candidate_enabled(candidate.id, enabled)

        self._semaphore = defer.DeferredSemaphore(max_concurrency)
        self._in_flight: Dict[str, defer.Deferred] = {}
        self._next_tick = None
        self._deadline_call = None
        self._evaluation: Optional[defer.Deferred] = None
        self._generation = 0
        self._running = False
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Begin ticking; the first tick runs immediately"""
        if self._running:
            logger.warning("Monitor loop already started")
            return

        self._running = True
        self._generation += 1
        if self.settings is not None:
            self.settings.add_observer(self._on_settings_changed)
        logger.info(
            f"Started DNS monitoring ({self.strategy.strategy.display_name}, "
            f"every {self.strategy.effective_check_interval}s)"
        )
        self._next_tick = self.clock.callLater(0, self._scheduled_tick)

    def stop(self):
        """Stop ticking and abandon probes in flight"""
        if not self._running:
            return

        self._running = False
        self._generation += 1
        if self.settings is not None:
            self.settings.remove_observer(self._on_settings_changed)
        for call in (self._next_tick, self._deadline_call):
            if call is not None and call.active():
                call.cancel()
        self._next_tick = self._deadline_call = None

        for d in list(self._in_flight.values()):
            d.cancel()
        self._in_flight.clear()
        logger.info("Stopped DNS monitoring")

    def update_settings(self, strategy: SwitchStrategy):
        """Use strategy from the next tick on"""
        self._next_strategy = strategy.clamped()
        logger.debug(f"Strategy {self._next_strategy.strategy.value} queued for the next tick")

    def set_candidate_enabled(self, server_id: str, enabled: bool):
        """Enable or disable a candidate and its secondary, if any"""
        self.engine.set_candidate_enabled(server_id, enabled)
        secondary_id = f"{server_id}{SECONDARY_SUFFIX}"
        if secondary_id in self.engine.candidates:
            self.engine.set_candidate_enabled(secondary_id, enabled)

    def switch_to(self, server_id: str):
        """Manual override; Deferred firing with a SwitchOutcome"""
        return self.engine.manual_switch(server_id)

    def _on_settings_changed(self, strategy: SwitchStrategy, enabled: Dict[str, bool]):
        self.update_settings(strategy)
        for server_id, flag in enabled.items():
            candidate = self.engine.candidates.get(server_id)
            if candidate is None:
                logger.debug(f"Ignoring enabled flag for unknown server {server_id}")
                continue
            if candidate.enabled != flag:
                self.set_candidate_enabled(server_id, flag)

    # Ticks

    def _scheduled_tick(self):
        self._next_tick = None
        tick = self.run_tick()
        if self._running:
            interval = self.strategy.effective_check_interval
            self._next_tick = self.clock.callLater(interval, self._scheduled_tick)
        return tick

    def run_tick(self):
        """
        Probe every enabled candidate and evaluate the policy once

        Returns:
            Deferred that fires (with the SwitchOutcome or None) after the
            policy was evaluated.
        """
        if self._next_strategy is not None:
            self.strategy, self._next_strategy = self._next_strategy, None
            self.engine.update_strategy(self.strategy)
            logger.info(
                f"Now using {self.strategy.strategy.display_name} strategy "
                f"(interval {self.strategy.effective_check_interval}s)"
            )

        self.tick_count += 1
        generation = self._generation
        interval = self.strategy.effective_check_interval
        deadline = tick_deadline(interval)

        probes = []
        for candidate in self.engine.enabled_candidates():
            if candidate.id in self._in_flight:
                logger.debug(f"Previous probe of {candidate.id} still running, skipping")
                continue
            probes.append(self._start_probe(candidate, generation))

        logger.debug(f"Tick {self.tick_count}: probing {len(probes)} server(s)")

        gate = defer.Deferred()

        def open_gate(why):
            if not gate.called:
                gate.callback(why)

        defer.DeferredList(probes).addCallback(lambda _: open_gate("complete"))
        if not gate.called:
            self._deadline_call = self.clock.callLater(deadline, open_gate, "deadline")

        gate.addCallback(self._evaluate, generation)
        return gate

    def _start_probe(self, candidate: DnsCandidate, generation: int):
        d = self._semaphore.run(
            self.prober.probe,
            candidate.primary_address,
            self.probe_timeout,
            self.max_retries,
            candidate.tls_hostname,
        )
        self._in_flight[candidate.id] = d
        d.addCallback(self._record, candidate, generation)
        d.addErrback(self._probe_error, candidate)
        d.addBoth(self._probe_finished, candidate.id, d)
        return d

    def _record(self, result: ProbeResult, candidate: DnsCandidate, generation: int):
        if generation != self._generation:
            logger.debug(f"Discarding probe result for {candidate.id} from a stopped loop")
            return None

        sample = LatencySample(
            server_id=candidate.id,
            timestamp_ms=int(self.clock.seconds() * 1000),
            latency_ms=result.latency_ms,
            succeeded=result.succeeded,
            error_kind=result.error_kind,
        )
        self.history.record(sample)
        if self.persistence is not None:
            try:
                self.persistence.record_sample(sample)
            except Exception as e:
                logger.warning(f"Could not persist sample for {candidate.id}: {e}")
        return sample

    def _probe_error(self, failure, candidate: DnsCandidate):
        if failure.check(defer.CancelledError):
            logger.debug(f"Probe of {candidate.id} cancelled")
            return None
        logger.error(f"Probe of {candidate.id} crashed: {failure.getErrorMessage()}")
        return None

    def _probe_finished(self, result, server_id: str, d: defer.Deferred):
        if self._in_flight.get(server_id) is d:
            del self._in_flight[server_id]
        return result

    def _evaluate(self, why: str, generation: int):
        if self._deadline_call is not None and self._deadline_call.active():
            self._deadline_call.cancel()
        self._deadline_call = None

        if generation != self._generation:
            return None
        if why == "deadline":
            logger.debug(f"Tick deadline reached with {len(self._in_flight)} probe(s) outstanding")
        if self._evaluation is not None:
            logger.debug("Previous switch still being applied, skipping evaluation")
            return None

        d = self.engine.evaluate(now=self.clock.seconds())
        self._evaluation = d

        def done(result):
            self._evaluation = None
            return result

        def failed(failure):
            logger.error(f"Policy evaluation failed: {failure.getErrorMessage()}")
            return None

        d.addErrback(failed)
        d.addBoth(done)
        return d

    def get_statistics(self) -> Dict[str, dict]:
        """Display statistics for every known candidate"""
        active = self.engine.active_server_id
        now_ms = int(self.clock.seconds() * 1000)
        stats = {}
        for candidate in self.engine.candidates.values():
            entry = self.history.stats(candidate.id, now_ms).as_dict()
            entry["name"] = candidate.display_name
            entry["address"] = candidate.primary_address
            entry["enabled"] = candidate.enabled
            entry["active"] = candidate.id == active
            stats[candidate.id] = entry
        return stats
