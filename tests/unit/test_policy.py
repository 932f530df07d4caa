#!/usr/bin/env python3
"""Unit tests for the switching policy engine"""

import logging

import pytest
from twisted.internet import defer

from dns_autoswitch.errors import UnknownServerError
from dns_autoswitch.health.history import SampleHistory
from dns_autoswitch.health.policy import PolicyState, SwitchPolicyEngine, is_failing, is_healthy
from dns_autoswitch.interfaces import InMemoryPersistence
from dns_autoswitch.models import DnsCandidate, LatencySample, ServerStats, SwitchReason
from dns_autoswitch.settings import Strategy, SwitchStrategy

CANDIDATES = [
    DnsCandidate("a", "Server A", "192.0.2.1"),
    DnsCandidate("b", "Server B", "192.0.2.2"),
    DnsCandidate("c", "Server C", "192.0.2.3"),
]

BALANCED = SwitchStrategy(strategy=Strategy.BALANCED, hysteresis_margin_ms=10)


def stats(server_id, avg, ratio=1.0, last_ok=True, count=5):
    return ServerStats(
        server_id=server_id,
        moving_average_latency_ms=avg,
        success_ratio=ratio,
        sample_count=count,
        last_sample_at=1,
        last_succeeded=last_ok,
    )


def view(**averages):
    return {server_id: stats(server_id, avg) for server_id, avg in averages.items()}


def fired(d):
    results = []
    d.addCallback(results.append)
    assert results, "Deferred has not fired"
    return results[0]


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def history():
    return SampleHistory(window_size=10, retention=3600.0)


@pytest.fixture
def engine(history, tunnel, clock, persistence):
    return SwitchPolicyEngine(
        history,
        tunnel,
        CANDIDATES,
        clock=clock,
        strategy=BALANCED,
        persistence=persistence,
        active_server_id="a",
    )


class TestInitialization:
    """Test choosing the first active server"""

    def test_requested_active(self, engine):
        assert engine.active_server_id == "a"
        assert engine.state is PolicyState.IDLE

    def test_first_enabled_by_default(self, history, tunnel, clock):
        candidates = [CANDIDATES[0].with_enabled(False)] + CANDIDATES[1:]
        engine = SwitchPolicyEngine(history, tunnel, candidates, clock=clock)
        assert engine.active_server_id == "b"

    def test_unknown_active(self, history, tunnel, clock):
        with pytest.raises(UnknownServerError):
            SwitchPolicyEngine(history, tunnel, CANDIDATES, clock=clock, active_server_id="zzz")


class TestHealth:
    def test_healthy_requires_recent_success(self):
        assert is_healthy(stats("b", 40.0))
        assert not is_healthy(stats("b", 40.0, last_ok=False))
        assert not is_healthy(stats("b", 40.0, ratio=0.4))
        assert not is_healthy(ServerStats.empty("b"))

    def test_failing(self):
        assert is_failing(stats("a", 40.0, last_ok=False))
        assert is_failing(stats("a", 40.0, ratio=0.3))
        assert not is_failing(stats("a", 40.0))
        assert not is_failing(ServerStats.empty("a"))


class TestImprovementPath:
    """Test hysteresis, debounce and the stability period"""

    def test_scenario_a_commits_after_checks_and_stability(self, engine, tunnel, persistence):
        """80ms active, 45ms candidate for 4 ticks spanning two minutes"""
        snapshot = view(a=80.0, b=45.0, c=90.0)
        for now in (0.0, 40.0, 80.0):
            assert fired(engine.evaluate(now=now, stats=snapshot)) is None
            assert engine.state_at(now) is PolicyState.PENDING

        outcome = fired(engine.evaluate(now=120.0, stats=snapshot))

        assert outcome.committed
        assert outcome.event.reason is SwitchReason.AUTO_SWITCH
        assert outcome.event.improvement_ms == pytest.approx(35.0)
        assert engine.active_server_id == "b"
        assert tunnel.applied == ["b"]
        assert persistence.switch_events == [outcome.event]
        assert engine.pending is None

    def test_enough_checks_but_not_enough_time(self, engine):
        snapshot = view(a=80.0, b=45.0)
        for now in (0.0, 5.0, 10.0, 15.0, 20.0):
            assert fired(engine.evaluate(now=now, stats=snapshot)) is None
        assert engine.pending.consecutive_better_count == 5
        assert engine.active_server_id == "a"

    def test_enough_time_but_not_enough_checks(self, engine):
        snapshot = view(a=80.0, b=45.0)
        engine.evaluate(now=0.0, stats=snapshot)
        assert fired(engine.evaluate(now=300.0, stats=snapshot)) is None
        assert engine.pending.consecutive_better_count == 2

    def test_scenario_b_below_threshold(self, engine, tunnel):
        """A 15ms gain never creates a pending candidate"""
        snapshot = view(a=80.0, b=65.0)
        for tick in range(100):
            assert fired(engine.evaluate(now=tick * 5.0, stats=snapshot)) is None
            assert engine.pending is None
        assert tunnel.applied == []

    def test_hysteresis_boundary(self, engine):
        """Improvement between min and min+margin is not enough; exactly min+margin is"""
        engine.evaluate(now=0.0, stats=view(a=80.0, b=50.01))
        assert engine.pending is None

        engine.evaluate(now=5.0, stats=view(a=80.0, b=55.0))
        assert engine.pending is None

        engine.evaluate(now=10.0, stats=view(a=80.0, b=50.0))
        assert engine.pending.candidate_server_id == "b"

    def test_no_hysteresis_uses_min_improvement(self, engine):
        engine.update_strategy(BALANCED.with_flags(hysteresis_enabled=False))
        engine.evaluate(now=0.0, stats=view(a=80.0, b=60.0))
        assert engine.pending is not None

    def test_debounce_alternating_candidate(self, engine, tunnel):
        """Better, not better, better... never gets past one check"""
        better, worse = view(a=80.0, b=40.0), view(a=80.0, b=75.0)
        for tick in range(200):
            snapshot = better if tick % 2 == 0 else worse
            engine.evaluate(now=tick * 5.0, stats=snapshot)
            if engine.pending is not None:
                assert engine.pending.consecutive_better_count == 1
        assert tunnel.applied == []

    def test_different_candidate_restarts_pending(self, engine):
        engine.evaluate(now=0.0, stats=view(a=80.0, b=45.0, c=70.0))
        engine.evaluate(now=5.0, stats=view(a=80.0, b=45.0, c=70.0))
        assert engine.pending.consecutive_better_count == 2

        engine.evaluate(now=10.0, stats=view(a=80.0, b=70.0, c=40.0))
        assert engine.pending.candidate_server_id == "c"
        assert engine.pending.consecutive_better_count == 1
        assert engine.pending.first_observed_better_at == 10.0

    def test_best_improvement_wins(self, engine):
        engine.evaluate(now=0.0, stats=view(a=100.0, b=60.0, c=40.0))
        assert engine.pending.candidate_server_id == "c"

    def test_unhealthy_candidate_ignored(self, engine):
        snapshot = view(a=80.0)
        snapshot["b"] = stats("b", 20.0, last_ok=False, ratio=0.6)
        engine.evaluate(now=0.0, stats=snapshot)
        assert engine.pending is None

    def test_no_active_data(self, engine):
        snapshot = view(b=20.0)
        snapshot["a"] = ServerStats.empty("a")
        engine.evaluate(now=0.0, stats=snapshot)
        assert engine.pending is None

    def test_auto_switch_disabled(self, engine):
        engine.update_strategy(BALANCED.with_flags(auto_switch_enabled=False))
        for now in (0.0, 60.0, 120.0, 180.0, 240.0):
            assert fired(engine.evaluate(now=now, stats=view(a=80.0, b=20.0))) is None
        assert engine.pending is None

    def test_reads_history_when_no_stats_given(self, engine, history, clock):
        for i in range(3):
            history.record(LatencySample("a", i, 80.0, True))
            history.record(LatencySample("b", i, 45.0, True))
        fired(engine.evaluate())
        assert engine.pending.candidate_server_id == "b"

    def test_expired_history_is_ignored(self, engine, history, clock):
        for i in range(3):
            history.record(LatencySample("a", i, 80.0, True))
            history.record(LatencySample("b", i, 45.0, True))
        clock.advance(3601.0)
        fired(engine.evaluate())
        assert engine.pending is None


class TestCooldown:
    """Test the stability period after a switch"""

    def _switch_to_b(self, engine):
        snapshot = view(a=80.0, b=45.0, c=90.0)
        for now in (0.0, 40.0, 80.0, 120.0):
            engine.evaluate(now=now, stats=snapshot)
        assert engine.active_server_id == "b"

    def test_no_second_switch_within_stability_period(self, engine, clock, tunnel):
        clock.advance(120.0)
        self._switch_to_b(engine)
        assert engine.state_at(121.0) is PolicyState.COOLDOWN

        snapshot = view(a=80.0, b=45.0, c=5.0)
        for now in range(125, 240, 5):
            assert fired(engine.evaluate(now=float(now), stats=snapshot)) is None
        assert engine.active_server_id == "b"
        assert tunnel.applied == ["b"]

        engine.evaluate(now=240.0, stats=snapshot)
        assert engine.state_at(240.0) is PolicyState.PENDING

    def test_failure_bypasses_cooldown(self, engine, clock):
        clock.advance(120.0)
        self._switch_to_b(engine)

        snapshot = view(a=80.0, c=60.0)
        snapshot["b"] = stats("b", 45.0, last_ok=False)
        outcome = fired(engine.evaluate(now=130.0, stats=snapshot))

        assert outcome.committed
        assert outcome.reason is SwitchReason.FAILURE_DETECTED
        assert outcome.target_server_id == "c"


class TestFailureOverride:
    """Test switching away from a failing server"""

    def test_scenario_c(self, engine, history, persistence):
        """Three failed samples in a row switch immediately"""
        history.record(LatencySample("b", 1, 50.0, True))
        for ts in (1, 2, 3):
            history.record(LatencySample("a", ts, None, False))

        outcome = fired(engine.evaluate(now=0.0))

        assert outcome.committed
        assert outcome.event.reason is SwitchReason.FAILURE_DETECTED
        assert outcome.event.from_server_id == "a"
        assert outcome.event.to_server_id == "b"
        assert outcome.event.previous_latency_ms is None
        assert engine.active_server_id == "b"
        assert engine.in_cooldown(0.0)

    def test_prefers_success_ratio_then_latency(self, engine):
        snapshot = {
            "a": stats("a", 80.0, last_ok=False),
            "b": stats("b", 20.0, ratio=0.7),
            "c": stats("c", 60.0, ratio=1.0),
        }
        outcome = fired(engine.evaluate(now=0.0, stats=snapshot))
        assert outcome.target_server_id == "c"

        engine.active_server_id = "a"
        snapshot["b"] = stats("b", 20.0, ratio=1.0)
        outcome = fired(engine.evaluate(now=1.0, stats=snapshot))
        assert outcome.target_server_id == "b"

    def test_low_success_ratio_counts_as_failing(self, engine):
        snapshot = view(b=90.0)
        snapshot["a"] = stats("a", 30.0, ratio=0.4, last_ok=True)
        outcome = fired(engine.evaluate(now=0.0, stats=snapshot))
        assert outcome.reason is SwitchReason.FAILURE_DETECTED

    def test_disabled_override(self, engine, tunnel):
        engine.update_strategy(BALANCED.with_flags(switch_on_failure=False))
        snapshot = view(b=50.0)
        snapshot["a"] = stats("a", 80.0, last_ok=False, ratio=0.0)
        assert fired(engine.evaluate(now=0.0, stats=snapshot)) is None
        assert tunnel.applied == []

    def test_no_healthy_alternative(self, engine, tunnel):
        snapshot = {
            "a": stats("a", None, ratio=0.0, last_ok=False),
            "b": stats("b", None, ratio=0.0, last_ok=False),
            "c": ServerStats.empty("c"),
        }
        assert fired(engine.evaluate(now=0.0, stats=snapshot)) is None
        assert tunnel.applied == []
        assert engine.active_server_id == "a"

    def test_disabled_active_without_alternative_logs_cause(self, engine, tunnel, caplog):
        engine.set_candidate_enabled("a", False)
        snapshot = {
            "a": stats("a", 40.0),
            "b": ServerStats.empty("b"),
            "c": ServerStats.empty("c"),
        }

        with caplog.at_level(logging.WARNING, logger="dns_autoswitch.health.policy"):
            engine.evaluate(now=0.0, stats=snapshot)

        assert "a is disabled but no healthy alternative exists" in caplog.text
        assert "is failing" not in caplog.text
        assert tunnel.applied == []

    def test_disabled_active_switches_away(self, engine):
        engine.update_strategy(BALANCED.with_flags(switch_on_failure=False))
        engine.set_candidate_enabled("a", False)
        outcome = fired(engine.evaluate(now=0.0, stats=view(a=10.0, b=50.0, c=40.0)))
        assert outcome.reason is SwitchReason.FAILURE_DETECTED
        assert outcome.target_server_id == "c"


class TestManualOverride:
    """Test explicit switches"""

    def test_commits_immediately(self, engine, tunnel, persistence):
        outcome = fired(engine.manual_switch("c"))
        assert outcome.committed
        assert outcome.event.reason is SwitchReason.MANUAL_OVERRIDE
        assert engine.active_server_id == "c"
        assert tunnel.applied == ["c"]
        assert len(persistence.switch_events) == 1

    def test_resets_pending_and_cooldown(self, engine):
        engine.evaluate(now=0.0, stats=view(a=80.0, b=40.0))
        assert engine.pending is not None
        engine.cooldown_until = 1000.0

        fired(engine.manual_switch("c"))

        assert engine.pending is None
        assert engine.cooldown_until is None
        assert engine.state_at(1.0) is PolicyState.IDLE

    def test_unknown_server(self, engine):
        with pytest.raises(UnknownServerError):
            engine.manual_switch("nope")

    def test_disabled_server(self, engine, tunnel):
        engine.set_candidate_enabled("b", False)
        outcome = fired(engine.manual_switch("b"))
        assert not outcome.committed
        assert "disabled" in outcome.error
        assert tunnel.applied == []

    def test_already_active(self, engine, tunnel):
        outcome = fired(engine.manual_switch("a"))
        assert not outcome.committed
        assert tunnel.applied == []


class TestRollback:
    """Test tunnel failures during a commit"""

    def test_scenario_d_rolls_back(self, engine, tunnel, persistence):
        tunnel.results = [False]
        snapshot = view(a=80.0, b=45.0)
        for now in (0.0, 40.0, 80.0):
            engine.evaluate(now=now, stats=snapshot)

        outcome = fired(engine.evaluate(now=120.0, stats=snapshot))

        assert not outcome.committed
        assert outcome.event is None
        assert engine.active_server_id == "a"
        assert persistence.switch_events == []
        assert engine.state_at(120.0) is PolicyState.PENDING
        assert engine.cooldown_until is None

        # Next tick retries and succeeds
        outcome = fired(engine.evaluate(now=125.0, stats=snapshot))
        assert outcome.committed
        assert engine.active_server_id == "b"

    def test_exception_counts_as_failure(self, engine, tunnel):
        tunnel.results = [RuntimeError("hook crashed")]
        outcome = fired(engine.manual_switch("b"))
        assert not outcome.committed
        assert "hook crashed" in outcome.error
        assert engine.active_server_id == "a"

    def test_failed_deferred_counts_as_failure(self, engine, tunnel):
        tunnel.results = [defer.fail(OSError("no tun device"))]
        outcome = fired(engine.manual_switch("b"))
        assert not outcome.committed
        assert "no tun device" in outcome.error

    def test_repeated_failures_raise_error_state(self, engine, tunnel):
        tunnel.results = [False, False, False]
        snapshot = {"a": stats("a", 80.0, last_ok=False), "b": stats("b", 40.0)}

        for now in (0.0, 5.0, 10.0):
            fired(engine.evaluate(now=now, stats=snapshot))

        assert engine.switch_error is not None
        assert engine.switch_error.failures == 3
        assert engine.switch_error.target_server_id == "b"

        # Automatic commits are suspended
        assert fired(engine.evaluate(now=15.0, stats=snapshot)) is None
        assert tunnel.applied == ["b", "b", "b"]

        engine.acknowledge_error()
        outcome = fired(engine.evaluate(now=20.0, stats=snapshot))
        assert outcome.committed

    def test_manual_switch_clears_error_state(self, engine, tunnel):
        tunnel.results = [False, False, False]
        for _ in range(3):
            fired(engine.manual_switch("b"))
        assert engine.switch_error is not None

        outcome = fired(engine.manual_switch("b"))
        assert outcome.committed
        assert engine.switch_error is None


class TestCommitSerialization:
    """At most one tunnel call is in flight"""

    def test_second_commit_waits(self, engine, tunnel):
        slow = defer.Deferred()
        tunnel.results = [slow]

        first = engine.manual_switch("b")
        second = engine.manual_switch("c")
        assert tunnel.applied == ["b"]
        assert not first.called and not second.called

        slow.callback(True)

        assert fired(first).committed
        assert fired(second).committed
        assert tunnel.applied == ["b", "c"]
        assert engine.active_server_id == "c"

    def test_queued_commit_to_new_active_is_skipped(self, engine, tunnel):
        slow = defer.Deferred()
        tunnel.results = [slow]

        first = engine.manual_switch("b")
        second = engine.manual_switch("b")
        slow.callback(True)

        assert fired(first).committed
        assert not fired(second).committed
        assert tunnel.applied == ["b"]

    def test_stale_queued_failover_is_dropped(self, engine, tunnel, persistence):
        """A failover aimed away from the old active server must not move the new one"""
        slow = defer.Deferred()
        tunnel.results = [slow]

        manual = engine.manual_switch("b")
        queued = engine.evaluate(
            now=0.0,
            stats={
                "a": stats("a", 80.0, last_ok=False, ratio=0.0),
                "b": stats("b", 60.0),
                "c": stats("c", 50.0),
            },
        )
        slow.callback(True)

        assert fired(manual).committed
        outcome = fired(queued)
        assert not outcome.committed
        assert outcome.reason is SwitchReason.FAILURE_DETECTED
        assert "stale decision" in outcome.error
        assert engine.active_server_id == "b"
        assert tunnel.applied == ["b"]
        assert len(persistence.switch_events) == 1
        assert engine.cooldown_until is None

    def test_queued_manual_switch_records_current_active(self, engine, tunnel):
        slow = defer.Deferred()
        tunnel.results = [slow]

        engine.manual_switch("b")
        second = engine.manual_switch("c")
        slow.callback(True)

        assert fired(second).event.from_server_id == "b"


class TestTunnelTimeout:
    """A tunnel controller that never answers"""

    def test_hung_tunnel_rolls_back(self, engine, tunnel, clock):
        tunnel.results = [defer.Deferred()]

        d = engine.manual_switch("b")
        assert not d.called
        clock.advance(engine.tunnel_timeout)

        outcome = fired(d)
        assert not outcome.committed
        assert "did not answer" in outcome.error
        assert engine.active_server_id == "a"

    def test_lock_released_after_timeout(self, engine, tunnel, clock):
        tunnel.results = [defer.Deferred()]

        engine.manual_switch("b")
        queued = engine.manual_switch("c")
        clock.advance(engine.tunnel_timeout)

        assert fired(queued).committed
        assert engine.active_server_id == "c"
        assert fired(engine.manual_switch("b")).committed

    def test_repeated_timeouts_raise_error_state(self, engine, tunnel, clock):
        tunnel.results = [defer.Deferred() for _ in range(3)]
        snapshot = {"a": stats("a", 80.0, last_ok=False), "b": stats("b", 40.0)}

        for now in (0.0, 40.0, 80.0):
            d = engine.evaluate(now=now, stats=snapshot)
            clock.advance(engine.tunnel_timeout)
            assert not fired(d).committed

        assert engine.switch_error is not None
        assert engine.switch_error.failures == 3

    def test_answer_before_timeout_cancels_timer(self, engine, tunnel, clock):
        answer = defer.Deferred()
        tunnel.results = [answer]

        d = engine.manual_switch("b")
        clock.advance(engine.tunnel_timeout / 2)
        answer.callback(True)

        assert fired(d).committed
        assert clock.getDelayedCalls() == []


class TestPersistenceFailures:
    def test_persistence_error_does_not_undo_switch(self, engine):
        class BrokenStore(InMemoryPersistence):
            def record_switch_event(self, event):
                raise OSError("disk full")

        engine.persistence = BrokenStore()
        outcome = fired(engine.manual_switch("b"))
        assert outcome.committed
        assert engine.active_server_id == "b"
        assert engine.switch_events == [outcome.event]
