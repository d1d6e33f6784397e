"""
Monitor loop tests: per-round classification, streaming and termination.
"""

import asyncio
from collections import Counter

import pytest

from conftest import FakeApi, make_pool
import name_claimer
from name_claimer import (
    AvailabilityProber,
    ClaimAttempter,
    IdentityPolicy,
    LoopState,
    MissingCredentialError,
    MonitorLoop,
    ResultKind,
    RoundResult,
    run_claimer,
)


def build_monitor(api, tokens=("tok-a",), **kwargs):
    pool = make_pool(api, size=4)
    emitted = []
    monitor = MonitorLoop(
        AvailabilityProber(pool),
        ClaimAttempter(pool, list(tokens)),
        emitted.append,
        **kwargs,
    )
    return monitor, emitted


def by_name(results):
    return {r.name: r for r in results}


class TestRoundClassification:
    """Tests for the outcome of a single round."""

    @pytest.mark.asyncio
    async def test_available_and_claimed(self):
        api = FakeApi(lookup={"uuid-1": 204, "uuid-2": 404}, claim={"alice": 200})
        monitor, emitted = build_monitor(api)

        results = await monitor.run_round({"alice": "uuid-1", "bob": "uuid-2"})

        out = by_name(results)
        assert out["alice"].status == "claimed (200)"
        assert out["alice"].kind is ResultKind.CLAIMED
        assert out["alice"].important
        assert out["bob"].status == "404"
        assert out["bob"].kind is ResultKind.TAKEN
        assert sorted(r.name for r in emitted) == ["alice", "bob"]
        assert len(api.calls_for("PUT")) == 1

    @pytest.mark.asyncio
    async def test_available_but_claim_rejected(self):
        api = FakeApi(lookup={"uuid-1": 204}, claim={"alice": 403})
        monitor, _ = build_monitor(api)
        (result,) = await monitor.run_round({"alice": "uuid-1"})
        assert result.status == "failed to claim (403)"
        assert result.kind is ResultKind.CLAIM_FAILED

    @pytest.mark.asyncio
    async def test_rate_limited_never_claims(self):
        api = FakeApi(lookup={"uuid-1": 429}, claim={"alice": 200})
        monitor, _ = build_monitor(api)
        (result,) = await monitor.run_round({"alice": "uuid-1"})
        assert result.status == "429"
        assert result.kind is ResultKind.RATE_LIMITED
        assert not result.important
        assert api.calls_for("PUT") == []

    @pytest.mark.asyncio
    async def test_custom_rate_limit_status(self):
        api = FakeApi(lookup={"uuid-1": 403})
        monitor, _ = build_monitor(api, rate_limit_statuses={403, 429})
        (result,) = await monitor.run_round({"alice": "uuid-1"})
        assert result.kind is ResultKind.RATE_LIMITED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [200, 400, 404, 500])
    async def test_unavailable_reports_status_code(self, status):
        api = FakeApi(lookup={"uuid-1": status})
        monitor, _ = build_monitor(api)
        (result,) = await monitor.run_round({"alice": "uuid-1"})
        assert result.status == str(status)
        assert api.calls_for("PUT") == []

    @pytest.mark.asyncio
    async def test_probe_transport_error_does_not_abort_round(self):
        api = FakeApi(lookup={"uuid-1": asyncio.TimeoutError(), "uuid-2": 404})
        monitor, emitted = build_monitor(api)
        results = await monitor.run_round({"alice": "uuid-1", "bob": "uuid-2"})
        out = by_name(results)
        assert out["alice"].status == "error: timeout"
        assert out["alice"].kind is ResultKind.ERROR
        assert out["bob"].status == "404"
        assert len(emitted) == 2

    @pytest.mark.asyncio
    async def test_raw_socket_error_does_not_abort_round(self):
        api = FakeApi(lookup={"uuid-1": ConnectionResetError("reset by peer"), "uuid-2": (404, 0.01)})
        monitor, emitted = build_monitor(api)
        results = await monitor.run_round({"alice": "uuid-1", "bob": "uuid-2"})
        out = by_name(results)
        assert out["alice"].status == "error: ConnectionResetError: reset by peer"
        assert out["alice"].kind is ResultKind.ERROR
        assert out["bob"].status == "404"
        assert len(emitted) == 2

    @pytest.mark.asyncio
    async def test_claim_transport_error_reported(self):
        api = FakeApi(lookup={"uuid-1": 204}, claim={"alice": asyncio.TimeoutError()})
        monitor, _ = build_monitor(api)
        (result,) = await monitor.run_round({"alice": "uuid-1"})
        assert result.status == "error: timeout"
        assert result.kind is ResultKind.ERROR

    @pytest.mark.asyncio
    async def test_one_result_per_target(self):
        lookup = {f"uuid-{i}": (204 if i % 3 == 0 else 404) for i in range(20)}
        api = FakeApi(lookup=lookup)
        monitor, emitted = build_monitor(api)
        targets = {f"name-{i}": f"uuid-{i}" for i in range(20)}
        await monitor.run_round(targets)
        assert Counter(r.name for r in emitted) == Counter(targets.keys())

    @pytest.mark.asyncio
    async def test_repeated_round_same_outcomes(self):
        api = FakeApi(lookup={"uuid-1": 204, "uuid-2": 404, "uuid-3": 429}, claim={"alice": 403})
        monitor, _ = build_monitor(api)
        targets = {"alice": "uuid-1", "bob": "uuid-2", "carol": "uuid-3"}
        first = await monitor.run_round(targets)
        second = await monitor.run_round(targets)
        assert Counter(first) == Counter(second)


class TestRoundStreaming:
    """Tests for completion-order delivery and snapshots."""

    @pytest.mark.asyncio
    async def test_results_arrive_in_completion_order(self):
        api = FakeApi(lookup={"slow": (404, 0.05), "fast": 404})
        monitor, emitted = build_monitor(api)
        await monitor.run_round({"alice": "slow", "bob": "fast"})
        assert [r.name for r in emitted] == ["bob", "alice"]

    @pytest.mark.asyncio
    async def test_round_works_on_a_snapshot(self):
        api = FakeApi(lookup={"uuid-1": 404, "uuid-2": 404})
        targets = {"alice": "uuid-1"}
        pool = make_pool(api)
        emitted = []

        def sink(result):
            emitted.append(result)
            targets["bob"] = "uuid-2"

        monitor = MonitorLoop(AvailabilityProber(pool), ClaimAttempter(pool, ["tok"]), sink)
        await monitor.run_round(targets)
        assert [r.name for r in emitted] == ["alice"]

        await monitor.run_round(targets)
        assert sorted(r.name for r in emitted[1:]) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_state_back_to_idle(self):
        api = FakeApi(lookup={"uuid-1": 404})
        monitor, _ = build_monitor(api)
        assert monitor.state is LoopState.IDLE
        await monitor.run_round({"alice": "uuid-1"})
        assert monitor.state is LoopState.IDLE
        assert monitor.rounds_completed == 1

    @pytest.mark.asyncio
    async def test_failing_sink_leaves_no_tasks_behind(self):
        api = FakeApi(lookup={"uuid-1": 404, "uuid-2": (404, 0.05)})
        pool = make_pool(api)

        def sink(result):
            raise RuntimeError("sink closed")

        monitor = MonitorLoop(AvailabilityProber(pool), ClaimAttempter(pool, ["tok-a"]), sink)
        with pytest.raises(RuntimeError, match="sink closed"):
            await monitor.run_round({"alice": "uuid-1", "bob": "uuid-2"})
        assert monitor.state is LoopState.IDLE
        assert [t for t in asyncio.all_tasks() if t is not asyncio.current_task()] == []

    @pytest.mark.asyncio
    async def test_per_target_identity_shared_by_probe_and_claim(self):
        api = FakeApi(lookup={f"uuid-{i}": 204 for i in range(10)})
        monitor, _ = build_monitor(api, identity_policy=IdentityPolicy.PER_TARGET)
        await monitor.run_round({f"name-{i}": f"uuid-{i}" for i in range(10)})
        for i in range(10):
            (probe,) = api.calls_for("GET", f"uuid-{i}")
            (claim,) = api.calls_for("PUT", f"name-{i}")
            assert probe[0] == claim[0]


class TestMissingCredentials:
    """Tests for claims with no bearer token configured."""

    @pytest.mark.asyncio
    async def test_round_drains_then_raises(self):
        api = FakeApi(lookup={"uuid-1": 204, "uuid-2": 404})
        monitor, emitted = build_monitor(api, tokens=())
        with pytest.raises(MissingCredentialError):
            await monitor.run_round({"alice": "uuid-1", "bob": "uuid-2"})
        assert [r.name for r in emitted] == ["bob"]
        assert api.calls_for("PUT") == []
        assert monitor.state is LoopState.IDLE

    @pytest.mark.asyncio
    async def test_run_refuses_to_start(self):
        api = FakeApi(lookup={"uuid-1": 204})
        monitor, _ = build_monitor(api, tokens=())
        with pytest.raises(MissingCredentialError):
            await monitor.run({"alice": "uuid-1"}, max_rounds=1)
        assert api.calls == []


class TestMonitorRun:
    """Tests for the round-after-round loop."""

    @pytest.mark.asyncio
    async def test_max_rounds(self):
        api = FakeApi(lookup={"uuid-1": 404, "uuid-2": 429})
        monitor, emitted = build_monitor(api)
        rounds = await monitor.run({"alice": "uuid-1", "bob": "uuid-2"}, max_rounds=3)
        assert rounds == 3
        assert len(emitted) == 6
        assert len(api.calls_for("GET")) == 6

    @pytest.mark.asyncio
    async def test_stop_event_checked_between_rounds(self):
        api = FakeApi(lookup={"uuid-1": 404, "uuid-2": 404})
        pool = make_pool(api)
        stop = asyncio.Event()
        emitted = []

        def sink(result):
            emitted.append(result)
            stop.set()

        monitor = MonitorLoop(AvailabilityProber(pool), ClaimAttempter(pool, ["tok"]), sink)
        rounds = await monitor.run({"alice": "uuid-1", "bob": "uuid-2"}, stop=stop)
        assert rounds == 1
        # the round that saw the stop still drains completely
        assert len(emitted) == 2

    @pytest.mark.asyncio
    async def test_empty_targets_still_yields(self):
        api = FakeApi()
        monitor, emitted = build_monitor(api)
        assert await monitor.run({}, max_rounds=2) == 2
        assert emitted == []


class TestRunClaimer:
    """Tests for the pool-owning entry point."""

    @pytest.mark.asyncio
    async def test_requires_tokens(self):
        with pytest.raises(MissingCredentialError):
            await run_claimer({"alice": "uuid-1"}, [], ["2001:db8::1"], lambda r: None)

    @pytest.mark.asyncio
    async def test_runs_and_closes_pool(self, monkeypatch):
        api = FakeApi(lookup={"uuid-1": 204}, claim={"alice": 200})
        pool = make_pool(api, size=2)

        async def fake_open(addresses, settings=None, **kwargs):
            assert list(addresses) == ["2001:db8::1", "2001:db8::2"]
            return pool

        monkeypatch.setattr(name_claimer.IdentityPool, "open", fake_open)
        emitted = []
        rounds = await run_claimer(
            {"alice": "uuid-1"}, ["tok"], ["2001:db8::1", "2001:db8::2"], emitted.append, max_rounds=1,
        )
        assert rounds == 1
        assert emitted == [RoundResult("alice", "uuid-1", "claimed (200)", True, ResultKind.CLAIMED)]
        assert all(pool.acquire_client().session.closed for _ in range(10))
