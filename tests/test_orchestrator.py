"""
Tests for the investigation orchestrator.
"""

from __future__ import annotations

import asyncio

from lcr.gates import ResearchGates
from lcr.research.orchestrator import InvestigationOrchestrator
from lcr.stream import SnapshotChannel, replay_progress
from lcr.types import Language, LogType, ResearchState, ResearchStatus

from conftest import (
    FakeQuotes,
    FakeSearch,
    FakeStore,
    ScriptedGenerator,
    make_plan_json,
    make_report_json,
)


def make_orchestrator(
    generator: ScriptedGenerator | None = None,
    search: FakeSearch | None = None,
    quotes: FakeQuotes | None = None,
    store: FakeStore | None = None,
    **kwargs,
) -> InvestigationOrchestrator:
    return InvestigationOrchestrator(
        generator=generator or ScriptedGenerator(),
        search=search or FakeSearch(),
        quotes=quotes or FakeQuotes(),
        store=store,
        **kwargs,
    )


class TestRunScenarios:
    """End-to-end runs over fake capabilities."""

    async def test_aapl_scenario(self) -> None:
        """Test one topic with two single-question nodes completes fully."""
        gen = ScriptedGenerator(
            plan=make_plan_json(topics=1, nodes=2, questions=1),
            facts='["Apple Q3 revenue was $90B"]',
            reasoning="Revenue grew.",
            report=make_report_json("Apple remains a cash machine."),
        )
        orchestrator = make_orchestrator(generator=gen, search=FakeSearch("Apple revenue $90B Q3"))

        state = await orchestrator.run("AAPL", Language.EN)

        assert state.status == ResearchStatus.COMPLETED
        assert state.error is None
        assert state.investigation.total_nodes == 2
        assert state.investigation.completed_nodes == 2
        assert state.report.verdict == "Apple remains a cash machine."
        assert state.total_tokens > 0

    async def test_total_tokens_is_sum_of_calls(self) -> None:
        """Test totalTokens equals the sum over every generation call."""
        gen = ScriptedGenerator(plan=make_plan_json(topics=2, nodes=2, questions=2))
        orchestrator = make_orchestrator(generator=gen)

        state = await orchestrator.run("AAPL")

        # plan + 4 nodes x (extract + reason) + synthesize
        assert len(gen.calls) == 10
        assert state.total_tokens == gen.total_tokens == 1500
        assert state.usage.total_tokens == state.total_tokens

    async def test_degraded_node(self) -> None:
        """Test a failing search leaves its node incomplete and the run completed."""
        gen = ScriptedGenerator(plan=make_plan_json(topics=1, nodes=2, questions=1))
        search = FakeSearch(fail_queries={"question 1.2.1"})
        orchestrator = make_orchestrator(generator=gen, search=search)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.COMPLETED
        nodes = state.investigation.topic_chains[0].nodes
        assert nodes[0].findings == ["Apple Q3 revenue was $90B"]
        assert nodes[1].findings == []
        assert state.investigation.completed_nodes == 1
        assert state.investigation.total_nodes == 2

    async def test_unparseable_plan_uses_fallback(self) -> None:
        """Test prose planning output still runs the fallback chain."""
        gen = ScriptedGenerator(plan="No JSON today.")
        search = FakeSearch()
        orchestrator = make_orchestrator(generator=gen, search=search)

        state = await orchestrator.run("MSFT")

        assert state.status == ResearchStatus.COMPLETED
        assert [c.topic for c in state.plan] == ["Competitive Analysis"]
        assert sorted(search.queries) == ["MSFT competitors", "MSFT market share"]

    async def test_malformed_report_uses_fallback(self) -> None:
        """Test malformed synthesis output still completes with a fallback verdict."""
        gen = ScriptedGenerator(plan=make_plan_json(topics=1, nodes=2), report="not json")
        orchestrator = make_orchestrator(generator=gen)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.COMPLETED
        assert state.report.verdict == "Analysis for AAPL: Found 2 facts across 1 research topics."

    async def test_ticker_normalized(self) -> None:
        """Test the ticker is trimmed and upper-cased before use."""
        quotes = FakeQuotes()
        orchestrator = make_orchestrator(quotes=quotes)

        state = await orchestrator.run("  aapl ")

        assert quotes.requested == ["AAPL"]
        assert state.investigation.ticker == "AAPL"


class TestRunFailures:
    """Test stage-fatal and non-blocking failures."""

    async def test_quote_failure_is_error(self) -> None:
        """Test a quote failure ends the run in error with the plan kept."""
        gen = ScriptedGenerator()
        search = FakeSearch()
        orchestrator = make_orchestrator(generator=gen, search=search, quotes=FakeQuotes(fail=True))

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.ERROR
        assert state.error == "Failed to fetch market quote"
        assert state.plan is not None
        assert search.queries == []
        last = state.logs[-1]
        assert last.type == LogType.ANALYSIS_PROGRESS
        assert last.data == {"error": "Failed to fetch market quote"}
        assert last.message == "Error: Failed to fetch market quote"

    async def test_planning_failure_is_error(self) -> None:
        """Test a failed planning call ends the run in error."""
        orchestrator = make_orchestrator(generator=ScriptedGenerator(fail_on={"plan"}))

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.ERROR
        assert state.error == "scripted failure"
        assert state.plan is None

    async def test_synthesis_failure_is_error(self) -> None:
        """Test a failed synthesis call keeps completed chains for diagnosis."""
        gen = ScriptedGenerator(fail_on={"synthesize"})
        orchestrator = make_orchestrator(generator=gen)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.ERROR
        assert len(state.completed_chains) == 1
        assert state.report is None

    async def test_persistence_failure_still_completes(self) -> None:
        """Test a save failure is a warning and leaves no reportId."""
        orchestrator = make_orchestrator(store=FakeStore(fail=True))

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.COMPLETED
        assert state.report_id is None
        assert state.report is not None
        warnings = [log for log in state.logs if log.data and log.data.get("warning")]
        assert len(warnings) == 1
        assert "database is locked" in warnings[0].message

    async def test_saved_report_id(self) -> None:
        """Test a successful save records the report id and a finalReport log."""
        store = FakeStore()
        orchestrator = make_orchestrator(store=store)

        state = await orchestrator.run("AAPL", "cn")

        assert state.report_id == "rpt_1"
        assert store.saved[0]["language"] == Language.CN
        assert store.saved[0]["total_tokens"] == state.total_tokens
        assert state.logs[-1].type == LogType.FINAL_REPORT
        assert state.logs[-1].data == {"reportId": "rpt_1"}

    async def test_cancelled_before_start(self) -> None:
        """Test a pre-cancelled token ends the run as cancelled."""
        gates = ResearchGates(call_limit=5, chain_limit=2)
        gates.token.cancel()
        orchestrator = make_orchestrator(gates=gates)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.ERROR
        assert state.error == "Research cancelled"


class TestConcurrency:
    """Test gate bounds across a run."""

    async def test_call_gate_bounds_all_calls(self) -> None:
        """Test in-flight search and generation calls never exceed the call limit."""
        gen = ScriptedGenerator(plan=make_plan_json(topics=4, nodes=2, questions=4), delay=0.005)
        search = FakeSearch(delay=0.01)
        gates = ResearchGates(call_limit=3, chain_limit=2)
        orchestrator = make_orchestrator(generator=gen, search=search, gates=gates)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.COMPLETED
        assert len(search.queries) == 32
        assert gates.call.max_in_flight <= 3
        assert search.max_in_flight <= 3
        assert gen.max_in_flight <= 3

    async def test_chain_gate_bounds_chains(self) -> None:
        """Test no more chains run at once than the chain limit."""
        gen = ScriptedGenerator(plan=make_plan_json(topics=5, nodes=1), delay=0.005)
        gates = ResearchGates(call_limit=5, chain_limit=2)
        orchestrator = make_orchestrator(generator=gen, gates=gates)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.COMPLETED
        assert gates.chain.max_in_flight <= 2
        assert gates.chain.total_acquired == 5

    async def test_single_slot_gates_are_sequential(self) -> None:
        """Test gates of size one serialize every call."""
        gen = ScriptedGenerator(plan=make_plan_json(topics=2, nodes=2, questions=3))
        search = FakeSearch()
        gates = ResearchGates(call_limit=1, chain_limit=1)
        orchestrator = make_orchestrator(generator=gen, search=search, gates=gates)

        state = await orchestrator.run("AAPL")

        assert state.status == ResearchStatus.COMPLETED
        assert gen.max_in_flight == 1
        assert search.max_in_flight == 1
        # Chains finish in plan order when only one runs at a time
        assert [c.topic for c in state.completed_chains] == ["Topic 1", "Topic 2"]

    async def test_investigation_in_plan_order(self) -> None:
        """Test the investigation keeps plan order even when chains finish out of order."""

        search = FakeSearch()
        original = search.search

        async def uneven_search(query: str, max_results: int = 5):
            if query.startswith("question 1."):
                await asyncio.sleep(0.05)
            return await original(query, max_results)

        search.search = uneven_search
        gen = ScriptedGenerator(plan=make_plan_json(topics=2, nodes=1))
        orchestrator = make_orchestrator(generator=gen, search=search)

        state = await orchestrator.run("AAPL")

        assert [c.topic for c in state.completed_chains] == ["Topic 2", "Topic 1"]
        assert [c.topic for c in state.investigation.topic_chains] == ["Topic 1", "Topic 2"]


async def advance_to(snapshots, status: ResearchStatus) -> ResearchState:
    async for state in snapshots:
        if state.status == status:
            return state
    raise AssertionError(f"stream ended before {status}")


class TestStreaming:
    """Test snapshot publication."""

    async def test_fresh_channel_is_published_and_closed(self) -> None:
        """Test a run publishes to an empty channel and closes it."""
        channel = SnapshotChannel()
        orchestrator = make_orchestrator()

        await orchestrator.run("AAPL", channel=channel)

        assert channel.closed
        assert channel.published > 5
        assert channel.latest["status"] == "completed"

    async def test_channel_receives_full_snapshots(self) -> None:
        """Test every snapshot is a complete state and the last one is terminal."""
        channel = SnapshotChannel()
        snapshots_iter = channel.subscribe()
        orchestrator = make_orchestrator(generator=ScriptedGenerator(plan=make_plan_json(topics=2, nodes=1)))

        state = await orchestrator.run("AAPL", channel=channel)

        snapshots = [s async for s in snapshots_iter]
        assert len(snapshots) == channel.published
        assert all("status" in s and "logs" in s and "completedChains" in s for s in snapshots)
        assert snapshots[0]["status"] == "initializing"
        assert snapshots[-1]["status"] == "completed"
        assert snapshots[-1]["totalTokens"] == state.total_tokens
        statuses = [s["status"] for s in snapshots]
        assert statuses.index("planning") < statuses.index("researching") < statuses.index("completed")

    async def test_completed_chains_grow_incrementally(self) -> None:
        """Test completedChains only ever grows across snapshots."""
        channel = SnapshotChannel()
        snapshots_iter = channel.subscribe()
        orchestrator = make_orchestrator(generator=ScriptedGenerator(plan=make_plan_json(topics=3, nodes=1)))

        await orchestrator.run("AAPL", channel=channel)

        counts = [len(s["completedChains"]) async for s in snapshots_iter]
        assert counts == sorted(counts)
        assert counts[-1] == 3
        assert {1, 2} <= set(counts)

    async def test_plan_published_before_chains(self) -> None:
        """Test the plan is in state before any chain completes."""
        channel = SnapshotChannel()
        snapshots_iter = channel.subscribe()
        orchestrator = make_orchestrator()

        await orchestrator.run("AAPL", channel=channel)

        snapshots = [s async for s in snapshots_iter]
        first_with_plan = next(i for i, s in enumerate(snapshots) if "plan" in s)
        first_with_chain = next(i for i, s in enumerate(snapshots) if s["completedChains"])
        assert first_with_plan < first_with_chain

    async def test_stream_yields_states(self) -> None:
        """Test stream() yields ResearchState snapshots ending in the terminal one."""
        orchestrator = make_orchestrator()

        async def collect() -> list[ResearchState]:
            return [s async for s in orchestrator.stream("AAPL")]

        states = await asyncio.wait_for(collect(), timeout=5)

        assert all(isinstance(s, ResearchState) for s in states)
        assert states[0].status == ResearchStatus.INITIALIZING
        assert states[-1].status == ResearchStatus.COMPLETED
        assert states[-1].investigation.completed_nodes == 2
        assert orchestrator.active_runs == 0

    async def test_stream_ends_on_error(self) -> None:
        """Test a failed run still terminates the stream."""
        orchestrator = make_orchestrator(quotes=FakeQuotes(fail=True))

        async def collect() -> list[ResearchState]:
            return [s async for s in orchestrator.stream("AAPL")]

        states = await asyncio.wait_for(collect(), timeout=5)

        assert states[-1].status == ResearchStatus.ERROR
        assert states[-1].error == "Failed to fetch market quote"

    async def test_closing_stream_cancels_run(self) -> None:
        """Test abandoning the stream stops further searches."""
        search = FakeSearch(delay=0.02)
        gen = ScriptedGenerator(plan=make_plan_json(topics=3, nodes=3, questions=2))
        orchestrator = make_orchestrator(generator=gen, search=search)

        snapshots = orchestrator.stream("AAPL")
        await advance_to(snapshots, ResearchStatus.RESEARCHING)
        assert orchestrator.active_runs == 1
        await snapshots.aclose()
        searched = len(search.queries)
        await asyncio.sleep(0.1)

        assert orchestrator.active_runs == 0
        assert len(search.queries) == searched
        assert searched < 18

    async def test_closing_one_stream_leaves_others_running(self) -> None:
        """Test concurrent streams on one orchestrator have independent cancellation."""
        search = FakeSearch(delay=0.02)
        gen = ScriptedGenerator(plan=make_plan_json(topics=2, nodes=2, questions=2))
        orchestrator = make_orchestrator(generator=gen, search=search)

        first = orchestrator.stream("AAPL")
        second = orchestrator.stream("MSFT")
        await advance_to(first, ResearchStatus.RESEARCHING)
        await advance_to(second, ResearchStatus.RESEARCHING)
        assert orchestrator.active_runs == 2

        await first.aclose()

        async def drain() -> list[ResearchState]:
            return [s async for s in second]

        rest = await asyncio.wait_for(drain(), timeout=5)
        assert rest[-1].status == ResearchStatus.COMPLETED
        assert rest[-1].error is None
        assert rest[-1].investigation.ticker == "MSFT"
        assert orchestrator.active_runs == 0

    async def test_cancel_stops_every_run(self) -> None:
        """Test cancel() reaches all runs in flight."""
        search = FakeSearch(delay=0.05)
        gen = ScriptedGenerator(plan=make_plan_json(topics=2, nodes=3, questions=2))
        orchestrator = make_orchestrator(generator=gen, search=search)

        first = asyncio.create_task(orchestrator.run("AAPL"))
        second = asyncio.create_task(orchestrator.run("MSFT"))
        await asyncio.sleep(0.03)
        orchestrator.cancel()
        states = await asyncio.wait_for(asyncio.gather(first, second), timeout=5)

        assert [s.error for s in states] == ["Research cancelled", "Research cancelled"]

    async def test_log_replay_matches_live_run(self) -> None:
        """Test replaying logs reconstructs the live node counts."""
        search = FakeSearch(fail_queries={"question 2.1.1"})
        gen = ScriptedGenerator(plan=make_plan_json(topics=2, nodes=2))
        orchestrator = make_orchestrator(generator=gen, search=search, store=FakeStore())

        state = await orchestrator.run("AAPL")
        replay = replay_progress(state.logs)

        assert replay.total_nodes == state.investigation.total_nodes == 4
        assert replay.completed_nodes == state.investigation.completed_nodes == 3
        assert replay.topics == ["Topic 1", "Topic 2"]
        assert replay.report_id == "rpt_1"
        assert not replay.errored
