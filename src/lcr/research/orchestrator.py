"""
Investigation orchestrator: the research state machine.

States:
    initializing -> planning -> researching -> completed | error

Flow:
1. Plan topic chains (one generation call, fallback on unusable output)
2. Fetch the market quote (failure ends the run)
3. Run chains under the chain gate; append each to completed_chains as it finishes
4. Synthesize the report, build the Investigation in plan order
5. Save the report (failure is a warning, the run still completes)

Every log and transition republishes the full state to the snapshot channel.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from lcr.budget import UsageTracker
from lcr.config import Settings, get_settings
from lcr.data.quote_client import QuoteProvider, TencentQuoteClient
from lcr.exceptions import LCRError, ResearchCancelledError
from lcr.gates import ResearchGates
from lcr.llm.base import TextGenerator
from lcr.llm.router import ModelRouter
from lcr.logging import get_logger, log_context, set_phase
from lcr.research.chain_executor import execute_chain
from lcr.research.context import ResearchContext
from lcr.research.planner import plan
from lcr.research.synthesizer import synthesize
from lcr.retrieval.search_provider import SearchProvider, TavilySearchProvider
from lcr.storage.report_store import ReportRepository, ReportStore
from lcr.stream import LogCollector, SnapshotChannel
from lcr.types import (
    Investigation,
    Language,
    LogType,
    ResearchState,
    ResearchStatus,
    StreamLog,
    TopicChain,
    generate_id,
)

logger = get_logger(__name__)


class InvestigationOrchestrator:
    """Runs one logic-chain investigation per call to run().

    Capabilities are injected. Each run gets its own gates unless one
    ResearchGates instance is supplied; every run then shares it, which lets
    a test inspect in-flight peaks.
    """

    def __init__(
        self,
        generator: TextGenerator,
        search: SearchProvider,
        quotes: QuoteProvider,
        store: ReportRepository | None = None,
        fast_model: str | None = None,
        search_max_results: int = 5,
        call_limit: int = 5,
        chain_limit: int = 2,
        gates: ResearchGates | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            generator: Text-generation capability.
            search: Web search capability.
            quotes: Market quote capability.
            store: Optional report repository; None skips persistence.
            fast_model: Model override for fact extraction and reasoning.
            search_max_results: Results requested per search question.
            call_limit: Global call gate size.
            chain_limit: Chain gate size.
            gates: Pre-built gates (overrides the limits).
        """
        self.generator = generator
        self.search = search
        self.quotes = quotes
        self.store = store
        self.fast_model = fast_model
        self.search_max_results = search_max_results
        self.call_limit = call_limit
        self.chain_limit = chain_limit
        self.gates = gates
        self._active: list[ResearchGates] = []

    @property
    def active_runs(self) -> int:
        """Number of runs currently in flight on this instance."""
        return len(self._active)

    def new_gates(self) -> ResearchGates:
        """Gates for one run: the injected instance, or a fresh pair."""
        if self.gates is not None:
            return self.gates
        return ResearchGates(self.call_limit, self.chain_limit)

    def cancel(self, reason: str = "Research cancelled") -> None:
        """Cancel every run in flight. Later gate acquisitions raise."""
        for gates in list(self._active):
            gates.token.cancel(reason)

    async def run(
        self,
        ticker: str,
        language: Language | str = Language.EN,
        channel: SnapshotChannel | None = None,
        gates: ResearchGates | None = None,
    ) -> ResearchState:
        """Run the investigation to a terminal state.

        Never raises for research failures: they end in an ERROR snapshot.

        Args:
            ticker: Ticker to research.
            language: Output language.
            channel: Optional snapshot channel; closed when the run ends.
            gates: Gates for this run; defaults to new_gates().

        Returns:
            The terminal ResearchState.
        """
        ticker = ticker.strip().upper()
        language = Language(language)
        run_id = generate_id("run")

        if gates is None:
            gates = self.new_gates()

        state = ResearchState()

        def publish() -> None:
            if channel is not None and not channel.closed:
                channel.publish(state)

        def on_log(log: StreamLog) -> None:
            publish()

        collector = LogCollector(on_log=on_log)
        # Shared list: every collector append is visible in the snapshot
        state.logs = collector.logs

        ctx = ResearchContext(
            ticker=ticker,
            language=language,
            generator=self.generator,
            search=self.search,
            gates=gates,
            collector=collector,
            fast_model=self.fast_model,
            search_max_results=self.search_max_results,
        )
        tracker = UsageTracker()

        self._active.append(gates)
        with log_context(run_id=run_id, ticker=ticker):
            try:
                logger.info("Starting research run", language=language.value)
                ctx.emit(LogType.PLAN, "run_start", ticker=ticker)

                set_phase("planning")
                state.status = ResearchStatus.PLANNING
                publish()

                chains, plan_usage = await plan(ctx)
                tracker.record("plan", plan_usage)
                state.plan = chains
                state.status = ResearchStatus.RESEARCHING
                publish()

                set_phase("researching")
                gates.token.raise_if_cancelled()
                quote = await self.quotes.get_quote(ticker)
                logger.info("Fetched quote", price=quote.price, currency=quote.currency)

                executed = await self._run_chains(ctx, chains, state, tracker, publish)

                set_phase("synthesis")
                report, synth_usage = await synthesize(ctx, executed, quote)
                tracker.record("synthesize", synth_usage)

                investigation = Investigation(ticker=ticker, topic_chains=executed)
                state.report = report
                state.investigation = investigation
                state.total_tokens = tracker.total_tokens
                state.usage = tracker.usage

                set_phase("persistence")
                state.report_id = await self._save(ctx, language, state)

                state.status = ResearchStatus.COMPLETED
                publish()
                logger.info(
                    "Research run complete",
                    completed_nodes=investigation.completed_nodes,
                    total_nodes=investigation.total_nodes,
                    total_tokens=state.total_tokens,
                    cost=f"${tracker.usage.cost:.4f}",
                )

            except ResearchCancelledError as e:
                logger.warning("Research run cancelled", reason=e.message)
                state.error = "Research cancelled"
                state.status = ResearchStatus.ERROR
                publish()

            except Exception as e:
                error = e.message if isinstance(e, LCRError) else str(e)
                logger.exception("Research run failed", error=error)
                ctx.emit(LogType.ANALYSIS_PROGRESS, "error", data={"error": error}, error=error)
                state.error = error
                state.status = ResearchStatus.ERROR
                publish()

            finally:
                set_phase(None)
                self._active.remove(gates)
                if channel is not None:
                    channel.close()

        return state

    async def _run_chains(
        self,
        ctx: ResearchContext,
        chains: list[TopicChain],
        state: ResearchState,
        tracker: UsageTracker,
        publish: Callable[[], None],
    ) -> list[TopicChain]:
        """Run every chain under the chain gate.

        Returns executed chains in plan order; state.completed_chains is in
        completion order.
        """
        async def run_one(chain: TopicChain) -> TopicChain:
            async with ctx.gates.chain.slot():
                executed, usage = await execute_chain(ctx, chain)
            tracker.record(f"chain:{chain.topic}", usage)
            state.completed_chains.append(executed)
            publish()
            return executed

        tasks = [asyncio.create_task(run_one(chain)) for chain in chains]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _save(self, ctx: ResearchContext, language: Language, state: ResearchState) -> str | None:
        if self.store is None or state.report is None or state.investigation is None:
            return None

        ctx.emit(LogType.ANALYSIS_PROGRESS, "saving")
        try:
            report_id = await self.store.save(
                ctx.ticker,
                language,
                state.report,
                state.investigation,
                state.total_tokens or 0,
            )
        except Exception as e:
            logger.warning("Failed to save report", error=str(e))
            ctx.emit(
                LogType.ANALYSIS_PROGRESS,
                "save_failed",
                data={"warning": True, "reason": str(e)},
                error=str(e),
            )
            return None

        ctx.emit(LogType.FINAL_REPORT, "saved", data={"reportId": report_id}, report_id=report_id)
        logger.info("Saved report", report_id=report_id)
        return report_id

    async def stream(self, ticker: str, language: Language | str = Language.EN) -> AsyncIterator[ResearchState]:
        """Run in the background and yield every snapshot.

        Closing the iterator early cancels this run only; other runs on the
        same instance keep going.
        """
        channel = SnapshotChannel()
        gates = self.new_gates()
        snapshots = channel.subscribe()
        task = asyncio.create_task(self.run(ticker, language, channel, gates))
        try:
            async for snapshot in snapshots:
                yield ResearchState.from_dict(snapshot)
            await task
        finally:
            await snapshots.aclose()  # type: ignore[attr-defined]
            if not task.done():
                gates.token.cancel("Client disconnected")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)


def build_orchestrator(
    settings: Settings,
    ticker: str,
    router: ModelRouter | None = None,
    search: SearchProvider | None = None,
    quotes: QuoteProvider | None = None,
    store: ReportRepository | None = None,
) -> InvestigationOrchestrator:
    """Wire an orchestrator from settings, routing generation by ticker."""
    router = router or ModelRouter(settings)
    return InvestigationOrchestrator(
        generator=router.bind(ticker),
        search=search or TavilySearchProvider(settings.TAVILY_API_KEY),
        quotes=quotes or TencentQuoteClient(),
        store=store,
        fast_model=router.fast_model_for_ticker(ticker),
        search_max_results=settings.SEARCH_MAX_RESULTS,
        call_limit=settings.CALL_CONCURRENCY,
        chain_limit=settings.CHAIN_CONCURRENCY,
    )


async def run_research(
    ticker: str,
    language: Language | str = Language.EN,
    settings: Settings | None = None,
    save: bool = True,
) -> ResearchState:
    """One-shot run with clients built from settings."""
    settings = settings or get_settings()
    search = TavilySearchProvider(settings.TAVILY_API_KEY)
    quotes = TencentQuoteClient()
    store: ReportStore | None = None
    if save:
        settings.ensure_directories()
        store = ReportStore(settings.DATABASE_PATH)
        await store.init()

    try:
        orchestrator = build_orchestrator(settings, ticker, search=search, quotes=quotes, store=store)
        return await orchestrator.run(ticker, language)
    finally:
        await search.close()
        await quotes.close()
        if store:
            await store.close()
