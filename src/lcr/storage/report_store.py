"""
Report persistence backed by SQLite.

Three tables mirror the report aggregate:
- reports:         one row per saved run (report sections as text/JSON)
- topic_chains:    ordered chains of a report
- research_nodes:  ordered nodes of a chain (questions/findings as JSON)

Node counts are never stored; load() recomputes them from the nodes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite
import orjson

from lcr.exceptions import PersistenceError
from lcr.logging import get_logger
from lcr.types import (
    CompetitorEntry,
    FinancialReality,
    Investigation,
    Language,
    Report,
    ResearchNode,
    TopicChain,
    generate_id,
    utc_now,
)

logger = get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS reports (
        id TEXT PRIMARY KEY,
        ticker TEXT NOT NULL,
        language TEXT NOT NULL DEFAULT 'en',
        summary TEXT,
        narrative_arc TEXT,
        marginal_changes TEXT,
        verdict TEXT,
        financial_reality TEXT,
        competitor_matrix TEXT,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS topic_chains (
        id TEXT PRIMARY KEY,
        report_id TEXT NOT NULL REFERENCES reports(id) ON DELETE CASCADE,
        topic TEXT NOT NULL,
        order_index INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS research_nodes (
        id TEXT PRIMARY KEY,
        chain_id TEXT NOT NULL REFERENCES topic_chains(id) ON DELETE CASCADE,
        node_key TEXT NOT NULL,
        step_name TEXT NOT NULL,
        intent TEXT NOT NULL,
        questions TEXT NOT NULL,
        findings TEXT NOT NULL,
        reasoning TEXT NOT NULL,
        next_logic_step TEXT,
        order_index INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reports_ticker ON reports(ticker)",
    "CREATE INDEX IF NOT EXISTS idx_reports_created_at ON reports(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_chains_report ON topic_chains(report_id)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_chain ON research_nodes(chain_id)",
]


class ReportRepository(Protocol):
    """Persistence capability used by the orchestrator."""

    async def save(
        self,
        ticker: str,
        language: Language,
        report: Report,
        investigation: Investigation,
        total_tokens: int,
    ) -> str:
        """Persist a finished run and return its report id."""
        ...


@dataclass
class StoredReport:
    """A saved report with its investigation, as loaded from the store."""

    id: str
    ticker: str
    language: Language
    report: Report
    investigation: Investigation
    total_tokens: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticker": self.ticker,
            "language": self.language.value,
            "report": self.report.to_dict(),
            "investigation": self.investigation.to_dict(),
            "totalTokens": self.total_tokens,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class ReportSummary:
    """List-view row: no chains, no report sections besides the summary."""

    id: str
    ticker: str
    language: Language
    summary: str
    total_tokens: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticker": self.ticker,
            "language": self.language.value,
            "summary": self.summary,
            "totalTokens": self.total_tokens,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class ReportPage:
    """One page of report summaries with pagination metadata."""

    reports: list[ReportSummary] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "reports": [r.to_dict() for r in self.reports],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


class ReportStore:
    """SQLite-backed report store.

    Call init() before use and close() when done.
    """

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file.
        """
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the connection and create the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")

        for statement in SCHEMA:
            await self._db.execute(statement)
        await self._db.commit()

        logger.info("Report store initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("ReportStore not initialized. Call init() first.")
        return self._db

    async def save(
        self,
        ticker: str,
        language: Language,
        report: Report,
        investigation: Investigation,
        total_tokens: int,
    ) -> str:
        """Save a report with its chains and nodes in one transaction.

        Args:
            ticker: Researched ticker.
            language: Output language of the run.
            report: Synthesized report.
            investigation: Executed chains.
            total_tokens: Run token total.

        Returns:
            The new report id.

        Raises:
            PersistenceError: If the write fails.
        """
        db = self._require_db()
        report_id = generate_id("rpt")

        try:
            await db.execute(
                """
                INSERT INTO reports (
                    id, ticker, language, summary, narrative_arc, marginal_changes,
                    verdict, financial_reality, competitor_matrix, total_tokens, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    report_id,
                    ticker,
                    language.value,
                    report.verdict,
                    report.narrative_arc,
                    report.marginal_changes,
                    report.verdict,
                    orjson.dumps(report.financial_reality.to_dict()).decode("utf-8"),
                    orjson.dumps([c.to_dict() for c in report.competitor_matrix]).decode("utf-8"),
                    total_tokens,
                    utc_now().isoformat(),
                ),
            )

            for chain_index, chain in enumerate(investigation.topic_chains):
                chain_id = generate_id("chn")
                await db.execute(
                    "INSERT INTO topic_chains (id, report_id, topic, order_index) VALUES (?, ?, ?, ?)",
                    (chain_id, report_id, chain.topic, chain_index),
                )
                for node_index, node in enumerate(chain.nodes):
                    await db.execute(
                        """
                        INSERT INTO research_nodes (
                            id, chain_id, node_key, step_name, intent, questions,
                            findings, reasoning, next_logic_step, order_index
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            generate_id("node"),
                            chain_id,
                            node.id,
                            node.step_name,
                            node.intent,
                            orjson.dumps(node.questions).decode("utf-8"),
                            orjson.dumps(node.findings).decode("utf-8"),
                            node.reasoning,
                            node.next_logic_step,
                            node_index,
                        ),
                    )

            await db.commit()
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceError(
                f"Failed to save report: {e}",
                context={"ticker": ticker},
            ) from e

        logger.info(
            "Saved report",
            report_id=report_id,
            ticker=ticker,
            chains=len(investigation.topic_chains),
            total_nodes=investigation.total_nodes,
        )
        return report_id

    async def load(self, report_id: str) -> StoredReport | None:
        """Load a report by id.

        Returns:
            StoredReport, or None if it doesn't exist.
        """
        db = self._require_db()
        async with db.execute("SELECT * FROM reports WHERE id = ?", (report_id,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return await self._hydrate(row)

    async def list_reports(self, page: int = 1, page_size: int = 10) -> ReportPage:
        """List report summaries, newest first.

        Args:
            page: 1-based page number.
            page_size: Reports per page.
        """
        db = self._require_db()
        page = max(page, 1)
        page_size = max(page_size, 1)

        async with db.execute("SELECT COUNT(*) AS n FROM reports") as cursor:
            count_row = await cursor.fetchone()
        total = count_row["n"] if count_row else 0

        async with db.execute(
            """
            SELECT id, ticker, language, summary, total_tokens, created_at
            FROM reports ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?
            """,
            (page_size, (page - 1) * page_size),
        ) as cursor:
            rows = await cursor.fetchall()

        return ReportPage(
            reports=[
                ReportSummary(
                    id=row["id"],
                    ticker=row["ticker"],
                    language=Language(row["language"]),
                    summary=row["summary"] or "",
                    total_tokens=row["total_tokens"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def list_by_ticker(self, ticker: str) -> list[StoredReport]:
        """All reports for a ticker, newest first."""
        db = self._require_db()
        async with db.execute(
            "SELECT * FROM reports WHERE ticker = ? ORDER BY created_at DESC, rowid DESC",
            (ticker,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [await self._hydrate(row) for row in rows]

    async def latest_for_ticker(self, ticker: str) -> StoredReport | None:
        """Most recent report for a ticker, if any."""
        db = self._require_db()
        async with db.execute(
            "SELECT * FROM reports WHERE ticker = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (ticker,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return await self._hydrate(row)

    async def delete(self, report_id: str) -> bool:
        """Delete a report and its chains/nodes.

        Returns:
            True if a report was deleted.
        """
        db = self._require_db()
        cursor = await db.execute("DELETE FROM reports WHERE id = ?", (report_id,))
        await db.commit()
        deleted = cursor.rowcount > 0
        logger.info("Deleted report", report_id=report_id, deleted=deleted)
        return deleted

    async def _hydrate(self, row: aiosqlite.Row) -> StoredReport:
        db = self._require_db()

        chains: list[TopicChain] = []
        async with db.execute(
            "SELECT id, topic FROM topic_chains WHERE report_id = ? ORDER BY order_index",
            (row["id"],),
        ) as cursor:
            chain_rows = await cursor.fetchall()

        for chain_row in chain_rows:
            async with db.execute(
                "SELECT * FROM research_nodes WHERE chain_id = ? ORDER BY order_index",
                (chain_row["id"],),
            ) as cursor:
                node_rows = await cursor.fetchall()
            chains.append(
                TopicChain(
                    topic=chain_row["topic"],
                    nodes=[
                        ResearchNode(
                            id=n["node_key"],
                            step_name=n["step_name"],
                            intent=n["intent"],
                            questions=orjson.loads(n["questions"]),
                            findings=orjson.loads(n["findings"]),
                            reasoning=n["reasoning"],
                            next_logic_step=n["next_logic_step"],
                        )
                        for n in node_rows
                    ],
                )
            )

        financial = orjson.loads(row["financial_reality"]) if row["financial_reality"] else {}
        competitors = orjson.loads(row["competitor_matrix"]) if row["competitor_matrix"] else []

        return StoredReport(
            id=row["id"],
            ticker=row["ticker"],
            language=Language(row["language"]),
            report=Report(
                narrative_arc=row["narrative_arc"] or "",
                competitor_matrix=tuple(CompetitorEntry.from_dict(c) for c in competitors),
                financial_reality=FinancialReality.from_dict(financial),
                marginal_changes=row["marginal_changes"] or "",
                verdict=row["verdict"] or "",
            ),
            investigation=Investigation(ticker=row["ticker"], topic_chains=chains),
            total_tokens=row["total_tokens"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
