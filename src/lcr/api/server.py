"""
Logic-Chain Research API.

Streams research runs as NDJSON snapshots and serves saved reports,
quotes and input resolution.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from lcr import __version__
from lcr.config import Settings, get_settings
from lcr.data.quote_client import QuoteProvider, TencentQuoteClient
from lcr.data.ticker_resolver import resolve_user_query
from lcr.exceptions import QuoteError
from lcr.llm.router import ModelRouter
from lcr.logging import get_logger
from lcr.research.orchestrator import build_orchestrator
from lcr.retrieval.search_provider import SearchProvider, TavilySearchProvider
from lcr.storage.report_store import ReportStore
from lcr.stream import NDJSON_MEDIA_TYPE, encode_snapshot

logger = get_logger(__name__)


# ============== Types ==============

class ResearchRequest(BaseModel):
    ticker: str = ""
    lang: Literal["en", "cn"] = "en"


class ResolveRequest(BaseModel):
    query: str = ""


@dataclass
class ApiServices:
    """Capabilities shared by all requests."""
    settings: Settings
    router: ModelRouter
    search: SearchProvider
    quotes: QuoteProvider
    store: ReportStore | None = None


async def _open_services(settings: Settings) -> ApiServices:
    settings.ensure_directories()
    store = ReportStore(settings.DATABASE_PATH)
    await store.init()
    return ApiServices(
        settings=settings,
        router=ModelRouter(settings),
        search=TavilySearchProvider(settings.TAVILY_API_KEY),
        quotes=TencentQuoteClient(),
        store=store,
    )


async def _close_services(services: ApiServices) -> None:
    for resource in (services.search, services.quotes, services.store):
        close = getattr(resource, "close", None)
        if close is not None:
            await close()


def get_services(request: Request) -> ApiServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def require_store(services: ApiServices = Depends(get_services)) -> ReportStore:
    if services.store is None:
        raise HTTPException(status_code=503, detail="Report storage is disabled")
    return services.store


# ============== App ==============

def create_app(settings: Settings | None = None, services: ApiServices | None = None) -> FastAPI:
    """Build the API app.

    Args:
        settings: Settings used to build services on startup.
        services: Pre-built services; when given, nothing is opened or closed.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if services is not None:
            yield
            return
        opened = await _open_services(settings or get_settings())
        app.state.services = opened
        logger.info("API services ready", database=str(opened.settings.DATABASE_PATH))
        try:
            yield
        finally:
            await _close_services(opened)

    app = FastAPI(title="Logic-Chain Research API", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "name": "Logic-Chain Research API",
            "version": __version__,
            "status": "operational",
        }

    @app.post("/api/research")
    async def start_research(
        body: ResearchRequest,
        services: ApiServices = Depends(get_services),
    ) -> StreamingResponse:
        """Run research and stream full-state snapshots as NDJSON."""
        ticker = body.ticker.strip()
        if not ticker:
            raise HTTPException(status_code=400, detail="Ticker is required")

        orchestrator = build_orchestrator(
            services.settings,
            ticker,
            router=services.router,
            search=services.search,
            quotes=services.quotes,
            store=services.store,
        )
        logger.info("Research requested", ticker=ticker, lang=body.lang)

        async def snapshot_lines() -> AsyncGenerator[bytes, None]:
            # Closing this generator (client disconnect) cancels the run
            snapshots = orchestrator.stream(ticker, body.lang)
            try:
                async for state in snapshots:
                    yield encode_snapshot(state)
            finally:
                await snapshots.aclose()

        return StreamingResponse(
            snapshot_lines(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/reports")
    async def list_reports(
        ticker: str | None = None,
        page: int = Query(1, ge=1),
        page_size: int = Query(10, ge=1, le=100, alias="pageSize"),
        store: ReportStore = Depends(require_store),
    ) -> dict[str, Any]:
        """List saved reports, or every report for one ticker."""
        if ticker:
            reports = await store.list_by_ticker(ticker.strip().upper())
            return {"reports": [r.to_dict() for r in reports], "total": len(reports)}
        result = await store.list_reports(page=page, page_size=page_size)
        return result.to_dict()

    @app.get("/api/reports/{report_id}")
    async def get_report(report_id: str, store: ReportStore = Depends(require_store)) -> dict[str, Any]:
        stored = await store.load(report_id)
        if stored is None:
            raise HTTPException(status_code=404, detail="Report not found")
        return stored.to_dict()

    @app.delete("/api/reports/{report_id}")
    async def delete_report(report_id: str, store: ReportStore = Depends(require_store)) -> dict[str, Any]:
        if not await store.delete(report_id):
            raise HTTPException(status_code=404, detail="Report not found")
        return {"deleted": report_id}

    @app.get("/api/quote/{ticker}")
    async def get_quote(ticker: str, services: ApiServices = Depends(get_services)) -> dict[str, Any]:
        """Fetch a live market quote."""
        try:
            quote = await services.quotes.get_quote(ticker.strip().upper())
        except QuoteError as e:
            raise HTTPException(status_code=502, detail=e.message) from e
        return quote.to_dict()

    @app.post("/api/resolve")
    async def resolve(body: ResolveRequest, services: ApiServices = Depends(get_services)) -> dict[str, Any]:
        """Resolve free-text input into ticker candidates."""
        result = await resolve_user_query(body.query, services.router.default_generator())
        return result.to_dict()

    return app


def main() -> None:
    """Serve the API with uvicorn."""
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()

    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000, log_level="info")


if __name__ == "__main__":
    main()
