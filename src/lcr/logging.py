"""
Diagnostic logging for research runs.

Two kinds of log exist side by side. StreamLogs (lcr.stream) are the
client-facing progress events, written in the run's language and shipped
inside every snapshot. Everything in this module is operator diagnostics:
English, structured, and tagged with the run that produced it.

Provides:
- RunContext: run id, ticker and phase of the active run, held in one ContextVar
- log_context() / set_phase(): scope and advance the active RunContext
- RunContextFilter: stamps the active RunContext onto each record at emit time
- JSONFormatter: JSON Lines for --log-file
- RunRichHandler: console lines tagged with ticker and phase
- RunLogger: adapter that turns keyword arguments into structured fields
- log_stream_event(): mirrors a StreamLog into diagnostics; degraded events
  surface at WARNING, everything else at DEBUG
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Mapping, MutableMapping

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

# Keyword arguments the stdlib logger itself understands
_LOGGER_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

# Third-party loggers kept at WARNING so provider chatter doesn't drown runs
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "google_genai", "asyncio", "aiosqlite")


@dataclass(frozen=True)
class RunContext:
    """Identity of the research run a diagnostic line belongs to."""

    run_id: str | None = None
    ticker: str | None = None
    phase: str | None = None

    @property
    def short_id(self) -> str | None:
        # Ids are "run_<uuid7>"; the leading uuid7 digits are a timestamp
        return self.run_id[-8:] if self.run_id else None

    def fields(self) -> dict[str, str]:
        return {key: value for key, value in asdict(self).items() if value}


_run_var: ContextVar[RunContext] = ContextVar("lcr_run", default=RunContext())


def current_run() -> RunContext:
    """The RunContext of the calling task."""
    return _run_var.get()


def set_phase(phase: str | None) -> None:
    """Advance the active run to a new phase (planning, researching, ...).

    Tasks spawned afterwards inherit the phase; a surrounding log_context()
    restores the previous value on exit.
    """
    _run_var.set(replace(_run_var.get(), phase=phase))


@contextmanager
def log_context(
    run_id: str | None = None,
    ticker: str | None = None,
    phase: str | None = None,
) -> Generator[RunContext, None, None]:
    """Scope diagnostics to a run. Fields left as None are inherited.

    Yields:
        The RunContext active inside the block.
    """
    updates = {
        key: value
        for key, value in (("run_id", run_id), ("ticker", ticker), ("phase", phase))
        if value is not None
    }
    context = replace(_run_var.get(), **updates)
    token = _run_var.set(context)
    try:
        yield context
    finally:
        _run_var.reset(token)


class RunContextFilter(logging.Filter):
    """Attaches the caller's RunContext as ``record.run``.

    Handlers run synchronously in the logging task, so the context seen here
    is the one active at the log call, including a phase set mid-run.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run"):
            record.run = current_run()
        return True


def _record_run(record: logging.LogRecord) -> RunContext:
    run = getattr(record, "run", None)
    return run if isinstance(run, RunContext) else current_run()


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, run fields, fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_run(record).fields())

        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(entry, default=str).decode()


class RunRichHandler(RichHandler):
    """Console handler that tags the level column with the run's ticker and phase."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        text = super().get_level_text(record)
        run = _record_run(record)
        if run.short_id:
            text.append(f" {run.short_id}", style="dim")
        if run.ticker:
            text.append(f" {run.ticker}", style="magenta")
        if run.phase:
            text.append(f" {run.phase}", style="cyan")
        return text


class RunLogger(logging.LoggerAdapter):
    """Accepts structured fields as keyword arguments.

    ``logger.info("Fetched quote", price=190.5)`` puts ``{"price": 190.5}`` on
    ``record.fields``; run identity is added separately by RunContextFilter.
    """

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.pop("extra", None) or {})
        fields = dict(extra.get("fields") or {})
        for key in [k for k in kwargs if k not in _LOGGER_KWARGS]:
            fields[key] = kwargs.pop(key)
        extra["fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


_setup_done: bool = False


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the ``lcr`` logger tree.

    Console output goes to stderr so stdout stays free for NDJSON snapshots.
    The optional file receives every record at DEBUG as JSON Lines,
    including the mirrored stream events.

    Args:
        log_level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional JSON Lines file, appended to.
        console_output: Whether to log to the console at all.
    """
    global _setup_done

    level = getattr(logging, log_level.upper())
    root = logging.getLogger("lcr")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = False
    root.setLevel(logging.DEBUG if log_file else level)

    context_filter = RunContextFilter()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)
        root.addHandler(file_handler)

    if console_output:
        console_handler = RunRichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
        )
        console_handler.setLevel(level)
        console_handler.addFilter(context_filter)
        root.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> RunLogger:
    """Logger under the ``lcr`` namespace, configuring defaults on first use."""
    if not _setup_done:
        setup_logging()
    if not name.startswith("lcr"):
        name = f"lcr.{name}"
    return RunLogger(logging.getLogger(name))


def log_stream_event(event: str, message: str, data: Mapping[str, Any] | None = None) -> None:
    """Mirror one client-facing StreamLog into diagnostics.

    Events flagged ``warning`` or carrying an ``error`` (a failed search, a
    degraded node, a plan fallback, a failed save) are logged at WARNING;
    the rest at DEBUG, where only a log file usually sees them.
    """
    payload = dict(data or {})
    degraded = bool(payload.get("warning") or payload.get("error"))
    level = logging.WARNING if degraded else logging.DEBUG
    get_logger("lcr.events").log(level, message, extra={"fields": {"event": event, **payload}})
