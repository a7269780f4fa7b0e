"""
Named concurrency gates.

Two independent gates bound a research run:
- the call gate, acquired around every generation and search call;
- the chain gate, acquired around every topic chain.

A chain holds only a chain-gate slot; its nodes acquire call-gate slots for
each network call. Gates are created per orchestrator and injected, never
module-level, so tests can size them to 1 for deterministic sequencing.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from lcr.exceptions import ResearchCancelledError

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag checked at every gate acquisition."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Research cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ResearchCancelledError(self.reason or "Research cancelled")


class ConcurrencyGate:
    """asyncio.Semaphore with a name, in-flight instrumentation and cancellation.

    Attributes:
        name: Gate label for logs ("call", "chain").
        limit: Maximum concurrent holders.
        in_flight: Current number of holders.
        max_in_flight: Highest number of simultaneous holders observed.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        token: CancellationToken | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError(f"Gate '{name}' limit must be >= 1, got {limit}")
        self.name = name
        self.limit = limit
        self.token = token
        self.in_flight = 0
        self.max_in_flight = 0
        self.total_acquired = 0
        self._semaphore = asyncio.Semaphore(limit)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block.

        Raises:
            ResearchCancelledError: If the run was cancelled before or while
                waiting for the slot.
        """
        if self.token:
            self.token.raise_if_cancelled()
        async with self._semaphore:
            if self.token:
                self.token.raise_if_cancelled()
            self.in_flight += 1
            self.total_acquired += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    async def run(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run an awaitable factory inside one slot."""
        async with self.slot():
            return await func()

    def __repr__(self) -> str:
        return f"ConcurrencyGate(name={self.name!r}, limit={self.limit}, in_flight={self.in_flight})"


class ResearchGates:
    """The call gate and chain gate for one run, sharing a cancellation token."""

    def __init__(
        self,
        call_limit: int = 5,
        chain_limit: int = 2,
        token: CancellationToken | None = None,
    ) -> None:
        self.token = token or CancellationToken()
        self.call = ConcurrencyGate("call", call_limit, self.token)
        self.chain = ConcurrencyGate("chain", chain_limit, self.token)
