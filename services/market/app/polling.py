from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Set, TypeVar

from .config import settings
from .errors import InvalidInput, MarketDataError
from .models import Quote

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GenerationGate:
    """Orders asynchronous completions by the order their attempts started.

    `begin()` hands out increasing generation numbers. `admit()` accepts a
    completion only if it is newer than the last admitted one and was started
    after the last `invalidate()`.
    """

    def __init__(self) -> None:
        self.issued = 0
        self.applied = 0
        self._floor = 0

    def begin(self) -> int:
        self.issued += 1
        return self.issued

    def admit(self, generation: int) -> bool:
        if generation <= self._floor or generation <= self.applied:
            return False
        self.applied = generation
        return True

    def invalidate(self) -> None:
        self._floor = self.issued


class PeriodicJob(Generic[T]):
    """Runs `fetch` now and then every `interval` seconds, applying fresh results.

    Ticks do not wait for the previous fetch: a slow fetch may overlap the
    next one, and whichever was started later wins.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fetch: Callable[[], Awaitable[T]],
        apply: Callable[[T], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        gate: Optional[GenerationGate] = None,
    ):
        self.name = name
        self.interval = max(0.0, float(interval))
        self._fetch = fetch
        self._apply = apply
        self._on_error = on_error
        self.gate = gate or GenerationGate()
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"job:{self.name}")

    async def _run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def tick(self) -> "asyncio.Task[None]":
        generation = self.gate.begin()
        task = asyncio.create_task(self._attempt(generation), name=f"job:{self.name}:{generation}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _attempt(self, generation: int) -> None:
        try:
            result = await self._fetch()
        except MarketDataError as e:
            logger.warning("%s: generation %d failed: %s", self.name, generation, e)
            if self._on_error is not None:
                self._on_error(e)
            return
        except Exception as e:
            logger.exception("%s: generation %d crashed: %s", self.name, generation, e)
            if self._on_error is not None:
                self._on_error(e)
            return
        if not self.gate.admit(generation):
            logger.debug("%s: dropping stale generation %d (applied=%d)", self.name, generation, self.gate.applied)
            return
        self._apply(result)

    async def stop(self) -> None:
        # Invalidate first: anything still in flight can no longer be applied.
        self.gate.invalidate()
        tasks = list(self._inflight)
        if self._task is not None:
            tasks.append(self._task)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._inflight.clear()


class PollingScheduler:
    """Keeps the latest quote per symbol fresh.

    One symbol is *tracked* at the fast interval (switching cancels the old
    schedule); any number are *watched* at the slower watchlist interval.
    Each symbol has its own job and its own generation sequence, shared with
    one-off `resolve_now()` calls so the newest started attempt always wins.
    """

    def __init__(
        self,
        resolve: Callable[[str], Awaitable[Quote]],
        interval: Optional[float] = None,
        watch_interval: Optional[float] = None,
    ):
        self._resolve = resolve
        self.interval = settings.quote_poll_seconds if interval is None else interval
        self.watch_interval = settings.watchlist_poll_seconds if watch_interval is None else watch_interval
        self._jobs: Dict[str, PeriodicJob[Quote]] = {}
        self._quotes: Dict[str, Quote] = {}
        self._errors: Dict[str, str] = {}
        self._tracked: Optional[str] = None
        self._watched: Set[str] = set()
        self._listeners: List[Callable[[Quote], None]] = []
        self._gates: Dict[str, GenerationGate] = {}

    @property
    def tracked(self) -> Optional[str]:
        return self._tracked

    @property
    def watched(self) -> List[str]:
        return sorted(self._watched)

    def active_symbols(self) -> List[str]:
        return sorted(s for s, j in self._jobs.items() if j.running)

    def current(self, symbol: str) -> Optional[Quote]:
        return self._quotes.get(symbol.strip().upper())

    def snapshot(self) -> Dict[str, Quote]:
        return dict(self._quotes)

    def last_error(self, symbol: str) -> Optional[str]:
        return self._errors.get(symbol.strip().upper())

    def subscribe(self, listener: Callable[[Quote], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def publish(self, quote: Quote) -> bool:
        if not quote.price > 0:
            logger.warning("discarding non-positive quote %s=%r", quote.symbol, quote.price)
            return False
        self._quotes[quote.symbol] = quote
        self._errors.pop(quote.symbol, None)
        for listener in list(self._listeners):
            try:
                listener(quote)
            except Exception:
                logger.exception("quote listener failed for %s", quote.symbol)
        return True

    def _gate(self, symbol: str) -> GenerationGate:
        gate = self._gates.get(symbol)
        if gate is None:
            gate = self._gates[symbol] = GenerationGate()
        return gate

    async def resolve_now(self, symbol: str) -> Quote:
        """Resolve `symbol` outside its schedule.

        The result is published only if no newer attempt for the symbol has
        been applied and nothing cancelled the symbol meanwhile. The resolved
        quote is returned either way; failures propagate.
        """
        sym = symbol.strip().upper()
        if not sym:
            raise InvalidInput("empty symbol")
        gate = self._gate(sym)
        generation = gate.begin()
        quote = await self._resolve(sym)
        if gate.admit(generation):
            self.publish(quote)
        else:
            logger.debug("quote:%s: dropping stale one-off generation %d (applied=%d)", sym, generation, gate.applied)
        return quote

    def _record_error(self, symbol: str) -> Callable[[Exception], None]:
        def record(e: Exception) -> None:
            self._errors[symbol] = str(e)
        return record

    async def _ensure(self, symbol: str, interval: float) -> None:
        job = self._jobs.get(symbol)
        if job is not None and job.running and job.interval <= interval:
            return
        if job is not None:
            await job.stop()

        async def fetch() -> Quote:
            return await self._resolve(symbol)

        job = PeriodicJob(
            f"quote:{symbol}", interval, fetch, self.publish, self._record_error(symbol), gate=self._gate(symbol)
        )
        self._jobs[symbol] = job
        job.start()

    async def _cancel(self, symbol: str) -> None:
        job = self._jobs.pop(symbol, None)
        if job is not None:
            await job.stop()

    async def track(self, symbol: str) -> None:
        sym = symbol.strip().upper()
        if not sym:
            raise InvalidInput("empty symbol")
        if sym == self._tracked and sym in self._jobs and self._jobs[sym].running:
            return
        previous, self._tracked = self._tracked, sym
        if previous and previous != sym:
            await self._cancel(previous)
            if previous in self._watched:
                await self._ensure(previous, self.watch_interval)
        logger.info("tracking %s every %.1fs (previous=%s)", sym, self.interval, previous)
        await self._ensure(sym, self.interval)

    async def untrack(self) -> None:
        previous, self._tracked = self._tracked, None
        if not previous:
            return
        await self._cancel(previous)
        if previous in self._watched:
            await self._ensure(previous, self.watch_interval)

    async def watch(self, symbols: Iterable[str]) -> None:
        wanted = {s.strip().upper() for s in symbols if s and s.strip()}
        for sym in self._watched - wanted:
            if sym != self._tracked:
                await self._cancel(sym)
        self._watched = wanted
        for sym in sorted(wanted):
            if sym == self._tracked:
                continue
            await self._ensure(sym, self.watch_interval)

    async def stop(self) -> None:
        jobs, self._jobs = list(self._jobs.values()), {}
        for gate in self._gates.values():
            gate.invalidate()
        self._tracked = None
        self._watched = set()
        for job in jobs:
            await job.stop()
