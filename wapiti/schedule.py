"""The one scheduling policy shared by every periodic loop.

Server reminder scans, device heartbeat scans and device health checks all
run through PeriodicRunner: a fixed interval with +/- jitter, exponential
backoff after failures capped at a maximum, skip-if-running, and a stop()
that lets an in-flight run finish before returning.
"""
import asyncio
import random
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from . import config

logger = logging.getLogger(__name__)


@dataclass
class IntervalPolicy:
    base: float
    jitter: float = config.SCHEDULE_JITTER
    backoff_factor: float = 2.0
    max_interval: Optional[float] = None
    # first delay after a failure; defaults to base
    failure_base: Optional[float] = None

    def next_delay(self, failures: int = 0, rng: Optional[random.Random] = None) -> float:
        if failures <= 0:
            delay = self.base
        else:
            start = self.failure_base if self.failure_base is not None else self.base
            delay = start * (self.backoff_factor ** (failures - 1))
        cap = self.max_interval if self.max_interval is not None else max(self.base, delay)
        delay = min(delay, cap)
        if self.jitter:
            r = (rng or random).uniform(-self.jitter, self.jitter)
            delay = delay * (1.0 + r)
        return max(0.0, delay)


async def retry_with_backoff(func: Callable[[], Awaitable[Any]], attempts: int,
                             base_delay: float = 1.0, factor: float = 2.0,
                             max_delay: float = 30.0,
                             retry_on: tuple = (Exception,),
                             sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                             label: str = 'operation'):
    """Await func() up to ``attempts`` times, sleeping base_delay * factor**n between tries."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except retry_on as e:
            if attempt >= attempts:
                raise
            delay = min(base_delay * (factor ** (attempt - 1)), max_delay)
            logger.warning('%s failed (attempt %d/%d): %s; retrying in %.1fs', label, attempt, attempts, e, delay)
            await sleep(delay)


class PeriodicRunner:
    """Run ``func`` periodically on the event loop.

    func is an async callable. A run counts as failed when it raises or
    returns False; the next delay then follows the policy's backoff.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]], policy: IntervalPolicy,
                 run_immediately: bool = True):
        self.name = name
        self.func = func
        self.policy = policy
        self.run_immediately = run_immediately
        self.failures = 0
        self.runs = 0
        self._busy = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._busy

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f'periodic:{self.name}')
        logger.info('%s: started (interval %.0fs)', self.name, self.policy.base)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info('%s: stopped', self.name)

    async def run_now(self) -> Optional[bool]:
        """Run once unless a run is already in flight. Returns None when skipped."""
        if self._busy:
            logger.info('%s: previous run still in progress, skipping', self.name)
            return None
        self._busy = True
        try:
            result = await self.func()
            ok = result is not False
        except Exception:
            logger.exception('%s: run failed', self.name)
            ok = False
        finally:
            self._busy = False
        self.runs += 1
        self.failures = 0 if ok else self.failures + 1
        return ok

    async def _loop(self) -> None:
        first = True
        while not self._stop_event.is_set():
            if not first or self.run_immediately:
                await self.run_now()
            first = False
            if self._stop_event.is_set():
                break
            delay = self.policy.next_delay(self.failures)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
