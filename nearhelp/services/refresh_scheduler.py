from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from nearhelp.core.errors import StoreUnavailable, Unauthenticated
from nearhelp.core.presence_config import (
    HEARTBEAT_INTERVAL_SECONDS,
    JITTER_RATIO,
    MAX_BACKOFF_FACTOR,
    POLL_INTERVAL_SECONDS,
    TICK_TIMEOUT_SECONDS,
)

Action = Callable[[], Awaitable[Any]]


class RefreshScheduler:
    """
    Two independent periodic loops for one client session: a liveness
    heartbeat and a nearby re-query. Both keep running without any push
    event so dropped bus messages only delay an update by one poll.

    A transient failure (StoreUnavailable, timeout) does not retry
    immediately: the loop waits 2x, 4x ... the interval, capped at
    `max_backoff`, and drops back to the normal pace after one success.
    Unauthenticated is fatal and stops both loops.
    """

    def __init__(
        self,
        heartbeat: Action,
        poll: Action,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        jitter: float = JITTER_RATIO,
        max_backoff: int = MAX_BACKOFF_FACTOR,
        timeout: float = TICK_TIMEOUT_SECONDS,
        name: str = "session",
        rng: Optional[random.Random] = None,
        on_fatal: Optional[Callable[[BaseException], Any]] = None,
    ):
        self.heartbeat = heartbeat
        self.poll = poll
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.jitter = jitter
        self.max_backoff = max(1, max_backoff)
        self.timeout = timeout
        self.name = name
        self.on_fatal = on_fatal
        self.failures: Dict[str, int] = {"heartbeat": 0, "poll": 0}
        self.runs: Dict[str, int] = {"heartbeat": 0, "poll": 0}
        self._rng = rng or random.Random()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._poll_wake = asyncio.Event()
        self._stopped = False

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError(f"scheduler {self.name} already started")
        self._stopped = False
        self._tasks = {
            "heartbeat": asyncio.create_task(
                self._loop("heartbeat", self.heartbeat, self.heartbeat_interval, run_first=False),
                name=f"{self.name}:heartbeat",
            ),
            "poll": asyncio.create_task(
                self._loop("poll", self.poll, self.poll_interval, run_first=True, wake=self._poll_wake),
                name=f"{self.name}:poll",
            ),
        }
        for task in self._tasks.values():
            task.add_done_callback(self._report_crash)
        logger.info(f"[scheduler] started | {self.name}")

    async def stop(self) -> None:
        """Cancel both loops and wait for them. Safe to call more than once."""
        self._stopped = True
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[scheduler] stopped | {self.name}")

    def trigger_poll(self) -> None:
        """Run the nearby query now instead of at the next tick."""
        self._poll_wake.set()

    async def __aenter__(self) -> "RefreshScheduler":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------

    def next_delay(self, interval: float, failures: int) -> float:
        factor = min(2 ** failures, self.max_backoff) if failures else 1
        spread = self._rng.uniform(-self.jitter, self.jitter) if self.jitter else 0.0
        return max(0.0, interval * factor * (1 + spread))

    async def _sleep(self, delay: float, wake: Optional[asyncio.Event]) -> None:
        if wake is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        wake.clear()

    async def _loop(
        self,
        label: str,
        action: Action,
        interval: float,
        run_first: bool,
        wake: Optional[asyncio.Event] = None,
    ) -> None:
        failures = 0
        if not run_first:
            await self._sleep(self.next_delay(interval, 0), wake)

        while not self._stopped:
            try:
                await asyncio.wait_for(action(), timeout=self.timeout)
            except (StoreUnavailable, asyncio.TimeoutError) as exc:
                failures += 1
                logger.warning(f"[scheduler] {label} failed | {self.name} | consecutive={failures} | {exc!r}")
            except Unauthenticated as exc:
                logger.error(f"[scheduler] {label} unauthenticated, stopping | {self.name}")
                self._stopped = True
                if self.on_fatal is not None:
                    self.on_fatal(exc)
                return
            else:
                if failures:
                    logger.info(f"[scheduler] {label} recovered | {self.name} | after={failures}")
                failures = 0
            self.failures[label] = failures
            self.runs[label] += 1

            await self._sleep(self.next_delay(interval, failures), wake)

    def _report_crash(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"[scheduler] {task.get_name()} crashed")
