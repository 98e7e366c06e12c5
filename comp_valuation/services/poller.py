"""
Bounded polling for comp data that has not been indexed yet.

A freshly added asset usually has no comps for a short while. Rather than
making every consumer retry, a `PollController` re-fetches on a fixed backoff
schedule while the result is empty and stops as soon as data shows up or the
schedule runs out. Each controller owns its own schedule position, so any
number of assets can poll side by side.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Hashable, Sequence, TypeVar

from cachetools import TTLCache

from ..core.config import settings
from ..core.metrics import POLL_ATTEMPTS, POLL_OUTCOMES
from ..data.base import AssetIdentity

log = logging.getLogger(__name__)

T = TypeVar("T")

_UNSET = object()


class PollState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    POLLING = "polling"
    SATISFIED = "satisfied"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({PollState.SATISFIED, PollState.EXHAUSTED, PollState.CANCELLED})


class PollController(Generic[T]):
    """
    State machine for one (asset_id, fallback_id) subject.

    IDLE -> FETCHING -> SATISFIED when the first fetch has data, otherwise
    POLLING -> FETCHING ... one backoff step per retry, ending in SATISFIED or
    EXHAUSTED. `cancel()` stops it from any state; a cancelled controller
    never publishes again.

    `fetch` returns the consumer's result; `has_data` decides whether it
    counts as found. Transport errors from `fetch` are logged and treated as
    `empty`. Every result, including the last empty one, goes to `publish`.
    """

    def __init__(
        self,
        identity: AssetIdentity,
        fetch: Callable[[], Awaitable[T]],
        *,
        has_data: Callable[[T], bool] = lambda result: bool(result),
        empty: T | None = None,
        publish: Callable[[T], None] | None = None,
        delays: Sequence[float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.identity = identity
        self._fetch = fetch
        self._has_data = has_data
        self._empty = empty
        self._publish = publish
        self.delays = tuple(settings.POLL_DELAYS_SECONDS if delays is None else delays)
        self._sleep = sleep
        self._step = 0
        self._task: asyncio.Task | None = None
        self.state = PollState.IDLE
        self.attempts = 0
        self.result: T | None = None

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def start(self, initial: Any = _UNSET) -> asyncio.Task:
        """Run in the background; returns the task (idempotent)."""
        if self._task is None:
            self._begin()
            self._task = asyncio.ensure_future(self._drive(initial))
        return self._task

    async def run(self, initial: Any = _UNSET) -> T | None:
        """
        Drive the schedule to a terminal state. `initial` is a result the
        caller already fetched (and published); it stands in for the first
        fetch.
        """
        self._begin()
        return await self._drive(initial)

    def _begin(self) -> None:
        if self.state is not PollState.IDLE:
            raise RuntimeError(f"poll controller already {self.state.value}")
        self._transition(PollState.FETCHING)

    async def _drive(self, initial: Any) -> T | None:
        try:
            if initial is _UNSET:
                result = await self._attempt()
            else:
                self.attempts += 1
                self.result = result = initial
            while not self._has_data(result):
                if self._step >= len(self.delays):
                    self._transition(PollState.EXHAUSTED)
                    return result
                delay = self.delays[self._step]
                self._step += 1
                self._transition(PollState.POLLING, delay=delay)
                await self._sleep(delay)
                self._transition(PollState.FETCHING)
                result = await self._attempt()
            self._transition(PollState.SATISFIED)
            return result
        except asyncio.CancelledError:
            self._transition(PollState.CANCELLED)
            raise

    def cancel(self) -> None:
        if self.done:
            return
        self._transition(PollState.CANCELLED)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _attempt(self) -> T:
        self.attempts += 1
        POLL_ATTEMPTS.labels(source="poll" if self.attempts > 1 else "initial").inc()
        try:
            result = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.warning(
                "comp fetch failed, treating as empty",
                exc_info=True,
                extra={"asset_id": self.identity.asset_id, "attempt": self.attempts},
            )
            result = self._empty
        if self.state is PollState.CANCELLED:
            raise asyncio.CancelledError()
        self.result = result
        if self._publish is not None:
            self._publish(result)
        return result

    def _transition(self, state: PollState, delay: float | None = None) -> None:
        if self.state is PollState.CANCELLED:
            return
        self.state = state
        if state in TERMINAL_STATES:
            POLL_OUTCOMES.labels(state=state.value).inc()
        log.debug(
            "poll state change",
            extra={
                "asset_id": self.identity.asset_id,
                "fallback_id": self.identity.fallback_id,
                "state": state.value,
                "attempt": self.attempts,
                "delay": delay,
            },
        )


class PollRegistry:
    """
    Keeps one controller per subject and tracks which subject each consumer
    is watching. A controller is cancelled when the last consumer watching
    it switches away or unwatches; other consumers on the same subject keep
    their poll. Anonymous reads start polls but hold no reference.
    Finished controllers stay registered until they age out, which keeps an
    exhausted subject from polling again on every read.
    """

    def __init__(self, maxsize: int = 1024, ttl: float = 30 * 60):
        self._controllers: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._consumers: dict[Hashable, AssetIdentity] = {}

    def get(self, identity: AssetIdentity) -> PollController | None:
        return self._controllers.get(identity)

    def watchers(self, identity: AssetIdentity) -> list[Hashable]:
        return [c for c, watched in self._consumers.items() if watched == identity]

    def watch(self, identity: AssetIdentity, factory: Callable[[], PollController],
              consumer: Hashable | None = None, initial: Any = _UNSET) -> PollController:
        if consumer is not None:
            if self._consumers.get(consumer, identity) != identity:
                self.unwatch(consumer)
            self._consumers[consumer] = identity

        controller = self._controllers.get(identity)
        if controller is None or controller.state is PollState.CANCELLED:
            controller = factory()
            self._controllers[identity] = controller
            controller.start(initial)
        return controller

    def unwatch(self, consumer: Hashable) -> bool:
        """Drop one consumer; returns True if that stopped its subject's poll."""
        identity = self._consumers.pop(consumer, None)
        if identity is None or self.watchers(identity):
            return False
        controller = self._controllers.get(identity)
        if controller is None or controller.done:
            return False
        controller.cancel()
        self._controllers.pop(identity, None)
        return True

    def detach(self, identity: AssetIdentity) -> None:
        """Stop a subject's poll for every consumer."""
        controller = self._controllers.pop(identity, None)
        if controller is not None:
            controller.cancel()
        for consumer in self.watchers(identity):
            del self._consumers[consumer]

    def cancel_all(self) -> None:
        for identity in list(self._controllers.keys()):
            self.detach(identity)
        self._consumers.clear()
