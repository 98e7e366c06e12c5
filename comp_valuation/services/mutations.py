"""
Optimistic writes against cached state.

Every write follows the same protocol: cancel any in-flight read of the key,
snapshot the cached entry, apply the optimistic value at once, await the real
write, restore the snapshot verbatim if the write fails, and finally mark the
key stale so the next read fetches ground truth. Readers never keep seeing an
optimistic value whose write was abandoned.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Hashable

from ..core.cache import CacheEntry, TieredCache, Tier
from ..core.errors import MutationError, MutationInFlightError
from ..core.metrics import MUTATIONS

log = logging.getLogger(__name__)


class MutationPhase(str, Enum):
    CLEAN = "clean"
    OPTIMISTIC_PENDING = "optimistic_pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationState:
    """Per-key protocol state; the snapshot only lives while a write is pending."""
    phase: MutationPhase = MutationPhase.CLEAN
    snapshot: CacheEntry | None = None

    @property
    def pending(self) -> bool:
        return self.phase is MutationPhase.OPTIMISTIC_PENDING

    def begin(self, snapshot: CacheEntry | None) -> None:
        if self.pending:
            raise RuntimeError("mutation already pending")
        self.phase = MutationPhase.OPTIMISTIC_PENDING
        self.snapshot = snapshot

    def succeed(self) -> None:
        self.phase = MutationPhase.COMMITTED
        self.snapshot = None

    def fail(self) -> CacheEntry | None:
        snapshot, self.snapshot = self.snapshot, None
        self.phase = MutationPhase.ROLLED_BACK
        return snapshot


class OptimisticMutator:
    """Only keys with a write in flight hold a state entry."""

    def __init__(self, cache: TieredCache, tier: Tier = Tier.DYNAMIC):
        self.cache = cache
        self.tier = tier
        self._states: dict[tuple[Tier, Hashable], MutationState] = {}

    def state(self, key: Hashable, tier: Tier | None = None) -> MutationState:
        return self._states.get((tier or self.tier, key)) or MutationState()

    def pending(self) -> list[tuple[Tier, Hashable]]:
        return [slot for slot, state in self._states.items() if state.pending]

    async def mutate(
        self,
        key: Hashable,
        new_value: Any,
        write: Callable[[], Awaitable[Any]],
        *,
        tier: Tier | None = None,
        user_message: str = "Update failed, please try again.",
    ) -> Any:
        """
        Apply `new_value` optimistically and return what `write` commits.

        Raises `MutationInFlightError` if the key already has a pending write
        and `MutationError` (after rolling back) if `write` fails. Callers
        must not treat the optimistic value as final until this returns.
        """
        tier = tier or self.tier
        slot = (tier, key)
        if slot in self._states:
            raise MutationInFlightError(key)
        state = self._states[slot] = MutationState()

        self.cache.cancel_inflight(tier, key)
        state.begin(self.cache.peek(tier, key))
        self.cache.set(tier, key, new_value)
        self.cache.hold(tier, key)
        try:
            committed = await write()
        except asyncio.CancelledError:
            self.cache.restore(tier, key, state.fail())
            MUTATIONS.labels(outcome="cancelled").inc()
            raise
        except Exception as exc:
            self.cache.restore(tier, key, state.fail())
            MUTATIONS.labels(outcome="rolled_back").inc()
            log.warning("write failed, optimistic value rolled back",
                        exc_info=True, extra={"tier": tier.value, "key": str(key)})
            raise MutationError(key, user_message) from exc
        else:
            state.succeed()
            MUTATIONS.labels(outcome="committed").inc()
            return committed
        finally:
            self.cache.release(tier, key)
            self.cache.invalidate(tier, key)
            self._states.pop(slot, None)
