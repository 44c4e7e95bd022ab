"""
Optimistic mutation executor.

Every write in the engine is one configuration of ``OptimisticMutation``:

  1. cancel in-flight reads of the keys it touches
  2. snapshot those keys
  3. apply the expected post-state synchronously (records and aggregates)
  4. await the remote write (the only suspension point)
  5. reconcile: restore the snapshot verbatim on failure, then invalidate
     the touched keys whether the write failed or not

Any failure of the remote write reaches the caller as ``RemoteWriteError``,
chained to the original exception.

Input checks (authentication, validation) happen in the caller before the
executor runs, so they never trigger a rollback.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any, Generic, TypeVar

from triage.cache.keys import QueryKey
from triage.cache.store import CacheStore
from triage.core.errors import RemoteWriteError, SupersededError
from triage.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
Snapshot = dict[QueryKey, Any]


class OptimisticMutation(Generic[T]):
    """
    One optimistic write against the cache and the remote store.

    Args:
        cache:      the shared cache store.
        name:       operation name, used in logs and errors.
        touches:    key prefixes the optimistic apply may write; all cached
                    keys under them are cancelled and snapshotted.
        apply:      forward function, writes the expected state into the cache.
        remote:     coroutine factory performing the persistence call.
        rollback:   inverse function; defaults to restoring the snapshot.
        invalidate: key prefixes to invalidate once the write settles;
                    defaults to ``touches``.
        on_success: called with the remote result before invalidation.
        is_current: returns False once a newer mutation has replaced this
                    one; a replaced mutation neither rolls back nor
                    invalidates and raises ``superseded_error`` instead.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        name: str,
        touches: Sequence[QueryKey],
        apply: Callable[[], None],
        remote: Callable[[], Awaitable[T]],
        rollback: Callable[[Snapshot], None] | None = None,
        invalidate: Sequence[QueryKey] | None = None,
        on_success: Callable[[T], None] | None = None,
        is_current: Callable[[], bool] | None = None,
        superseded_error: type[SupersededError] = SupersededError,
        log_context: dict[str, Any] | None = None,
    ) -> None:
        self.cache = cache
        self.name = name
        self.touches = tuple(touches)
        self.apply = apply
        self.remote = remote
        self.rollback = rollback or cache.restore
        self.invalidate = tuple(self.touches if invalidate is None else invalidate)
        self.on_success = on_success
        self.is_current = is_current or (lambda: True)
        self.superseded_error = superseded_error
        self.log = logger.bind(mutation=name, **(log_context or {}))

    def _affected_keys(self) -> list[QueryKey]:
        affected: dict[QueryKey, None] = {}
        for prefix in self.touches:
            for key in self.cache.keys(prefix):
                affected[key] = None
        return list(affected)

    async def run(self) -> T:
        for prefix in self.touches:
            self.cache.cancel_matching(prefix)

        snapshot = self.cache.snapshot(self._affected_keys())
        self.apply()
        self.log.debug("optimistic_applied", keys=len(snapshot))

        started = time.perf_counter()
        try:
            result = await self.remote()
        except SupersededError:
            self.log.info("mutation_superseded", stage="before_submit")
            raise
        except Exception as exc:
            if not self.is_current():
                self.log.info("mutation_superseded", stage="failed_after_submit", error=str(exc))
                raise self.superseded_error(self.name) from exc
            self.rollback(snapshot)
            self._invalidate()
            self.log.error(
                "mutation_rolled_back",
                error=str(exc),
                error_type=type(exc).__name__,
                restored_keys=len(snapshot),
            )
            if isinstance(exc, RemoteWriteError):
                raise
            raise RemoteWriteError(str(exc) or type(exc).__name__, operation=self.name) from exc
        except BaseException:
            # Cancelled mid-write: outcome unknown until the refetch lands
            self._invalidate()
            raise

        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
        if not self.is_current():
            self.log.info("mutation_superseded", stage="succeeded_after_submit", elapsed_ms=elapsed_ms)
            raise self.superseded_error(self.name)

        if self.on_success is not None:
            self.on_success(result)
        self._invalidate()
        self.log.info("remote_write_ok", elapsed_ms=elapsed_ms)
        return result

    def _invalidate(self) -> None:
        for prefix in self.invalidate:
            self.cache.invalidate_matching(prefix)


def unique_ids(ids: Iterable[str]) -> tuple[str, ...]:
    """Order-preserving de-duplication of target ids."""
    return tuple(dict.fromkeys(ids))
