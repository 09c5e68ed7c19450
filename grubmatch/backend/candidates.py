"""Per-group candidate deck cache with in-flight fetch deduplication."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from .errors import UpstreamUnavailableError
from .fallback import FALLBACK_RESTAURANTS, filter_fallback
from .models import LoadMoreResult
from .providers import CandidateProvider
from .schemas import Preferences, Restaurant
from .store import GroupStore

logger = logging.getLogger(__name__)


@dataclass
class CandidateCache:
    """Shared swiping deck per group.

    The first caller for an uncached group installs a pending future before
    calling the provider; concurrent callers await that same future, so the
    whole group sees one deck. The marker is removed whether the fetch
    succeeds or fails. `invalidate` bumps a per-group generation so a fetch
    that started before a new round never writes into the new round's cache.
    """

    store: GroupStore
    provider: CandidateProvider
    timeout: float = 10.0
    fallback: list[Restaurant] = field(default_factory=lambda: list(FALLBACK_RESTAURANTS))

    def __post_init__(self) -> None:
        self._pending: dict[str, asyncio.Future[list[Restaurant]]] = {}
        self._generations: defaultdict[str, int] = defaultdict(int)
        self._append_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_candidates(self, group_id: str) -> list[Restaurant]:
        snapshot = self.store.snapshot(group_id)
        if snapshot.group.preferences is None:
            return list(self.fallback)
        if snapshot.candidates:
            return snapshot.candidates

        pending = self._pending.get(group_id)
        if pending is not None:
            return list(await asyncio.shield(pending))

        future: asyncio.Future[list[Restaurant]] = asyncio.get_running_loop().create_future()
        self._pending[group_id] = future
        generation = self._generations[group_id]
        try:
            restaurants = await self._fetch_and_cache(group_id, snapshot.group.preferences, generation)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Attached waiters re-raise it; mark it retrieved for the rest.
            future.exception()
            raise
        else:
            future.set_result(restaurants)
            return list(restaurants)
        finally:
            if self._pending.get(group_id) is future:
                del self._pending[group_id]

    async def load_more(self, group_id: str) -> LoadMoreResult:
        # Appends for one group run one at a time, on top of the first deck.
        async with self._append_locks[group_id]:
            await self.get_candidates(group_id)
            return await self._append_page(group_id)

    async def _append_page(self, group_id: str) -> LoadMoreResult:
        snapshot = self.store.snapshot(group_id)
        existing = snapshot.candidates or []
        preferences = snapshot.group.preferences
        if preferences is None:
            return LoadMoreResult(restaurants=existing, added=0)

        generation = self._generations[group_id]
        try:
            page = await self._fetch_page(preferences, offset=len(existing))
        except UpstreamUnavailableError:
            logger.warning("Loading more candidates for group %s failed", group_id, exc_info=True)
            return LoadMoreResult(restaurants=existing, added=0)

        seen = {restaurant.id for restaurant in existing}
        fresh: list[Restaurant] = []
        for restaurant in page:
            if restaurant.id not in seen:
                seen.add(restaurant.id)
                fresh.append(restaurant)
        if not fresh:
            return LoadMoreResult(restaurants=existing, added=0)

        combined = [*existing, *fresh]
        if self._generations[group_id] == generation:
            self.store.save_candidates(group_id, combined)
        return LoadMoreResult(restaurants=combined, added=len(fresh))

    def invalidate(self, group_id: str) -> None:
        self._generations[group_id] += 1
        self._pending.pop(group_id, None)

    def is_fetching(self, group_id: str) -> bool:
        return group_id in self._pending

    async def _fetch_and_cache(self, group_id: str, preferences: Preferences, generation: int) -> list[Restaurant]:
        try:
            restaurants = await self._fetch_page(preferences, offset=0)
        except UpstreamUnavailableError:
            logger.warning("Candidate provider unavailable for group %s; using fallback deck", group_id, exc_info=True)
            restaurants = []

        if not restaurants:
            restaurants = filter_fallback(preferences, self.fallback)

        if self._generations[group_id] == generation:
            self.store.save_candidates(group_id, restaurants)
        else:
            logger.info("Discarding candidates fetched for a previous round of group %s", group_id)
        return restaurants

    async def _fetch_page(self, preferences: Preferences, offset: int) -> list[Restaurant]:
        try:
            return await asyncio.wait_for(self.provider.fetch(preferences, offset), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError("Candidate provider timed out") from exc
