"""Memoized recipe matches keyed by pantry fingerprint.

Entries are evicted least-recently-used beyond capacity and expire after a TTL
regardless of access. Concurrent misses for one fingerprint share a single
matcher run (single flight): the first caller computes, the others wait on
its future.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass

from sqlalchemy.orm import Session

from pantrychef.config import get_settings
from pantrychef.database import SessionLocal
from pantrychef.exceptions import CacheMiss
from pantrychef.schemas.recipe import MatchOptions, MatchResult
from pantrychef.services.pantry_service import PantryService, PantrySnapshot
from pantrychef.services.recipe_matcher import RecipeMatcher, SqlRecipeCorpus, apply_match_options
from pantrychef.services.taxonomy import IngredientTaxonomy, get_default_taxonomy

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    computations: int = 0
    coalesced: int = 0
    evictions: int = 0


def default_matcher_factory(db: Session, pantry: PantryService) -> RecipeMatcher:
    return RecipeMatcher(SqlRecipeCorpus(db), pantry=pantry)


class MatchCache:
    """Fingerprint -> ranked MatchResult list, with LRU, TTL and single flight."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        matcher_factory: Callable[[Session, PantryService], RecipeMatcher] = default_matcher_factory,
        taxonomy: IngredientTaxonomy | None = None,
        capacity: int | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.matcher_factory = matcher_factory
        self.taxonomy = taxonomy or get_default_taxonomy()
        self.capacity = capacity or settings.match_cache_capacity
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.match_cache_ttl_seconds
        self.clock = clock
        self.stats = CacheStats()

        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float, tuple[MatchResult, ...]]] = OrderedDict()
        self._inflight: dict[str, Future] = {}
        self._invalidated_inflight: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            try:
                self._lookup_locked(fingerprint, touch=False)
            except CacheMiss:
                return False
            return True

    def get_or_compute(self, user_id: int, options: MatchOptions | None = None) -> list[MatchResult]:
        """Ranked matches for the user's current pantry, computed at most once per fingerprint."""
        db = self.session_factory()
        try:
            pantry = PantryService(db, self.taxonomy)
            snapshot = pantry.snapshot(user_id)
            results = self.get_or_compute_for(
                snapshot.fingerprint,
                lambda: self._run_matcher(db, pantry, snapshot),
            )
        finally:
            db.close()
        return apply_match_options(results, options)

    def _run_matcher(
        self, db: Session, pantry: PantryService, snapshot: PantrySnapshot
    ) -> list[MatchResult]:
        matcher = self.matcher_factory(db, pantry)
        return matcher.rank(snapshot)

    def get(self, fingerprint: str) -> list[MatchResult]:
        """Return a fresh entry or raise CacheMiss."""
        with self._lock:
            return list(self._lookup_locked(fingerprint))

    def put(self, fingerprint: str, results: list[MatchResult]) -> None:
        with self._lock:
            self._store_locked(fingerprint, results)

    def get_or_compute_for(
        self, fingerprint: str, compute: Callable[[], list[MatchResult]]
    ) -> list[MatchResult]:
        """Return the cached list or run ``compute`` once for all concurrent callers."""
        with self._lock:
            try:
                results = self._lookup_locked(fingerprint)
                self.stats.hits += 1
                return list(results)
            except CacheMiss:
                self.stats.misses += 1
            future = self._inflight.get(fingerprint)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[fingerprint] = future
            else:
                self.stats.coalesced += 1

        if not leader:
            return list(future.result())

        try:
            results = list(compute())
        except BaseException as e:
            with self._lock:
                self._inflight.pop(fingerprint, None)
                self._invalidated_inflight.discard(fingerprint)
            future.set_exception(e)
            raise

        with self._lock:
            self.stats.computations += 1
            self._inflight.pop(fingerprint, None)
            if fingerprint in self._invalidated_inflight:
                self._invalidated_inflight.discard(fingerprint)
            else:
                self._store_locked(fingerprint, results)
        future.set_result(results)
        return list(results)

    def invalidate(self, fingerprint: str) -> bool:
        """Drop the entry for a fingerprint. Returns True if one was removed."""
        with self._lock:
            if fingerprint in self._inflight:
                self._invalidated_inflight.add(fingerprint)
            removed = self._entries.pop(fingerprint, None) is not None
        if removed:
            logger.debug(f"Invalidated match cache entry {fingerprint[:12]}")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _lookup_locked(self, fingerprint: str, touch: bool = True) -> tuple[MatchResult, ...]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            raise CacheMiss(fingerprint)
        expires_at, results = entry
        if expires_at <= self.clock():
            del self._entries[fingerprint]
            raise CacheMiss(fingerprint)
        if touch:
            self._entries.move_to_end(fingerprint)
        return results

    def _store_locked(self, fingerprint: str, results: list[MatchResult]) -> None:
        now = self.clock()
        self._entries[fingerprint] = (now + self.ttl, tuple(results))
        self._entries.move_to_end(fingerprint)
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            logger.debug(f"Evicted match cache entry {evicted[:12]}")


_match_cache: MatchCache | None = None
_match_cache_lock = threading.Lock()


def get_match_cache() -> MatchCache:
    """Get the process-wide match cache."""
    global _match_cache
    with _match_cache_lock:
        if _match_cache is None:
            _match_cache = MatchCache()
        return _match_cache
