"""
Seen-set and recommendation cache.

The cache holds one entry per user with a fixed freshness window. A miss
is recomputed single-flight: concurrent readers for the same user and
parameters wait for the first reader's result instead of running the
blender again. Storage failures degrade to an uncached result rather than
an error.
"""
import json
import logging
import sqlite3
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable

from . import database
from .config import CACHE_TTL_HOURS, CACHE_WAIT_TIMEOUT, SEEN_CACHE_SIZE
from .database import parse_timestamp_naive
from .recommender import Recommendation
from .utils import KeyedLocks, LRUCache, retry_with_backoff

logger = logging.getLogger(__name__)

SEEN_SWIPED = 'swiped'
SEEN_SERVED = 'served'


class SeenSet:
    """
    Per-user set of titles already surfaced.

    Backed by the seen_titles table and mirrored in memory for O(1)
    membership tests. Entries never expire; only undo removes one. The
    mirror keeps the most recently used users and reloads the rest.
    """

    def __init__(self, max_users: int = SEEN_CACHE_SIZE):
        # Guards mutation of the mirrored sets
        self._lock = threading.Lock()
        self._sets = LRUCache(max_users)

    def _ensure(self, user_id: str) -> set[int]:
        cached = self._sets.get(user_id)
        if cached is not None:
            return cached
        return self._sets.setdefault(user_id, database.load_seen_titles(user_id))

    def contains(self, user_id: str, title_id: int) -> bool:
        return title_id in self._ensure(user_id)

    def get(self, user_id: str) -> frozenset:
        titles = self._ensure(user_id)
        with self._lock:
            return frozenset(titles)

    def add(self, user_id: str, title_ids: Iterable[int], source: str = SEEN_SERVED) -> None:
        ids = list(dict.fromkeys(title_ids))
        if not ids:
            return
        database.add_seen_titles(user_id, ids, source)
        titles = self._ensure(user_id)
        with self._lock:
            titles.update(ids)

    def remove(self, user_id: str, title_id: int) -> bool:
        removed = database.remove_seen_title(user_id, title_id)
        titles = self._ensure(user_id)
        with self._lock:
            titles.discard(title_id)
        return removed

    def forget(self, user_id: str) -> None:
        """Drop the in-memory copy so the next read reloads from storage."""
        self._sets.pop(user_id)


@dataclass
class CacheEntry:
    user_id: str
    recommendations: list[Recommendation]
    computed_at: datetime
    expires_at: datetime
    scoring_version: str
    params: dict = field(default_factory=dict)

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    def matches(self, params: dict, scoring_version: str) -> bool:
        return self.params == params and self.scoring_version == scoring_version


@dataclass
class CacheResult:
    """
    Outcome of a cached read.

    hit: served from a fresh stored entry.
    shared: computed by a concurrent request for the same user.
    degraded: computed but not cached because storage failed or the wait
        for a concurrent computation timed out.
    """
    recommendations: list[Recommendation]
    hit: bool = False
    shared: bool = False
    degraded: bool = False
    computed_at: datetime | None = None
    expires_at: datetime | None = None


def _params_key(params: dict) -> str:
    return json.dumps(params, sort_keys=True)


@dataclass
class _Flight:
    """One in-flight computation; stale once the user is invalidated mid-run."""
    future: Future = field(default_factory=Future)
    stale: bool = False


class RecommendationCache:
    def __init__(
        self,
        ttl_hours: float = CACHE_TTL_HOURS,
        wait_timeout: float = CACHE_WAIT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ):
        self.ttl = timedelta(hours=ttl_hours)
        self.wait_timeout = wait_timeout
        self._clock = clock or datetime.now
        # Guards _inflight only; never held across storage calls
        self._lock = threading.Lock()
        self._inflight: dict[tuple[str, str], _Flight] = {}
        # Serialise one user's cache writes against that user's invalidations
        self._user_locks = KeyedLocks()

    def load(self, user_id: str) -> CacheEntry | None:
        row = database.load_cache_entry(user_id)
        if not row:
            return None
        return CacheEntry(
            user_id=user_id,
            recommendations=[Recommendation.from_dict(r) for r in row['payload']],
            computed_at=parse_timestamp_naive(row['computed_at']),
            expires_at=parse_timestamp_naive(row['expires_at']),
            scoring_version=row['scoring_version'],
            params=row['params'],
        )

    @retry_with_backoff(max_retries=3, initial_delay=0.05, exceptions=(sqlite3.OperationalError,))
    def _store(self, entry: CacheEntry) -> None:
        database.save_cache_entry(
            entry.user_id,
            [r.to_dict() for r in entry.recommendations],
            entry.params,
            entry.scoring_version,
            entry.computed_at.isoformat(),
            entry.expires_at.isoformat(),
        )

    def invalidate(self, user_id: str) -> None:
        """
        Drop the user's entry so the next read recomputes.

        In-flight computations started before the call keep running but their
        results are neither stored nor handed to readers arriving afterwards.
        """
        with self._lock:
            for key in [k for k in self._inflight if k[0] == user_id]:
                self._inflight.pop(key).stale = True
        with self._user_locks.hold(user_id):
            try:
                database.delete_cache_entry(user_id)
            except sqlite3.Error as e:
                logger.warning(f"Cache invalidation for {user_id} could not reach storage: {e}")

    def _lookup(self, user_id: str, params: dict, scoring_version: str, now: datetime) -> CacheResult | None:
        entry = self.load(user_id)
        if entry and entry.matches(params, scoring_version) and entry.is_fresh(now):
            logger.debug(f"Cache hit for {user_id} (expires {entry.expires_at.isoformat()})")
            return CacheResult(
                entry.recommendations, hit=True,
                computed_at=entry.computed_at, expires_at=entry.expires_at,
            )
        return None

    def get_or_compute(
        self,
        user_id: str,
        compute: Callable[[], list[Recommendation]],
        params: dict | None = None,
        scoring_version: str = "",
    ) -> CacheResult:
        """
        Serve a fresh entry or compute, store and return a new one.

        An entry computed with other parameters or another scoring version
        counts as a miss.
        """
        params = params or {}
        now = self._clock()
        degraded = False

        try:
            cached = self._lookup(user_id, params, scoring_version, now)
        except sqlite3.Error as e:
            logger.warning(f"Cache read failed for {user_id}, computing uncached: {e}")
            cached = None
            degraded = True
        if cached is not None:
            return cached

        key = (user_id, _params_key(params))
        with self._lock:
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                flight = self._inflight[key] = _Flight()

        if not leader:
            try:
                result = flight.future.result(timeout=self.wait_timeout)
            except FutureTimeoutError:
                logger.warning(f"Timed out waiting for in-flight recommendations for {user_id}; "
                               f"computing uncached")
                return CacheResult(compute(), degraded=True, computed_at=self._clock())
            return replace(result, hit=False, shared=True)

        if not degraded:
            # A previous leader may have stored its entry after the first read
            try:
                cached = self._lookup(user_id, params, scoring_version, now)
            except sqlite3.Error as e:
                logger.warning(f"Cache read failed for {user_id}, computing uncached: {e}")
                degraded = True
            if cached is not None:
                self._release(key, flight)
                flight.future.set_result(cached)
                return cached

        try:
            recommendations = compute()
        except Exception as exc:
            self._release(key, flight)
            flight.future.set_exception(exc)
            raise

        computed_at = self._clock()
        expires_at = computed_at + self.ttl
        entry = CacheEntry(user_id, recommendations, computed_at, expires_at, scoring_version, params)

        with self._user_locks.hold(user_id):
            with self._lock:
                stale = flight.stale
            if stale:
                logger.debug(f"Discarding recommendations for {user_id} computed before invalidation")
            elif not degraded:
                try:
                    self._store(entry)
                except sqlite3.Error as e:
                    logger.warning(f"Cache write failed for {user_id}, serving uncached: {e}")
                    degraded = True

        result = CacheResult(recommendations, degraded=degraded, computed_at=computed_at, expires_at=expires_at)
        self._release(key, flight)
        flight.future.set_result(result)
        return result

    def _release(self, key: tuple[str, str], flight: _Flight) -> None:
        with self._lock:
            if self._inflight.get(key) is flight:
                del self._inflight[key]
