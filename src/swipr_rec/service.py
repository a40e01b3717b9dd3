"""
Recommendation service.

Ties the action log, preference models, similarity tables, seen-set and
cache together. Every mutation for one user runs in arrival order under
that user's FIFO lock; different users proceed in parallel. Cache
invalidation is an explicit step of ingestion and undo.
"""
import logging
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable

from . import database
from .cache import CacheResult, RecommendationCache, SeenSet, SEEN_SERVED, SEEN_SWIPED
from .catalog import CatalogProvider, Title
from .config import (
    DEFAULT_LIMIT,
    DEFAULT_DISCOVERY_RATIO,
    MAX_SIMILAR_USER_CANDIDATES,
    MAX_SIMILAR_USERS,
    MODEL_CACHE_SIZE,
    REBUILD_INTERVAL,
)
from .item_similarity import ItemSimilarityTable, recompute_item_similarities
from .profile import (
    Action,
    DeclaredPreferences,
    InvalidActionError,
    PreferenceModel,
    build_preference_model,
    make_action,
)
from .recommender import HybridRecommender, Recommendation, ScoreBreakdown
from .scoring_weights import ScoringWeights, load_scoring_weights
from .user_similarity import UserMatch, UserSimilarity, UserSimilarityEngine
from .utils import KeyedLocks, LRUCache

logger = logging.getLogger(__name__)


class _FifoLock:
    """Ticket lock: waiters acquire strictly in arrival order."""

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    def __enter__(self):
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._cond.wait()
        return self

    def __exit__(self, *exc_info):
        with self._cond:
            self._serving += 1
            self._cond.notify_all()


@dataclass
class ActionReceipt:
    """Acknowledgement returned by record_action."""
    user_id: str
    title_id: int
    kind: str
    sequence: int
    model_version: int
    duplicate: bool = False


@dataclass
class UserStats:
    user_id: str
    total_actions: int
    likes: int
    passes: int
    unwatched: int
    seen: int
    disliked_genres: list[str] = field(default_factory=list)
    top_genres: list[str] = field(default_factory=list)
    model_version: int = 0


class RecommendationService:
    def __init__(
        self,
        catalog: CatalogProvider,
        weights: ScoringWeights | None = None,
        item_similarities: ItemSimilarityTable | None = None,
        cache: RecommendationCache | None = None,
        seen: SeenSet | None = None,
        clock: Callable[[], datetime] | None = None,
        max_cached_models: int = MODEL_CACHE_SIZE,
    ):
        database.init_db()
        self.catalog = catalog
        self.weights = weights or load_scoring_weights()
        self.clock = clock or datetime.now
        if item_similarities is None:
            rows, version = database.load_item_similarities()
            item_similarities = ItemSimilarityTable.from_rows(rows, version)
        self.item_similarities = item_similarities
        self.cache = cache or RecommendationCache(clock=self.clock)
        self.seen = seen or SeenSet()
        self.recommender = HybridRecommender(catalog, self.item_similarities, self.weights)
        self.similarity_engine = UserSimilarityEngine(self.weights)

        self._models = LRUCache(max_cached_models)
        self._locks = KeyedLocks(_FifoLock)

    def _user_lock(self, user_id: str):
        return self._locks.hold(user_id)

    def _load_model(self, user_id: str) -> PreferenceModel:
        """
        Cached model, else the stored snapshot caught up with any newer log
        rows, else a replay of the whole action log.
        """
        model = self._models.get(user_id)
        if model is not None:
            return model
        snapshot = database.load_preference_model(user_id)
        model = PreferenceModel.from_dict(snapshot) if snapshot is not None else PreferenceModel(user_id)
        newer = [Action.from_row(r) for r in database.load_user_actions(user_id, after=model.last_sequence)]
        for action in newer:
            model.apply_action(action)
        if newer:
            logger.debug(f"Applied {len(newer)} logged actions missing from {user_id}'s snapshot")
            database.save_preference_model(user_id, model.to_dict(), model.version)
        self._models.set(user_id, model)
        return model

    def _discard_cached_state(self, user_id: str) -> None:
        """Forget in-memory state that may be ahead of a rolled-back transaction."""
        self._models.pop(user_id)
        self.seen.forget(user_id)

    # --- ingestion -----------------------------------------------------------

    def record_action(
        self,
        user_id: str,
        title_id,
        kind,
        genres: Iterable[str] | None = None,
        language: str | None = None,
        director: str | None = None,
        timestamp: datetime | str | None = None,
    ) -> ActionReceipt:
        """
        Validate, log and apply one swipe.

        When neither genres nor language is given they are taken from the
        catalog. Raises InvalidActionError for rejected input; nothing is
        recorded in that case.
        """
        if genres is None and language is None:
            genres, language, director = self._metadata_for(title_id, director)
        action = make_action(user_id, title_id, kind, genres, language, director,
                             timestamp if timestamp is not None else self.clock())

        with self._user_lock(action.user_id):
            # Load before logging so a replay does not already include this action
            model = self._load_model(action.user_id)
            row = action.to_row()
            try:
                with database.get_db():
                    sequence = database.insert_action(
                        row['user_id'], row['title_id'], row['kind'], row['genres'],
                        row['language'], row['director'], row['created_at'],
                    )
                    changed = model.apply_action(replace(action, sequence=sequence))
                    database.save_preference_model(action.user_id, model.to_dict(), model.version)
                    self.seen.add(action.user_id, [action.title_id], source=SEEN_SWIPED)
            except Exception:
                self._discard_cached_state(action.user_id)
                raise
            finally:
                self.cache.invalidate(action.user_id)

        logger.debug(f"{action.user_id}: {action.kind.value} on {action.title_id} "
                     f"(seq {sequence}, model v{model.version})")
        return ActionReceipt(
            user_id=action.user_id,
            title_id=action.title_id,
            kind=action.kind.value,
            sequence=sequence,
            model_version=model.version,
            duplicate=not changed,
        )

    def _metadata_for(self, title_id, director: str | None):
        try:
            tid = int(title_id)
        except (TypeError, ValueError):
            raise InvalidActionError(f"malformed title id {title_id!r}") from None
        title = self.catalog.get_titles([tid]).get(tid)
        if title is None:
            logger.warning(f"Title {tid} not in catalog; recording action without metadata")
            return (), None, director
        return list(title.genres), title.original_language, director or title.director

    def undo_action(self, user_id: str, title_id: int) -> bool:
        """
        Remove the most recent action for a title.

        The title leaves the seen-set and the model is rebuilt from the
        remaining log. Returns False when there was nothing to undo.
        """
        tid = int(title_id)
        with self._user_lock(user_id):
            try:
                with database.get_db():
                    removed = database.delete_latest_action(user_id, tid)
                    if removed is not None:
                        self.seen.remove(user_id, tid)
                        actions = [Action.from_row(r) for r in database.load_user_actions(user_id)]
                        model = build_preference_model(user_id, actions)
                        database.save_preference_model(user_id, model.to_dict(), model.version)
            except Exception:
                self._discard_cached_state(user_id)
                self.cache.invalidate(user_id)
                raise
            if removed is None:
                return False
            self._models.set(user_id, model)
            self.cache.invalidate(user_id)
        logger.info(f"{user_id}: undid {removed['kind']} on {tid}")
        return True

    def import_actions(self, actions: Iterable[Action]) -> int:
        """
        Bulk-append validated actions to the log in the given order.

        Each user's rows and seen-set entries commit together, followed by
        that user's cache invalidation; the user's model catches up from the
        log on next use. Returns the number of actions logged.
        """
        by_user: dict[str, list[Action]] = {}
        for action in actions:
            by_user.setdefault(action.user_id, []).append(action)

        imported = 0
        for user_id, batch in by_user.items():
            with self._user_lock(user_id):
                try:
                    with database.get_db():
                        database.insert_actions_batch([a.to_row() for a in batch])
                        self.seen.add(user_id, [a.title_id for a in batch], source=SEEN_SWIPED)
                except Exception:
                    self.seen.forget(user_id)
                    raise
                finally:
                    self._models.pop(user_id)
                    self.cache.invalidate(user_id)
            imported += len(batch)
        logger.info(f"Imported {imported} actions for {len(by_user)} users")
        return imported

    def set_declared_preferences(
        self,
        user_id: str,
        genres: Iterable[str] = (),
        languages: Iterable[str] = (),
    ) -> DeclaredPreferences:
        declared = DeclaredPreferences.from_dict({'genres': list(genres), 'languages': list(languages)})
        with self._user_lock(user_id):
            database.save_declared_preferences(user_id, list(declared.genres), list(declared.languages))
            self.cache.invalidate(user_id)
        return declared

    def get_declared_preferences(self, user_id: str) -> DeclaredPreferences:
        return DeclaredPreferences.from_dict(database.load_declared_preferences([user_id]).get(user_id))

    # --- reads ---------------------------------------------------------------

    def get_preference_model(self, user_id: str) -> PreferenceModel:
        """A copy of the user's current model."""
        with self._user_lock(user_id):
            return self._load_model(user_id).copy()

    def get_recommendations(
        self,
        user_id: str,
        limit: int = DEFAULT_LIMIT,
        discovery_ratio: float = DEFAULT_DISCOVERY_RATIO,
        mark_served: bool = False,
    ) -> CacheResult:
        """
        Ranked recommendations through the 24h cache.

        Scoring never marks anything seen; pass ``mark_served=True`` (or call
        mark_served) once the list is actually shown.
        """
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        if not 0.0 <= discovery_ratio <= 1.0:
            raise ValueError(f"discovery_ratio must be within [0, 1], got {discovery_ratio}")

        params = {'limit': int(limit), 'discovery_ratio': float(discovery_ratio)}
        result = self.cache.get_or_compute(
            user_id,
            lambda: self._compute(user_id, limit, discovery_ratio),
            params=params,
            scoring_version=self.weights.version,
        )
        seen = self.seen.get(user_id)
        fresh = [r for r in result.recommendations if r.title_id not in seen]
        if len(fresh) != len(result.recommendations):
            result = replace(result, recommendations=fresh)
        if mark_served and fresh:
            self.mark_served(user_id, [r.title_id for r in fresh])
        return result

    def mark_served(self, user_id: str, title_ids: Iterable[int]) -> None:
        """Record titles as shown; they will not be recommended again."""
        ids = [int(t) for t in title_ids]
        with self._user_lock(user_id):
            self.seen.add(user_id, ids, source=SEEN_SERVED)
            self.cache.invalidate(user_id)

    def _compute(self, user_id: str, limit: int, discovery_ratio: float) -> list[Recommendation]:
        model = self.get_preference_model(user_id)
        declared = self.get_declared_preferences(user_id)
        seen = self.seen.get(user_id)

        similar: list[UserSimilarity] = []
        neighbor_likes: dict[str, list[int]] = {}
        if not self.recommender.is_cold_start(model):
            similar, neighbors = self._similar_users(model, declared)
            neighbor_likes = {s.user_id: neighbors[s.user_id].liked_titles for s in similar}

        return self.recommender.recommend(
            model,
            limit=limit,
            discovery_ratio=discovery_ratio,
            seen=seen,
            declared=declared,
            similar_users=similar,
            neighbor_likes=neighbor_likes,
        )

    def _similar_users(
        self,
        model: PreferenceModel,
        declared: DeclaredPreferences | None,
        limit: int = MAX_SIMILAR_USERS,
    ) -> tuple[list[UserSimilarity], dict[str, PreferenceModel]]:
        candidates = database.find_users_who_liked(
            model.liked_titles, exclude_user=model.user_id, limit=MAX_SIMILAR_USER_CANDIDATES,
        )
        if not candidates:
            return [], {}
        user_ids = [user for user, _ in candidates]
        actions = database.load_actions_batch(user_ids)
        neighbors = {
            user: build_preference_model(user, [Action.from_row(r) for r in actions.get(user, [])])
            for user in user_ids
        }
        declared_map = {
            user: DeclaredPreferences.from_dict(payload)
            for user, payload in database.load_declared_preferences(user_ids).items()
        }
        if declared is not None:
            declared_map[model.user_id] = declared
        similar = self.similarity_engine.find_similar_users(model, neighbors, declared_map, limit=limit)
        return similar, neighbors

    def similar_users(self, user_id: str, limit: int = MAX_SIMILAR_USERS) -> list[UserSimilarity]:
        model = self.get_preference_model(user_id)
        similar, _ = self._similar_users(model, self.get_declared_preferences(user_id), limit=limit)
        return similar

    def compare_users(self, user_id: str, other_id: str) -> UserMatch:
        return self.similarity_engine.compare(
            self.get_preference_model(user_id),
            self.get_preference_model(other_id),
            self.get_declared_preferences(user_id),
            self.get_declared_preferences(other_id),
        )

    def explain(self, user_id: str, title_id: int) -> ScoreBreakdown | None:
        """Content score breakdown of one title for one user; None if not in the catalog."""
        title = self.catalog.get_titles([int(title_id)]).get(int(title_id))
        if title is None:
            return None
        return self.recommender.explain(title, self.get_preference_model(user_id))

    def watchlist(self, user_id: str) -> list[Title]:
        """Titles currently marked unwatched, most recent first."""
        ids = list(reversed(self.get_preference_model(user_id).unwatched_titles))
        titles = self.catalog.get_titles(ids)
        return [titles.get(tid) or Title(id=tid) for tid in ids]

    def user_stats(self, user_id: str) -> UserStats:
        model = self.get_preference_model(user_id)
        return UserStats(
            user_id=user_id,
            total_actions=len(database.load_user_actions(user_id)),
            likes=len(model.liked_titles),
            passes=len(model.passed_titles),
            unwatched=len(model.unwatched_titles),
            seen=len(self.seen.get(user_id)),
            disliked_genres=sorted(model.disliked_genres),
            top_genres=model.dominant_genres(3),
            model_version=model.version,
        )

    def delete_user(self, user_id: str) -> int:
        """Account removal: drops actions, snapshot, cache, seen-set and declared preferences."""
        with self._user_lock(user_id):
            deleted = database.delete_user(user_id)
            self._models.pop(user_id)
            self.seen.forget(user_id)
            self.cache.invalidate(user_id)
        return deleted

    # --- batch ---------------------------------------------------------------

    def rebuild_item_similarities(self) -> int:
        """Recompute the item similarity table from the full log and swap it in."""
        actions = [Action.from_row(r) for r in database.load_all_actions()]
        pairs = recompute_item_similarities(actions)
        version = database.replace_item_similarities([p.as_row() for p in pairs])
        self.item_similarities.swap(pairs, version)
        logger.info(f"Item similarity table v{version}: {len(pairs)} pairs from {len(actions)} actions")
        return len(pairs)


class SimilarityRebuildScheduler:
    """Background thread rebuilding the item similarity table on a fixed interval."""

    def __init__(
        self,
        service: RecommendationService,
        interval: float = REBUILD_INTERVAL,
        on_rebuild: Callable[[int], None] | None = None,
    ):
        self.service = service
        self.interval = interval
        self.on_rebuild = on_rebuild
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    def run_once(self) -> int | None:
        try:
            pairs = self.service.rebuild_item_similarities()
        except sqlite3.Error as e:
            logger.error(f"Item similarity rebuild failed: {e}")
            return None
        self.runs += 1
        if self.on_rebuild:
            self.on_rebuild(pairs)
        return pairs

    def _tick(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            logger.error(f"Item similarity rebuild crashed, retrying next interval: {e}", exc_info=True)

    def _loop(self) -> None:
        self._tick()
        while not self._stop.wait(self.interval):
            self._tick()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="similarity-rebuild", daemon=True)
        self._thread.start()
        logger.info(f"Item similarity rebuild scheduled every {self.interval:.0f}s")

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def wait(self) -> None:
        """Block until stop() is called (daemon mode)."""
        while not self._stop.wait(1.0):
            pass
