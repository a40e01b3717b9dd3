from dataclasses import dataclass, field
import logging
import math
from typing import Callable

from .catalog import CatalogProvider, Title
from .item_similarity import ItemSimilarityTable
from .profile import DeclaredPreferences, PreferenceModel, detect_anime
from .scoring_weights import ScoringWeights
from .user_similarity import UserSimilarity, user_cf_scores
from .config import (
    ANIMATION_GENRE,
    CONTENT_BASE_SCORE,
    GENRE_MATCH_WEIGHT,
    GENRE_WINDOW_SIZE,
    QUALITY_BOOST,
    QUALITY_MIN_VOTE_AVERAGE,
    QUALITY_MIN_VOTE_COUNT,
    LANGUAGE_BOOST,
    DIRECTOR_BOOST,
    CONTENT_SCORE_MIN,
    CONTENT_SCORE_MAX,
    COLD_START_MIN_ACTIONS,
    COLD_START_MIN_VOTE_AVERAGE,
    COLD_START_MIN_VOTE_COUNT,
    COLD_START_CONTENT_WEIGHT,
    DOMINANT_GENRE_COUNT,
    DISCOVERY_QUALITY_WEIGHT,
    DISCOVERY_NOVELTY_WEIGHT,
    UNWATCHED_ANCHOR_WEIGHT,
    MAX_CANDIDATE_POOL,
    MAX_ITEM_ANCHORS,
    MAX_ITEM_NEIGHBORS,
)

logger = logging.getLogger(__name__)

SOURCE_CONTENT = 'content'
SOURCE_USER_CF = 'user-cf'
SOURCE_ITEM_CF = 'item-cf'
SOURCE_DISCOVERY = 'discovery'
BLEND_SOURCES = (SOURCE_CONTENT, SOURCE_USER_CF, SOURCE_ITEM_CF)


# --- Content scoring ---------------------------------------------------------

@dataclass
class ScoreBreakdown:
    """Content score for one title with per-rule contributions."""
    title_id: int
    raw: float
    score: float
    components: dict[str, float] = field(default_factory=dict)
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


RuleFunc = Callable[
    ["ContentScorer", Title, PreferenceModel],
    tuple[float, list[str], list[str]],
]


class ScoringEngine:
    """Composable additive scoring pipeline; each named rule contributes a delta."""

    def __init__(self, rules: list[tuple[str, RuleFunc]]):
        self.rules = rules

    def score(
        self,
        scorer: "ContentScorer",
        title: Title,
        model: PreferenceModel,
    ) -> tuple[dict[str, float], list[str], list[str]]:
        components: dict[str, float] = {}
        reasons: list[str] = []
        warnings: list[str] = []
        for name, rule in self.rules:
            delta, extra_reasons, extra_warnings = rule(scorer, title, model)
            components[name] = delta
            reasons.extend(extra_reasons)
            warnings.extend(extra_warnings)
        return components, reasons, warnings


def _genre_match_rule(scorer, title, model):
    """Fraction of the title's genres the user likes, weighted by window like counts."""
    liked = model.liked_genre_counts
    genres = [g for g in title.genres if g not in model.disliked_genres]
    if not title.genres or not liked:
        return 0.0, [], []
    matched = [g for g in genres if g in liked]
    if not matched:
        return 0.0, [], []
    strength = sum(liked[g] / GENRE_WINDOW_SIZE for g in matched) / len(title.genres)
    top = max(matched, key=lambda g: (liked[g], g))
    return GENRE_MATCH_WEIGHT * strength, [f"Genre: {top}"], []


def _dislike_rule(scorer, title, model):
    """Generic penalty per disliked genre. Animation is skipped for anime titles."""
    anime_live = model.anime_penalty_active and detect_anime(title)
    disliked = sorted(
        g for g in title.genre_set & model.disliked_genres
        if not (anime_live and g == ANIMATION_GENRE)
    )
    if not disliked:
        return 0.0, [], []
    return (
        -scorer.weights.dislike_penalty * len(disliked),
        [],
        [f"Genre: {g} (disliked)" for g in disliked],
    )


def _anime_rule(scorer, title, model):
    if model.anime_penalty_active and detect_anime(title):
        return -scorer.weights.anime_penalty, [], ["Anime (Animation disliked)"]
    return 0.0, [], []


def _quality_rule(scorer, title, model):
    if title.vote_average >= QUALITY_MIN_VOTE_AVERAGE and title.vote_count >= QUALITY_MIN_VOTE_COUNT:
        return QUALITY_BOOST, [f"Highly rated ({title.vote_average:.1f})"], []
    return 0.0, [], []


def _language_rule(scorer, title, model):
    """Boost proportional to the language's weight relative to the user's top language."""
    weights = model.language_weights
    weight = weights.get(title.original_language, 0.0)
    if weight <= 0:
        return 0.0, [], []
    top = max(weights.values())
    return LANGUAGE_BOOST * (weight / top), [f"Language: {title.original_language}"], []


def _director_rule(scorer, title, model):
    if not title.director:
        return 0.0, [], []
    affinity = model.director_affinity.get(title.director, 0.0)
    if affinity <= 0:
        return 0.0, [], []
    return DIRECTOR_BOOST * affinity, [f"Director: {title.director}"], []


DEFAULT_CONTENT_RULES: list[tuple[str, RuleFunc]] = [
    ('genre_match', _genre_match_rule),
    ('dislike_penalty', _dislike_rule),
    ('anime_penalty', _anime_rule),
    ('quality', _quality_rule),
    ('language', _language_rule),
    ('director', _director_rule),
]


class ContentScorer:
    """
    Score one title against one preference model.

    score = clamp(base + genre match - dislike penalties - anime penalty
                  + quality + language + director, 0, 1)

    The raw (unclamped) sum is kept in the breakdown. Scores are only
    comparable within one scoring pass.
    """

    def __init__(self, weights: ScoringWeights | None = None, rules: list[tuple[str, RuleFunc]] | None = None):
        self.weights = weights or ScoringWeights()
        self.engine = ScoringEngine(rules or DEFAULT_CONTENT_RULES)

    def breakdown(self, title: Title, model: PreferenceModel) -> ScoreBreakdown:
        components, reasons, warnings = self.engine.score(self, title, model)
        raw = CONTENT_BASE_SCORE + sum(components.values())
        clamped = min(CONTENT_SCORE_MAX, max(CONTENT_SCORE_MIN, raw))
        return ScoreBreakdown(title.id, raw, clamped, components, reasons, warnings)

    def score(self, title: Title, model: PreferenceModel) -> float:
        return self.breakdown(title, model).score


# --- Blending ----------------------------------------------------------------

@dataclass
class Recommendation:
    title_id: int
    title: str
    score: float
    source: str
    reason: str
    is_discovery: bool = False
    contributions: dict[str, float] = field(default_factory=dict)
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'title_id': self.title_id,
            'title': self.title,
            'score': self.score,
            'source': self.source,
            'reason': self.reason,
            'is_discovery': self.is_discovery,
            'contributions': self.contributions,
            'details': self.details,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Recommendation":
        return cls(
            title_id=int(payload['title_id']),
            title=payload.get('title', ""),
            score=float(payload['score']),
            source=payload['source'],
            reason=payload.get('reason', ""),
            is_discovery=bool(payload.get('is_discovery', False)),
            contributions=dict(payload.get('contributions') or {}),
            details=dict(payload.get('details') or {}),
        )


def _normalize_by_max(scores: dict[int, float]) -> dict[int, float]:
    """Scale a score list into [0, 1] by its maximum; an all-zero list stays zero."""
    if not scores:
        return {}
    top = max(scores.values())
    if top <= 0:
        return {tid: 0.0 for tid in scores}
    return {tid: max(0.0, s) / top for tid, s in scores.items()}


def _ranked(items: dict[int, float]) -> list[tuple[int, float]]:
    return sorted(items.items(), key=lambda x: (-x[1], x[0]))


def cap_candidate_pool(pool: list[Title], cap: int = MAX_CANDIDATE_POOL) -> list[Title]:
    """Deduplicate and truncate deterministically, most voted first."""
    unique = {t.id: t for t in pool}
    ordered = sorted(unique.values(), key=lambda t: (-t.vote_count, -t.vote_average, t.id))
    if len(ordered) > cap:
        logger.warning(f"Candidate pool of {len(ordered)} truncated to {cap}")
        ordered = ordered[:cap]
    return ordered


class HybridRecommender:
    """
    Blend content, user-CF and item-CF rankings into one list.

    Inputs that need storage (preference model, seen set, similar users) are
    passed in by the caller so a run is a pure function of its inputs.
    """

    def __init__(
        self,
        catalog: CatalogProvider,
        item_similarities: ItemSimilarityTable | None = None,
        weights: ScoringWeights | None = None,
        cold_start_min_actions: int = COLD_START_MIN_ACTIONS,
        max_candidate_pool: int = MAX_CANDIDATE_POOL,
    ):
        self.catalog = catalog
        self.item_similarities = item_similarities or ItemSimilarityTable()
        self.weights = weights or ScoringWeights()
        self.scorer = ContentScorer(self.weights)
        self.cold_start_min_actions = cold_start_min_actions
        self.max_candidate_pool = max_candidate_pool

    def is_cold_start(self, model: PreferenceModel) -> bool:
        return model.action_count < self.cold_start_min_actions

    def recommend(
        self,
        model: PreferenceModel,
        limit: int,
        discovery_ratio: float,
        seen: set[int] | frozenset = frozenset(),
        declared: DeclaredPreferences | None = None,
        similar_users: list[UserSimilarity] | None = None,
        neighbor_likes: dict[str, list[int]] | None = None,
    ) -> list[Recommendation]:
        """
        Ranked recommendations for ``model.user_id``.

        ``floor(limit * discovery_ratio)`` slots are reserved for discovery
        picks; the rest come from the blended ranking. Titles in ``seen`` or
        already acted on are never returned. An empty list is a valid result.
        """
        if limit <= 0:
            return []
        if not 0.0 <= discovery_ratio <= 1.0:
            raise ValueError(f"discovery_ratio must be within [0, 1], got {discovery_ratio}")

        excluded = set(seen) | set(model.title_kinds)
        raw_pool = self.catalog.candidate_pool(model.user_id, declared)
        pool = [t for t in cap_candidate_pool(raw_pool, self.max_candidate_pool) if t.id not in excluded]
        discovery_slots = math.floor(limit * discovery_ratio)

        if self.is_cold_start(model):
            results = self._cold_start(model, pool, limit, discovery_slots, declared)
        else:
            results = self._blend(
                model, pool, limit, discovery_slots, discovery_ratio, excluded,
                similar_users or [], neighbor_likes or {},
            )

        results.sort(key=lambda r: (-r.score, r.title_id))
        logger.debug(
            f"{model.user_id}: {len(results)} recommendations "
            f"({sum(r.is_discovery for r in results)} discovery) from pool of {len(pool)}"
        )
        return results

    # -- warm path --

    def _item_cf(self, model: PreferenceModel, excluded: set[int]) -> tuple[dict[int, float], dict[int, list[int]]]:
        liked = model.liked_titles
        unwatched = model.unwatched_titles
        anchors = [(tid, 1.0) for tid in liked] + [(tid, UNWATCHED_ANCHOR_WEIGHT) for tid in unwatched]
        if len(anchors) > MAX_ITEM_ANCHORS:
            # Most recently acted-on anchors first
            order = {tid: idx for idx, tid in enumerate(model.title_kinds)}
            anchors.sort(key=lambda a: -order[a[0]])
            anchors = anchors[:MAX_ITEM_ANCHORS]
        return self.item_similarities.score_from_anchors(anchors, excluded, top_k=MAX_ITEM_NEIGHBORS)

    def _blend(
        self,
        model: PreferenceModel,
        pool: list[Title],
        limit: int,
        discovery_slots: int,
        discovery_ratio: float,
        excluded: set[int],
        similar_users: list[UserSimilarity],
        neighbor_likes: dict[str, list[int]],
    ) -> list[Recommendation]:
        item_scores, item_anchors = self._item_cf(model, excluded)
        user_scores, user_counts = user_cf_scores(similar_users, neighbor_likes, excluded)

        titles = {t.id: t for t in pool}
        missing = (set(item_scores) | set(user_scores)) - set(titles)
        if missing:
            fetched = self.catalog.get_titles(sorted(missing))
            titles.update({tid: t for tid, t in fetched.items() if tid not in excluded})
            unknown = missing - set(fetched)
            if unknown:
                logger.debug(f"{len(unknown)} collaborative candidates missing from catalog, skipped")
                item_scores = {k: v for k, v in item_scores.items() if k in titles}
                user_scores = {k: v for k, v in user_scores.items() if k in titles}

        breakdowns = {tid: self.scorer.breakdown(t, model) for tid, t in titles.items()}
        normalized = {
            SOURCE_CONTENT: _normalize_by_max({tid: b.score for tid, b in breakdowns.items()}),
            SOURCE_USER_CF: _normalize_by_max(user_scores),
            SOURCE_ITEM_CF: _normalize_by_max(item_scores),
        }
        blend_weights = self.weights.blend

        blended: dict[int, Recommendation] = {}
        for tid, title in titles.items():
            contributions = {
                source: blend_weights[source] * normalized[source].get(tid, 0.0)
                for source in BLEND_SOURCES
            }
            source = max(BLEND_SOURCES, key=lambda s: contributions[s])
            details = {
                'content_components': {k: round(v, 4) for k, v in breakdowns[tid].components.items() if v},
            }
            if tid in user_counts:
                details['recommenders'] = user_counts[tid]
            if tid in item_anchors:
                details['anchors'] = sorted(item_anchors[tid])[:5]
            blended[tid] = Recommendation(
                title_id=tid,
                title=title.title,
                score=sum(contributions.values()),
                source=source,
                reason=self._reason(source, breakdowns[tid], user_counts.get(tid), item_anchors.get(tid)),
                contributions=contributions,
                details=details,
            )

        collaborative = set(item_scores) | set(user_scores)
        discovery = self._select_discovery(
            [t for t in pool if t.id not in collaborative],
            model, discovery_slots, blended,
            cluster=set(model.dominant_genres(DOMINANT_GENRE_COUNT)),
        )
        picked = {r.title_id for r in discovery}

        # A ratio of 1.0 asks for discovery only; otherwise the blend fills the rest
        core_slots = 0 if discovery_ratio >= 1.0 else limit - len(discovery)
        core = [
            blended[tid] for tid, _ in _ranked({tid: r.score for tid, r in blended.items()})
            if tid not in picked
        ][:core_slots]
        return core + discovery

    def _reason(self, source: str, breakdown: ScoreBreakdown, recommenders: int | None, anchors: list[int] | None) -> str:
        if source == SOURCE_USER_CF and recommenders:
            noun = "user" if recommenders == 1 else "users"
            return f"Liked by {recommenders} similar {noun}"
        if source == SOURCE_ITEM_CF and anchors:
            return f"Similar to titles you liked ({len(anchors)} matches)"
        if breakdown.reasons:
            return breakdown.reasons[0]
        return "Matches your preferences"

    # -- discovery --

    def _select_discovery(
        self,
        candidates: list[Title],
        model: PreferenceModel,
        slots: int,
        scored: dict[int, Recommendation],
        cluster: set[str],
    ) -> list[Recommendation]:
        """
        Pick up to ``slots`` titles away from the user's genre cluster.

        Titles sharing no genre with ``cluster`` (and no disliked genre) are
        preferred; titles overlapping the cluster fill any remaining slots.
        Within each tier picks rotate across primary genres, best discovery
        score first.
        """
        if slots <= 0 or not candidates:
            return []

        def discovery_score(title: Title) -> float:
            quality = min(1.0, max(0.0, title.vote_average / 10.0))
            novel = [g for g in title.genres if g not in cluster and g not in model.liked_genres]
            novelty = len(novel) / len(title.genres) if title.genres else 0.0
            return DISCOVERY_QUALITY_WEIGHT * quality + DISCOVERY_NOVELTY_WEIGHT * novelty

        def acceptable(title: Title) -> bool:
            if title.genre_set & model.disliked_genres:
                return False
            return not (model.anime_penalty_active and detect_anime(title))

        strict = [t for t in candidates if not (t.genre_set & cluster) and acceptable(t)]
        strict_ids = {t.id for t in strict}
        relaxed = [t for t in candidates if t.id not in strict_ids]

        picks: list[Title] = []
        for tier in (strict, relaxed):
            if len(picks) >= slots:
                break
            ranked = sorted(tier, key=lambda t: (-discovery_score(t), t.id))
            picks.extend(self._rotate_genres(ranked, slots - len(picks)))

        results = []
        for title in picks:
            base = scored.get(title.id)
            score = base.score if base else self.weights.blend[SOURCE_CONTENT] * self.scorer.score(title, model)
            genre = title.primary_genre or "new territory"
            results.append(Recommendation(
                title_id=title.id,
                title=title.title,
                score=score,
                source=SOURCE_DISCOVERY,
                reason=f"Discovery pick: {genre}",
                is_discovery=True,
                contributions=dict(base.contributions) if base else {},
                details={'discovery_score': round(discovery_score(title), 4)},
            ))
        return results

    @staticmethod
    def _rotate_genres(ranked: list[Title], n: int) -> list[Title]:
        """Take the best title of each primary genre in turn until ``n`` are chosen."""
        if n <= 0:
            return []
        chosen: list[Title] = []
        remaining = list(ranked)
        while remaining and len(chosen) < n:
            used_genres: set[str] = set()
            leftover = []
            for title in remaining:
                if len(chosen) < n and title.primary_genre not in used_genres:
                    chosen.append(title)
                    used_genres.add(title.primary_genre)
                else:
                    leftover.append(title)
            remaining = leftover
        return chosen

    # -- cold start --

    def _cold_start(
        self,
        model: PreferenceModel,
        pool: list[Title],
        limit: int,
        discovery_slots: int,
        declared: DeclaredPreferences | None,
    ) -> list[Recommendation]:
        """
        Recommendations before enough actions exist for collaborative signals.

        High-quality titles intersected with declared genres and languages;
        the filters relax step by step so a non-empty pool never yields an
        empty list.
        """
        declared = declared or DeclaredPreferences()

        def quality(t: Title) -> bool:
            return t.vote_average >= COLD_START_MIN_VOTE_AVERAGE and t.vote_count >= COLD_START_MIN_VOTE_COUNT

        def genre_ok(t: Title) -> bool:
            return not declared.genres or bool(t.genre_set & declared.genres)

        def language_ok(t: Title) -> bool:
            return not declared.languages or t.original_language in declared.languages

        tiers = [
            ("quality+genre+language", lambda t: quality(t) and genre_ok(t) and language_ok(t)),
            ("quality+genre", lambda t: quality(t) and genre_ok(t)),
            ("quality", quality),
            ("genre+language", lambda t: genre_ok(t) and language_ok(t)),
            ("any", lambda t: True),
        ]
        selected: list[Title] = []
        for name, predicate in tiers:
            selected = [t for t in pool if predicate(t)]
            if selected:
                if name != tiers[0][0]:
                    logger.debug(f"{model.user_id}: cold start relaxed to '{name}' ({len(selected)} titles)")
                break

        scored: dict[int, Recommendation] = {}
        for title in pool:
            breakdown = self.scorer.breakdown(title, model)
            content = COLD_START_CONTENT_WEIGHT * breakdown.score
            rating = (1 - COLD_START_CONTENT_WEIGHT) * min(1.0, title.vote_average / 10.0)
            scored[title.id] = Recommendation(
                title_id=title.id,
                title=title.title,
                score=content + rating,
                source=SOURCE_CONTENT,
                reason=self._cold_reason(title, declared),
                contributions={SOURCE_CONTENT: content + rating},
                details={'cold_start': True},
            )

        cluster = set(declared.genres) | set(model.dominant_genres(DOMINANT_GENRE_COUNT))
        selected_ids = {t.id for t in selected}
        discovery = self._select_discovery(
            [t for t in pool if t.id not in selected_ids], model, discovery_slots, scored, cluster,
        )
        picked = {r.title_id for r in discovery}
        core = [
            scored[tid] for tid, _ in _ranked({t.id: scored[t.id].score for t in selected})
            if tid not in picked
        ]
        # A discovery shortfall is filled from the cold-start ranking
        return core[:max(0, limit - len(discovery))] + discovery

    @staticmethod
    def _cold_reason(title: Title, declared: DeclaredPreferences) -> str:
        matched = sorted(title.genre_set & declared.genres)
        if matched:
            return f"Top rated {matched[0]} pick"
        return f"Top rated pick ({title.vote_average:.1f})"

    def explain(self, title: Title, model: PreferenceModel) -> ScoreBreakdown:
        return self.scorer.breakdown(title, model)
