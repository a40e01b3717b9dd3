"""
On-demand user-user similarity.

Similarity between two users is a weighted sum of
- action agreement over titles both acted on,
- Jaccard overlap of their genre preferences,
- Jaccard overlap of their language preferences.

Declared (onboarding) preferences are used for the genre and language terms
when present; otherwise the learned liked genres and positively weighted
languages stand in. Nothing here is persisted.
"""
import logging
from dataclasses import dataclass, field

import numpy as np

from .config import (
    ACTION_AGREEMENT_WEIGHTS,
    ACTION_DISAGREEMENT_WEIGHT,
    SIMILAR_USER_THRESHOLD,
    MAX_SIMILAR_USERS,
)
from .profile import ActionKind, DeclaredPreferences, PreferenceModel
from .scoring_weights import ScoringWeights
from .utils import jaccard

logger = logging.getLogger(__name__)

_KIND_INDEX = {kind.value: idx for idx, kind in enumerate(ActionKind)}


def _agreement_matrix() -> np.ndarray:
    """Kind x kind agreement weights, normalized so a mutual like scores 1.0."""
    kinds = [kind.value for kind in ActionKind]
    matrix = np.full((len(kinds), len(kinds)), ACTION_DISAGREEMENT_WEIGHT, dtype=np.float64)
    for (a, b), weight in ACTION_AGREEMENT_WEIGHTS.items():
        matrix[_KIND_INDEX[a], _KIND_INDEX[b]] = weight
    return matrix / matrix.max()


AGREEMENT_MATRIX = _agreement_matrix()


@dataclass
class UserSimilarity:
    user_id: str
    score: float
    common_likes: int
    shared_titles: int
    components: dict[str, float] = field(default_factory=dict)


@dataclass
class UserMatch:
    """Detailed comparison of two users' swipe histories."""
    user_id: str
    other_id: str
    similarity: UserSimilarity
    common_likes: list[int]
    common_passes: list[int]
    they_liked_you_havent: list[int]
    you_liked_they_passed: list[int]


def genre_preferences(model: PreferenceModel, declared: DeclaredPreferences | None) -> set[str]:
    if declared and declared.genres:
        return set(declared.genres)
    return model.liked_genres


def language_preferences(model: PreferenceModel, declared: DeclaredPreferences | None) -> set[str]:
    if declared and declared.languages:
        return set(declared.languages)
    return model.preferred_languages


class UserSimilarityEngine:
    def __init__(self, weights: ScoringWeights | None = None, threshold: float = SIMILAR_USER_THRESHOLD):
        self.weights = weights or ScoringWeights()
        self.threshold = threshold

    def action_agreement(self, a: PreferenceModel, b: PreferenceModel) -> tuple[float, int, int]:
        """Mean normalized agreement over shared titles. Returns (score, shared, common_likes)."""
        shared = sorted(set(a.title_kinds) & set(b.title_kinds))
        if not shared:
            return 0.0, 0, 0
        codes_a = np.fromiter((_KIND_INDEX[a.title_kinds[t]] for t in shared), dtype=np.int64)
        codes_b = np.fromiter((_KIND_INDEX[b.title_kinds[t]] for t in shared), dtype=np.int64)
        like = _KIND_INDEX[ActionKind.LIKE.value]
        common_likes = int(np.count_nonzero((codes_a == like) & (codes_b == like)))
        score = float(AGREEMENT_MATRIX[codes_a, codes_b].mean())
        return score, len(shared), common_likes

    def similarity(
        self,
        a: PreferenceModel,
        b: PreferenceModel,
        declared_a: DeclaredPreferences | None = None,
        declared_b: DeclaredPreferences | None = None,
    ) -> UserSimilarity:
        """
        Similarity of ``b`` as seen from ``a``, in [0, 1].

        Users with no title in common score zero regardless of genre or
        language overlap.
        """
        agreement, shared, common_likes = self.action_agreement(a, b)
        if shared == 0:
            return UserSimilarity(b.user_id, 0.0, 0, 0)

        genre_overlap = jaccard(genre_preferences(a, declared_a), genre_preferences(b, declared_b))
        language_overlap = jaccard(language_preferences(a, declared_a), language_preferences(b, declared_b))

        w = self.weights.similarity
        components = {
            'actions': w['actions'] * agreement,
            'genres': w['genres'] * genre_overlap,
            'languages': w['languages'] * language_overlap,
        }
        score = min(1.0, max(0.0, sum(components.values())))
        return UserSimilarity(b.user_id, score, common_likes, shared, components)

    def find_similar_users(
        self,
        target: PreferenceModel,
        candidates: dict[str, PreferenceModel],
        declared: dict[str, DeclaredPreferences] | None = None,
        limit: int = MAX_SIMILAR_USERS,
    ) -> list[UserSimilarity]:
        """
        Users above the similarity threshold, best first (ties by user id).
        """
        declared = declared or {}
        target_declared = declared.get(target.user_id)
        similar = []
        for user_id in sorted(candidates):
            if user_id == target.user_id:
                continue
            sim = self.similarity(target, candidates[user_id], target_declared, declared.get(user_id))
            if sim.shared_titles and sim.score > self.threshold:
                similar.append(sim)
        similar.sort(key=lambda s: (-s.score, s.user_id))
        logger.debug(f"{target.user_id}: {len(similar)} of {len(candidates)} candidates above "
                     f"threshold {self.threshold}")
        return similar[:limit]

    def compare(
        self,
        a: PreferenceModel,
        b: PreferenceModel,
        declared_a: DeclaredPreferences | None = None,
        declared_b: DeclaredPreferences | None = None,
    ) -> UserMatch:
        similarity = self.similarity(a, b, declared_a, declared_b)
        liked_a, liked_b = set(a.liked_titles), set(b.liked_titles)
        passed_a, passed_b = set(a.passed_titles), set(b.passed_titles)
        return UserMatch(
            user_id=a.user_id,
            other_id=b.user_id,
            similarity=similarity,
            common_likes=sorted(liked_a & liked_b),
            common_passes=sorted(passed_a & passed_b),
            they_liked_you_havent=sorted(liked_b - set(a.title_kinds)),
            you_liked_they_passed=sorted(liked_a & passed_b),
        )


def user_cf_scores(
    similar_users: list[UserSimilarity],
    neighbor_likes: dict[str, list[int]],
    exclude: set[int],
) -> tuple[dict[int, float], dict[int, int]]:
    """
    Score titles liked by similar users.

    score = average similarity of the recommending users x their count.
    Returns (scores, recommender counts).
    """
    sims: dict[int, list[float]] = {}
    for neighbor in similar_users:
        for tid in neighbor_likes.get(neighbor.user_id, []):
            if tid in exclude:
                continue
            sims.setdefault(tid, []).append(neighbor.score)
    scores = {tid: (sum(values) / len(values)) * len(values) for tid, values in sims.items()}
    counts = {tid: len(values) for tid, values in sims.items()}
    return scores, counts
