import pytest

from swipr_rec.catalog import InMemoryCatalog, Title
from swipr_rec.config import ANIME_PENALTY, DISLIKE_PENALTY
from swipr_rec.item_similarity import ItemSimilarity, ItemSimilarityTable
from swipr_rec.profile import DeclaredPreferences, PreferenceModel, build_preference_model, make_action
from swipr_rec.recommender import ContentScorer, HybridRecommender, cap_candidate_pool
from swipr_rec.user_similarity import UserSimilarity


def _title(tid, genres, language="en", vote_average=7.0, vote_count=500, director=None):
    return Title(tid, f"Title {tid}", tuple(genres), language, vote_average, vote_count, director)


def _model(rows, user="alice"):
    """rows: (title_id, kind, genres, language[, director])"""
    return build_preference_model(user, [make_action(user, *row) for row in rows])


def _warm_model():
    return _model([(tid, "like", ["Drama"], "en") for tid in range(1, 11)])


def _catalog_titles(*extra):
    titles = [_title(tid, ["Drama"], vote_count=100) for tid in range(1, 11)]
    titles += [_title(tid, ["Drama"], "en", 7.5, 2000) for tid in range(100, 110)]
    titles += [_title(tid, ["Comedy"], "en", 7.0, 1500) for tid in range(110, 115)]
    titles += [_title(tid, ["Horror"], "fr", 6.5, 800) for tid in range(115, 120)]
    titles += [_title(tid, ["Documentary"], "de", 8.2, 1200) for tid in range(120, 125)]
    return titles + list(extra)


def _catalog(*extra):
    return InMemoryCatalog(_catalog_titles(*extra))


class _PoolCatalog(InMemoryCatalog):
    """Catalog whose candidate pool hides some titles (reachable only by lookup)."""

    def __init__(self, titles, hidden):
        super().__init__(titles)
        self.hidden = set(hidden)

    def candidate_pool(self, user_id, declared=None):
        return [t for t in super().candidate_pool(user_id, declared) if t.id not in self.hidden]


# --- content scorer ---

def test_anime_penalty_replaces_generic_animation_penalty():
    model = _model([(1, "pass", ["Animation"], "en"), (2, "pass", ["Animation"], "en")])
    scorer = ContentScorer()

    anime = scorer.breakdown(_title(10, ["Animation"], "ja"), model)
    western = scorer.breakdown(_title(11, ["Animation"], "en"), model)

    assert anime.components["dislike_penalty"] == 0
    assert anime.components["anime_penalty"] == pytest.approx(-ANIME_PENALTY)
    assert western.components["dislike_penalty"] == pytest.approx(-DISLIKE_PENALTY)
    assert western.components["anime_penalty"] == 0


def test_disliked_animation_penalizes_anime_harder_than_western_animation():
    model = _model([
        (1, "pass", ["Animation", "Family"], "en"),
        (2, "pass", ["Animation", "Family"], "en"),
        (3, "like", ["Comedy"], "en"),
        (4, "like", ["Comedy"], "en"),
        (5, "like", ["Comedy"], "en"),
    ])
    scorer = ContentScorer()

    anime = scorer.score(_title(20, ["Animation", "Comedy"], "ja"), model)
    western = scorer.score(_title(21, ["Animation", "Comedy"], "en"), model)

    assert western - anime >= DISLIKE_PENALTY
    assert anime == pytest.approx(0.02)
    assert western == pytest.approx(0.52)


def test_quality_boost_threshold():
    model = PreferenceModel("alice")
    scorer = ContentScorer()

    boosted = scorer.breakdown(_title(1, ["Drama"], vote_average=8.0, vote_count=1000), model)
    plain = scorer.breakdown(_title(2, ["Drama"], vote_average=7.9, vote_count=5000), model)

    assert boosted.components["quality"] == pytest.approx(0.1)
    assert plain.components["quality"] == 0


def test_language_is_a_boost_not_a_filter():
    model = _model([(1, "like", ["Drama"], "en")])
    scorer = ContentScorer()

    english = scorer.score(_title(2, ["Drama"], "en"), model)
    korean = scorer.score(_title(3, ["Drama"], "ko"), model)

    assert korean > 0
    assert english - korean == pytest.approx(0.15)


def test_scores_are_clamped_but_raw_is_kept():
    model = _model([(tid, "like", ["Comedy"], "en", "Director D") for tid in range(1, 6)])
    high = ContentScorer().breakdown(_title(9, ["Comedy"], "en", 8.5, 5000, "Director D"), model)
    assert high.score == 1.0
    assert high.raw == pytest.approx(1.3)

    grumpy = _model([
        (1, "pass", ["Animation", "Horror", "Thriller"], "en"),
        (2, "pass", ["Animation", "Horror", "Thriller"], "en"),
    ])
    low = ContentScorer().breakdown(_title(9, ["Animation", "Horror", "Thriller"], "ja"), grumpy)
    assert low.score == 0.0
    assert low.raw == pytest.approx(-0.6)
    assert "Anime (Animation disliked)" in low.warnings


# --- blender ---

def test_ratio_zero_returns_no_discovery():
    results = HybridRecommender(_catalog()).recommend(_warm_model(), limit=10, discovery_ratio=0.0)

    assert len(results) == 10
    assert not any(r.is_discovery for r in results)


def test_ratio_one_returns_only_discovery():
    results = HybridRecommender(_catalog()).recommend(_warm_model(), limit=10, discovery_ratio=1.0)

    assert len(results) == 10
    assert all(r.is_discovery and r.source == "discovery" for r in results)


def test_discovery_slots_are_floored_and_diverse():
    results = HybridRecommender(_catalog()).recommend(_warm_model(), limit=10, discovery_ratio=0.3)

    discovery = [r for r in results if r.is_discovery]
    assert len(results) == 10
    assert len(discovery) == 3
    assert {r.reason for r in discovery} == {
        "Discovery pick: Comedy", "Discovery pick: Horror", "Discovery pick: Documentary",
    }


def test_results_are_ordered_and_exclude_acted_and_seen():
    seen = {100, 101}
    results = HybridRecommender(_catalog()).recommend(_warm_model(), limit=40, discovery_ratio=0.2, seen=seen)
    ids = [r.title_id for r in results]

    assert not set(ids) & (seen | set(range(1, 11)))
    assert len(ids) == len(set(ids))
    assert [(-r.score, r.title_id) for r in results] == sorted((-r.score, r.title_id) for r in results)


def test_recommend_is_deterministic():
    recommender = HybridRecommender(_catalog())
    first = recommender.recommend(_warm_model(), limit=10, discovery_ratio=0.2)
    second = recommender.recommend(_warm_model(), limit=10, discovery_ratio=0.2)

    assert [r.to_dict() for r in first] == [r.to_dict() for r in second]


def test_invalid_discovery_ratio_raises():
    with pytest.raises(ValueError):
        HybridRecommender(_catalog()).recommend(_warm_model(), limit=10, discovery_ratio=1.5)


def test_candidate_pool_is_capped_by_votes():
    recommender = HybridRecommender(_catalog(), max_candidate_pool=5)
    results = recommender.recommend(_warm_model(), limit=30, discovery_ratio=0.0)

    assert {r.title_id for r in results} == {100, 101, 102, 103, 104}


def test_cap_candidate_pool_deduplicates():
    pool = [_title(1, ["Drama"], vote_count=10), _title(1, ["Drama"], vote_count=10), _title(2, ["Drama"])]
    assert [t.id for t in cap_candidate_pool(pool, cap=10)] == [2, 1]


def test_item_cf_surfaces_neighbours_outside_the_pool():
    hidden = _title(130, ["Drama"], "en", 7.5, 2000)
    catalog = _PoolCatalog(_catalog_titles(hidden), hidden={130})
    table = ItemSimilarityTable([ItemSimilarity(1, 130, 0.9, 3, 3)], version=1)

    results = HybridRecommender(catalog, item_similarities=table).recommend(
        _warm_model(), limit=5, discovery_ratio=0.0,
    )

    top = results[0]
    assert top.title_id == 130
    assert top.contributions["item-cf"] == pytest.approx(0.3)
    assert top.details["anchors"] == [1]


def test_user_cf_candidates_carry_recommender_count():
    extra = _title(131, ["Comedy"], "en", 7.0, 1500)
    catalog = _PoolCatalog(_catalog_titles(extra), hidden={131})
    similar = [UserSimilarity("bob", 0.8, 4, 5)]

    results = HybridRecommender(catalog).recommend(
        _warm_model(), limit=5, discovery_ratio=0.0,
        similar_users=similar, neighbor_likes={"bob": [1, 131]},
    )

    by_id = {r.title_id: r for r in results}
    assert 1 not in by_id
    assert by_id[131].source == "user-cf"
    assert by_id[131].reason == "Liked by 1 similar user"
    assert by_id[131].details["recommenders"] == 1


# --- cold start ---

def _cold_catalog():
    return InMemoryCatalog([
        _title(200, ["Drama"], "en", 8.5, 2000),
        _title(201, ["Drama"], "en", 8.1, 3000),
        _title(202, ["Drama"], "fr", 8.6, 2500),
        _title(203, ["Comedy"], "en", 8.3, 4000),
        _title(204, ["Drama"], "en", 6.0, 300),
    ])


def test_cold_start_uses_declared_genres_and_languages():
    declared = DeclaredPreferences(frozenset({"Drama"}), frozenset({"en"}))
    results = HybridRecommender(_cold_catalog()).recommend(
        PreferenceModel("newbie"), limit=3, discovery_ratio=0.0, declared=declared,
    )

    assert [r.title_id for r in results] == [200, 201]
    assert all(r.details.get("cold_start") for r in results)


def test_cold_start_discovery_leaves_declared_genres():
    declared = DeclaredPreferences(frozenset({"Drama"}), frozenset({"en"}))
    results = HybridRecommender(_cold_catalog()).recommend(
        PreferenceModel("newbie"), limit=4, discovery_ratio=0.5, declared=declared,
    )

    discovery = [r.title_id for r in results if r.is_discovery]
    assert 203 in discovery


def test_cold_start_never_empty_with_a_non_empty_pool():
    catalog = InMemoryCatalog([_title(300, ["Western"], "it", 5.0, 20), _title(301, ["War"], "pl", 4.0, 5)])
    results = HybridRecommender(catalog).recommend(PreferenceModel("newbie"), limit=5, discovery_ratio=0.2)

    assert {r.title_id for r in results} == {300, 301}


def test_empty_pool_returns_empty_list():
    results = HybridRecommender(InMemoryCatalog([])).recommend(PreferenceModel("newbie"), 5, 0.2)
    assert results == []
