import pytest

from swipr_rec.item_similarity import ItemSimilarity, ItemSimilarityTable, recompute_item_similarities
from swipr_rec.profile import make_action


def _a(user, title_id, kind):
    return make_action(user, title_id, kind, ["Drama"], "en")


def test_pairs_below_interaction_minimum_are_excluded():
    actions = [_a("u1", 1, "like"), _a("u1", 2, "like"), _a("u2", 1, "like"), _a("u2", 2, "like")]

    assert recompute_item_similarities(actions) == []


def test_score_is_common_likers_over_interactions():
    actions = [
        _a("u1", 1, "like"), _a("u1", 2, "like"),
        _a("u2", 1, "like"), _a("u2", 2, "like"),
        _a("u3", 1, "like"), _a("u3", 2, "pass"),
    ]

    pairs = recompute_item_similarities(actions)

    assert len(pairs) == 1
    pair = pairs[0]
    assert (pair.title_a, pair.title_b) == (1, 2)
    assert pair.score == pytest.approx(2 / 3)
    assert pair.common_likers == 2
    assert pair.total_interactions == 3


def test_pairs_are_canonicalized_lower_id_first():
    actions = []
    for user in ("u1", "u2", "u3"):
        actions += [_a(user, 9, "like"), _a(user, 4, "like")]

    pairs = recompute_item_similarities(actions)

    assert [(p.title_a, p.title_b) for p in pairs] == [(4, 9)]
    assert pairs[0].score == pytest.approx(1.0)


def test_latest_action_supersedes_earlier_one():
    actions = []
    for user in ("u1", "u2", "u3"):
        actions += [_a(user, 1, "like"), _a(user, 2, "like")]
    actions.append(_a("u3", 2, "pass"))

    pair = recompute_item_similarities(actions)[0]

    assert pair.common_likers == 2
    assert pair.total_interactions == 3


def test_pairs_without_common_likers_are_dropped():
    actions = []
    for user in ("u1", "u2", "u3"):
        actions += [_a(user, 1, "pass"), _a(user, 2, "pass")]

    assert recompute_item_similarities(actions) == []


def test_max_items_keeps_most_interacted_titles():
    actions = []
    for user in ("u1", "u2", "u3", "u4"):
        actions += [_a(user, 1, "like"), _a(user, 2, "like")]
    for user in ("u1", "u2", "u3"):
        actions.append(_a(user, 3, "like"))

    pairs = recompute_item_similarities(actions, max_items=2)

    assert [(p.title_a, p.title_b) for p in pairs] == [(1, 2)]


def test_table_lookup_is_symmetric_and_neighbors_sorted():
    table = ItemSimilarityTable([
        ItemSimilarity(1, 2, 0.5, 2, 4),
        ItemSimilarity(1, 3, 0.9, 3, 3),
        ItemSimilarity(2, 3, 0.2, 1, 5),
    ], version=4)

    assert table.get(2, 1).score == 0.5
    assert table.get(1, 4) is None
    assert table.neighbors(1) == [(3, 0.9), (2, 0.5)]
    assert table.neighbors(1, top_k=1) == [(3, 0.9)]
    assert len(table) == 3
    assert table.version == 4


def test_swap_replaces_the_whole_table():
    table = ItemSimilarityTable([ItemSimilarity(1, 2, 0.5, 2, 4)], version=1)

    new_version = table.swap([ItemSimilarity(5, 6, 1.0, 3, 3)])

    assert new_version == 2
    assert table.get(1, 2) is None
    assert table.neighbors(5) == [(6, 1.0)]


def test_score_from_anchors_weights_and_excludes():
    table = ItemSimilarityTable.from_rows([(1, 3, 0.8, 3, 3), (2, 3, 0.4, 2, 5), (1, 4, 0.6, 3, 5)], version=1)

    scores, sources = table.score_from_anchors([(1, 1.0), (2, 0.5)], exclude={4})

    assert scores == {3: pytest.approx(0.8 + 0.2)}
    assert sources == {3: [1, 2]}
