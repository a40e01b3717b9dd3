"""
Item-item similarity table.

Built in batch from the whole action log: two titles are similar when the
users who acted on both tended to like both. The table is rebuilt
wholesale on a schedule and readers always see one complete snapshot.
"""
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

import numpy as np
from scipy.sparse import csr_matrix, triu

from .config import ITEM_SIM_MIN_INTERACTIONS, ITEM_SIM_MAX_ITEMS, MAX_ITEM_NEIGHBORS
from .profile import Action, ActionKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemSimilarity:
    title_a: int
    title_b: int
    score: float
    common_likers: int
    total_interactions: int

    def as_row(self) -> tuple[int, int, float, int, int]:
        return (self.title_a, self.title_b, self.score, self.common_likers, self.total_interactions)


def _effective_actions(actions: Iterable[Action]) -> dict[tuple[str, int], str]:
    """Latest kind per (user, title); later actions supersede earlier ones."""
    latest: dict[tuple[str, int], str] = {}
    for action in actions:
        latest[(action.user_id, action.title_id)] = action.kind.value
    return latest


def recompute_item_similarities(
    actions: Iterable[Action],
    min_interactions: int = ITEM_SIM_MIN_INTERACTIONS,
    max_items: int = ITEM_SIM_MAX_ITEMS,
) -> list[ItemSimilarity]:
    """
    Full rebuild of the item similarity table.

    For every pair of titles acted on by the same user, total_interactions
    counts users who acted on both (any kind) and common_likers counts users
    who liked both. score = common_likers / total_interactions. Pairs with
    fewer than ``min_interactions`` co-acting users, or no common liker, are
    dropped. Pairs are canonicalized as (lower id, higher id).

    Co-occurrence counts come from sparse products: with A the binary
    user x title "acted" matrix and L the "liked" matrix, A.T @ A gives the
    interaction counts and L.T @ L the common likes.
    """
    latest = _effective_actions(actions)
    if not latest:
        logger.info("Item similarity: no actions, table is empty")
        return []

    interactions_per_title: dict[int, int] = defaultdict(int)
    for (_, title_id) in latest:
        interactions_per_title[title_id] += 1

    # Titles with fewer interactions than the threshold cannot form a kept pair
    eligible = [tid for tid, n in interactions_per_title.items() if n >= min_interactions]
    if len(eligible) > max_items:
        eligible.sort(key=lambda tid: (-interactions_per_title[tid], tid))
        logger.warning(
            f"Item similarity: trimming titles from {len(eligible)} to {max_items} "
            f"(dropped {len(eligible) - max_items}) to cap computation"
        )
        eligible = eligible[:max_items]
    if len(eligible) < 2:
        logger.info("Item similarity: fewer than two titles meet the interaction minimum")
        return []

    titles = sorted(eligible)
    title_index = {tid: idx for idx, tid in enumerate(titles)}
    users = sorted({user for (user, tid) in latest if tid in title_index})
    user_index = {user: idx for idx, user in enumerate(users)}

    acted_rows, acted_cols = [], []
    liked_rows, liked_cols = [], []
    for (user, tid), kind in latest.items():
        col = title_index.get(tid)
        if col is None:
            continue
        row = user_index[user]
        acted_rows.append(row)
        acted_cols.append(col)
        if kind == ActionKind.LIKE.value:
            liked_rows.append(row)
            liked_cols.append(col)

    shape = (len(users), len(titles))
    acted = csr_matrix(
        (np.ones(len(acted_rows), dtype=np.int32), (acted_rows, acted_cols)), shape=shape
    )
    liked = csr_matrix(
        (np.ones(len(liked_rows), dtype=np.int32), (liked_rows, liked_cols)), shape=shape
    )

    total = triu(acted.T @ acted, k=1).tocoo()
    common = triu(liked.T @ liked, k=1).tocoo()
    common_map = {
        (int(i), int(j)): int(c) for i, j, c in zip(common.row, common.col, common.data)
    }

    pairs: list[ItemSimilarity] = []
    for i, j, t in zip(total.row, total.col, total.data):
        t = int(t)
        if t < min_interactions:
            continue
        c = common_map.get((int(i), int(j)), 0)
        if c <= 0:
            continue
        a, b = titles[i], titles[j]
        pairs.append(ItemSimilarity(min(a, b), max(a, b), c / t, c, t))

    pairs.sort(key=lambda p: (p.title_a, p.title_b))
    logger.info(
        f"Item similarity: {len(pairs)} pairs from {len(users)} users x {len(titles)} titles"
    )
    return pairs


@dataclass(frozen=True)
class _Snapshot:
    version: int
    neighbors: dict[int, list[tuple[int, float]]]
    pairs: dict[tuple[int, int], ItemSimilarity]


def _build_snapshot(pairs: Iterable[ItemSimilarity], version: int) -> _Snapshot:
    neighbors: dict[int, list[tuple[int, float]]] = defaultdict(list)
    index: dict[tuple[int, int], ItemSimilarity] = {}
    for pair in pairs:
        index[(pair.title_a, pair.title_b)] = pair
        neighbors[pair.title_a].append((pair.title_b, pair.score))
        neighbors[pair.title_b].append((pair.title_a, pair.score))
    for sims in neighbors.values():
        sims.sort(key=lambda x: (-x[1], x[0]))
    return _Snapshot(version=version, neighbors=dict(neighbors), pairs=index)


class ItemSimilarityTable:
    """
    Read-mostly holder of the current similarity snapshot.

    A rebuild builds a complete new snapshot and swaps the reference under a
    lock; readers grab the reference once and never observe a partial table.
    """

    def __init__(self, pairs: Iterable[ItemSimilarity] = (), version: int = 0):
        self._lock = threading.Lock()
        self._snapshot = _build_snapshot(pairs, version)

    @classmethod
    def from_rows(cls, rows: Iterable[tuple], version: int) -> "ItemSimilarityTable":
        return cls((ItemSimilarity(*row) for row in rows), version)

    def swap(self, pairs: Iterable[ItemSimilarity], version: int | None = None) -> int:
        """Replace the table wholesale. Returns the new version."""
        with self._lock:
            new_version = version if version is not None else self._snapshot.version + 1
            self._snapshot = _build_snapshot(pairs, new_version)
        logger.debug(f"Item similarity table swapped to version {new_version}")
        return new_version

    @property
    def version(self) -> int:
        return self._snapshot.version

    def __len__(self) -> int:
        return len(self._snapshot.pairs)

    def get(self, title_a: int, title_b: int) -> ItemSimilarity | None:
        key = (min(title_a, title_b), max(title_a, title_b))
        return self._snapshot.pairs.get(key)

    def neighbors(self, title_id: int, top_k: int = MAX_ITEM_NEIGHBORS) -> list[tuple[int, float]]:
        """Most similar titles to ``title_id``, best first."""
        return self._snapshot.neighbors.get(title_id, [])[:top_k]

    def score_from_anchors(
        self,
        anchors: list[tuple[int, float]],
        exclude: set[int],
        top_k: int = MAX_ITEM_NEIGHBORS,
    ) -> tuple[dict[int, float], dict[int, list[int]]]:
        """
        Aggregate neighbour similarity over weighted anchor titles.

        Each candidate's score is the sum of similarity x anchor weight over
        every anchor it neighbours. Returns (scores, anchors per candidate).
        """
        snapshot = self._snapshot
        scores: dict[int, float] = defaultdict(float)
        sources: dict[int, list[int]] = defaultdict(list)
        for anchor, weight in anchors:
            for tid, sim in snapshot.neighbors.get(anchor, [])[:top_k]:
                if tid in exclude:
                    continue
                scores[tid] += sim * weight
                sources[tid].append(anchor)
        return dict(scores), dict(sources)
