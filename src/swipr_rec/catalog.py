"""
Catalog collaborator.

The engine never fetches title metadata on its own; a CatalogProvider is
injected and supplies the candidate pool plus lookups for titles surfaced
by collaborative signals that fall outside the pool.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from .database import load_titles, load_titles_by_id
from .profile import DeclaredPreferences, normalize_genre, normalize_language

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Title:
    id: int
    title: str = ""
    genres: tuple[str, ...] = ()
    original_language: str = "unknown"
    vote_average: float = 0.0
    vote_count: int = 0
    director: str | None = None
    popularity: float = 0.0

    @property
    def genre_set(self) -> frozenset:
        return frozenset(self.genres)

    @property
    def primary_genre(self) -> str:
        return self.genres[0] if self.genres else ""

    @property
    def label(self) -> str:
        return self.title or f"#{self.id}"

    @classmethod
    def from_dict(cls, payload: dict) -> "Title":
        """Build a title from catalog JSON, tolerating missing optional fields."""
        genres: list[str] = []
        for genre in payload.get('genres') or []:
            if isinstance(genre, str) and genre.strip():
                canonical = normalize_genre(genre)
                if canonical not in genres:
                    genres.append(canonical)
        try:
            language = normalize_language(payload.get('original_language'))
        except ValueError:
            logger.warning(f"Title {payload.get('id')}: malformed language "
                           f"{payload.get('original_language')!r}, treating as unknown")
            language = "unknown"
        return cls(
            id=int(payload['id']),
            title=payload.get('title') or "",
            genres=tuple(genres),
            original_language=language,
            vote_average=float(payload.get('vote_average') or 0.0),
            vote_count=int(payload.get('vote_count') or 0),
            director=payload.get('director') or None,
            popularity=float(payload.get('popularity') or 0.0),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'genres': list(self.genres),
            'original_language': self.original_language,
            'vote_average': self.vote_average,
            'vote_count': self.vote_count,
            'director': self.director,
            'popularity': self.popularity,
        }


class CatalogProvider(Protocol):
    def candidate_pool(self, user_id: str, declared: DeclaredPreferences | None = None) -> list[Title]:
        """Candidate titles for a user; the engine applies its own exclusions and caps."""
        ...

    def get_titles(self, title_ids: Iterable[int]) -> dict[int, Title]:
        """Metadata for specific titles; unknown ids are simply absent."""
        ...


class InMemoryCatalog:
    """Catalog held in memory (tests and embedding)."""

    def __init__(self, titles: Iterable[Title]):
        self._titles = {t.id: t for t in titles}

    def candidate_pool(self, user_id: str, declared: DeclaredPreferences | None = None) -> list[Title]:
        return list(self._titles.values())

    def get_titles(self, title_ids: Iterable[int]) -> dict[int, Title]:
        return {tid: self._titles[tid] for tid in title_ids if tid in self._titles}

    def add(self, title: Title) -> None:
        self._titles[title.id] = title

    def __len__(self) -> int:
        return len(self._titles)


class SqliteCatalog:
    """Catalog backed by the local ``titles`` table (populated by import-catalog)."""

    def __init__(self, pool_limit: int | None = None):
        self.pool_limit = pool_limit

    def candidate_pool(self, user_id: str, declared: DeclaredPreferences | None = None) -> list[Title]:
        return [Title.from_dict(row) for row in load_titles(limit=self.pool_limit)]

    def get_titles(self, title_ids: Iterable[int]) -> dict[int, Title]:
        rows = load_titles_by_id(list(title_ids))
        return {tid: Title.from_dict(row) for tid, row in rows.items()}
