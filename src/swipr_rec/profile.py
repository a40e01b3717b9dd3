import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable

from .database import parse_timestamp_naive
from .config import (
    KNOWN_GENRES,
    GENRE_ALIASES,
    ANIMATION_GENRE,
    ANIME_LANGUAGE,
    UNKNOWN_LANGUAGE,
    MAX_GENRES_PER_ACTION,
    GENRE_WINDOW_SIZE,
    DISLIKE_THRESHOLD,
    DISLIKE_RECOVERY_LIKES,
    LANGUAGE_DECAY,
    LANGUAGE_INCREMENTS,
    DIRECTOR_AFFINITY_INCREMENT,
    DIRECTOR_AFFINITY_CAP,
)

logger = logging.getLogger(__name__)

_GENRE_LOOKUP = {g.lower(): g for g in KNOWN_GENRES}
_GENRE_LOOKUP.update(GENRE_ALIASES)
_LANGUAGE_RE = re.compile(r'^[a-z]{2,3}$')


class ActionKind(str, Enum):
    LIKE = 'like'
    PASS = 'pass'
    UNWATCHED = 'unwatched'


class InvalidActionError(ValueError):
    """Raised when an incoming action is rejected at ingestion."""


def normalize_genre(value: str) -> str:
    """Map a genre string to its canonical spelling; unknown genres pass through stripped."""
    stripped = value.strip()
    return _GENRE_LOOKUP.get(stripped.lower(), stripped)


def is_known_genre(genre: str) -> bool:
    return genre in KNOWN_GENRES


def normalize_language(value: str | None) -> str:
    """
    Normalize an ISO 639 language code.

    Missing values map to the neutral unknown bucket; anything that is not a
    two- or three-letter code raises ValueError.
    """
    if value is None:
        return UNKNOWN_LANGUAGE
    if not isinstance(value, str):
        raise ValueError(f"language must be a string, got {type(value).__name__}")
    code = value.strip().lower()
    if not code or code == UNKNOWN_LANGUAGE:
        return UNKNOWN_LANGUAGE
    if not _LANGUAGE_RE.match(code):
        raise ValueError(f"malformed language code '{value}'")
    return code


def detect_anime(title) -> bool:
    """True iff the title is Animation in Japanese original language."""
    return ANIMATION_GENRE in set(title.genres) and title.original_language == ANIME_LANGUAGE


@dataclass(frozen=True)
class Action:
    """One swipe. Immutable; the action log is the only writable ground truth."""
    user_id: str
    title_id: int
    kind: ActionKind
    genres: frozenset = frozenset()
    language: str = UNKNOWN_LANGUAGE
    timestamp: datetime = field(default_factory=datetime.now)
    director: str | None = None
    sequence: int | None = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row: dict) -> "Action":
        """Rebuild an action from a stored log row (already validated on the way in)."""
        return cls(
            user_id=row['user_id'],
            title_id=int(row['title_id']),
            kind=ActionKind(row['kind']),
            genres=frozenset(row.get('genres') or []),
            language=row.get('language') or UNKNOWN_LANGUAGE,
            timestamp=parse_timestamp_naive(row['created_at']),
            director=row.get('director'),
            sequence=row.get('id'),
        )

    def to_row(self) -> dict:
        return {
            'user_id': self.user_id,
            'title_id': self.title_id,
            'kind': self.kind.value,
            'genres': sorted(self.genres),
            'language': self.language,
            'director': self.director,
            'created_at': self.timestamp.isoformat(),
        }


def make_action(
    user_id: str,
    title_id,
    kind,
    genres: Iterable[str] | None = None,
    language: str | None = None,
    director: str | None = None,
    timestamp: datetime | str | None = None,
) -> Action:
    """
    Validate raw ingestion input and build an Action.

    Raises:
        InvalidActionError: unknown kind, malformed title id, genres, language
            or timestamp. Nothing is recorded for a rejected action.
    """
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidActionError("user id must be a non-empty string")

    if isinstance(title_id, bool):
        raise InvalidActionError(f"malformed title id {title_id!r}")
    try:
        tid = int(title_id)
    except (TypeError, ValueError):
        raise InvalidActionError(f"malformed title id {title_id!r}") from None
    if tid < 0 or (isinstance(title_id, float) and not title_id.is_integer()):
        raise InvalidActionError(f"malformed title id {title_id!r}")

    try:
        action_kind = ActionKind(str(kind).strip().lower())
    except ValueError:
        raise InvalidActionError(
            f"unknown action kind {kind!r} (expected one of: {', '.join(k.value for k in ActionKind)})"
        ) from None

    if genres is None:
        genres = ()
    if isinstance(genres, (str, bytes)):
        raise InvalidActionError("genres must be a collection of strings, not a single string")
    genre_set = set()
    for genre in genres:
        if not isinstance(genre, str) or not genre.strip() or len(genre) > 64:
            raise InvalidActionError(f"malformed genre value {genre!r}")
        genre_set.add(normalize_genre(genre))
    if len(genre_set) > MAX_GENRES_PER_ACTION:
        raise InvalidActionError(f"too many genres ({len(genre_set)} > {MAX_GENRES_PER_ACTION})")

    try:
        lang = normalize_language(language)
    except ValueError as e:
        raise InvalidActionError(str(e)) from None

    if timestamp is None:
        ts = datetime.now()
    elif isinstance(timestamp, datetime):
        ts = timestamp.replace(tzinfo=None) if timestamp.tzinfo else timestamp
    else:
        try:
            ts = parse_timestamp_naive(str(timestamp))
        except ValueError:
            raise InvalidActionError(f"malformed timestamp {timestamp!r}") from None

    if director is not None and not isinstance(director, str):
        raise InvalidActionError(f"malformed director value {director!r}")
    director = director.strip() if director and director.strip() else None

    return Action(
        user_id=user_id.strip(),
        title_id=tid,
        kind=action_kind,
        genres=frozenset(genre_set),
        language=lang,
        timestamp=ts,
        director=director,
    )


@dataclass(frozen=True)
class DeclaredPreferences:
    """Genres and languages a user picked during onboarding."""
    genres: frozenset = frozenset()
    languages: frozenset = frozenset()

    @classmethod
    def from_dict(cls, payload: dict | None) -> "DeclaredPreferences":
        payload = payload or {}
        genres = {normalize_genre(g) for g in payload.get('genres', []) if isinstance(g, str) and g.strip()}
        languages = set()
        for lang in payload.get('languages', []):
            try:
                code = normalize_language(lang)
            except ValueError:
                logger.warning(f"Ignoring malformed declared language {lang!r}")
                continue
            if code != UNKNOWN_LANGUAGE:
                languages.add(code)
        unknown = {g for g in genres if not is_known_genre(g)}
        if unknown:
            logger.warning(f"Ignoring unknown declared genres: {', '.join(sorted(unknown))}")
        return cls(genres=frozenset(genres - unknown), languages=frozenset(languages))

    def to_dict(self) -> dict:
        return {'genres': sorted(self.genres), 'languages': sorted(self.languages)}

    @property
    def is_empty(self) -> bool:
        return not self.genres and not self.languages


@dataclass
class PreferenceModel:
    """
    Per-user preference state derived from the action log.

    Mutated only through apply_action; undo rebuilds a fresh model by
    replaying the remaining log, so replay and incremental application
    always agree.
    """
    user_id: str
    version: int = 0
    # Highest log sequence folded in; newer log rows are replayed on load
    last_sequence: int = 0

    # Rolling window of (title_id, kind) per genre, oldest first
    genre_windows: dict[str, list[tuple[int, str]]] = field(default_factory=dict)
    disliked_genres: set[str] = field(default_factory=set)
    language_weights: dict[str, float] = field(default_factory=dict)

    # Current kind per title, ordered from least to most recently acted on
    title_kinds: dict[int, str] = field(default_factory=dict)
    # Director of each currently liked title
    liked_directors: dict[int, str] = field(default_factory=dict)

    def apply_action(self, action: Action) -> bool:
        """
        Fold one action into the model.

        Returns False when the action repeats the current kind for its title
        (no preference change). A different kind for an already-seen title replaces
        that title's window entries rather than adding to them.
        """
        if action.user_id != self.user_id:
            raise ValueError(f"action for {action.user_id} applied to model of {self.user_id}")

        if action.sequence is not None:
            self.last_sequence = max(self.last_sequence, action.sequence)

        tid = action.title_id
        kind = action.kind.value
        previous = self.title_kinds.get(tid)
        if previous == kind:
            logger.debug(f"Duplicate {kind} on {tid} for {self.user_id}, no-op")
            return False

        if previous is not None:
            self._forget_title(tid)
        self.title_kinds[tid] = kind

        for genre in sorted(action.genres):
            if not is_known_genre(genre):
                continue
            window = self.genre_windows.setdefault(genre, [])
            window.append((tid, kind))
            if len(window) > GENRE_WINDOW_SIZE:
                del window[0]
        self._refresh_disliked()

        if action.language != UNKNOWN_LANGUAGE:
            self._update_language(action.language, kind)

        if action.kind is ActionKind.LIKE and action.director:
            self.liked_directors[tid] = action.director

        self.version += 1
        return True

    def _forget_title(self, title_id: int) -> None:
        del self.title_kinds[title_id]
        self.liked_directors.pop(title_id, None)
        for genre, window in self.genre_windows.items():
            self.genre_windows[genre] = [entry for entry in window if entry[0] != title_id]

    def _refresh_disliked(self) -> None:
        # Entering takes DISLIKE_THRESHOLD passes; leaving takes DISLIKE_RECOVERY_LIKES likes
        for genre, window in self.genre_windows.items():
            passes = sum(1 for _, kind in window if kind == ActionKind.PASS.value)
            likes = sum(1 for _, kind in window if kind == ActionKind.LIKE.value)
            if passes >= DISLIKE_THRESHOLD:
                self.disliked_genres.add(genre)
            elif genre in self.disliked_genres and likes >= DISLIKE_RECOVERY_LIKES:
                self.disliked_genres.discard(genre)

    def _update_language(self, language: str, kind: str) -> None:
        for other in self.language_weights:
            if other != language:
                self.language_weights[other] *= (1.0 - LANGUAGE_DECAY)
        increment = LANGUAGE_INCREMENTS.get(kind, 0.0)
        if increment > 0:
            self.language_weights[language] = self.language_weights.get(language, 0.0) + increment

    @property
    def action_count(self) -> int:
        """Number of titles with a current action."""
        return len(self.title_kinds)

    @property
    def liked_genre_counts(self) -> dict[str, int]:
        """Likes per genre within the window; disliked genres are never reported as liked."""
        counts = {}
        for genre, window in self.genre_windows.items():
            if genre in self.disliked_genres:
                continue
            likes = sum(1 for _, kind in window if kind == ActionKind.LIKE.value)
            if likes:
                counts[genre] = likes
        return counts

    @property
    def disliked_genre_counts(self) -> dict[str, int]:
        counts = {}
        for genre, window in self.genre_windows.items():
            passes = sum(1 for _, kind in window if kind == ActionKind.PASS.value)
            if passes:
                counts[genre] = passes
        return counts

    @property
    def liked_genres(self) -> set[str]:
        return set(self.liked_genre_counts)

    @property
    def anime_penalty_active(self) -> bool:
        return ANIMATION_GENRE in self.disliked_genres

    @property
    def director_affinity(self) -> dict[str, float]:
        counts = Counter(self.liked_directors.values())
        return {
            director: min(DIRECTOR_AFFINITY_CAP, n * DIRECTOR_AFFINITY_INCREMENT)
            for director, n in counts.items()
        }

    @property
    def preferred_languages(self) -> set[str]:
        return {lang for lang, weight in self.language_weights.items() if weight > 0}

    def titles_with_kind(self, kind: ActionKind) -> list[int]:
        """Titles whose current action is ``kind``, least recent first."""
        return [tid for tid, k in self.title_kinds.items() if k == kind.value]

    @property
    def liked_titles(self) -> list[int]:
        return self.titles_with_kind(ActionKind.LIKE)

    @property
    def passed_titles(self) -> list[int]:
        return self.titles_with_kind(ActionKind.PASS)

    @property
    def unwatched_titles(self) -> list[int]:
        return self.titles_with_kind(ActionKind.UNWATCHED)

    def dominant_genres(self, n: int) -> list[str]:
        """Top ``n`` liked genres by window count (ties broken by name)."""
        ranked = sorted(self.liked_genre_counts.items(), key=lambda x: (-x[1], x[0]))
        return [genre for genre, _ in ranked[:n]]

    def copy(self) -> "PreferenceModel":
        return PreferenceModel.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'version': self.version,
            'last_sequence': self.last_sequence,
            'genre_windows': {
                genre: [[tid, kind] for tid, kind in window]
                for genre, window in sorted(self.genre_windows.items())
            },
            'disliked_genres': sorted(self.disliked_genres),
            'language_weights': dict(sorted(self.language_weights.items())),
            'title_kinds': [[tid, kind] for tid, kind in self.title_kinds.items()],
            'liked_directors': [[tid, director] for tid, director in self.liked_directors.items()],
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "PreferenceModel":
        return cls(
            user_id=payload['user_id'],
            version=int(payload.get('version', 0)),
            last_sequence=int(payload.get('last_sequence', 0)),
            genre_windows={
                genre: [(int(tid), kind) for tid, kind in window]
                for genre, window in payload.get('genre_windows', {}).items()
            },
            disliked_genres=set(payload.get('disliked_genres', [])),
            language_weights={k: float(v) for k, v in payload.get('language_weights', {}).items()},
            title_kinds={int(tid): kind for tid, kind in payload.get('title_kinds', [])},
            liked_directors={int(tid): director for tid, director in payload.get('liked_directors', [])},
        )


def build_preference_model(user_id: str, actions: Iterable[Action]) -> PreferenceModel:
    """Replay an action log, in arrival order, into a fresh model."""
    model = PreferenceModel(user_id=user_id)
    for action in actions:
        model.apply_action(action)
    logger.debug(f"Built preference model for {user_id}: {model.action_count} titles, "
                 f"disliked={sorted(model.disliked_genres)}")
    return model
