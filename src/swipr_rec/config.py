"""
Configuration constants for the swipr recommendation engine.

This module centralizes every weight, threshold and cap used by the
preference model, the scorers, the blender and the cache so that a change
to the scoring rules is a single edit here.
Values can be overridden via environment variables or a scoring weights file.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("SWIPR_DB", "data/swipr.db"))

# Scoring weights override file (JSON); missing file means built-in defaults
SCORING_WEIGHTS_PATH = Path(os.environ.get("SWIPR_SCORING_WEIGHTS", "data/scoring_weights.json"))

# Notifications (rebuild daemon)
NOTIFICATION_WEBHOOK_URL = os.environ.get("SWIPR_NOTIFICATION_WEBHOOK", "")

# Catalog vocabulary
KNOWN_GENRES = (
    "Action",
    "Adventure",
    "Animation",
    "Comedy",
    "Crime",
    "Documentary",
    "Drama",
    "Family",
    "Fantasy",
    "History",
    "Horror",
    "Music",
    "Mystery",
    "Romance",
    "Sci-Fi",
    "Thriller",
    "TV Movie",
    "War",
    "Western",
)
GENRE_ALIASES = {
    "science fiction": "Sci-Fi",
    "scifi": "Sci-Fi",
    "sci fi": "Sci-Fi",
}
ANIMATION_GENRE = "Animation"
ANIME_LANGUAGE = "ja"
UNKNOWN_LANGUAGE = "unknown"
MAX_GENRES_PER_ACTION = 20

# Preference Model
GENRE_WINDOW_SIZE = 5           # Observations kept per genre
DISLIKE_THRESHOLD = 2           # Passes within the window that mark a genre disliked
DISLIKE_RECOVERY_LIKES = _get_int_env("SWIPR_DISLIKE_RECOVERY_LIKES", 3, min_val=1)
LANGUAGE_DECAY = 0.05           # Multiplicative decay applied to other languages
LANGUAGE_INCREMENTS = {
    'like': 1.0,
    'unwatched': 0.5,
    'pass': 0.0,
}
DIRECTOR_AFFINITY_INCREMENT = 0.25
DIRECTOR_AFFINITY_CAP = 1.0

# Content Scorer
CONTENT_BASE_SCORE = 0.5
GENRE_MATCH_WEIGHT = 0.4
DISLIKE_PENALTY = 0.25          # Per disliked genre
ANIME_PENALTY = 0.6             # Replaces the Animation dislike penalty for anime
QUALITY_BOOST = 0.1
QUALITY_MIN_VOTE_AVERAGE = 8.0
QUALITY_MIN_VOTE_COUNT = 1000
LANGUAGE_BOOST = 0.15
DIRECTOR_BOOST = 0.15
CONTENT_SCORE_MIN = 0.0
CONTENT_SCORE_MAX = 1.0

# Recommendation Blender
BLEND_WEIGHTS = {
    'content': 0.3,
    'user-cf': 0.4,
    'item-cf': 0.3,
}
DEFAULT_LIMIT = 20
DEFAULT_DISCOVERY_RATIO = 0.2
DOMINANT_GENRE_COUNT = 3        # Liked genres forming the user's dominant cluster
DISCOVERY_QUALITY_WEIGHT = 0.6
DISCOVERY_NOVELTY_WEIGHT = 0.4
UNWATCHED_ANCHOR_WEIGHT = 0.5   # Item-CF weight of an unwatched anchor relative to a like

# Cold start
COLD_START_MIN_ACTIONS = _get_int_env("SWIPR_COLD_START_MIN_ACTIONS", 10, min_val=0)
COLD_START_MIN_VOTE_AVERAGE = 8.0
COLD_START_MIN_VOTE_COUNT = 1000
COLD_START_CONTENT_WEIGHT = 0.5

# User Similarity
SIMILARITY_WEIGHTS = {
    'actions': 0.5,
    'genres': 0.3,
    'languages': 0.2,
}
# Raw agreement weights per (kind, kind) pair; normalized by the like/like value
ACTION_AGREEMENT_WEIGHTS = {
    ('like', 'like'): 2.5,
    ('pass', 'pass'): 1.0,
    ('unwatched', 'unwatched'): 0.5,
    ('like', 'unwatched'): 0.3,
    ('unwatched', 'like'): 0.3,
}
ACTION_DISAGREEMENT_WEIGHT = 0.1
SIMILAR_USER_THRESHOLD = 0.3

# Item Similarity
ITEM_SIM_MIN_INTERACTIONS = 3
ITEM_SIM_MAX_ITEMS = _get_int_env("SWIPR_ITEM_SIM_MAX_ITEMS", 5000, min_val=10)

# Computation caps (bounded worst-case cost per request)
MAX_CANDIDATE_POOL = _get_int_env("SWIPR_MAX_CANDIDATE_POOL", 500, min_val=1)
MAX_SIMILAR_USER_CANDIDATES = 200
MAX_SIMILAR_USERS = 10
MAX_ITEM_ANCHORS = 50
MAX_ITEM_NEIGHBORS = 50

# Recommendation Cache
CACHE_TTL_HOURS = _get_float_env("SWIPR_CACHE_TTL_HOURS", 24.0, min_val=0.0)
CACHE_WAIT_TIMEOUT = _get_float_env("SWIPR_CACHE_WAIT_TIMEOUT", 30.0, min_val=0.1)

# In-memory per-user state kept by a long-running service (LRU)
MODEL_CACHE_SIZE = _get_int_env("SWIPR_MODEL_CACHE_SIZE", 10000, min_val=1)
SEEN_CACHE_SIZE = _get_int_env("SWIPR_SEEN_CACHE_SIZE", 10000, min_val=1)

# Background item-similarity rebuild interval (seconds)
REBUILD_INTERVAL = _get_int_env("SWIPR_REBUILD_INTERVAL", 3600, min_val=1)

# Schema Versioning
# Increment PREFERENCE_SCHEMA_VERSION when PreferenceModel fields change;
# stored snapshots with another version are rebuilt from the action log.
PREFERENCE_SCHEMA_VERSION = 2
# Increment SCORING_SCHEMA_VERSION when any scoring rule above changes;
# cached recommendations computed under another version are recomputed.
SCORING_SCHEMA_VERSION = 1
