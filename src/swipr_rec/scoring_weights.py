"""
Loading and validating the tunable scoring weights.

The blend, similarity and penalty weights default to the constants in
config and can be overridden from a JSON file. Each group of weights is
renormalized to sum to 1.0 so the blended and similarity scores keep their
full [0, 1] range whatever the file says.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import (
    SCORING_WEIGHTS_PATH,
    SCORING_SCHEMA_VERSION,
    BLEND_WEIGHTS,
    SIMILARITY_WEIGHTS,
    DISLIKE_PENALTY,
    ANIME_PENALTY,
)

logger = logging.getLogger(__name__)

MIN_WEIGHT = 0.0
MAX_WEIGHT = 1.0
MAX_PENALTY = 2.0


def _clamp(value: Any, default: float, upper: float = MAX_WEIGHT) -> float:
    try:
        return max(MIN_WEIGHT, min(upper, float(value)))
    except (TypeError, ValueError):
        return default


def _normalize_group(table: dict[str, Any], defaults: dict[str, float]) -> dict[str, float]:
    """Clamp each weight, fill missing keys from defaults and rescale to sum 1.0."""
    clamped = {key: _clamp(table.get(key, default), default) for key, default in defaults.items()}
    extra = set(table) - set(defaults)
    if extra:
        logger.warning(f"Ignoring unknown weight keys: {', '.join(sorted(extra))}")
    total = sum(clamped.values())
    if total <= 0:
        logger.warning("All weights in group are zero; falling back to defaults")
        return dict(defaults)
    return {key: value / total for key, value in clamped.items()}


@dataclass
class ScoringWeights:
    """Effective weights for one scoring pass."""

    blend: dict[str, float] = field(default_factory=lambda: dict(BLEND_WEIGHTS))
    similarity: dict[str, float] = field(default_factory=lambda: dict(SIMILARITY_WEIGHTS))
    dislike_penalty: float = DISLIKE_PENALTY
    anime_penalty: float = ANIME_PENALTY
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.blend = _normalize_group(self.blend or {}, BLEND_WEIGHTS)
        self.similarity = _normalize_group(self.similarity or {}, SIMILARITY_WEIGHTS)
        self.dislike_penalty = _clamp(self.dislike_penalty, DISLIKE_PENALTY, MAX_PENALTY)
        self.anime_penalty = _clamp(self.anime_penalty, ANIME_PENALTY, MAX_PENALTY)
        if self.anime_penalty <= self.dislike_penalty:
            # The anime penalty must stay heavier than the generic genre penalty
            raised = min(MAX_PENALTY, max(self.dislike_penalty * 2, ANIME_PENALTY))
            logger.warning(
                f"anime_penalty {self.anime_penalty:.2f} not above dislike_penalty "
                f"{self.dislike_penalty:.2f}; using {raised:.2f}"
            )
            self.anime_penalty = raised

    @property
    def version(self) -> str:
        """Scoring schema version plus a digest of the effective values."""
        payload = json.dumps(
            {k: v for k, v in self.to_dict().items() if k != 'metadata'},
            sort_keys=True,
        )
        digest = hashlib.sha1(payload.encode()).hexdigest()[:10]
        return f"{SCORING_SCHEMA_VERSION}-{digest}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata,
            "blend": {k: round(v, 6) for k, v in self.blend.items()},
            "similarity": {k: round(v, 6) for k, v in self.similarity.items()},
            "dislike_penalty": round(self.dislike_penalty, 6),
            "anime_penalty": round(self.anime_penalty, 6),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ScoringWeights":
        return cls(
            blend=dict(payload.get("blend") or {}),
            similarity=dict(payload.get("similarity") or {}),
            dislike_penalty=payload.get("dislike_penalty", DISLIKE_PENALTY),
            anime_penalty=payload.get("anime_penalty", ANIME_PENALTY),
            metadata=payload.get("metadata", {}),
        )


def load_scoring_weights(path: str | Path | None = None) -> ScoringWeights:
    """Load weights from disk; defaults when the file is missing or unreadable."""
    weight_path = Path(path) if path else SCORING_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Scoring weights file not found at %s; using defaults", weight_path)
        return ScoringWeights()

    try:
        return ScoringWeights.from_dict(json.loads(weight_path.read_text()))
    except (OSError, ValueError, AttributeError) as exc:
        logger.warning("Failed to load scoring weights from %s: %s", weight_path, exc)
        return ScoringWeights()


def save_scoring_weights(weights: ScoringWeights, path: str | Path | None = None) -> Path:
    weight_path = Path(path) if path else SCORING_WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(weights.to_dict(), indent=2))
    return weight_path
