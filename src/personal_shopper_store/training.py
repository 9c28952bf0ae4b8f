"""Training corpus of genuine interactions, the separate outlier log, and the derived profile."""

from __future__ import annotations

import json
import logging
import math
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from personal_shopper_store.db import PersonalStoreDB, utc_now
from personal_shopper_store.errors import ConstraintViolation
from personal_shopper_store.models import (
    INTERACTION_WEIGHTS,
    OUTLIER,
    PERSONALIZED,
    OutlierInteraction,
    TrainingInteraction,
)


_LOGGER = logging.getLogger(__name__)

# Interactions needed before the profile is fully trusted.
FULL_CONFIDENCE_EVENTS = 10

NEUTRAL_SCORE = 0.5


@dataclass(frozen=True)
class CorpusRecord:
    query: str
    object_id: str
    interaction_type: str
    label: str
    features: dict[str, Any] = field(default_factory=dict)
    discovery_reason: str | None = None
    timestamp: str = field(default_factory=utc_now)


def personalization_score(
    profile: dict[str, Any],
    category: str,
    total_weight: float = 0.0,
    events: int = 0,
) -> float:
    """Score in [0, 1] for one item; 0.5 is neutral.

    Category affinity adds up to 0.5, past interactions with the same object
    add a log-scaled bonus capped at 0.6 (plus up to 0.1 for repeat events).
    The shift away from neutral is damped while the profile has little data.
    """
    score = NEUTRAL_SCORE
    affinity = float(profile.get("category_scores", {}).get(category, 0.0)) if category else 0.0
    score += affinity * 0.5

    if total_weight:
        interaction = min(0.6, math.log10(1.0 + max(0.0, total_weight)) * 0.4)
        if events > 1:
            interaction += min(0.1, events * 0.02)
        score += interaction

    multiplier = max(0.5, float(profile.get("confidence_level", 0.0)))
    adjusted = NEUTRAL_SCORE + (score - NEUTRAL_SCORE) * multiplier
    return round(max(0.0, min(1.0, adjusted)), 6)


@contextmanager
def _write_scope(db: PersonalStoreDB, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    with db.transaction() as own:
        yield own


class TrainingCorpus:
    def __init__(self, db: PersonalStoreDB) -> None:
        self.db = db

    def record(self, record: CorpusRecord, *, conn: sqlite3.Connection | None = None) -> int:
        """Append a personalized interaction, joining ``conn``'s transaction when given."""
        if record.label != PERSONALIZED:
            raise ConstraintViolation("Only personalized interactions may enter the training corpus.")
        weight = INTERACTION_WEIGHTS.get(record.interaction_type)
        if weight is None:
            raise ConstraintViolation(f"interaction_type must be one of: {', '.join(INTERACTION_WEIGHTS)}")

        with _write_scope(self.db, conn) as scope:
            cursor = scope.execute(
                """
                INSERT INTO training_interactions (
                    query, chosen_object_id, interaction_type, weight, features, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.query,
                    record.object_id,
                    record.interaction_type,
                    weight,
                    json.dumps(record.features, default=str),
                    record.timestamp,
                ),
            )
            return int(cursor.lastrowid)

    def reset_training_data(self) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM training_interactions")
            removed = int(cursor.rowcount)
        _LOGGER.info("Training data reset; removed %s interactions", removed)
        return removed

    def export(self, *, batch_size: int = 200) -> Iterator[TrainingInteraction]:
        """Lazily yield the corpus as it stood when ``export`` was called.

        Each call opens its own read snapshot, so the result can be restarted
        by calling again. Writers are not blocked while it is consumed.
        """
        rows = self.db.iter_snapshot(
            """
            SELECT id, query, chosen_object_id, interaction_type, weight, features, timestamp
            FROM training_interactions
            ORDER BY id ASC
            """,
            batch_size=batch_size,
        )
        return (TrainingInteraction.from_row(row) for row in rows)

    def count(self) -> int:
        with self.db.read() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM training_interactions").fetchone()[0])

    def build_profile(self, *, limit: int = 1000) -> dict[str, Any]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT interaction_type, weight, features
                FROM training_interactions
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()

        totals = {event_type: 0 for event_type in INTERACTION_WEIGHTS}
        category_weights: dict[str, float] = {}
        total_weight = 0.0
        for row in rows:
            weight = float(row["weight"])
            total_weight += abs(weight)
            totals[row["interaction_type"]] = totals.get(row["interaction_type"], 0) + 1
            try:
                features = json.loads(row["features"] or "{}")
            except json.JSONDecodeError:
                continue
            category = str(features.get("category") or "").strip() if isinstance(features, dict) else ""
            if category:
                category_weights[category] = category_weights.get(category, 0.0) + weight

        category_scores = (
            {category: round(weight / total_weight, 6) for category, weight in category_weights.items()}
            if total_weight > 0
            else {}
        )
        return {
            "category_scores": dict(sorted(category_scores.items(), key=lambda kv: (-kv[1], kv[0]))),
            "interaction_totals": totals,
            "data_points": len(rows),
            "confidence_level": min(1.0, len(rows) / FULL_CONFIDENCE_EVENTS),
        }

    def object_weights(self, object_ids: Iterable[str]) -> dict[str, tuple[float, int]]:
        """Summed weight and event count per chosen object, for the given ids only."""
        ids = sorted({str(object_id) for object_id in object_ids if object_id})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self.db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT chosen_object_id, SUM(weight) AS total_weight, COUNT(*) AS events
                FROM training_interactions
                WHERE chosen_object_id IN ({placeholders})
                GROUP BY chosen_object_id
                """,
                ids,
            ).fetchall()
        return {row["chosen_object_id"]: (float(row["total_weight"] or 0.0), int(row["events"])) for row in rows}

    def score_objects(self, items: Iterable[tuple[str, str]]) -> dict[str, float]:
        """Personalization score per ``(object_id, category)`` pair."""
        pairs = list(items)
        if not pairs:
            return {}
        profile = self.build_profile()
        weights = self.object_weights(object_id for object_id, _category in pairs)
        return {
            object_id: personalization_score(profile, category, *weights.get(object_id, (0.0, 0)))
            for object_id, category in pairs
        }


class OutlierLog:
    """Exposure/interaction log for discovery items; never read as training signal."""

    def __init__(self, db: PersonalStoreDB) -> None:
        self.db = db

    def record(self, record: CorpusRecord, *, conn: sqlite3.Connection | None = None) -> int:
        if record.label != OUTLIER:
            raise ConstraintViolation("Only outlier interactions belong in the outlier log.")
        with _write_scope(self.db, conn) as scope:
            cursor = scope.execute(
                """
                INSERT INTO outlier_interactions (
                    query, shown_object_id, interaction_type, discovery_reason, timestamp
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.query,
                    record.object_id,
                    record.interaction_type,
                    record.discovery_reason,
                    record.timestamp,
                ),
            )
            return int(cursor.lastrowid)

    def count(self) -> int:
        with self.db.read() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM outlier_interactions").fetchone()[0])

    def list(self, *, limit: int = 100) -> list[OutlierInteraction]:
        safe_limit = max(1, min(int(limit), 1000))
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT id, query, shown_object_id, interaction_type, discovery_reason, timestamp
                FROM outlier_interactions
                ORDER BY id DESC
                LIMIT ?
                """,
                (safe_limit,),
            ).fetchall()
        return [OutlierInteraction.from_row(row) for row in rows]
