"""Discovery mixing: label a ranked result set and route interactions by that label.

Labeling is pure. Given the same candidates, percentage and strategy, ``mix``
always returns the same labels. The outliers are the candidates that differ
most from the best-ranked result, with ties pulled from the tail so the most
relevant items stay personalized.

Routing is the only write path into ``training_interactions`` and
``outlier_interactions``. It reads the label stored when the result was
served, never one supplied by the caller.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import numpy as np

from personal_shopper_store.db import utc_now
from personal_shopper_store.errors import ConstraintViolation, InvalidSetting, NotFound
from personal_shopper_store.models import (
    INTERACTION_WEIGHTS,
    OUTLIER,
    PERSONALIZED,
    REASON_DIFFERENT_STYLE,
    REASON_VISUAL_APPEAL,
    Candidate,
    Interaction,
    LabeledCandidate,
)
from personal_shopper_store.training import CorpusRecord, OutlierLog, TrainingCorpus


_LOGGER = logging.getLogger(__name__)

DISCOVERY_PERCENTAGES = (0, 5, 10)

_CATEGORY_WEIGHT = 0.6
_ATTRIBUTE_WEIGHT = 0.4


def validate_discovery_percentage(value: Any) -> int:
    # bool is an int subclass; True must not pass as 1.
    if isinstance(value, bool) or not isinstance(value, int) or value not in DISCOVERY_PERCENTAGES:
        raise InvalidSetting(
            f"discovery_percentage must be one of: {', '.join(map(str, DISCOVERY_PERCENTAGES))}"
        )
    return value


@dataclass(frozen=True)
class MixingConfig:
    discovery_percentage: int = 0

    def __post_init__(self) -> None:
        validate_discovery_percentage(self.discovery_percentage)


def outlier_count(n: int, discovery_percentage: int) -> int:
    """Round ``n * pct / 100`` half up, clamped to ``[0, n]``."""
    if n <= 0 or discovery_percentage <= 0:
        return 0
    k = (n * discovery_percentage * 2 + 100) // 200
    return max(0, min(n, k))


def _norm(value: Any) -> str:
    return str(value or "").strip().casefold()


class DiversityStrategy(Protocol):
    name: str

    def distance(self, anchor: Candidate, candidate: Candidate) -> float:
        """How different ``candidate`` is from ``anchor``, in [0, 1]."""
        ...


class SignatureDiversity:
    """Category mismatch blended with attribute-set Jaccard distance."""

    name = "signature"

    def distance(self, anchor: Candidate, candidate: Candidate) -> float:
        category_gap = 0.0 if _norm(anchor.category) == _norm(candidate.category) else 1.0
        left = anchor.signature()
        right = candidate.signature()
        union = left | right
        attribute_gap = 1.0 - (len(left & right) / len(union)) if union else 0.0
        return _CATEGORY_WEIGHT * category_gap + _ATTRIBUTE_WEIGHT * attribute_gap


class FeatureVectorDiversity:
    """Cosine distance between provider feature vectors, rescaled to [0, 1]."""

    name = "feature"

    def __init__(self, fallback: DiversityStrategy | None = None) -> None:
        self.fallback = fallback or SignatureDiversity()

    def distance(self, anchor: Candidate, candidate: Candidate) -> float:
        if anchor.features is None or candidate.features is None:
            return self.fallback.distance(anchor, candidate)
        left = np.asarray(anchor.features, dtype=np.float64)
        right = np.asarray(candidate.features, dtype=np.float64)
        if left.shape != right.shape or left.ndim != 1:
            return self.fallback.distance(anchor, candidate)
        left_norm = float(np.linalg.norm(left))
        right_norm = float(np.linalg.norm(right))
        if left_norm == 0.0 or right_norm == 0.0:
            return self.fallback.distance(anchor, candidate)
        cosine = float(np.dot(left, right) / (left_norm * right_norm))
        return float(np.clip((1.0 - cosine) / 2.0, 0.0, 1.0))


_STRATEGIES = {
    SignatureDiversity.name: SignatureDiversity,
    FeatureVectorDiversity.name: FeatureVectorDiversity,
}


def make_strategy(name: str) -> DiversityStrategy:
    key = _norm(name) or SignatureDiversity.name
    factory = _STRATEGIES.get(key)
    if factory is None:
        raise InvalidSetting(f"diversity strategy must be one of: {', '.join(sorted(_STRATEGIES))}")
    return factory()


@dataclass(frozen=True)
class RoutedInteraction:
    label: str
    table: str
    row_id: int
    query: str
    object_id: str
    timestamp: str


class DiscoveryMixer:
    def __init__(
        self,
        corpus: TrainingCorpus,
        outlier_log: OutlierLog,
        strategy: DiversityStrategy | None = None,
    ) -> None:
        self.corpus = corpus
        self.outlier_log = outlier_log
        self.strategy = strategy or SignatureDiversity()

    def mix(self, candidates: Sequence[Candidate], config: MixingConfig) -> list[LabeledCandidate]:
        items = list(candidates)
        k = outlier_count(len(items), config.discovery_percentage)
        if k == 0:
            return [LabeledCandidate(candidate=item, label=PERSONALIZED) for item in items]

        anchor_pos = min(range(len(items)), key=lambda i: (items[i].relevance_rank, i))
        anchor = items[anchor_pos]

        # Most different first; among equals the least relevant goes first.
        # Rounding keeps float noise from reordering equal distances.
        ordered = sorted(
            (i for i in range(len(items)) if i != anchor_pos),
            key=lambda i: (
                -round(self.strategy.distance(anchor, items[i]), 9),
                -items[i].relevance_rank,
                -i,
            ),
        )
        if len(ordered) < k:
            ordered.append(anchor_pos)
        chosen = set(ordered[:k])

        labeled: list[LabeledCandidate] = []
        for i, item in enumerate(items):
            if i not in chosen:
                labeled.append(LabeledCandidate(candidate=item, label=PERSONALIZED))
                continue
            reason = (
                REASON_DIFFERENT_STYLE
                if _norm(item.category) != _norm(anchor.category)
                else REASON_VISUAL_APPEAL
            )
            labeled.append(LabeledCandidate(candidate=item, label=OUTLIER, discovery_reason=reason))
        return labeled

    @staticmethod
    def log_serve(
        conn: sqlite3.Connection,
        *,
        query: str,
        image_provided: bool,
        config: MixingConfig,
        labeled: Sequence[LabeledCandidate],
    ) -> int:
        """Persist the labels exactly as served; routing reads them back."""
        cursor = conn.execute(
            """
            INSERT INTO search_logs (
                query, image_provided, discovery_percentage, result_count, outlier_count, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                query,
                1 if image_provided else 0,
                config.discovery_percentage,
                len(labeled),
                sum(1 for item in labeled if item.is_outlier),
                utc_now(),
            ),
        )
        search_id = int(cursor.lastrowid)
        conn.executemany(
            """
            INSERT INTO search_results (
                search_id, object_id, rank_position, label, discovery_reason, category, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    search_id,
                    item.candidate.object_id,
                    position + 1,
                    item.label,
                    item.discovery_reason,
                    item.candidate.category,
                    json.dumps(item.candidate.feature_subset(), default=str),
                )
                for position, item in enumerate(labeled)
            ],
        )
        return search_id

    def route(self, conn: sqlite3.Connection, interaction: Interaction) -> RoutedInteraction:
        """Write ``interaction`` to exactly one of the training corpus or the outlier log."""
        if interaction.interaction_type not in INTERACTION_WEIGHTS:
            raise ConstraintViolation(
                f"interaction_type must be one of: {', '.join(INTERACTION_WEIGHTS)}"
            )

        row = conn.execute(
            """
            SELECT sl.query,
                   sr.label,
                   sr.discovery_reason,
                   sr.payload
            FROM search_results sr
            JOIN search_logs sl ON sl.id = sr.search_id
            WHERE sr.search_id = ? AND sr.object_id = ?
            """,
            (int(interaction.search_id), interaction.object_id),
        ).fetchone()
        if not row:
            raise NotFound("Served result not found for this search.")

        served_label = row["label"]
        if interaction.label is not None and interaction.label != served_label:
            raise ConstraintViolation("Interaction label does not match the label served for this result.")

        try:
            features = json.loads(row["payload"] or "{}")
        except json.JSONDecodeError:
            features = {}

        record = CorpusRecord(
            query=row["query"],
            object_id=interaction.object_id,
            interaction_type=interaction.interaction_type,
            label=served_label,
            features=features if isinstance(features, dict) else {},
            discovery_reason=row["discovery_reason"],
            timestamp=utc_now(),
        )
        if served_label == PERSONALIZED:
            row_id = self.corpus.record(record, conn=conn)
            table = "training_interactions"
        else:
            row_id = self.outlier_log.record(record, conn=conn)
            table = "outlier_interactions"

        conn.execute(
            "UPDATE search_logs SET selected_object_id = ? WHERE id = ?",
            (interaction.object_id, int(interaction.search_id)),
        )
        _LOGGER.debug("Routed %s on %s to %s", interaction.interaction_type, interaction.object_id, table)
        return RoutedInteraction(
            label=served_label,
            table=table,
            row_id=row_id,
            query=record.query,
            object_id=record.object_id,
            timestamp=record.timestamp,
        )
