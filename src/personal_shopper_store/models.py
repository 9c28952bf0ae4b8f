"""Plain data records passed between the stores, the mixer and the service."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any


PERSONALIZED = "personalized"
OUTLIER = "outlier"
LABELS = (PERSONALIZED, OUTLIER)

REASON_DIFFERENT_STYLE = "different_style"
REASON_VISUAL_APPEAL = "visual_appeal"

ROLES = ("user", "assistant")

# Engagement weights per interaction type; negative values pull affinity down.
INTERACTION_WEIGHTS: dict[str, float] = {
    "search": 0.2,
    "view": 0.3,
    "click": 0.5,
    "save": 1.0,
    "remove": -0.8,
}


def _loads(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


@dataclass(frozen=True)
class Candidate:
    """One ranked result from the search provider."""

    object_id: str
    relevance_rank: int
    name: str = ""
    category: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    features: tuple[float, ...] | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def signature(self) -> frozenset[str]:
        return frozenset(
            f"{str(key).strip().lower()}={str(value).strip().lower()}"
            for key, value in self.attributes.items()
            if str(value).strip()
        )

    def feature_subset(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "attributes": dict(self.attributes),
            "relevance_rank": self.relevance_rank,
        }


@dataclass(frozen=True)
class LabeledCandidate:
    candidate: Candidate
    label: str
    discovery_reason: str | None = None
    # Only personalized items are scored.
    personalization_score: float | None = None

    @property
    def is_outlier(self) -> bool:
        return self.label == OUTLIER

    def to_public(self) -> dict[str, Any]:
        item = self.candidate
        return {
            "object_id": item.object_id,
            "name": item.name,
            "category": item.category,
            "attributes": dict(item.attributes),
            "relevance_rank": item.relevance_rank,
            "label": self.label,
            "discovery_reason": self.discovery_reason,
            "personalization_score": self.personalization_score,
            "payload": dict(item.payload),
        }


@dataclass(frozen=True)
class MessageInput:
    role: str
    content: str
    image_ref: str | None = None


@dataclass(frozen=True)
class ChatSession:
    id: int
    name: str
    category: str
    created_at: str
    updated_at: str
    message_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ChatSession":
        keys = row.keys()
        return cls(
            id=int(row["id"]),
            name=row["session_name"],
            category=row["category"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            message_count=int(row["message_count"]) if "message_count" in keys else 0,
        )


@dataclass(frozen=True)
class ChatMessage:
    id: int
    session_id: int
    role: str
    content: str
    image_ref: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ChatMessage":
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            role=row["role"],
            content=row["content"],
            image_ref=row["image_ref"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class ProductInput:
    object_id: str
    name: str
    custom_name: str | None = None
    tags: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SavedProduct:
    id: int
    object_id: str
    name: str
    custom_name: str
    tags: list[str]
    payload: dict[str, Any]
    saved_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SavedProduct":
        return cls(
            id=int(row["id"]),
            object_id=row["object_id"],
            name=row["name"],
            custom_name=row["custom_name"] or row["name"],
            tags=list(_loads(row["tags"], [])),
            payload=dict(_loads(row["provider_payload"], {})),
            saved_at=row["saved_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class Interaction:
    """A user action on a served result, before routing."""

    search_id: int
    object_id: str
    interaction_type: str = "click"
    label: str | None = None


@dataclass(frozen=True)
class TrainingInteraction:
    id: int
    query: str
    chosen_object_id: str
    interaction_type: str
    weight: float
    features: dict[str, Any]
    timestamp: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TrainingInteraction":
        return cls(
            id=int(row["id"]),
            query=row["query"],
            chosen_object_id=row["chosen_object_id"],
            interaction_type=row["interaction_type"],
            weight=float(row["weight"]),
            features=dict(_loads(row["features"], {})),
            timestamp=row["timestamp"],
        )


@dataclass(frozen=True)
class OutlierInteraction:
    id: int
    query: str
    shown_object_id: str
    interaction_type: str
    discovery_reason: str | None
    timestamp: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OutlierInteraction":
        return cls(
            id=int(row["id"]),
            query=row["query"],
            shown_object_id=row["shown_object_id"],
            interaction_type=row["interaction_type"],
            discovery_reason=row["discovery_reason"],
            timestamp=row["timestamp"],
        )
