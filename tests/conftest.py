from __future__ import annotations

from pathlib import Path
from typing import Callable, Sequence

import pytest

from personal_shopper_store.config import StoreConfig
from personal_shopper_store.db import PersonalStoreDB, open_store
from personal_shopper_store.models import Candidate
from personal_shopper_store.service import PersonalStoreService


class FakeProvider:
    """Returns a fixed ranked list regardless of the query."""

    def __init__(self, candidates: Sequence[Candidate]) -> None:
        self.candidates = list(candidates)
        self.calls: list[tuple[str, object, int]] = []

    def search(self, query, *, image_features=None, limit=20):
        self.calls.append((query, image_features, limit))
        return self.candidates[:limit]


def build_candidates(
    n: int,
    *,
    category: str = "shoes",
    odd_ones: dict[int, str] | None = None,
) -> list[Candidate]:
    """``n`` near-identical candidates; ``odd_ones`` maps a rank to a different category."""
    odd_ones = odd_ones or {}
    return [
        Candidate(
            object_id=f"obj-{rank}",
            relevance_rank=rank,
            name=f"Item {rank}",
            category=odd_ones.get(rank, category),
            attributes={"color": "black"},
            payload={"price": 10 + rank},
        )
        for rank in range(1, n + 1)
    ]


def make_config(tmp_path: Path, **overrides) -> StoreConfig:
    values = dict(
        data_dir=tmp_path,
        db_path=tmp_path / "store.db",
        locator_path=tmp_path / "storage_location.json",
        db_timeout_seconds=5.0,
        search_top_k=20,
        diversity_strategy="signature",
        catalog_path=None,
        log_level="INFO",
        wal_enabled=True,
    )
    values.update(overrides)
    return StoreConfig(**values)


@pytest.fixture
def db(tmp_path: Path) -> PersonalStoreDB:
    return open_store(tmp_path / "store.db")


@pytest.fixture
def candidates_factory() -> Callable[..., list[Candidate]]:
    return build_candidates


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(build_candidates(20, odd_ones={5: "hats", 12: "bags"}))


@pytest.fixture
def service(tmp_path: Path, provider: FakeProvider) -> PersonalStoreService:
    return PersonalStoreService(make_config(tmp_path), provider=provider)
