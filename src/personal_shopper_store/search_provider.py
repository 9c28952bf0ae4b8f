"""Search provider collaborators: a hosted index client and a local catalog ranker."""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

import numpy as np

from personal_shopper_store.config import StoreConfig, _env_float, _env_int
from personal_shopper_store.errors import SearchProviderError
from personal_shopper_store.models import Candidate


_LOGGER = logging.getLogger(__name__)

_ATTRIBUTE_KEYS = ("brand", "color", "colour", "material", "style", "occasion", "gender", "size")
_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


class SearchProvider(Protocol):
    def search(
        self,
        query: str,
        *,
        image_features: Sequence[float] | None = None,
        limit: int = 20,
    ) -> list[Candidate]:
        ...


def _normalize_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    chars = [ch if ch.isalnum() or ch.isspace() else " " for ch in text]
    return " ".join("".join(chars).split())


def _tokenize(value: Any) -> list[str]:
    return [token for token in _normalize_text(value).split() if token]


def _as_vector(raw: Any) -> tuple[float, ...] | None:
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    try:
        return tuple(float(value) for value in raw)
    except (TypeError, ValueError):
        return None


def candidate_from_hit(hit: dict[str, Any], rank: int) -> Candidate | None:
    """Build a candidate from one provider hit; hits without an object id are skipped."""
    object_id = str(hit.get("objectID") or hit.get("object_id") or hit.get("id") or "").strip()
    if not object_id:
        return None

    category = hit.get("category")
    if not category:
        categories = hit.get("categories")
        if isinstance(categories, list) and categories:
            category = categories[0]
        elif isinstance(categories, str):
            category = categories
    attributes_raw = hit.get("attributes")
    attributes: dict[str, str] = {}
    if isinstance(attributes_raw, dict):
        attributes = {str(key): str(value) for key, value in attributes_raw.items() if value is not None}
    for key in _ATTRIBUTE_KEYS:
        if key in hit and hit[key] not in (None, "") and key not in attributes:
            attributes[key] = str(hit[key])

    return Candidate(
        object_id=object_id,
        relevance_rank=int(rank),
        name=str(hit.get("name") or hit.get("title") or object_id),
        category=str(category or ""),
        attributes=attributes,
        features=_as_vector(hit.get("features") or hit.get("_vector")),
        payload={key: value for key, value in hit.items() if not str(key).startswith("_")},
    )


def rerank_by_features(
    candidates: list[Candidate],
    image_features: Sequence[float] | None,
    *,
    blend: float = 0.5,
) -> list[Candidate]:
    """Blend text rank with cosine similarity to the query image, then renumber ranks."""
    if not candidates or not image_features:
        return candidates
    query = np.asarray(image_features, dtype=np.float64)
    query_norm = float(np.linalg.norm(query))
    if query.ndim != 1 or query_norm == 0.0:
        return candidates

    count = len(candidates)
    scored: list[tuple[float, int, Candidate]] = []
    for position, candidate in enumerate(candidates):
        text_score = 1.0 - (position / count)
        similarity = 0.0
        if candidate.features is not None and len(candidate.features) == query.shape[0]:
            vector = np.asarray(candidate.features, dtype=np.float64)
            norm = float(np.linalg.norm(vector))
            if norm > 0.0:
                similarity = float(np.dot(query, vector) / (query_norm * norm))
        scored.append(((1.0 - blend) * text_score + blend * similarity, position, candidate))

    scored.sort(key=lambda item: (-item[0], item[1]))
    return [
        Candidate(
            object_id=candidate.object_id,
            relevance_rank=rank,
            name=candidate.name,
            category=candidate.category,
            attributes=candidate.attributes,
            features=candidate.features,
            payload=candidate.payload,
        )
        for rank, (_score, _position, candidate) in enumerate(scored, start=1)
    ]


@dataclass(frozen=True)
class SearchConfig:
    base_url: str
    app_id: str
    api_key: str
    index_name: str
    timeout_seconds: float
    max_retries: int

    @classmethod
    def from_env(cls) -> "SearchConfig":
        app_id = os.getenv("PS_SEARCH_APP_ID", "").strip()
        default_base = f"https://{app_id}-dsn.algolia.net" if app_id else ""
        return cls(
            base_url=os.getenv("PS_SEARCH_API_BASE_URL", "").strip() or default_base,
            app_id=app_id,
            api_key=os.getenv("PS_SEARCH_API_KEY", "").strip(),
            index_name=os.getenv("PS_SEARCH_INDEX", "products").strip() or "products",
            timeout_seconds=_env_float("PS_SEARCH_TIMEOUT_SECONDS", 10.0),
            max_retries=_env_int("PS_SEARCH_MAX_RETRIES", 1),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.base_url)


class HttpSearchClient:
    def __init__(self, config: SearchConfig) -> None:
        if not config.enabled:
            raise SearchProviderError("PS_SEARCH_API_KEY and a search base URL are required.")
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.timeout_seconds = max(1.0, float(config.timeout_seconds))
        self.max_retries = max(0, int(config.max_retries))

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        endpoint = f"{self.base_url}{path}"
        request = urllib.request.Request(
            endpoint,
            data=body,
            headers={
                "X-Algolia-Application-Id": self.config.app_id,
                "X-Algolia-API-Key": self.config.api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method="POST",
        )

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                    return json.loads(response.read().decode("utf-8"))
            except urllib.error.HTTPError as exc:
                response_body = exc.read().decode("utf-8", errors="ignore")
                if exc.code in _RETRYABLE_STATUS and attempt < self.max_retries:
                    time.sleep(0.4 * (2**attempt))
                    continue
                raise SearchProviderError(
                    f"Search request failed ({exc.code}) at {path}: {response_body or exc.reason}"
                ) from exc
            except urllib.error.URLError as exc:
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(0.4 * (2**attempt))
                    continue
                raise SearchProviderError(f"Search request failed at {path}: {exc.reason}") from exc
            except json.JSONDecodeError as exc:
                raise SearchProviderError(f"Search response at {path} was not valid JSON.") from exc

        raise SearchProviderError(f"Search request failed at {path}: {last_error}")

    def search(
        self,
        query: str,
        *,
        image_features: Sequence[float] | None = None,
        limit: int = 20,
    ) -> list[Candidate]:
        index = urllib.parse.quote(self.config.index_name, safe="")
        response = self._post_json(
            f"/1/indexes/{index}/query",
            {"query": query, "hitsPerPage": max(1, min(int(limit), 100))},
        )
        hits = response.get("hits", [])
        candidates: list[Candidate] = []
        if isinstance(hits, list):
            for hit in hits:
                if not isinstance(hit, dict):
                    continue
                candidate = candidate_from_hit(hit, len(candidates) + 1)
                if candidate is not None:
                    candidates.append(candidate)
        return rerank_by_features(candidates, image_features)


class CatalogSearchProvider:
    """Lexical ranking over an in-memory catalog; used offline and in tests."""

    def __init__(self, items: Iterable[dict[str, Any]]) -> None:
        self.items = [dict(item) for item in items if isinstance(item, dict)]
        self._documents = [self._search_document(item) for item in self.items]

    @classmethod
    def from_json(cls, path: Path) -> "CatalogSearchProvider":
        try:
            parsed = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SearchProviderError(f"Cannot load catalog from {path}: {exc}") from exc
        if isinstance(parsed, dict):
            parsed = parsed.get("products") or parsed.get("hits") or []
        if not isinstance(parsed, list):
            raise SearchProviderError(f"Catalog at {path} must be a list of products.")
        return cls(parsed)

    @staticmethod
    def _search_document(item: dict[str, Any]) -> set[str]:
        parts: list[Any] = [item.get("name"), item.get("title"), item.get("description"), item.get("category")]
        categories = item.get("categories")
        if isinstance(categories, list):
            parts.extend(categories)
        attributes = item.get("attributes")
        if isinstance(attributes, dict):
            parts.extend(attributes.values())
        parts.extend(item.get(key) for key in _ATTRIBUTE_KEYS)
        return set(_tokenize(" ".join(str(part) for part in parts if part)))

    def search(
        self,
        query: str,
        *,
        image_features: Sequence[float] | None = None,
        limit: int = 20,
    ) -> list[Candidate]:
        tokens = set(_tokenize(query))
        scored: list[tuple[int, int]] = []
        for position, document in enumerate(self._documents):
            overlap = len(tokens & document)
            if tokens and overlap == 0:
                continue
            scored.append((overlap, position))
        scored.sort(key=lambda item: (-item[0], item[1]))

        candidates: list[Candidate] = []
        for _overlap, position in scored:
            if len(candidates) >= max(1, int(limit)):
                break
            candidate = candidate_from_hit(self.items[position], len(candidates) + 1)
            if candidate is not None:
                candidates.append(candidate)
        return rerank_by_features(candidates, image_features)


def make_search_provider(config: StoreConfig) -> SearchProvider:
    search_config = SearchConfig.from_env()
    if search_config.enabled:
        return HttpSearchClient(search_config)
    if config.catalog_path is not None:
        return CatalogSearchProvider.from_json(config.catalog_path)
    _LOGGER.warning("No search provider configured; searches will return no candidates.")
    return CatalogSearchProvider([])
