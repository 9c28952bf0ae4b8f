from __future__ import annotations

import io
import json
import urllib.error
from pathlib import Path

import pytest

from personal_shopper_store import search_provider
from personal_shopper_store.errors import SearchProviderError
from personal_shopper_store.models import Candidate
from personal_shopper_store.search_provider import (
    CatalogSearchProvider,
    HttpSearchClient,
    SearchConfig,
    candidate_from_hit,
    make_search_provider,
    rerank_by_features,
)
from tests.conftest import make_config


CATALOG = [
    {"objectID": "a", "name": "Red running shoes", "category": "shoes"},
    {"objectID": "b", "name": "Blue hat", "category": "hats"},
    {"objectID": "c", "name": "Red hat", "category": "hats", "color": "red"},
]


class _FakeResponse:
    def __init__(self, payload: dict) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


def _search_config(**overrides) -> SearchConfig:
    values = dict(
        base_url="https://search.example.test",
        app_id="app",
        api_key="key",
        index_name="products",
        timeout_seconds=2.0,
        max_retries=0,
    )
    values.update(overrides)
    return SearchConfig(**values)


def test_candidate_from_hit_reads_common_fields() -> None:
    hit = {
        "objectID": "sku-1",
        "title": "Trail boot",
        "categories": ["boots", "outdoor"],
        "brand": "Acme",
        "attributes": {"color": "brown"},
        "_vector": [1, 0],
        "_highlightResult": {},
    }

    candidate = candidate_from_hit(hit, 3)

    assert candidate.object_id == "sku-1"
    assert candidate.relevance_rank == 3
    assert candidate.name == "Trail boot"
    assert candidate.category == "boots"
    assert candidate.attributes == {"color": "brown", "brand": "Acme"}
    assert candidate.features == (1.0, 0.0)
    assert "_vector" not in candidate.payload
    assert candidate_from_hit({"name": "no id"}, 1) is None


def test_catalog_ranks_by_token_overlap() -> None:
    provider = CatalogSearchProvider(CATALOG)

    results = provider.search("red hat")

    assert [c.object_id for c in results] == ["c", "a", "b"]
    assert [c.relevance_rank for c in results] == [1, 2, 3]
    assert provider.search("socks") == []
    assert len(provider.search("red hat", limit=1)) == 1


def test_catalog_from_json(tmp_path: Path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"products": CATALOG}), encoding="utf-8")

    provider = CatalogSearchProvider.from_json(path)

    assert [c.object_id for c in provider.search("hat")] == ["b", "c"]
    with pytest.raises(SearchProviderError):
        CatalogSearchProvider.from_json(tmp_path / "missing.json")


def test_rerank_by_features_blends_similarity() -> None:
    candidates = [
        Candidate("x", 1, features=(1.0, 0.0)),
        Candidate("y", 2, features=(0.0, 1.0)),
    ]

    reranked = rerank_by_features(candidates, [0.0, 1.0])

    assert [c.object_id for c in reranked] == ["y", "x"]
    assert [c.relevance_rank for c in reranked] == [1, 2]
    assert rerank_by_features(candidates, None) == candidates


def test_http_client_parses_hits(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.full_url
        captured["body"] = json.loads(request.data.decode("utf-8"))
        return _FakeResponse({"hits": [{"objectID": "a", "name": "Shoe"}, {"name": "skip"}, {"objectID": "b"}]})

    monkeypatch.setattr(search_provider.urllib.request, "urlopen", fake_urlopen)
    client = HttpSearchClient(_search_config())

    results = client.search("shoe", limit=5)

    assert captured["url"] == "https://search.example.test/1/indexes/products/query"
    assert captured["body"] == {"query": "shoe", "hitsPerPage": 5}
    assert [(c.object_id, c.relevance_rank) for c in results] == [("a", 1), ("b", 2)]


def test_http_client_raises_provider_error(monkeypatch) -> None:
    def fake_urlopen(request, timeout):
        raise urllib.error.HTTPError(request.full_url, 403, "Forbidden", {}, io.BytesIO(b"denied"))

    monkeypatch.setattr(search_provider.urllib.request, "urlopen", fake_urlopen)
    client = HttpSearchClient(_search_config())

    with pytest.raises(SearchProviderError, match="403"):
        client.search("shoe")


def test_http_client_retries_transient_failures(monkeypatch) -> None:
    attempts = []

    def fake_urlopen(request, timeout):
        attempts.append(1)
        if len(attempts) == 1:
            raise urllib.error.URLError("reset")
        return _FakeResponse({"hits": []})

    monkeypatch.setattr(search_provider.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(search_provider.time, "sleep", lambda seconds: None)
    client = HttpSearchClient(_search_config(max_retries=1))

    assert client.search("shoe") == []
    assert len(attempts) == 2


def test_http_client_requires_credentials() -> None:
    with pytest.raises(SearchProviderError):
        HttpSearchClient(_search_config(api_key=""))


def test_make_search_provider_prefers_catalog_without_credentials(tmp_path: Path, monkeypatch) -> None:
    for name in ("PS_SEARCH_API_KEY", "PS_SEARCH_APP_ID", "PS_SEARCH_API_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")

    provider = make_search_provider(make_config(tmp_path, catalog_path=path))

    assert isinstance(provider, CatalogSearchProvider)
    assert len(provider.items) == 3

    monkeypatch.setenv("PS_SEARCH_API_KEY", "key")
    monkeypatch.setenv("PS_SEARCH_APP_ID", "app")
    assert isinstance(make_search_provider(make_config(tmp_path)), HttpSearchClient)
