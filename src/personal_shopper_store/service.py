"""Request/response facade used by the UI: search with discovery mixing, chat history, saved items."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Sequence

from personal_shopper_store.chat_store import ChatStore
from personal_shopper_store.config import StoreConfig, save_storage_location
from personal_shopper_store.db import PersonalStoreDB, open_store
from personal_shopper_store.errors import StorageUnavailable
from personal_shopper_store.mixing import DiscoveryMixer, DiversityStrategy, MixingConfig, make_strategy
from personal_shopper_store.models import Candidate, Interaction, LabeledCandidate, MessageInput, ProductInput
from personal_shopper_store.product_store import ProductStore
from personal_shopper_store.search_provider import SearchProvider, make_search_provider
from personal_shopper_store.settings_store import SettingsStore
from personal_shopper_store.training import OutlierLog, TrainingCorpus


_LOGGER = logging.getLogger(__name__)

SETTINGS_FALLBACK_WARNING = "Discovery settings are unavailable; showing personalized results only."
SERVE_LOG_WARNING = "Search results could not be recorded; interactions with them will not be tracked."
SCORING_WARNING = "Personalization scores are unavailable for these results."


@dataclass(frozen=True)
class _Stores:
    db: PersonalStoreDB
    chats: ChatStore
    products: ProductStore
    settings: SettingsStore
    corpus: TrainingCorpus
    outliers: OutlierLog
    mixer: DiscoveryMixer


class PersonalStoreService:
    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        provider: SearchProvider | None = None,
        strategy: DiversityStrategy | None = None,
    ) -> None:
        self.config = config or StoreConfig.from_env()
        self.provider = provider or make_search_provider(self.config)
        self.strategy = strategy or make_strategy(self.config.diversity_strategy)
        self._stores = self._build(self._open(self.config.resolve_db_path()))

    def _open(self, path: Path) -> PersonalStoreDB:
        return open_store(
            path,
            timeout_seconds=self.config.db_timeout_seconds,
            wal_enabled=self.config.wal_enabled,
        )

    def _build(self, db: PersonalStoreDB) -> _Stores:
        corpus = TrainingCorpus(db)
        outliers = OutlierLog(db)
        return _Stores(
            db=db,
            chats=ChatStore(db),
            products=ProductStore(db),
            settings=SettingsStore(db),
            corpus=corpus,
            outliers=outliers,
            mixer=DiscoveryMixer(corpus, outliers, self.strategy),
        )

    @property
    def storage_path(self) -> Path:
        return self._stores.db.db_path

    # Search and interactions

    @staticmethod
    def _dedupe_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
        out: list[Candidate] = []
        seen: set[str] = set()
        for candidate in candidates:
            if candidate.object_id in seen:
                continue
            seen.add(candidate.object_id)
            out.append(candidate)
        return out

    def _read_mixing_config(self, stores: _Stores, warnings: list[str]) -> MixingConfig:
        try:
            return stores.settings.mixing_config()
        except StorageUnavailable as exc:
            _LOGGER.warning("Falling back to 0%% discovery mixing: %s", exc)
            warnings.append(SETTINGS_FALLBACK_WARNING)
            return MixingConfig(discovery_percentage=0)

    def _score_personalized(
        self,
        stores: _Stores,
        labeled: list[LabeledCandidate],
        warnings: list[str],
    ) -> list[LabeledCandidate]:
        pairs = [(item.candidate.object_id, item.candidate.category) for item in labeled if not item.is_outlier]
        try:
            scores = stores.corpus.score_objects(pairs)
        except StorageUnavailable as exc:
            _LOGGER.warning("Serving results without personalization scores: %s", exc)
            warnings.append(SCORING_WARNING)
            return labeled
        return [
            item if item.is_outlier else replace(item, personalization_score=scores.get(item.candidate.object_id))
            for item in labeled
        ]

    def search_products(
        self,
        query: str,
        *,
        image_features: Sequence[float] | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        cleaned = " ".join((query or "").split())
        if not cleaned and not image_features:
            raise ValueError("Please enter a search query.")

        stores = self._stores
        warnings: list[str] = []
        config = self._read_mixing_config(stores, warnings)

        top_k = max(1, min(int(limit or self.config.search_top_k), 100))
        candidates = self._dedupe_candidates(
            self.provider.search(cleaned, image_features=image_features, limit=top_k)
        )
        labeled = self._score_personalized(stores, stores.mixer.mix(candidates, config), warnings)

        search_id: int | None = None
        try:
            with stores.db.transaction() as conn:
                search_id = stores.mixer.log_serve(
                    conn,
                    query=cleaned,
                    image_provided=bool(image_features),
                    config=config,
                    labeled=labeled,
                )
        except StorageUnavailable as exc:
            _LOGGER.warning("Serving unrecorded search results: %s", exc)
            warnings.append(SERVE_LOG_WARNING)

        return {
            "search_id": search_id,
            "query": cleaned,
            "discovery_percentage": config.discovery_percentage,
            "outlier_count": sum(1 for item in labeled if item.is_outlier),
            "results": [item.to_public() for item in labeled],
            "warnings": warnings,
        }

    def record_interaction(
        self,
        *,
        search_id: int,
        object_id: str,
        interaction_type: str = "click",
        label: str | None = None,
    ) -> dict[str, Any]:
        stores = self._stores
        interaction = Interaction(
            search_id=int(search_id),
            object_id=object_id.strip(),
            interaction_type=interaction_type.strip().lower(),
            label=label,
        )
        with stores.db.transaction() as conn:
            routed = stores.mixer.route(conn, interaction)
        return {
            "status": "ok",
            "label": routed.label,
            "recorded_in": routed.table,
            "interaction_type": interaction.interaction_type,
        }

    # Saved products

    def save_product(self, product: ProductInput, *, search_id: int | None = None) -> int:
        """Upsert ``product``; with ``search_id`` the save is also routed as an interaction."""
        stores = self._stores
        if search_id is None:
            return stores.products.save(product)
        with stores.db.transaction() as conn:
            product_id = ProductStore.upsert(conn, product)
            stores.mixer.route(
                conn,
                Interaction(search_id=int(search_id), object_id=product.object_id.strip(), interaction_type="save"),
            )
        return product_id

    def list_products(self) -> list[dict[str, Any]]:
        return [asdict(product) for product in self._stores.products.list()]

    def remove_product(self, product_id: int) -> None:
        self._stores.products.remove(product_id)

    def update_product(
        self,
        product_id: int,
        *,
        custom_name: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        return asdict(self._stores.products.update(product_id, custom_name=custom_name, tags=tags))

    # Chat history

    def list_chat_sessions(self) -> list[dict[str, Any]]:
        return [asdict(session) for session in self._stores.chats.list_sessions()]

    def list_messages(self, session_id: int) -> list[dict[str, Any]]:
        return [asdict(message) for message in self._stores.chats.list_messages(session_id)]

    def append_message(
        self,
        session_id: int | None,
        message: MessageInput,
        *,
        category: str = "general",
    ) -> dict[str, int]:
        resolved_session, message_id = self._stores.chats.create_or_append(session_id, message, category=category)
        return {"session_id": resolved_session, "message_id": message_id}

    def delete_chat_session(self, session_id: int) -> None:
        self._stores.chats.delete_session(session_id)

    # Settings

    def get_discovery_setting(self) -> int:
        return int(self._stores.settings.get("discovery_percentage"))

    def set_discovery_setting(self, percentage: int) -> int:
        return int(self._stores.settings.set("discovery_percentage", percentage))

    def get_settings(self) -> dict[str, Any]:
        return asdict(self._stores.settings.get_all())

    def update_setting(self, key: str, value: Any) -> dict[str, Any]:
        self._stores.settings.set(key, value)
        return self.get_settings()

    # Training data and analytics

    def reset_training_data(self) -> int:
        return self._stores.corpus.reset_training_data()

    def export_training_data(self):
        return self._stores.corpus.export()

    def list_outlier_interactions(self, *, limit: int = 100) -> list[dict[str, Any]]:
        return [asdict(row) for row in self._stores.outliers.list(limit=limit)]

    def get_profile(self) -> dict[str, Any]:
        return self._stores.corpus.build_profile()

    def stats(self) -> dict[str, Any]:
        stores = self._stores
        return {
            "storage_path": str(stores.db.db_path),
            "counts": stores.db.table_counts(),
        }

    # Storage management

    def reset_database(self) -> None:
        self._stores.db.reset_all()

    def get_storage_path(self) -> str:
        return str(self.storage_path)

    def change_storage_path(self, new_path: str | Path) -> str:
        """Point the store at ``new_path``, copying current data there if it holds no store yet."""
        target = Path(os.path.expanduser(str(new_path))).resolve()
        current = self._stores.db
        if target == current.db_path.resolve():
            return str(current.db_path)

        if target.exists():
            if not target.is_file():
                raise StorageUnavailable(f"Storage path {target} is not a file.")
            _LOGGER.info("Opening existing store at %s", target)
        else:
            _LOGGER.info("Copying store from %s to %s", current.db_path, target)
            current.backup_to(target)

        stores = self._build(self._open(target))
        try:
            save_storage_location(self.config.locator_path, target)
        except OSError as exc:
            raise StorageUnavailable(
                f"Cannot record storage location in {self.config.locator_path}: {exc}"
            ) from exc
        self._stores = stores
        return str(target)
