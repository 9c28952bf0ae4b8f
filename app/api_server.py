"""FastAPI entrypoint exposing the personal shopper store to the UI."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from personal_shopper_store.config import StoreConfig
from personal_shopper_store.errors import (
    ConstraintViolation,
    InvalidSetting,
    NotFound,
    SearchProviderError,
    StorageUnavailable,
)
from personal_shopper_store.models import MessageInput, ProductInput
from personal_shopper_store.service import PersonalStoreService


ROOT_DIR = Path(__file__).resolve().parents[1]
_LOGGER = logging.getLogger("personal_shopper_store.api")


class SearchRequest(BaseModel):
    query: str = ""
    image_features: list[float] | None = Field(default=None, min_length=1)
    limit: int | None = Field(default=None, ge=1, le=100)


class InteractionRequest(BaseModel):
    search_id: int = Field(ge=1)
    object_id: str = Field(min_length=1)
    interaction_type: Literal["search", "view", "click", "save", "remove"] = "click"
    label: Literal["personalized", "outlier"] | None = None


class ProductRequest(BaseModel):
    object_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    custom_name: str | None = None
    tags: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    search_id: int | None = Field(default=None, ge=1)


class ProductPatchRequest(BaseModel):
    custom_name: str | None = None
    tags: list[str] | None = None


class MessageRequest(BaseModel):
    session_id: int | None = Field(default=None, ge=1)
    role: Literal["user", "assistant"]
    content: str = ""
    image_ref: str | None = None
    category: str = "general"


class DiscoverySettingRequest(BaseModel):
    percentage: Literal[0, 5, 10]


class SettingUpdateRequest(BaseModel):
    key: str = Field(min_length=1)
    value: Any


class StoragePathRequest(BaseModel):
    path: str = Field(min_length=1)


@lru_cache(maxsize=1)
def get_service() -> PersonalStoreService:
    return PersonalStoreService(StoreConfig.from_env())


def _raise_http(exc: Exception) -> None:
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, ConstraintViolation):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, (InvalidSetting, ValueError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, StorageUnavailable):
        _LOGGER.warning("Storage unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Database unavailable.") from exc
    if isinstance(exc, SearchProviderError):
        _LOGGER.warning("Search provider failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    raise exc


_HANDLED = (NotFound, ConstraintViolation, InvalidSetting, ValueError, StorageUnavailable, SearchProviderError)


def create_app() -> FastAPI:
    load_dotenv(ROOT_DIR / ".env")
    logging.basicConfig(level=getattr(logging, StoreConfig.from_env().log_level, logging.INFO))

    app = FastAPI(title="Personal Shopper Store", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    def health(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"status": "ok", "stats": service.stats()}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.post("/api/search")
    def search(request: SearchRequest, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return service.search_products(
                request.query,
                image_features=request.image_features,
                limit=request.limit,
            )
        except _HANDLED as exc:
            _raise_http(exc)

    @app.post("/api/interactions")
    def record_interaction(
        request: InteractionRequest,
        service: PersonalStoreService = Depends(get_service),
    ) -> dict:
        try:
            return service.record_interaction(
                search_id=request.search_id,
                object_id=request.object_id,
                interaction_type=request.interaction_type,
                label=request.label,
            )
        except _HANDLED as exc:
            _raise_http(exc)

    @app.get("/api/products")
    def list_products(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"products": service.list_products()}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.post("/api/products")
    def save_product(request: ProductRequest, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            product_id = service.save_product(
                ProductInput(
                    object_id=request.object_id,
                    name=request.name,
                    custom_name=request.custom_name,
                    tags=tuple(request.tags),
                    payload=request.payload,
                ),
                search_id=request.search_id,
            )
        except _HANDLED as exc:
            _raise_http(exc)
        return {"status": "ok", "id": product_id}

    @app.patch("/api/products/{product_id}")
    def update_product(
        product_id: int,
        request: ProductPatchRequest,
        service: PersonalStoreService = Depends(get_service),
    ) -> dict:
        try:
            return service.update_product(product_id, custom_name=request.custom_name, tags=request.tags)
        except _HANDLED as exc:
            _raise_http(exc)

    @app.delete("/api/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
    def remove_product(product_id: int, service: PersonalStoreService = Depends(get_service)) -> Response:
        try:
            service.remove_product(product_id)
        except _HANDLED as exc:
            _raise_http(exc)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/chat/sessions")
    def list_chat_sessions(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"sessions": service.list_chat_sessions()}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.get("/api/chat/sessions/{session_id}/messages")
    def list_messages(session_id: int, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"session_id": session_id, "messages": service.list_messages(session_id)}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.post("/api/chat/messages")
    def append_message(request: MessageRequest, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return service.append_message(
                request.session_id,
                MessageInput(role=request.role, content=request.content, image_ref=request.image_ref),
                category=request.category,
            )
        except _HANDLED as exc:
            _raise_http(exc)

    @app.delete("/api/chat/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_chat_session(session_id: int, service: PersonalStoreService = Depends(get_service)) -> Response:
        try:
            service.delete_chat_session(session_id)
        except _HANDLED as exc:
            _raise_http(exc)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/settings/discovery")
    def get_discovery_setting(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"percentage": service.get_discovery_setting()}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.put("/api/settings/discovery")
    def set_discovery_setting(
        request: DiscoverySettingRequest,
        service: PersonalStoreService = Depends(get_service),
    ) -> dict:
        try:
            return {"percentage": service.set_discovery_setting(request.percentage)}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.get("/api/settings")
    def get_settings(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return service.get_settings()
        except _HANDLED as exc:
            _raise_http(exc)

    @app.put("/api/settings")
    def update_setting(request: SettingUpdateRequest, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return service.update_setting(request.key, request.value)
        except _HANDLED as exc:
            _raise_http(exc)

    @app.get("/api/profile")
    def profile(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return service.get_profile()
        except _HANDLED as exc:
            _raise_http(exc)

    @app.get("/api/outliers")
    def outliers(limit: int = 100, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"interactions": service.list_outlier_interactions(limit=limit)}
        except _HANDLED as exc:
            _raise_http(exc)

    @app.post("/api/reset/database")
    def reset_database(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            service.reset_database()
        except _HANDLED as exc:
            _raise_http(exc)
        return {"status": "ok"}

    @app.post("/api/reset/training-data")
    def reset_training_data(service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            removed = service.reset_training_data()
        except _HANDLED as exc:
            _raise_http(exc)
        return {"status": "ok", "removed": removed}

    @app.get("/api/storage")
    def get_storage_path(service: PersonalStoreService = Depends(get_service)) -> dict:
        return {"path": service.get_storage_path()}

    @app.put("/api/storage")
    def change_storage_path(request: StoragePathRequest, service: PersonalStoreService = Depends(get_service)) -> dict:
        try:
            return {"path": service.change_storage_path(request.path)}
        except _HANDLED as exc:
            _raise_http(exc)

    return app


app = create_app()
