"""Environment-driven configuration and the storage locator file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


_LOGGER = logging.getLogger(__name__)

DEFAULT_DB_FILENAME = "shopping-data.db"


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoreConfig:
    data_dir: Path
    db_path: Path
    locator_path: Path
    db_timeout_seconds: float
    search_top_k: int
    diversity_strategy: str
    catalog_path: Path | None
    log_level: str
    wal_enabled: bool

    @classmethod
    def from_env(cls) -> "StoreConfig":
        data_dir = Path(os.path.expanduser(_env_str("PS_DATA_DIR", "data"))).resolve()
        default_db = data_dir / _env_str("PS_DB_FILENAME", DEFAULT_DB_FILENAME)
        db_override = os.getenv("PS_DB_PATH", "").strip()
        locator_raw = os.getenv("PS_LOCATOR_PATH", "").strip()
        catalog_raw = os.getenv("PS_CATALOG_PATH", "").strip()
        return cls(
            data_dir=data_dir,
            db_path=Path(os.path.expanduser(db_override)).resolve() if db_override else default_db,
            locator_path=(
                Path(os.path.expanduser(locator_raw)).resolve()
                if locator_raw
                else data_dir / "storage_location.json"
            ),
            db_timeout_seconds=_env_float("PS_DB_TIMEOUT_SECONDS", 5.0),
            search_top_k=_env_int("PS_SEARCH_TOP_K", 20),
            diversity_strategy=_env_str("PS_DIVERSITY_STRATEGY", "signature").lower(),
            catalog_path=Path(os.path.expanduser(catalog_raw)).resolve() if catalog_raw else None,
            log_level=_env_str("PS_LOG_LEVEL", "INFO").upper(),
            wal_enabled=_env_bool("PS_DB_WAL", True),
        )

    def resolve_db_path(self) -> Path:
        """Storage path chosen by the user if one was recorded, else the configured default."""
        stored = load_storage_location(self.locator_path)
        return stored or self.db_path


def load_storage_location(locator_path: Path) -> Path | None:
    if not locator_path.exists() or not locator_path.is_file():
        return None
    try:
        parsed: Any = json.loads(locator_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        _LOGGER.warning("Ignoring unreadable storage locator at %s", locator_path)
        return None
    if not isinstance(parsed, dict):
        return None
    raw = str(parsed.get("db_path", "")).strip()
    return Path(raw) if raw else None


def save_storage_location(locator_path: Path, db_path: Path) -> None:
    locator_path.parent.mkdir(parents=True, exist_ok=True)
    locator_path.write_text(json.dumps({"db_path": str(db_path)}, indent=2), encoding="utf-8")
