"""User preferences stored as validated key/value rows."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from personal_shopper_store.db import PersonalStoreDB, utc_now
from personal_shopper_store.errors import InvalidSetting
from personal_shopper_store.mixing import MixingConfig, validate_discovery_percentage


_LOGGER = logging.getLogger(__name__)

THEMES = ("light", "dark", "system")
FONT_SIZES = ("small", "medium", "large")

DEFAULTS: dict[str, Any] = {
    "discovery_percentage": 0,
    "theme": "system",
    "font_size": "medium",
    "send_on_enter": True,
    "show_timestamps": True,
    "auto_save": True,
}


def _choice(key: str, options: tuple[str, ...]) -> Callable[[Any], str]:
    def validate(value: Any) -> str:
        if not isinstance(value, str) or value.strip().lower() not in options:
            raise InvalidSetting(f"{key} must be one of: {', '.join(options)}")
        return value.strip().lower()

    return validate


def _flag(key: str) -> Callable[[Any], bool]:
    def validate(value: Any) -> bool:
        if not isinstance(value, bool):
            raise InvalidSetting(f"{key} must be true or false")
        return value

    return validate


_VALIDATORS: dict[str, Callable[[Any], Any]] = {
    "discovery_percentage": validate_discovery_percentage,
    "theme": _choice("theme", THEMES),
    "font_size": _choice("font_size", FONT_SIZES),
    "send_on_enter": _flag("send_on_enter"),
    "show_timestamps": _flag("show_timestamps"),
    "auto_save": _flag("auto_save"),
}


@dataclass(frozen=True)
class UserSettings:
    discovery_percentage: int = 0
    theme: str = "system"
    font_size: str = "medium"
    send_on_enter: bool = True
    show_timestamps: bool = True
    auto_save: bool = True


class SettingsStore:
    def __init__(self, db: PersonalStoreDB) -> None:
        self.db = db

    @staticmethod
    def validate(key: str, value: Any) -> Any:
        validator = _VALIDATORS.get(key)
        if validator is None:
            raise InvalidSetting(f"Unknown setting: {key}")
        return validator(value)

    def get(self, key: str) -> Any:
        if key not in DEFAULTS:
            raise InvalidSetting(f"Unknown setting: {key}")
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT setting_value FROM user_settings WHERE setting_key = ?",
                (key,),
            ).fetchone()
        if not row:
            return DEFAULTS[key]
        try:
            return self.validate(key, json.loads(row["setting_value"]))
        except (json.JSONDecodeError, InvalidSetting):
            _LOGGER.warning("Stored value for %s is invalid; using default.", key)
            return DEFAULTS[key]

    def set(self, key: str, value: Any) -> Any:
        cleaned = self.validate(key, value)
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_settings (setting_key, setting_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(cleaned), utc_now()),
            )
        return cleaned

    def get_all(self) -> UserSettings:
        with self.db.read() as conn:
            rows = conn.execute("SELECT setting_key, setting_value FROM user_settings").fetchall()
        values = dict(DEFAULTS)
        for row in rows:
            key = row["setting_key"]
            if key not in DEFAULTS:
                continue
            try:
                values[key] = self.validate(key, json.loads(row["setting_value"]))
            except (json.JSONDecodeError, InvalidSetting):
                _LOGGER.warning("Stored value for %s is invalid; using default.", key)
        return UserSettings(**values)

    def mixing_config(self) -> MixingConfig:
        return MixingConfig(discovery_percentage=self.get("discovery_percentage"))
