"""Typed failures raised by the store and mapped to HTTP codes by the API server."""

from __future__ import annotations


class StoreError(Exception):
    """Marker base for every failure raised by this package."""


class StorageUnavailable(StoreError, RuntimeError):
    """Database file is locked, missing, unreadable, or not a SQLite database."""


class NotFound(StoreError, KeyError):
    def __str__(self) -> str:
        # KeyError repr-quotes its message; keep plain text for API details.
        return str(self.args[0]) if self.args else "Not found."


class InvalidSetting(StoreError, ValueError):
    """Configuration value rejected before it reaches storage."""


class ConstraintViolation(StoreError, ValueError):
    """Write rejected by a schema or routing constraint; the transaction was rolled back."""


class SearchProviderError(StoreError, RuntimeError):
    """Search provider could not return candidates."""
