"""Saved products, upserted on the provider's object id."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Iterable

from personal_shopper_store.db import PersonalStoreDB, utc_now
from personal_shopper_store.errors import ConstraintViolation, NotFound
from personal_shopper_store.models import ProductInput, SavedProduct


_LOGGER = logging.getLogger(__name__)

_SELECT_COLUMNS = """
    SELECT id, object_id, name, custom_name, tags, provider_payload, saved_at, updated_at
    FROM saved_products
"""


def normalize_tags(tags: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in tags:
        cleaned = str(value or "").strip()
        if not cleaned:
            continue
        key = cleaned.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(cleaned)
    return out


class ProductStore:
    def __init__(self, db: PersonalStoreDB) -> None:
        self.db = db

    @staticmethod
    def upsert(conn: sqlite3.Connection, product: ProductInput) -> int:
        """Insert or refresh the row for ``product.object_id`` on an open transaction."""
        object_id = product.object_id.strip()
        name = product.name.strip()
        if not object_id:
            raise ConstraintViolation("object_id is required.")
        if not name:
            raise ConstraintViolation("name is required.")

        timestamp = utc_now()
        row = conn.execute(
            """
            INSERT INTO saved_products (
                object_id, name, custom_name, tags, provider_payload, saved_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(object_id) DO UPDATE SET
                name = excluded.name,
                custom_name = excluded.custom_name,
                tags = excluded.tags,
                provider_payload = excluded.provider_payload,
                updated_at = excluded.updated_at
            RETURNING id
            """,
            (
                object_id,
                name,
                (product.custom_name or "").strip() or name,
                json.dumps(normalize_tags(product.tags)),
                json.dumps(product.payload, default=str),
                timestamp,
                timestamp,
            ),
        ).fetchone()
        return int(row["id"])

    def save(self, product: ProductInput) -> int:
        with self.db.transaction() as conn:
            product_id = self.upsert(conn, product)
        _LOGGER.debug("Saved product %s as row %s", product.object_id, product_id)
        return product_id

    def list(self) -> list[SavedProduct]:
        with self.db.read() as conn:
            rows = conn.execute(_SELECT_COLUMNS + " ORDER BY saved_at DESC, id DESC").fetchall()
        return [SavedProduct.from_row(row) for row in rows]

    def get(self, product_id: int) -> SavedProduct:
        with self.db.read() as conn:
            row = conn.execute(_SELECT_COLUMNS + " WHERE id = ?", (int(product_id),)).fetchone()
        if not row:
            raise NotFound("Saved product not found.")
        return SavedProduct.from_row(row)

    def remove(self, product_id: int) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM saved_products WHERE id = ?", (int(product_id),))
            if cursor.rowcount == 0:
                raise NotFound("Saved product not found.")

    def update(
        self,
        product_id: int,
        *,
        custom_name: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> SavedProduct:
        if custom_name is None and tags is None:
            return self.get(product_id)

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE saved_products
                SET custom_name = COALESCE(?, custom_name),
                    tags = COALESCE(?, tags),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    custom_name.strip() if custom_name is not None else None,
                    json.dumps(normalize_tags(tags)) if tags is not None else None,
                    utc_now(),
                    int(product_id),
                ),
            )
            if cursor.rowcount == 0:
                raise NotFound("Saved product not found.")
        return self.get(product_id)
