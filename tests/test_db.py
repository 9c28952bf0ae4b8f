from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from personal_shopper_store.db import SCHEMA_VERSION, TABLES, PersonalStoreDB, open_store
from personal_shopper_store.errors import ConstraintViolation, StorageUnavailable


def _columns(path: Path, table: str) -> set[str]:
    conn = sqlite3.connect(str(path))
    try:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    finally:
        conn.close()


def test_open_store_creates_every_table(db: PersonalStoreDB) -> None:
    counts = db.table_counts()

    assert set(counts) == set(TABLES)
    assert all(value == 0 for value in counts.values())
    with db.read() as conn:
        assert PersonalStoreDB.schema_version(conn) == SCHEMA_VERSION


def test_migrate_is_idempotent_and_keeps_rows(db: PersonalStoreDB) -> None:
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO user_settings (setting_key, setting_value, updated_at) VALUES ('theme', '\"dark\"', 't')"
        )

    db.migrate()
    db.migrate()

    assert db.table_counts()["user_settings"] == 1


def test_migrate_upgrades_unversioned_file_without_data_loss(tmp_path: Path) -> None:
    path = tmp_path / "legacy.db"
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE saved_products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            object_id TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            tags TEXT NOT NULL DEFAULT '[]',
            provider_payload TEXT NOT NULL DEFAULT '{}',
            saved_at TEXT NOT NULL
        );
        CREATE TABLE outlier_interactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            query TEXT NOT NULL,
            shown_object_id TEXT NOT NULL,
            interaction_type TEXT NOT NULL,
            timestamp TEXT NOT NULL
        );
        INSERT INTO saved_products (object_id, name, saved_at) VALUES ('sku-1', 'Canvas tote', '2024-01-01');
        """
    )
    conn.close()

    db = open_store(path)

    assert {"custom_name", "updated_at"} <= _columns(path, "saved_products")
    assert "discovery_reason" in _columns(path, "outlier_interactions")
    counts = db.table_counts()
    assert counts["saved_products"] == 1
    assert counts["search_logs"] == 0
    with db.read() as read_conn:
        assert PersonalStoreDB.schema_version(read_conn) == SCHEMA_VERSION


def test_open_store_rejects_non_database_file(tmp_path: Path) -> None:
    path = tmp_path / "notes.db"
    path.write_bytes(b"this is definitely not sqlite " * 64)

    with pytest.raises(StorageUnavailable):
        open_store(path)


def test_open_store_rejects_directory(tmp_path: Path) -> None:
    with pytest.raises(StorageUnavailable):
        open_store(tmp_path)


def test_newer_schema_is_refused(tmp_path: Path) -> None:
    path = tmp_path / "future.db"
    conn = sqlite3.connect(str(path))
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
    conn.close()

    with pytest.raises(StorageUnavailable):
        open_store(path)


def test_failed_transaction_leaves_no_partial_rows(db: PersonalStoreDB) -> None:
    with pytest.raises(ConstraintViolation):
        with db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (session_name, category, created_at, updated_at)
                VALUES ('Sneakers', 'general', 't', 't')
                """
            )
            # Unknown session id violates the foreign key.
            conn.execute(
                """
                INSERT INTO chat_messages (session_id, role, content, created_at)
                VALUES (9999, 'user', 'hello', 't')
                """
            )

    counts = db.table_counts()
    assert counts["chat_sessions"] == 0
    assert counts["chat_messages"] == 0


def test_non_database_errors_still_roll_back(db: PersonalStoreDB) -> None:
    with pytest.raises(RuntimeError, match="boom"):
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO user_settings (setting_key, setting_value, updated_at) VALUES ('theme', '1', 't')"
            )
            raise RuntimeError("boom")

    assert db.table_counts()["user_settings"] == 0


def test_reset_all_empties_tables_and_keeps_schema(db: PersonalStoreDB) -> None:
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO chat_sessions (session_name, category, created_at, updated_at) VALUES ('a', 'g', 't', 't')"
        )
        conn.execute(
            """
            INSERT INTO training_interactions (query, chosen_object_id, interaction_type, weight, timestamp)
            VALUES ('q', 'o', 'click', 0.5, 't')
            """
        )

    db.reset_all()

    counts = db.table_counts()
    assert set(counts) == set(TABLES)
    assert sum(counts.values()) == 0


def test_backup_to_copies_contents(db: PersonalStoreDB, tmp_path: Path) -> None:
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO saved_products (object_id, name, saved_at) VALUES ('sku-9', 'Boots', 't')"
        )
    target = tmp_path / "copy" / "backup.db"

    db.backup_to(target)

    copied = open_store(target)
    assert copied.table_counts()["saved_products"] == 1


class _FailingCursor:
    def fetchmany(self, size: int):
        raise sqlite3.OperationalError("disk I/O error")


def test_snapshot_read_failure_mid_iteration_is_storage_unavailable(db: PersonalStoreDB) -> None:
    rows = db._drain(db._connect(), _FailingCursor(), 10)

    with pytest.raises(StorageUnavailable, match="disk I/O error"):
        list(rows)
