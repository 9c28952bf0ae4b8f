"""SQLite storage layer for chat history, saved products, settings, and interaction logs."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

from personal_shopper_store.errors import ConstraintViolation, StorageUnavailable


_LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 2

TABLES = (
    "user_settings",
    "chat_sessions",
    "chat_messages",
    "saved_products",
    "training_interactions",
    "outlier_interactions",
    "search_logs",
    "search_results",
)

# Children before parents so drops never trip a foreign key.
_DROP_ORDER = (
    "search_results",
    "search_logs",
    "chat_messages",
    "chat_sessions",
    "saved_products",
    "training_interactions",
    "outlier_interactions",
    "user_settings",
)

_MIGRATIONS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (
        1,
        (
            """
            CREATE TABLE IF NOT EXISTS user_settings (
                setting_key TEXT PRIMARY KEY,
                setting_value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_name TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'general',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_chat_sessions_updated ON chat_sessions(updated_at)",
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                image_ref TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (session_id) REFERENCES chat_sessions(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_chat_messages_order
                ON chat_messages(session_id, created_at, id)
            """,
            """
            CREATE TABLE IF NOT EXISTS saved_products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                object_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                provider_payload TEXT NOT NULL DEFAULT '{}',
                saved_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS training_interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT NOT NULL,
                chosen_object_id TEXT NOT NULL,
                interaction_type TEXT NOT NULL,
                weight REAL NOT NULL,
                features TEXT NOT NULL DEFAULT '{}',
                timestamp TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_training_object
                ON training_interactions(chosen_object_id)
            """,
            """
            CREATE TABLE IF NOT EXISTS outlier_interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT NOT NULL,
                shown_object_id TEXT NOT NULL,
                interaction_type TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """,
        ),
    ),
    (
        2,
        (
            """
            CREATE TABLE IF NOT EXISTS search_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                query TEXT NOT NULL,
                image_provided INTEGER NOT NULL DEFAULT 0,
                discovery_percentage INTEGER NOT NULL DEFAULT 0,
                result_count INTEGER NOT NULL DEFAULT 0,
                outlier_count INTEGER NOT NULL DEFAULT 0,
                selected_object_id TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS search_results (
                search_id INTEGER NOT NULL,
                object_id TEXT NOT NULL,
                rank_position INTEGER NOT NULL,
                label TEXT NOT NULL CHECK (label IN ('personalized', 'outlier')),
                discovery_reason TEXT,
                category TEXT,
                payload TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (search_id, object_id),
                FOREIGN KEY (search_id) REFERENCES search_logs(id) ON DELETE CASCADE
            )
            """,
        ),
    ),
)

# Columns added after the table first shipped; older files are patched in place.
_LATE_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("saved_products", "custom_name", "TEXT"),
    ("saved_products", "updated_at", "TEXT"),
    ("outlier_interactions", "discovery_reason", "TEXT"),
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class PersonalStoreDB:
    def __init__(self, db_path: Path, *, timeout_seconds: float = 5.0, wal_enabled: bool = True) -> None:
        self.db_path = Path(db_path)
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.wal_enabled = wal_enabled
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot create storage directory {self.db_path.parent}: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        try:
            # Autocommit mode: transactions are opened explicitly below.
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout_seconds, isolation_level=None)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open database at {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.Error as exc:
            conn.close()
            raise StorageUnavailable(f"Cannot open database at {self.db_path}: {exc}") from exc
        return conn

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block atomically; any exception rolls everything back."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            self._rollback(conn)
            raise ConstraintViolation(str(exc)) from exc
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise StorageUnavailable(f"Database write failed: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Snapshot read; never blocks writers in WAL mode."""
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Database read failed: {exc}") from exc
        finally:
            self._rollback(conn)
            conn.close()

    def iter_snapshot(self, sql: str, params: Sequence[Any] = (), *, batch_size: int = 200) -> Iterator[sqlite3.Row]:
        """Start a read snapshot now and stream its rows lazily."""
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            # execute() steps the statement once, which pins the WAL snapshot.
            cursor = conn.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            self._rollback(conn)
            conn.close()
            raise StorageUnavailable(f"Database read failed: {exc}") from exc
        return self._drain(conn, cursor, max(1, int(batch_size)))

    def _drain(self, conn: sqlite3.Connection, cursor: sqlite3.Cursor, batch_size: int) -> Iterator[sqlite3.Row]:
        try:
            while True:
                try:
                    rows = cursor.fetchmany(batch_size)
                except sqlite3.Error as exc:
                    raise StorageUnavailable(f"Database read failed: {exc}") from exc
                if not rows:
                    return
                yield from rows
        finally:
            self._rollback(conn)
            conn.close()

    def migrate(self) -> None:
        if self.wal_enabled:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL;")
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Cannot open database at {self.db_path}: {exc}") from exc
            finally:
                conn.close()

        with self.transaction() as conn:
            current = self.schema_version(conn)
            if current > SCHEMA_VERSION:
                raise StorageUnavailable(
                    f"Database schema version {current} is newer than supported version {SCHEMA_VERSION}."
                )
            self._apply_migrations(conn, current)

    def _apply_migrations(self, conn: sqlite3.Connection, current: int) -> None:
        for version, statements in _MIGRATIONS:
            if version <= current:
                continue
            for statement in statements:
                conn.execute(statement)
            _LOGGER.info("Applied schema migration %s to %s", version, self.db_path)

        for table_name, column_name, declaration in _LATE_COLUMNS:
            self._ensure_column(conn, table_name, column_name, declaration)

        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    @staticmethod
    def schema_version(conn: sqlite3.Connection) -> int:
        row = conn.execute("PRAGMA user_version").fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
        rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        return {str(row[1]) for row in rows}

    def _ensure_column(
        self,
        conn: sqlite3.Connection,
        table_name: str,
        column_name: str,
        declaration: str,
    ) -> None:
        existing = self._table_columns(conn, table_name)
        if column_name in existing:
            return
        _LOGGER.info("Adding column %s.%s", table_name, column_name)
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {declaration}")

    def reset_all(self) -> None:
        with self.transaction() as conn:
            for table_name in _DROP_ORDER:
                conn.execute(f"DROP TABLE IF EXISTS {table_name}")
            conn.execute("PRAGMA user_version = 0")
            self._apply_migrations(conn, 0)
        _LOGGER.info("Database reset at %s", self.db_path)

    def backup_to(self, target: Path) -> None:
        target = Path(target)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot create storage directory {target.parent}: {exc}") from exc
        source = self._connect()
        try:
            destination = sqlite3.connect(str(target), timeout=self.timeout_seconds)
        except sqlite3.Error as exc:
            source.close()
            raise StorageUnavailable(f"Cannot open database at {target}: {exc}") from exc
        try:
            source.backup(destination)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Copying database to {target} failed: {exc}") from exc
        finally:
            destination.close()
            source.close()

    def table_counts(self) -> dict[str, int]:
        with self.read() as conn:
            return {
                table_name: int(conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0])
                for table_name in TABLES
            }


def open_store(db_path: Path, *, timeout_seconds: float = 5.0, wal_enabled: bool = True) -> PersonalStoreDB:
    """Open (creating if needed) and migrate the store at ``db_path``."""
    path = Path(db_path)
    if path.exists() and not path.is_file():
        raise StorageUnavailable(f"Storage path {path} is not a file.")
    db = PersonalStoreDB(path, timeout_seconds=timeout_seconds, wal_enabled=wal_enabled)
    db.migrate()
    return db
