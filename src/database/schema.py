"""
Database schema definitions for protected items and the operation queue.
"""

from __future__ import annotations

from typing import Callable, Dict

from .store import Store

Migration = Callable[[Store], None]


def create_databases(stores: Dict[str, Store]) -> None:
    """Create both SQLite databases and bring them to the current version."""
    create_main_db(stores["main"])
    create_queue_db(stores["queue"])


def create_main_db(store: Store) -> None:
    """Create protected items, verification history, and file metadata tables."""
    with store.transaction():
        store.execute(
            """
            CREATE TABLE IF NOT EXISTS protected_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL,
                mode TEXT NOT NULL,
                redundancy INTEGER NOT NULL,
                protected_date TIMESTAMP NOT NULL,
                last_verified TIMESTAMP,
                last_status TEXT,
                size INTEGER,
                par2_path TEXT,
                file_types TEXT,
                parent_dir TEXT,
                protected_files TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (path, file_types)
            )
            """
        )
        store.execute(
            """
            CREATE TABLE IF NOT EXISTS verification_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                protected_item_id INTEGER NOT NULL,
                verification_date TIMESTAMP NOT NULL,
                status TEXT NOT NULL,
                details TEXT,
                FOREIGN KEY (protected_item_id) REFERENCES protected_items (id) ON DELETE CASCADE
            )
            """
        )
        store.execute(
            """
            CREATE TABLE IF NOT EXISTS file_metadata (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                protected_item_id INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                owner TEXT,
                group_name TEXT,
                permissions TEXT,
                mtime INTEGER,
                extended_attributes TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (protected_item_id) REFERENCES protected_items (id) ON DELETE CASCADE,
                UNIQUE (protected_item_id, file_path)
            )
            """
        )
        store.execute("CREATE INDEX IF NOT EXISTS idx_items_path ON protected_items(path)")
        store.execute("CREATE INDEX IF NOT EXISTS idx_items_last_verified ON protected_items(last_verified)")
        store.execute("CREATE INDEX IF NOT EXISTS idx_items_status ON protected_items(last_status)")
        store.execute("CREATE INDEX IF NOT EXISTS idx_items_parent_dir ON protected_items(parent_dir)")
        store.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_item ON verification_history(protected_item_id)"
        )
        store.execute("CREATE INDEX IF NOT EXISTS idx_metadata_item ON file_metadata(protected_item_id)")
    apply_migrations(store, MAIN_MIGRATIONS)


def create_queue_db(store: Store) -> None:
    """Create the operation queue table."""
    with store.transaction():
        store.execute(
            """
            CREATE TABLE IF NOT EXISTS operation_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_type TEXT NOT NULL,
                parameters TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TIMESTAMP NOT NULL,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                updated_at TIMESTAMP,
                result TEXT,
                pid INTEGER
            )
            """
        )
        store.execute("CREATE INDEX IF NOT EXISTS idx_queue_status ON operation_queue(status)")
        store.execute("CREATE INDEX IF NOT EXISTS idx_queue_type ON operation_queue(operation_type)")
        store.execute("CREATE INDEX IF NOT EXISTS idx_queue_created ON operation_queue(created_at)")
    apply_migrations(store, QUEUE_MIGRATIONS)


def get_schema_version(store: Store) -> int:
    store.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
    return int(store.scalar("SELECT MAX(version) FROM schema_version", default=0))


def apply_migrations(store: Store, migrations: Dict[int, Migration]) -> int:
    """Apply every migration newer than the stored version in one transaction."""
    current = get_schema_version(store)
    pending = sorted(version for version in migrations if version > current)
    if not pending:
        return current
    with store.transaction():
        for version in pending:
            migrations[version](store)
        store.execute("DELETE FROM schema_version")
        store.execute("INSERT INTO schema_version (version) VALUES (?)", (pending[-1],))
    store.logger.info("Migrated %s to schema version %s", store.db_path.name, pending[-1])
    return pending[-1]


def _ensure_column(store: Store, table: str, column: str, column_type: str) -> None:
    columns = {row["name"] for row in store.execute(f"PRAGMA table_info({table})")}
    if column not in columns:
        store.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def _main_v1(store: Store) -> None:
    _ensure_column(store, "protected_items", "last_details", "TEXT")


def _main_v2(store: Store) -> None:
    _ensure_column(store, "protected_items", "data_size", "INTEGER")
    _ensure_column(store, "protected_items", "par2_size", "INTEGER")


def _queue_v1(store: Store) -> None:
    _ensure_column(store, "operation_queue", "updated_at", "TIMESTAMP")
    _ensure_column(store, "operation_queue", "pid", "INTEGER")


MAIN_MIGRATIONS: Dict[int, Migration] = {1: _main_v1, 2: _main_v2}
QUEUE_MIGRATIONS: Dict[int, Migration] = {1: _queue_v1}

MAIN_SCHEMA_VERSION = max(MAIN_MIGRATIONS)
QUEUE_SCHEMA_VERSION = max(QUEUE_MIGRATIONS)
