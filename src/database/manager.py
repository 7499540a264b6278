"""
SQLite access layer for protected items, verification history, and file metadata.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from par2.models import PROTECTED, Mode, normalize_file_types
from utils.errors import NotFoundError

from .schema import create_databases
from .store import Store, now_timestamp


@dataclass(frozen=True)
class ProtectedItem:
    """One protected path and its latest verification state."""

    id: int
    path: str
    mode: Mode
    redundancy: int
    protected_date: str
    last_verified: Optional[str]
    last_status: Optional[str]
    last_details: Optional[str]
    size: int
    data_size: int
    par2_size: int
    par2_path: str
    file_types: Optional[list[str]]
    parent_dir: Optional[str]
    protected_files: Optional[list[str]]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = str(self.mode)
        return data


@dataclass(frozen=True)
class FileMetadataRecord:
    """Stored ownership and permission state for one file."""

    file_path: str
    owner: str
    group_name: str
    permissions: str
    mtime: int
    extended_attributes: Optional[Dict[str, str]]


def _encode_types(file_types: Optional[Iterable[str]]) -> Optional[str]:
    types = normalize_file_types(file_types)
    return json.dumps(types) if types else None


def _decode_list(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    decoded = json.loads(value)
    return list(decoded) if decoded else None


def _row_to_item(row: sqlite3.Row) -> ProtectedItem:
    return ProtectedItem(
        id=int(row["id"]),
        path=str(row["path"]),
        mode=Mode.parse(str(row["mode"])),
        redundancy=int(row["redundancy"]),
        protected_date=str(row["protected_date"]) if row["protected_date"] else "",
        last_verified=str(row["last_verified"]) if row["last_verified"] else None,
        last_status=str(row["last_status"]) if row["last_status"] else None,
        last_details=str(row["last_details"]) if row["last_details"] else None,
        size=int(row["size"]) if row["size"] is not None else 0,
        data_size=int(row["data_size"]) if row["data_size"] is not None else 0,
        par2_size=int(row["par2_size"]) if row["par2_size"] is not None else 0,
        par2_path=str(row["par2_path"]) if row["par2_path"] else "",
        file_types=_decode_list(row["file_types"]),
        parent_dir=str(row["parent_dir"]) if row["parent_dir"] else None,
        protected_files=_decode_list(row["protected_files"]),
    )


class DatabaseManager:
    """Own the main and queue stores and the protected-item queries."""

    def __init__(
        self,
        db_paths: Dict[str, Path],
        logger: Optional[logging.Logger] = None,
        **store_options,
    ) -> None:
        self.db_paths = db_paths
        self.logger = logger or logging.getLogger("par2protect")
        self.main = Store(db_paths["main"], logger=self.logger, **store_options)
        self.queue = Store(db_paths["queue"], logger=self.logger, **store_options)

    def initialize(self) -> None:
        """Create database files and tables."""
        create_databases({"main": self.main, "queue": self.queue})

    def connect(self) -> None:
        self.main.connect()
        self.queue.connect()

    def close(self) -> None:
        self.main.close()
        self.queue.close()

    # Protected items

    def get_item(self, item_id: int) -> ProtectedItem:
        row = self.main.query_one("SELECT * FROM protected_items WHERE id = ?", (int(item_id),))
        if row is None:
            raise NotFoundError(f"Protected item not found: {item_id}")
        return _row_to_item(row)

    def find_item(self, path: str, file_types: Optional[Iterable[str]] = None) -> Optional[ProtectedItem]:
        """Return the item protecting exactly this path and extension scope."""
        row = self.main.query_one(
            "SELECT * FROM protected_items WHERE path = ? AND file_types IS ?",
            (path, _encode_types(file_types)),
        )
        return _row_to_item(row) if row is not None else None

    def get_items_by_path(self, path: str) -> list[ProtectedItem]:
        rows = self.main.execute(
            "SELECT * FROM protected_items WHERE path = ? ORDER BY id", (path,)
        )
        return [_row_to_item(row) for row in rows]

    def list_items(self, status: Optional[str] = None) -> list[ProtectedItem]:
        query = "SELECT * FROM protected_items"
        params: list = []
        if status:
            query += " WHERE last_status = ?"
            params.append(status)
        query += " ORDER BY path, id"
        return [_row_to_item(row) for row in self.main.execute(query, params)]

    def upsert_item(
        self,
        path: str,
        mode: Mode,
        redundancy: int,
        par2_path: str,
        file_types: Optional[Iterable[str]] = None,
        parent_dir: Optional[str] = None,
        protected_files: Optional[list[str]] = None,
    ) -> int:
        """Insert a new item or refresh an existing one as freshly protected."""
        encoded_types = _encode_types(file_types)
        encoded_files = json.dumps(protected_files) if protected_files else None
        now = now_timestamp()
        with self.main.transaction():
            row = self.main.query_one(
                "SELECT id FROM protected_items WHERE path = ? AND file_types IS ?",
                (path, encoded_types),
            )
            if row is not None:
                item_id = int(row["id"])
                self.main.execute(
                    """
                    UPDATE protected_items
                    SET mode = ?, redundancy = ?, protected_date = ?, last_verified = NULL,
                        last_status = ?, last_details = NULL, par2_path = ?, parent_dir = ?,
                        protected_files = ?
                    WHERE id = ?
                    """,
                    (str(mode), int(redundancy), now, PROTECTED, par2_path, parent_dir, encoded_files, item_id),
                )
                self.logger.debug("Updated protected item %s for %s", item_id, path)
                return item_id
            self.main.execute(
                """
                INSERT INTO protected_items (
                    path, mode, redundancy, protected_date, last_status, size, data_size,
                    par2_size, par2_path, file_types, parent_dir, protected_files, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, 0, 0, ?, ?, ?, ?, ?)
                """,
                (path, str(mode), int(redundancy), now, PROTECTED, par2_path, encoded_types,
                 parent_dir, encoded_files, now),
            )
            item_id = self.main.last_insert_id()
        self.logger.debug("Inserted protected item %s for %s", item_id, path)
        return item_id

    def update_sizes(self, item_id: int, data_size: int, par2_size: int) -> None:
        self.main.execute(
            "UPDATE protected_items SET data_size = ?, par2_size = ?, size = ? WHERE id = ?",
            (int(data_size), int(par2_size), int(data_size) + int(par2_size), int(item_id)),
        )

    def update_status(self, item_id: int, status: str, details: str = "") -> None:
        """Record a verification outcome on the item and in its history atomically."""
        now = now_timestamp()
        with self.main.transaction():
            self.main.execute(
                """
                UPDATE protected_items
                SET last_verified = ?, last_status = ?, last_details = ?
                WHERE id = ?
                """,
                (now, status, details, int(item_id)),
            )
            self.main.execute(
                """
                INSERT INTO verification_history (protected_item_id, verification_date, status, details)
                VALUES (?, ?, ?, ?)
                """,
                (int(item_id), now, status, details),
            )

    def remove_item(self, item_id: int) -> None:
        """Delete the item with its history and metadata rows in one transaction."""
        with self.main.transaction():
            self.main.execute("DELETE FROM verification_history WHERE protected_item_id = ?", (int(item_id),))
            self.main.execute("DELETE FROM file_metadata WHERE protected_item_id = ?", (int(item_id),))
            self.main.execute("DELETE FROM protected_items WHERE id = ?", (int(item_id),))

    def get_history(self, item_id: int, limit: Optional[int] = None) -> list[dict]:
        query = """
            SELECT verification_date, status, details
            FROM verification_history
            WHERE protected_item_id = ?
            ORDER BY id DESC
        """
        params: list = [int(item_id)]
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        return [
            {
                "verification_date": str(row[0]),
                "status": str(row[1]),
                "details": str(row[2]) if row[2] else "",
            }
            for row in self.main.execute(query, params)
        ]

    def get_redundancy_level(self, path: str) -> Optional[int]:
        value = self.main.scalar(
            "SELECT redundancy FROM protected_items WHERE path = ? ORDER BY id LIMIT 1",
            (path,),
        )
        return int(value) if value is not None else None

    def get_redundancy_levels(self, paths: Iterable[str]) -> dict[str, int]:
        """Map each protected path to its redundancy percent; unknown paths are omitted."""
        levels: dict[str, int] = {}
        unique = list(dict.fromkeys(paths))
        for chunk in _chunked(unique, 900):
            placeholders = ",".join("?" for _ in chunk)
            rows = self.main.execute(
                f"SELECT path, redundancy FROM protected_items WHERE path IN ({placeholders}) ORDER BY id",
                chunk,
            )
            for row in rows:
                levels.setdefault(str(row[0]), int(row[1]))
        return levels

    # File metadata

    def replace_file_metadata(self, item_id: int, records: Iterable[FileMetadataRecord]) -> int:
        now = now_timestamp()
        count = 0
        with self.main.transaction():
            self.main.execute("DELETE FROM file_metadata WHERE protected_item_id = ?", (int(item_id),))
            for record in records:
                xattrs = json.dumps(record.extended_attributes) if record.extended_attributes else None
                self.main.execute(
                    """
                    INSERT INTO file_metadata (
                        protected_item_id, file_path, owner, group_name, permissions, mtime,
                        extended_attributes, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (int(item_id), record.file_path, record.owner, record.group_name,
                     record.permissions, int(record.mtime), xattrs, now),
                )
                count += 1
        return count

    def get_file_metadata(self, item_id: int) -> list[FileMetadataRecord]:
        rows = self.main.execute(
            """
            SELECT file_path, owner, group_name, permissions, mtime, extended_attributes
            FROM file_metadata
            WHERE protected_item_id = ?
            ORDER BY file_path
            """,
            (int(item_id),),
        )
        return [
            FileMetadataRecord(
                file_path=str(row[0]),
                owner=str(row[1]) if row[1] is not None else "",
                group_name=str(row[2]) if row[2] is not None else "",
                permissions=str(row[3]) if row[3] is not None else "",
                mtime=int(row[4]) if row[4] is not None else 0,
                extended_attributes=json.loads(row[5]) if row[5] else None,
            )
            for row in rows
        ]

    def count_rows(self, table: str, item_id: int) -> int:
        """Count rows owned by an item in verification_history or file_metadata."""
        if table not in ("verification_history", "file_metadata"):
            raise ValueError(f"Unsupported table: {table}")
        return int(
            self.main.scalar(f"SELECT COUNT(*) FROM {table} WHERE protected_item_id = ?", (int(item_id),), default=0)
        )


def _chunked(values: list[str], size: int) -> Iterable[list[str]]:
    for index in range(0, len(values), size):
        yield values[index : index + size]
