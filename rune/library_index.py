"""
SQLite-backed index of the images in a library.

The index lives in ``<library>/.rune/library.sqlite``. A primary ``images``
table holds one row per image and an FTS5 table ``images_fts`` shadows each
row's name and AI tags for prefix search, keyed by the rowid stored in
``images.search_rowid``. Both are written in the same transaction, so the
shadow always mirrors the primary table.
"""

import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from .config import Settings, settings as default_settings
from .errors import PathSafetyError, StorageError, ValidationError
from .logging import get_logger
from .models import (
    ImageRecord,
    SearchCursor,
    SearchResult,
    TagStatus,
    format_timestamp,
    parse_timestamp,
)


DB_DIRNAME = ".rune"
DB_FILENAME = "library.sqlite"
DB_SCHEMA_VERSION = 3
FTS_COLUMNS = ["id", "original_name", "ai_tags"]

_SELECT_COLUMNS = """
    images.id,
    images.original_name,
    images.stored_name,
    images.file_path,
    images.added_at,
    images.bytes,
    images.ai_tags,
    images.ai_tag_status
"""

_KEYSET_PREDICATE = (
    "(images.added_at < :added_at OR (images.added_at = :added_at AND images.id < :id))"
)

CursorInput = Union[SearchCursor, str, dict, None]


def is_path_inside(root: Union[str, os.PathLike], target: Union[str, os.PathLike]) -> bool:
    """True when ``target`` resolves to a location strictly inside ``root``."""
    resolved_root = os.path.normcase(str(Path(root).resolve()))
    resolved_target = os.path.normcase(str(Path(target).resolve()))
    if resolved_root == resolved_target:
        return False
    try:
        return os.path.commonpath([resolved_root, resolved_target]) == resolved_root
    except ValueError:
        # Different drives on Windows
        return False


def build_fts_query(raw: str) -> str:
    """Turn free text into an FTS5 expression of ANDed prefix terms."""
    normalized = re.sub(r"[\W_]+", " ", raw.lower())
    tokens = normalized.split()
    return " AND ".join(f'"{token}"*' for token in tokens)


def _version_tuple(version: str) -> tuple:
    parts = []
    for part in version.split("."):
        digits = re.match(r"\d+", part)
        parts.append(int(digits.group()) if digits else 0)
    return tuple(parts)


def is_version_at_least(version: str, minimum: str) -> bool:
    left, right = _version_tuple(version), _version_tuple(minimum)
    length = max(len(left), len(right))
    left += (0,) * (length - len(left))
    right += (0,) * (length - len(right))
    return left >= right


def _has_fts5(conn: sqlite3.Connection) -> bool:
    try:
        conn.execute("CREATE VIRTUAL TABLE temp.__rune_fts5_probe USING fts5(x)")
        conn.execute("DROP TABLE temp.__rune_fts5_probe")
        return True
    except sqlite3.OperationalError:
        return False


def _table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]


# ===== Migrations =====

def _migrate_v1(conn: sqlite3.Connection) -> None:
    """Initial images table, name search and recency index."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS images (
            id TEXT PRIMARY KEY,
            original_name TEXT NOT NULL,
            stored_name TEXT NOT NULL,
            file_path TEXT NOT NULL UNIQUE,
            added_at TEXT NOT NULL,
            bytes INTEGER NOT NULL
        )
    """)
    conn.execute("""
        CREATE VIRTUAL TABLE IF NOT EXISTS images_fts
            USING fts5(id UNINDEXED, original_name, tokenize='unicode61')
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS images_added_at_idx ON images(added_at DESC, id DESC)"
    )


def _migrate_v2(conn: sqlite3.Connection) -> None:
    """AI tag columns, tag search and the pending-work index."""
    columns = _table_columns(conn, "images")
    if "ai_tags" not in columns:
        conn.execute("ALTER TABLE images ADD COLUMN ai_tags TEXT")
    if "ai_tag_status" not in columns:
        conn.execute(
            "ALTER TABLE images ADD COLUMN ai_tag_status TEXT NOT NULL DEFAULT 'pending'"
        )

    # The search table is derived data: rebuild it from images when its shape is stale
    if _table_columns(conn, "images_fts") != FTS_COLUMNS:
        conn.execute("DROP TABLE IF EXISTS images_fts")
        conn.execute("""
            CREATE VIRTUAL TABLE images_fts
                USING fts5(id UNINDEXED, original_name, ai_tags, tokenize='unicode61')
        """)
        conn.execute("""
            INSERT INTO images_fts (id, original_name, ai_tags)
            SELECT id, original_name, COALESCE(ai_tags, '') FROM images
        """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS images_tag_status_idx "
        "ON images(ai_tag_status, added_at DESC, id DESC)"
    )


def _migrate_v3(conn: sqlite3.Connection) -> None:
    """Address search rows by the `search_rowid` stored on each image."""
    if "search_rowid" not in _table_columns(conn, "images"):
        conn.execute("ALTER TABLE images ADD COLUMN search_rowid INTEGER")
    conn.execute("UPDATE images SET search_rowid = rowid")
    conn.execute("DROP TABLE IF EXISTS images_fts")
    conn.execute("""
        CREATE VIRTUAL TABLE images_fts
            USING fts5(id UNINDEXED, original_name, ai_tags, tokenize='unicode61')
    """)
    conn.execute("""
        INSERT INTO images_fts (rowid, id, original_name, ai_tags)
        SELECT search_rowid, id, original_name, COALESCE(ai_tags, '') FROM images
    """)
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS images_search_rowid_idx ON images(search_rowid)"
    )


_MIGRATIONS = {
    1: _migrate_v1,
    2: _migrate_v2,
    3: _migrate_v3,
}


class LibraryIndex:
    """Searchable record of every image in one library."""

    def __init__(self, library_path: Union[str, os.PathLike], settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.logger = get_logger("library_index")
        self.library_path = Path(library_path).resolve()
        self.db_path = self.library_path / DB_DIRNAME / DB_FILENAME
        self._lock = threading.RLock()
        self._conn = self._open()

    # ===== Connection management =====

    def _open(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open index at {self.db_path}: {e}")

        conn.row_factory = sqlite3.Row
        try:
            self._check_engine(conn)
            self._configure(conn)
            self._run_migrations(conn)
        except StorageError:
            conn.close()
            raise
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Failed to initialize index at {self.db_path}: {e}")
        return conn

    def _check_engine(self, conn: sqlite3.Connection) -> None:
        version = conn.execute("SELECT sqlite_version()").fetchone()[0]
        minimum = self.settings.min_sqlite_version
        if not is_version_at_least(version, minimum):
            raise StorageError(f"SQLite {minimum}+ required. Found {version}.")
        if not _has_fts5(conn):
            raise StorageError("SQLite FTS5 is required but not available.")
        self.logger.info(f"📚 SQLite {version} (FTS5 enabled) for library {self.library_path}")

    @staticmethod
    def _configure(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA temp_store = MEMORY")
        conn.execute("PRAGMA cache_size = -64000")
        conn.execute("PRAGMA foreign_keys = ON")

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        current_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if current_version > DB_SCHEMA_VERSION:
            raise StorageError(
                f"Index schema v{current_version} is newer than supported v{DB_SCHEMA_VERSION}"
            )
        for version in range(current_version + 1, DB_SCHEMA_VERSION + 1):
            self.logger.info(f"🔄 Applying index migration v{version}")
            conn.execute("BEGIN IMMEDIATE")
            try:
                _MIGRATIONS[version](conn)
                conn.execute(f"PRAGMA user_version = {version}")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ===== Helpers =====

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ImageRecord:
        return ImageRecord(
            id=row["id"],
            original_name=row["original_name"],
            stored_name=row["stored_name"],
            file_path=row["file_path"],
            added_at=parse_timestamp(row["added_at"]),
            bytes=row["bytes"],
            ai_tags=row["ai_tags"],
            ai_tag_status=TagStatus(row["ai_tag_status"]),
        )

    def _clamp_limit(self, limit) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError(f"Search limit must be an integer, got {limit!r}")
        return max(1, min(limit, self.settings.max_page_size))

    @staticmethod
    def _coerce_cursor(cursor: CursorInput) -> Optional[SearchCursor]:
        if cursor is None or isinstance(cursor, SearchCursor):
            return cursor
        if isinstance(cursor, str):
            return SearchCursor.from_token(cursor)
        if isinstance(cursor, dict):
            try:
                parsed = SearchCursor(**cursor)
            except PydanticValidationError as e:
                raise ValidationError(f"Malformed search cursor: {e}", "Invalid search cursor.")
            return SearchCursor.from_token(parsed.to_token())
        raise ValidationError(f"Unsupported cursor type: {type(cursor).__name__}", "Invalid search cursor.")

    # ===== Writes =====

    def insert_images(self, records: Sequence[ImageRecord]) -> None:
        """Insert records and their search entries; all land or none do."""
        if not records:
            return
        for record in records:
            if not is_path_inside(self.library_path, record.file_path):
                raise PathSafetyError(f"Image path escapes library root: {record.file_path}")

        try:
            with self._transaction() as conn:
                search_rowid = conn.execute(
                    "SELECT COALESCE(MAX(search_rowid), 0) FROM images"
                ).fetchone()[0]
                for record in records:
                    search_rowid += 1
                    conn.execute(
                        """
                        INSERT INTO images
                            (id, original_name, stored_name, file_path, added_at, bytes,
                             ai_tags, ai_tag_status, search_rowid)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.id,
                            record.original_name,
                            record.stored_name,
                            record.file_path,
                            format_timestamp(record.added_at),
                            record.bytes,
                            record.ai_tags,
                            record.ai_tag_status.value,
                            search_rowid,
                        ),
                    )
                    conn.execute(
                        "INSERT INTO images_fts (rowid, id, original_name, ai_tags) VALUES (?, ?, ?, ?)",
                        (search_rowid, record.id, record.original_name, record.ai_tags or ""),
                    )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Insert rejected: {e}", "Some images could not be added.")
        self.logger.debug(f"Inserted {len(records)} images")

    @staticmethod
    def _search_rowid(conn: sqlite3.Connection, image_id: str) -> Optional[int]:
        row = conn.execute("SELECT search_rowid FROM images WHERE id = ?", (image_id,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _status_guard(from_statuses: Optional[Sequence[TagStatus]]) -> tuple:
        if not from_statuses:
            return "", []
        placeholders = ", ".join("?" for _ in from_statuses)
        return f" AND ai_tag_status IN ({placeholders})", [TagStatus(s).value for s in from_statuses]

    def delete_image_by_id(self, image_id: str) -> bool:
        """Delete an image row and its search entry. Returns False if absent."""
        with self._transaction() as conn:
            search_rowid = self._search_rowid(conn, image_id)
            if search_rowid is None:
                return False
            conn.execute("DELETE FROM images_fts WHERE rowid = ?", (search_rowid,))
            conn.execute("DELETE FROM images WHERE id = ?", (image_id,))
        return True

    def update_image_tags(self, image_id: str, tags: Optional[str], status: TagStatus,
                          from_statuses: Optional[Sequence[TagStatus]] = None) -> bool:
        """Store tags and status, keeping the search entry's tags in step.

        ``from_statuses`` works as in ``set_image_tag_status``.
        """
        guard, guard_params = self._status_guard(from_statuses)
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE images SET ai_tags = ?, ai_tag_status = ? WHERE id = ?" + guard,
                [tags, TagStatus(status).value, image_id, *guard_params],
            ).rowcount
            if updated:
                conn.execute(
                    "UPDATE images_fts SET ai_tags = ? WHERE rowid = ?",
                    (tags or "", self._search_rowid(conn, image_id)),
                )
        return updated > 0

    def set_image_tag_status(self, image_id: str, status: TagStatus,
                             from_statuses: Optional[Sequence[TagStatus]] = None) -> bool:
        """Change only the status.

        With ``from_statuses`` the change applies only when the current status
        is one of them, which makes the check-and-set atomic.
        """
        guard, guard_params = self._status_guard(from_statuses)
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE images SET ai_tag_status = ? WHERE id = ?" + guard,
                [TagStatus(status).value, image_id, *guard_params],
            ).rowcount
        return updated > 0

    def fail_interrupted(self) -> int:
        """Mark images left in ``generating`` by a previous run as failed."""
        with self._transaction() as conn:
            return conn.execute(
                "UPDATE images SET ai_tag_status = ? WHERE ai_tag_status = ?",
                (TagStatus.FAILED.value, TagStatus.GENERATING.value),
            ).rowcount

    # ===== Reads =====

    def search(self, query: Optional[str] = "", limit: int = 200,
               cursor: CursorInput = None) -> SearchResult:
        """Return one page of images, newest first, optionally filtered by prefix terms."""
        if query is None:
            query = ""
        if not isinstance(query, str):
            raise ValidationError(f"Search query must be text, got {type(query).__name__}")
        if len(query) > self.settings.max_query_length:
            raise ValidationError(
                f"Search query longer than {self.settings.max_query_length} characters",
                "Search query is too long.",
            )
        limit = self._clamp_limit(limit)
        cursor = self._coerce_cursor(cursor)
        fts_query = build_fts_query(query)

        conditions = []
        params: Dict[str, object] = {"limit": limit}
        if fts_query:
            source = "images_fts JOIN images ON images.search_rowid = images_fts.rowid"
            conditions.append("images_fts MATCH :query")
            params["query"] = fts_query
        else:
            source = "images"
        if cursor is not None:
            conditions.append(_KEYSET_PREDICATE)
            params["added_at"] = cursor.added_at
            params["id"] = cursor.id

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM {source}
            {where}
            ORDER BY images.added_at DESC, images.id DESC
            LIMIT :limit
        """
        try:
            rows = self._query(sql, params)
        except sqlite3.OperationalError as e:
            raise ValidationError(f"Search query rejected: {e}", "Invalid search query.")

        items = [self._to_record(row) for row in rows]
        next_cursor = SearchCursor.from_record(items[-1]) if items and len(items) == limit else None
        return SearchResult(items=items, next_cursor=next_cursor)

    def get_image_by_id(self, image_id: str) -> Optional[ImageRecord]:
        rows = self._query(f"SELECT {_SELECT_COLUMNS} FROM images WHERE id = ?", (image_id,))
        return self._to_record(rows[0]) if rows else None

    def get_images_needing_tags(self, limit: int) -> List[ImageRecord]:
        """Pending images, most recent first."""
        rows = self._query(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM images
            WHERE ai_tag_status = ?
            ORDER BY added_at DESC, id DESC
            LIMIT ?
            """,
            (TagStatus.PENDING.value, max(1, int(limit))),
        )
        return [self._to_record(row) for row in rows]

    def count_images(self) -> int:
        return self._query("SELECT COUNT(*) FROM images")[0][0]

    def count_by_status(self, status: TagStatus) -> int:
        return self._query(
            "SELECT COUNT(*) FROM images WHERE ai_tag_status = ?", (TagStatus(status).value,)
        )[0][0]


# ===== Per-library connection cache =====

_index_cache: Dict[str, LibraryIndex] = {}
_cache_lock = threading.Lock()


def get_index(library_path: Union[str, os.PathLike], settings: Optional[Settings] = None) -> LibraryIndex:
    """Return the shared index for a library, opening it on first use."""
    key = str(Path(library_path).resolve())
    with _cache_lock:
        index = _index_cache.get(key)
        if index is None:
            index = LibraryIndex(key, settings=settings)
            _index_cache[key] = index
        return index


def close_all_indexes() -> None:
    with _cache_lock:
        for key, index in list(_index_cache.items()):
            index.close()
            del _index_cache[key]


def close_index(library_path: Union[str, os.PathLike]) -> None:
    """Close and forget the shared index of one library."""
    key = str(Path(library_path).resolve())
    with _cache_lock:
        index = _index_cache.pop(key, None)
    if index is not None:
        index.close()
