"""SQLite persistence for cache generations and the per-origin key-value store."""

import json
import sqlite3
import threading
from pathlib import Path

from .models import CachedResponse, CacheGeneration, GenerationKind, now_ms


class StorageError(Exception):
    """Raised when a storage operation fails."""

    pass


# Global lock for thread-safe database access.
# The background cache manager and every foreground session share one
# connection; SQLite allows only one writer at a time.
_db_lock = threading.Lock()


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        StorageError: If database initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_buckets (
                name TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                bucket TEXT NOT NULL REFERENCES cache_buckets(name) ON DELETE CASCADE,
                url TEXT NOT NULL,
                status INTEGER NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                stored_at INTEGER NOT NULL,
                PRIMARY KEY (bucket, url)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StorageError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise StorageError(f"Failed to create database directory: {e}")


# =============================================================================
# CACHE BUCKETS
# =============================================================================


def list_buckets(conn: sqlite3.Connection) -> list[CacheGeneration]:
    """Return every cache bucket, oldest first."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT name, kind, created_at FROM cache_buckets ORDER BY created_at, name").fetchall()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to list cache buckets: {e}")

    return [CacheGeneration(name=row["name"], kind=GenerationKind(row["kind"]), created_at=row["created_at"]) for row in rows]


def bucket_names(conn: sqlite3.Connection) -> set[str]:
    """Return the names of all cache buckets."""
    return {bucket.name for bucket in list_buckets(conn)}


def has_bucket(conn: sqlite3.Connection, name: str) -> bool:
    try:
        with _db_lock:
            row = conn.execute("SELECT 1 FROM cache_buckets WHERE name = ?", (name,)).fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to look up cache bucket {name}: {e}")
    return row is not None


def open_bucket(conn: sqlite3.Connection, name: str, kind: GenerationKind) -> None:
    """Create a bucket if it does not exist yet."""
    try:
        with _db_lock:
            conn.execute(
                "INSERT OR IGNORE INTO cache_buckets (name, kind, created_at) VALUES (?, ?, ?)",
                (name, kind.value, now_ms()),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to open cache bucket {name}: {e}")


def write_bucket(
    conn: sqlite3.Connection,
    name: str,
    kind: GenerationKind,
    responses: list[CachedResponse],
) -> None:
    """Create a bucket and store all responses in a single transaction.

    Either every response lands in the bucket or the bucket does not exist
    afterwards.

    Raises:
        StorageError: If the write fails; nothing is left behind.
    """
    now = now_ms()
    try:
        with _db_lock:
            try:
                conn.execute("DELETE FROM cache_buckets WHERE name = ?", (name,))
                conn.execute(
                    "INSERT INTO cache_buckets (name, kind, created_at) VALUES (?, ?, ?)",
                    (name, kind.value, now),
                )
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO cache_entries (bucket, url, status, headers, body, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [(name, r.url, r.status, json.dumps(r.headers), r.body, now) for r in responses],
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
    except sqlite3.Error as e:
        raise StorageError(f"Failed to write cache bucket {name}: {e}")


def put_entry(conn: sqlite3.Connection, name: str, response: CachedResponse) -> None:
    """Store one response in an existing bucket.

    Raises:
        StorageError: If the bucket does not exist or the write fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (bucket, url, status, headers, body, stored_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (name, response.url, response.status, json.dumps(response.headers), response.body, now_ms()),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to store {response.url} in {name}: {e}")


def match(conn: sqlite3.Connection, name: str, url: str) -> CachedResponse | None:
    """Look up an exact URL match in one bucket."""
    try:
        with _db_lock:
            row = conn.execute(
                "SELECT url, status, headers, body FROM cache_entries WHERE bucket = ? AND url = ?",
                (name, url),
            ).fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to read {url} from {name}: {e}")

    if row is None:
        return None
    return CachedResponse(
        url=row["url"],
        status=row["status"],
        headers=json.loads(row["headers"]),
        body=bytes(row["body"]),
    )


def entry_urls(conn: sqlite3.Connection, name: str) -> list[str]:
    """Return the URLs stored in a bucket."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT url FROM cache_entries WHERE bucket = ? ORDER BY url", (name,)).fetchall()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to list entries of {name}: {e}")
    return [row["url"] for row in rows]


def delete_bucket(conn: sqlite3.Connection, name: str) -> bool:
    """Delete a bucket and its entries. Returns False if it did not exist."""
    try:
        with _db_lock:
            conn.execute("DELETE FROM cache_entries WHERE bucket = ?", (name,))
            cursor = conn.execute("DELETE FROM cache_buckets WHERE name = ?", (name,))
            conn.commit()
            return cursor.rowcount > 0
    except sqlite3.Error as e:
        raise StorageError(f"Failed to delete cache bucket {name}: {e}")


def delete_buckets_except(conn: sqlite3.Connection, keep: set[str]) -> list[str]:
    """Delete every bucket whose name is not in ``keep``.

    Returns:
        Names of the deleted buckets.
    """
    try:
        with _db_lock:
            try:
                names = [row["name"] for row in conn.execute("SELECT name FROM cache_buckets").fetchall()]
                doomed = [name for name in names if name not in keep]
                for name in doomed:
                    conn.execute("DELETE FROM cache_entries WHERE bucket = ?", (name,))
                    conn.execute("DELETE FROM cache_buckets WHERE name = ?", (name,))
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return doomed
    except sqlite3.Error as e:
        raise StorageError(f"Failed to evict cache buckets: {e}")


def promote(
    conn: sqlite3.Connection,
    static: str,
    dynamic: str,
    keys: dict[str, str],
) -> list[str]:
    """Make ``static``/``dynamic`` the only buckets and record them in the key-value store.

    Creates the dynamic bucket if needed, writes ``keys`` and evicts every
    other bucket in a single transaction. On failure nothing changes.

    Returns:
        Names of the evicted buckets.

    Raises:
        StorageError: If the static bucket is missing or any write fails.
    """
    try:
        with _db_lock:
            try:
                if conn.execute("SELECT 1 FROM cache_buckets WHERE name = ?", (static,)).fetchone() is None:
                    raise StorageError(f"Cannot promote missing cache bucket {static}")
                conn.execute(
                    "INSERT OR IGNORE INTO cache_buckets (name, kind, created_at) VALUES (?, ?, ?)",
                    (dynamic, GenerationKind.DYNAMIC.value, now_ms()),
                )
                names = [row["name"] for row in conn.execute("SELECT name FROM cache_buckets").fetchall()]
                doomed = [name for name in names if name not in (static, dynamic)]
                for name in doomed:
                    conn.execute("DELETE FROM cache_entries WHERE bucket = ?", (name,))
                    conn.execute("DELETE FROM cache_buckets WHERE name = ?", (name,))
                conn.executemany(
                    "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                    list(keys.items()),
                )
                conn.commit()
            except (sqlite3.Error, StorageError):
                conn.rollback()
                raise
            return doomed
    except sqlite3.Error as e:
        raise StorageError(f"Failed to promote cache bucket {static}: {e}")


def delete_all_buckets(conn: sqlite3.Connection) -> int:
    """Delete every bucket. Returns the number deleted."""
    return len(delete_buckets_except(conn, set()))


# =============================================================================
# KEY-VALUE STORE
# =============================================================================


def kv_get(conn: sqlite3.Connection, key: str) -> str | None:
    try:
        with _db_lock:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to read key {key}: {e}")
    return row["value"] if row else None


def kv_set(conn: sqlite3.Connection, key: str, value: str) -> None:
    try:
        with _db_lock:
            conn.execute("INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)", (key, value))
            conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to write key {key}: {e}")


def kv_delete(conn: sqlite3.Connection, *keys: str) -> None:
    try:
        with _db_lock:
            conn.executemany("DELETE FROM kv_store WHERE key = ?", [(key,) for key in keys])
            conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Failed to delete keys {keys}: {e}")
