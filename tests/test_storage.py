"""Tests for the storage module."""

import sqlite3
from pathlib import Path

import pytest

from hubcache.models import CachedResponse, GenerationKind
from hubcache.storage import (
    StorageError,
    bucket_names,
    delete_all_buckets,
    delete_bucket,
    delete_buckets_except,
    entry_urls,
    has_bucket,
    init_db,
    kv_delete,
    kv_get,
    kv_set,
    list_buckets,
    match,
    open_bucket,
    promote,
    put_entry,
    write_bucket,
)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def db_conn(db_path: str) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(db_path)
    yield conn
    conn.close()


def _response(url: str, body: bytes = b"content") -> CachedResponse:
    return CachedResponse(url=url, status=200, headers={"Content-Type": "text/html"}, body=body)


class TestInitDb:
    """Tests for init_db function."""

    def test_creates_database_file(self, db_path: str) -> None:
        """Database file is created at specified path."""
        conn = init_db(db_path)
        conn.close()
        assert Path(db_path).exists()

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Parent directories are created if they don't exist."""
        nested_path = str(tmp_path / "nested" / "dir" / "test.db")
        conn = init_db(nested_path)
        conn.close()
        assert Path(nested_path).exists()

    def test_creates_tables(self, db_conn: sqlite3.Connection) -> None:
        cursor = db_conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}
        assert {"cache_buckets", "cache_entries", "kv_store"} <= tables

    def test_in_memory_database(self) -> None:
        conn = init_db(":memory:")
        try:
            kv_set(conn, "k", "v")
            assert kv_get(conn, "k") == "v"
        finally:
            conn.close()

    def test_idempotent(self, db_path: str) -> None:
        """Reopening an existing database keeps its data."""
        conn = init_db(db_path)
        kv_set(conn, "k", "v")
        conn.close()

        conn = init_db(db_path)
        assert kv_get(conn, "k") == "v"
        conn.close()


class TestBuckets:
    """Tests for cache bucket operations."""

    def test_write_and_match(self, db_conn: sqlite3.Connection) -> None:
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/", b"<html>")])

        cached = match(db_conn, "hub-static-v1", "http://h/")

        assert cached is not None
        assert cached.status == 200
        assert cached.body == b"<html>"
        assert cached.headers == {"Content-Type": "text/html"}

    def test_match_is_exact(self, db_conn: sqlite3.Connection) -> None:
        """Query strings are part of the cache key."""
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/page")])
        assert match(db_conn, "hub-static-v1", "http://h/page?id=1") is None

    def test_match_missing_bucket_returns_none(self, db_conn: sqlite3.Connection) -> None:
        assert match(db_conn, "nope", "http://h/") is None

    def test_list_buckets(self, db_conn: sqlite3.Connection) -> None:
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [])
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)

        buckets = {bucket.name: bucket.kind for bucket in list_buckets(db_conn)}

        assert buckets == {
            "hub-static-v1": GenerationKind.STATIC,
            "hub-dynamic-v1": GenerationKind.DYNAMIC,
        }

    def test_open_bucket_is_idempotent(self, db_conn: sqlite3.Connection) -> None:
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)
        put_entry(db_conn, "hub-dynamic-v1", _response("http://h/a"))
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)

        assert entry_urls(db_conn, "hub-dynamic-v1") == ["http://h/a"]

    def test_write_bucket_replaces_existing(self, db_conn: sqlite3.Connection) -> None:
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/old")])
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/new")])

        assert entry_urls(db_conn, "hub-static-v1") == ["http://h/new"]

    def test_failed_write_leaves_nothing_behind(self, db_conn: sqlite3.Connection) -> None:
        """A bucket is either fully written or absent."""
        bad = CachedResponse(url=None, status=200, body=b"x")  # type: ignore[arg-type]

        with pytest.raises(StorageError, match="Failed to write cache bucket"):
            write_bucket(db_conn, "hub-static-v2", GenerationKind.STATIC, [_response("http://h/"), bad])

        assert not has_bucket(db_conn, "hub-static-v2")
        assert entry_urls(db_conn, "hub-static-v2") == []

    def test_put_entry_requires_existing_bucket(self, db_conn: sqlite3.Connection) -> None:
        """Entries cannot resurrect a deleted bucket."""
        with pytest.raises(StorageError):
            put_entry(db_conn, "hub-dynamic-v9", _response("http://h/a"))
        assert not has_bucket(db_conn, "hub-dynamic-v9")

    def test_put_entry_replaces_same_url(self, db_conn: sqlite3.Connection) -> None:
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)
        put_entry(db_conn, "hub-dynamic-v1", _response("http://h/a", b"one"))
        put_entry(db_conn, "hub-dynamic-v1", _response("http://h/a", b"two"))

        assert match(db_conn, "hub-dynamic-v1", "http://h/a").body == b"two"

    def test_delete_bucket(self, db_conn: sqlite3.Connection) -> None:
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/")])

        assert delete_bucket(db_conn, "hub-static-v1") is True
        assert delete_bucket(db_conn, "hub-static-v1") is False
        assert match(db_conn, "hub-static-v1", "http://h/") is None

    def test_delete_buckets_except(self, db_conn: sqlite3.Connection) -> None:
        for serial in (1, 2, 3):
            write_bucket(db_conn, f"hub-static-v{serial}", GenerationKind.STATIC, [_response("http://h/")])
            open_bucket(db_conn, f"hub-dynamic-v{serial}", GenerationKind.DYNAMIC)

        deleted = delete_buckets_except(db_conn, {"hub-static-v3", "hub-dynamic-v3"})

        assert set(deleted) == {"hub-static-v1", "hub-dynamic-v1", "hub-static-v2", "hub-dynamic-v2"}
        assert bucket_names(db_conn) == {"hub-static-v3", "hub-dynamic-v3"}
        assert entry_urls(db_conn, "hub-static-v1") == []

    def test_promote_evicts_and_records_keys(self, db_conn: sqlite3.Connection) -> None:
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/")])
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)
        write_bucket(db_conn, "hub-static-v2", GenerationKind.STATIC, [_response("http://h/")])

        deleted = promote(db_conn, "hub-static-v2", "hub-dynamic-v2", {"active": "hub-static-v2"})

        assert set(deleted) == {"hub-static-v1", "hub-dynamic-v1"}
        assert bucket_names(db_conn) == {"hub-static-v2", "hub-dynamic-v2"}
        assert kv_get(db_conn, "active") == "hub-static-v2"

    def test_failed_promote_changes_nothing(self, db_conn: sqlite3.Connection) -> None:
        """A write failure after eviction rolls the eviction back."""
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/styles.css", b"body{}")])
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)
        write_bucket(db_conn, "hub-static-v2", GenerationKind.STATIC, [_response("http://h/")])
        kv_set(db_conn, "active", "hub-static-v1")

        with pytest.raises(StorageError, match="Failed to promote"):
            promote(db_conn, "hub-static-v2", "hub-dynamic-v2", {"active": "hub-static-v2", "broken": None})

        assert bucket_names(db_conn) == {"hub-static-v1", "hub-dynamic-v1", "hub-static-v2"}
        assert match(db_conn, "hub-static-v1", "http://h/styles.css").body == b"body{}"
        assert kv_get(db_conn, "active") == "hub-static-v1"

    def test_promote_requires_static_bucket(self, db_conn: sqlite3.Connection) -> None:
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)

        with pytest.raises(StorageError, match="missing cache bucket"):
            promote(db_conn, "hub-static-v9", "hub-dynamic-v9", {})

        assert bucket_names(db_conn) == {"hub-dynamic-v1"}

    def test_delete_all_buckets(self, db_conn: sqlite3.Connection) -> None:
        write_bucket(db_conn, "hub-static-v1", GenerationKind.STATIC, [_response("http://h/")])
        open_bucket(db_conn, "hub-dynamic-v1", GenerationKind.DYNAMIC)

        assert delete_all_buckets(db_conn) == 2
        assert bucket_names(db_conn) == set()

    def test_closed_connection_raises_storage_error(self, db_path: str) -> None:
        conn = init_db(db_path)
        conn.close()

        with pytest.raises(StorageError):
            list_buckets(conn)


class TestKeyValueStore:
    """Tests for the key-value store."""

    def test_get_missing_key(self, db_conn: sqlite3.Connection) -> None:
        assert kv_get(db_conn, "missing") is None

    def test_set_overwrites(self, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, "k", "1")
        kv_set(db_conn, "k", "2")
        assert kv_get(db_conn, "k") == "2"

    def test_delete_many(self, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, "a", "1")
        kv_set(db_conn, "b", "2")
        kv_set(db_conn, "c", "3")

        kv_delete(db_conn, "a", "b")

        assert kv_get(db_conn, "a") is None
        assert kv_get(db_conn, "b") is None
        assert kv_get(db_conn, "c") == "3"

    def test_write_error_is_wrapped(self, db_path: str) -> None:
        conn = init_db(db_path)
        conn.close()

        with pytest.raises(StorageError, match="Failed to write key k"):
            kv_set(conn, "k", "v")
