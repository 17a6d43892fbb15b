"""Tests for the version store."""

import sqlite3
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from hubcache.models import VersionDescriptor
from hubcache.storage import StorageError, init_db, kv_get, kv_set
from hubcache.version_store import (
    LAST_APPLIED_VERSION_KEY,
    LAST_PROMPT_KEY,
    PENDING_UPDATE_KEY,
    SESSION_START_KEY,
    VersionStore,
)


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def store(db_conn: sqlite3.Connection) -> VersionStore:
    return VersionStore(db_conn)


class TestReadWrite:
    """Tests for the last applied version descriptor."""

    def test_read_without_stored_value_returns_default(self, store: VersionStore) -> None:
        assert store.read() == VersionDescriptor(version="1.0.0", timestamp=0)

    def test_write_then_read(self, store: VersionStore) -> None:
        descriptor = VersionDescriptor(version="1.4.2", build="b7", timestamp=1_700_000_000_000, changelog=("Fix",))

        assert store.write(descriptor) is True
        assert store.read() == descriptor

    def test_corrupt_json_returns_default(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, LAST_APPLIED_VERSION_KEY, "{not json")
        assert store.read() == VersionDescriptor()

    def test_wrong_shape_returns_default(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, LAST_APPLIED_VERSION_KEY, '["1.0.1"]')
        assert store.read() == VersionDescriptor()

    def test_infinite_timestamp_returns_default(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, LAST_APPLIED_VERSION_KEY, '{"version": "1.0.0", "timestamp": Infinity}')
        assert store.read() == VersionDescriptor()

    def test_huge_timestamp_returns_default(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, LAST_APPLIED_VERSION_KEY, '{"version": "1.0.0", "timestamp": 1e400}')
        assert store.read() == VersionDescriptor()

    def test_read_with_broken_storage_returns_default(self, tmp_path: Path) -> None:
        """Reads never fail the caller."""
        conn = init_db(str(tmp_path / "closed.db"))
        conn.close()

        assert VersionStore(conn).read() == VersionDescriptor()

    def test_write_failure_returns_false_and_reports(self, db_conn: sqlite3.Connection) -> None:
        on_error = MagicMock()
        store = VersionStore(db_conn, on_write_error=on_error)
        error = StorageError("quota exceeded")

        with patch("hubcache.version_store.storage.kv_set", side_effect=error):
            assert store.write(VersionDescriptor(version="2.0.0")) is False

        on_error.assert_called_once_with(LAST_APPLIED_VERSION_KEY, error)


class TestSessionState:
    """Tests for update bookkeeping timestamps."""

    def test_load_state_defaults(self, store: VersionStore) -> None:
        state = store.load_state()
        assert state.last_applied_timestamp == 0
        assert state.app_start_timestamp == 0
        assert state.pending_update_available is False
        assert state.is_applying_update is False

    def test_mark_session_start_keeps_existing(self, store: VersionStore) -> None:
        """A reload does not restart the session clock."""
        assert store.mark_session_start(1000) == 1000
        assert store.mark_session_start(5000) == 1000
        assert store.load_state().app_start_timestamp == 1000

    def test_record_applied(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        store.record_applied(42_000)
        assert kv_get(db_conn, LAST_PROMPT_KEY) == "42000"
        assert store.load_state().last_applied_timestamp == 42_000

    def test_pending_flag_round_trip(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        store.set_pending(True)
        assert kv_get(db_conn, PENDING_UPDATE_KEY) == "true"
        assert store.load_state().pending_update_available is True

        store.set_pending(False)
        assert store.load_state().pending_update_available is False

    def test_corrupt_timestamp_reads_as_zero(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        kv_set(db_conn, LAST_PROMPT_KEY, "yesterday")
        assert store.load_state().last_applied_timestamp == 0

    def test_reset_session(self, store: VersionStore, db_conn: sqlite3.Connection) -> None:
        store.mark_session_start(1000)
        store.record_applied(2000)
        store.write(VersionDescriptor(version="1.2.3"))

        assert store.reset_session() is True

        assert kv_get(db_conn, SESSION_START_KEY) is None
        assert kv_get(db_conn, LAST_PROMPT_KEY) is None
        assert store.read().version == "1.2.3"

    def test_reset_session_failure_reports(self, tmp_path: Path) -> None:
        conn = init_db(str(tmp_path / "closed.db"))
        conn.close()
        on_error = MagicMock()

        assert VersionStore(conn, on_write_error=on_error).reset_session() is False
        on_error.assert_called_once()
