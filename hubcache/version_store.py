"""Persistent version descriptor and update bookkeeping.

All keys live in the per-origin key-value store. Reads never fail the
caller: missing or corrupt values fall back to defaults. Writes never
raise: a failed write is logged, reported through ``on_write_error`` and
the caller gets ``False`` back.
"""

import json
import logging
import sqlite3
from collections.abc import Callable

from . import storage
from .models import UpdateState, VersionDescriptor
from .storage import StorageError

logger = logging.getLogger(__name__)

LAST_APPLIED_VERSION_KEY = "last-applied-version"
LAST_PROMPT_KEY = "last-update-prompt-timestamp"
SESSION_START_KEY = "app-session-start-timestamp"
PENDING_UPDATE_KEY = "pending-update-available"


class VersionStore:
    """Reads and writes the last applied version and the update timestamps."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        on_write_error: Callable[[str, Exception], None] | None = None,
    ) -> None:
        self._conn = conn
        self._on_write_error = on_write_error

    def read(self) -> VersionDescriptor:
        """Return the last applied descriptor, or the zero-value descriptor."""
        raw = self._get(LAST_APPLIED_VERSION_KEY)
        if raw is None:
            return VersionDescriptor()
        try:
            return VersionDescriptor.from_dict(json.loads(raw))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Ignoring corrupt stored version descriptor: %s", e)
            return VersionDescriptor()

    def write(self, descriptor: VersionDescriptor) -> bool:
        """Persist the descriptor as the last applied version."""
        return self._set(LAST_APPLIED_VERSION_KEY, json.dumps(descriptor.to_dict()))

    def load_state(self) -> UpdateState:
        """Load the persisted part of a session's update state."""
        return UpdateState(
            last_applied_timestamp=self._get_int(LAST_PROMPT_KEY),
            app_start_timestamp=self._get_int(SESSION_START_KEY),
            pending_update_available=self._get(PENDING_UPDATE_KEY) == "true",
        )

    def mark_session_start(self, now: int) -> int:
        """Record the session start unless one is already stored.

        Returns:
            The effective session start timestamp.
        """
        existing = self._get_int(SESSION_START_KEY)
        if existing > 0:
            return existing
        self._set(SESSION_START_KEY, str(now))
        return now

    def record_applied(self, now: int) -> bool:
        """Record that an update was applied or a prompt dismissed at ``now``."""
        return self._set(LAST_PROMPT_KEY, str(now))

    def set_pending(self, pending: bool) -> bool:
        return self._set(PENDING_UPDATE_KEY, "true" if pending else "false")

    def reset_session(self) -> bool:
        """Forget session start and last prompt time."""
        try:
            storage.kv_delete(self._conn, LAST_PROMPT_KEY, SESSION_START_KEY)
            return True
        except StorageError as e:
            self._report(SESSION_START_KEY, e)
            return False

    def _get(self, key: str) -> str | None:
        try:
            return storage.kv_get(self._conn, key)
        except StorageError as e:
            logger.warning("Failed to read %s: %s", key, e)
            return None

    def _get_int(self, key: str) -> int:
        raw = self._get(key)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring corrupt value for %s: %r", key, raw)
            return 0

    def _set(self, key: str, value: str) -> bool:
        try:
            storage.kv_set(self._conn, key, value)
            return True
        except StorageError as e:
            self._report(key, e)
            return False

    def _report(self, key: str, error: Exception) -> None:
        logger.warning("Failed to persist %s, continuing without it: %s", key, error)
        if self._on_write_error is not None:
            self._on_write_error(key, error)
