"""Update decision policy.

Pure functions over version descriptors, the session's update state and
the current time; nothing here touches storage or the network.
"""

import logging

from .config import UpdateConfig
from .models import UpdateAction, UpdateState, VersionDescriptor

logger = logging.getLogger(__name__)


def parse_version(version: str) -> tuple[int, int, int] | None:
    """Parse "major.minor.patch" into a numeric tuple.

    Returns:
        The tuple, or None if the string is not a three-part numeric version.
    """
    parts = version.strip().split(".")
    if len(parts) != 3:
        return None
    try:
        numbers = tuple(int(part) for part in parts)
    except ValueError:
        return None
    if any(n < 0 for n in numbers):
        return None
    return numbers  # type: ignore[return-value]


def is_newer(candidate: str, applied: str) -> bool:
    """Return True only if ``candidate`` is strictly newer than ``applied``.

    Components are compared left to right; a malformed version on either
    side is never newer.
    """
    candidate_tuple = parse_version(candidate)
    applied_tuple = parse_version(applied)
    if candidate_tuple is None or applied_tuple is None:
        return False
    return candidate_tuple > applied_tuple


class UpdatePolicy:
    """Decides whether and how a candidate version is applied.

    Rules, first match wins:

    1. candidate deployed less than the significance window after the
       applied version: no update (duplicate or noisy deploy signal).
    2. candidate version not newer than the applied version: no update.
    3. session younger than the minimum session age: no update.
    4. last apply or dismissal within the silent cooldown: no update.
    5. prompt if the session is actively used (old enough and no prompt
       dismissed within the prompt cooldown), otherwise apply silently.
    """

    def __init__(self, config: UpdateConfig) -> None:
        self.significance_window_ms = int(config.significance_window_seconds * 1000)
        self.min_session_age_ms = int(config.min_session_age_seconds * 1000)
        self.silent_cooldown_ms = int(config.silent_cooldown_seconds * 1000)
        self.prompt_cooldown_ms = int(config.prompt_cooldown_seconds * 1000)

    def is_significant(self, candidate: VersionDescriptor, applied: VersionDescriptor) -> bool:
        """Rules 1 and 2: does the candidate warrant an update at all?"""
        if candidate.timestamp - applied.timestamp < self.significance_window_ms:
            return False
        return is_newer(candidate.version, applied.version)

    def decide(
        self,
        candidate: VersionDescriptor,
        applied: VersionDescriptor,
        now: int,
        state: UpdateState,
    ) -> UpdateAction:
        if not self.is_significant(candidate, applied):
            logger.debug(
                "Candidate %s (ts=%d) is not significant against %s (ts=%d)",
                candidate.version,
                candidate.timestamp,
                applied.version,
                applied.timestamp,
            )
            return UpdateAction.NO_UPDATE

        # An unknown session start counts as a session that just began.
        app_start = state.app_start_timestamp or now
        session_age = now - app_start
        if session_age < self.min_session_age_ms:
            logger.debug("Session too young for updates (%d ms)", session_age)
            return UpdateAction.NO_UPDATE

        since_last = now - state.last_applied_timestamp
        if since_last < self.silent_cooldown_ms:
            logger.debug("Update cooldown active (%d ms since last update)", since_last)
            return UpdateAction.NO_UPDATE

        if self._is_actively_used(session_age, since_last):
            return UpdateAction.PROMPT_USER
        return UpdateAction.APPLY_SILENTLY

    def _is_actively_used(self, session_age: int, since_last: int) -> bool:
        return session_age >= self.min_session_age_ms and since_last >= self.prompt_cooldown_ms
