"""Foreground update coordinator.

One coordinator runs per open session. It listens for UPDATE_AVAILABLE
signals from the cache manager, consults the update policy and either
applies the new generation silently or shows a prompt with three actions:
update now, clear cache & update, or later.
"""

import logging
import queue
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from . import storage
from .config import UpdateConfig
from .messaging import Message, MessageChannel, MessageType
from .models import PromptChoice, UpdateAction, UpdateState, VersionDescriptor, now_ms
from .policy import UpdatePolicy
from .storage import StorageError
from .version_store import VersionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdatePrompt:
    """A dismissible update prompt shown to the user."""

    candidate: VersionDescriptor
    generation: str | None
    actions: tuple[PromptChoice, ...] = (
        PromptChoice.UPDATE_NOW,
        PromptChoice.CLEAR_AND_UPDATE,
        PromptChoice.LATER,
    )


class Prompter(Protocol):
    """Renders update prompts. The UI answers via ``UpdateCoordinator.respond``."""

    def show(self, prompt: UpdatePrompt) -> None: ...

    def hide(self) -> None: ...


class LoggingPrompter:
    """Headless prompter: logs prompts and leaves them to auto-dismiss."""

    def show(self, prompt: UpdatePrompt) -> None:
        logger.info(
            "Update %s available (%s). Actions: %s",
            prompt.candidate.version,
            "; ".join(prompt.candidate.changelog) or "no changelog",
            ", ".join(choice.value for choice in prompt.actions),
        )

    def hide(self) -> None:
        logger.debug("Update prompt closed")


class UpdateCoordinator:
    """Drives update decisions for one foreground session.

    Example:
        coordinator = UpdateCoordinator(config.updates, channel, conn, reload=page.reload)
        coordinator.start()
        # ... later ...
        coordinator.stop()
    """

    def __init__(
        self,
        config: UpdateConfig,
        channel: MessageChannel,
        conn: sqlite3.Connection,
        prompter: Prompter | None = None,
        reload: Callable[[], None] | None = None,
        clock: Callable[[], int] = now_ms,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Update timing configuration.
            channel: Message channel shared with the cache manager.
            conn: Database connection holding the key-value store and caches.
            prompter: Renders update prompts; defaults to logging them.
            reload: Reloads the foreground view against the active generation.
            clock: Returns the current time in epoch milliseconds.
            timer_factory: Creates timers for auto-dismiss and grace delays.
        """
        self._config = config
        self._channel = channel
        self._conn = conn
        self._prompter = prompter or LoggingPrompter()
        self._reload = reload or (lambda: logger.info("Reload requested"))
        self._clock = clock
        self._timer_factory = timer_factory
        self._policy = UpdatePolicy(config)
        self.version_store = VersionStore(conn)

        self._lock = threading.RLock()
        self._state = UpdateState()
        self._candidate: VersionDescriptor | None = None
        self._candidate_generation: str | None = None
        self._prompt: UpdatePrompt | None = None
        self._prompt_timer: threading.Timer | None = None
        self._grace_timer: threading.Timer | None = None
        self._last_check_request: float | None = None

        self._client_id: int | None = None
        self._inbox: queue.Queue[Message] | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> UpdateState:
        """A snapshot of the session's update state."""
        with self._lock:
            return UpdateState(**vars(self._state))

    @property
    def prompt(self) -> UpdatePrompt | None:
        return self._prompt

    def begin_session(self) -> None:
        """Load persisted state and record the session start if none is stored."""
        now = self._clock()
        with self._lock:
            self._state = self.version_store.load_state()
            self._state.app_start_timestamp = self.version_store.mark_session_start(now)
            self._state.is_applying_update = False

    def start(self) -> None:
        """Register with the channel and start the session loop."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Update coordinator already running")
            return

        self.begin_session()
        self._client_id, self._inbox = self._channel.register_client()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name=f"session-{self._client_id}")
        self._thread.start()
        logger.info("Update coordinator started for session %d", self._client_id)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the session loop and cancel pending timers."""
        self._cancel_timers()
        if self._client_id is not None:
            self._channel.unregister_client(self._client_id)
            self._client_id = None

        if self._thread is None or not self._thread.is_alive():
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Update coordinator thread did not stop within timeout")

    def _run_loop(self) -> None:
        """Session loop - drains the session queue and requests periodic checks."""
        interval = self._config.poll_interval_seconds
        next_check = time.monotonic() + interval

        while not self._stop_event.is_set():
            if time.monotonic() >= next_check:
                self.request_check()
                next_check = time.monotonic() + interval

            try:
                message = self._inbox.get(timeout=1.0)
            except queue.Empty:
                continue

            try:
                self.handle_message(message)
            except Exception as e:
                logger.error("Failed to handle %s: %s", message.type.value, e)

    def handle_message(self, message: Message) -> None:
        if message.type == MessageType.UPDATE_AVAILABLE:
            raw = message.payload.get("descriptor")
            try:
                candidate = VersionDescriptor.from_dict(raw)
            except ValueError as e:
                logger.warning("Ignoring update signal with invalid descriptor: %s", e)
                return
            self.on_update_available(candidate, message.payload.get("version"))

        elif message.type == MessageType.SW_READY:
            logger.debug("Cache manager ready with %s", message.payload.get("version"))

    def on_update_available(self, candidate: VersionDescriptor, generation: str | None = None) -> UpdateAction:
        """Consult the policy for a new generation and act on the decision."""
        now = self._clock()
        applied = self.version_store.read()
        shared = self.version_store.load_state()

        with self._lock:
            if self._state.is_applying_update:
                logger.debug("Update already being applied, ignoring signal")
                return UpdateAction.NO_UPDATE

            # Other sessions may have prompted or applied since begin_session.
            self._state.last_applied_timestamp = max(
                self._state.last_applied_timestamp, shared.last_applied_timestamp
            )
            self._state.pending_update_available = shared.pending_update_available

            action = self._policy.decide(candidate, applied, now, self._state)
            logger.debug("Policy decision for %s: %s", candidate.version, action.value)

            if action == UpdateAction.NO_UPDATE:
                return action

            self._candidate = candidate
            self._candidate_generation = generation
            self._state.pending_update_available = True
            self.version_store.set_pending(True)

        if action == UpdateAction.APPLY_SILENTLY:
            self.apply_silently()
        else:
            self.show_prompt()
        return action

    def request_check(self) -> None:
        """Ask the cache manager for an immediate version check.

        Skipped while the silent cooldown is active.
        """
        now = self._clock()
        with self._lock:
            since_last = now - self._state.last_applied_timestamp
        if since_last < self._config.silent_cooldown_seconds * 1000:
            logger.debug("Update check skipped - cooldown active")
            return
        self._last_check_request = time.monotonic()
        self._channel.post(Message(MessageType.CHECK_UPDATE))

    def on_focus(self) -> None:
        """The session regained focus: check again if the last check is stale."""
        last = self._last_check_request
        if last is None or time.monotonic() - last > self._config.poll_interval_seconds:
            self.request_check()

    def active_generation(self) -> str | None:
        """Ask the cache manager for its active generation tag."""
        reply = self._channel.request(MessageType.GET_VERSION, timeout=self._config.ack_timeout_seconds)
        return reply.payload.get("version") if reply else None

    def apply_silently(self) -> bool:
        """Promote the waiting generation and reload.

        Returns:
            False if another apply is already in flight or nothing is pending.
        """
        with self._lock:
            if self._state.is_applying_update:
                logger.debug("Apply already in flight, dropping request")
                return False
            if not self._state.pending_update_available or self._candidate is None:
                return False
            self._state.is_applying_update = True
            candidate = self._candidate

        self._close_prompt()
        now = self._clock()
        self.version_store.write(candidate)
        self.version_store.record_applied(now)

        reply = self._channel.request(MessageType.SKIP_WAITING, timeout=self._config.ack_timeout_seconds)
        if reply is None:
            logger.warning("Cache manager did not acknowledge promotion of %s", self._candidate_generation)
        else:
            logger.info("Update %s applied as %s", candidate.version, reply.payload.get("version"))

        self._finish_apply(now)
        return True

    def clear_and_update(self) -> bool:
        """Delete every cache generation, then reload.

        The cache manager reinstalls a fresh generation on the next check.
        """
        with self._lock:
            if self._state.is_applying_update:
                logger.debug("Apply already in flight, dropping request")
                return False
            self._state.is_applying_update = True
            candidate = self._candidate

        self._close_prompt()
        now = self._clock()
        if candidate is not None:
            self.version_store.write(candidate)

        try:
            deleted = storage.delete_all_buckets(self._conn)
            logger.info("Cleared %d cache generation(s)", deleted)
        except StorageError as e:
            logger.warning("Cache clearing failed: %s", e)

        self.version_store.reset_session()
        self.version_store.record_applied(now)
        self._channel.post(Message(MessageType.CHECK_UPDATE))

        self._finish_apply(now)
        return True

    def _finish_apply(self, now: int) -> None:
        with self._lock:
            self._state.last_applied_timestamp = now
            self._state.pending_update_available = False
            self._candidate = None
            self._candidate_generation = None
        self.version_store.set_pending(False)

        try:
            self._reload()
        finally:
            with self._lock:
                self._state.is_applying_update = False

    def show_prompt(self) -> None:
        """Render the prompt, replacing any prompt already shown."""
        with self._lock:
            if self._candidate is None:
                return
            self._cancel_timers()
            if self._prompt is not None:
                self._prompter.hide()
            self._prompt = UpdatePrompt(candidate=self._candidate, generation=self._candidate_generation)
            prompt = self._prompt
            self._prompt_timer = self._start_timer(self._config.prompt_timeout_seconds, self._auto_dismiss)

        self._prompter.show(prompt)

    def respond(self, choice: PromptChoice) -> None:
        """Handle the user's answer to the current prompt."""
        with self._lock:
            if self._prompt is None:
                logger.debug("No prompt shown, ignoring %s", choice.value)
                return

        logger.info("Update prompt answered: %s", choice.value)
        if choice == PromptChoice.UPDATE_NOW:
            self.apply_silently()
        elif choice == PromptChoice.CLEAR_AND_UPDATE:
            self.clear_and_update()
        else:
            self.dismiss()

    def dismiss(self) -> None:
        """Record the dismissal, then fall back to one silent apply after a grace delay."""
        now = self._clock()
        self._close_prompt()
        with self._lock:
            self._state.last_applied_timestamp = now
            if self._grace_timer is not None:
                self._grace_timer.cancel()
            self._grace_timer = self._start_timer(self._config.dismiss_grace_seconds, self.apply_silently)
        self.version_store.record_applied(now)

    def _auto_dismiss(self) -> None:
        with self._lock:
            if self._prompt is None:
                return
        logger.debug("Update prompt timed out")
        self.dismiss()

    def _close_prompt(self) -> None:
        with self._lock:
            if self._prompt_timer is not None:
                self._prompt_timer.cancel()
                self._prompt_timer = None
            shown = self._prompt is not None
            self._prompt = None
        if shown:
            self._prompter.hide()

    def _start_timer(self, seconds: float, callback: Callable[[], object]) -> threading.Timer:
        timer = self._timer_factory(seconds, callback)
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timers(self) -> None:
        with self._lock:
            for timer in (self._prompt_timer, self._grace_timer):
                if timer is not None:
                    timer.cancel()
            self._prompt_timer = None
            self._grace_timer = None
