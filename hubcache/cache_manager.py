"""Background cache manager: versioned generations, fetch interception, version checks.

Caching strategy:
- Static generation: the essential manifest, fetched eagerly and atomically on install
- Dynamic generation: any other successful GET, stored opportunistically
- Offline: navigations and HTML requests fall back to the offline page;
  query-independent shell pages fall back to their cached shell
"""

import logging
import queue
import sqlite3
import time
from collections.abc import Callable
from threading import Event, Lock, Thread

import requests

from . import storage
from .config import Config
from .messaging import Message, MessageChannel, MessageType
from .models import (
    CachedResponse,
    GenerationKind,
    GenerationState,
    Request,
    VersionDescriptor,
    now_ms,
)
from .policy import UpdatePolicy
from .storage import StorageError
from .version_store import VersionStore

logger = logging.getLogger(__name__)

GENERATION_SERIAL_KEY = "cache-generation-serial"
ACTIVE_STATIC_KEY = "active-static-generation"
ACTIVE_DYNAMIC_KEY = "active-dynamic-generation"

FROM_CACHE_HEADER = "X-From-Cache"

# Bodies are stored decoded, so transport and framing headers no longer apply.
UNCACHEABLE_HEADERS = frozenset(
    {
        "connection",
        "content-encoding",
        "content-length",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Served when even the configured offline page is not cached.
OFFLINE_FALLBACK_HTML = b"""<!DOCTYPE html><html><head><meta charset="utf-8"><title>Offline</title>
<style>body{font-family:sans-serif;display:flex;justify-content:center;align-items:center;height:100vh;margin:0}
div{text-align:center}p{opacity:0.7}</style></head>
<body><div><h1>You are offline</h1><p>Reconnect to browse the latest listings.</p>
<script>setTimeout(()=>location.reload(),5000)</script></div></body></html>"""


class NetworkError(Exception):
    """Raised when a network fetch fails and no cached fallback applies."""

    pass


class InstallError(Exception):
    """Raised when an essential resource cannot be fetched during install."""

    pass


class CacheManager:
    """Owns the cache generations and serves requests cache-first.

    Runs in its own background thread once started: drains the message
    channel and checks the version descriptor every poll interval.

    Example:
        manager = CacheManager(config, conn, channel)
        manager.start()
        # ... later ...
        manager.stop()
    """

    def __init__(
        self,
        config: Config,
        conn: sqlite3.Connection,
        channel: MessageChannel,
        session: requests.Session | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._config = config
        self._conn = conn
        self._channel = channel
        self._session = session or requests.Session()
        self._clock = clock
        self._policy = UpdatePolicy(config.updates)
        self._version_store = VersionStore(conn)

        self._state: GenerationState | None = None
        self._active: tuple[str, str] | None = None
        self._waiting: tuple[str, str] | None = None
        self._waiting_descriptor: VersionDescriptor | None = None
        self._superseded: set[str] = set()

        self._promote_lock = Lock()
        self._check_lock = Lock()
        self._stop_event = Event()
        self._thread: Thread | None = None

        self._load_active()

    @property
    def state(self) -> GenerationState | None:
        return self._state

    @property
    def active_generation(self) -> str | None:
        """Name of the active static generation, used as the version tag."""
        return self._active[0] if self._active else None

    @property
    def active_pair(self) -> tuple[str, str] | None:
        return self._active

    @property
    def waiting_generation(self) -> str | None:
        return self._waiting[0] if self._waiting else None

    def generation_state(self, name: str) -> GenerationState | None:
        """Lifecycle state of a generation known to this manager."""
        if self._active and name in self._active:
            return GenerationState.ACTIVE
        if self._waiting and name in self._waiting:
            return GenerationState.INSTALLED
        if name in self._superseded:
            return GenerationState.SUPERSEDED
        return None

    def _load_active(self) -> None:
        try:
            static = storage.kv_get(self._conn, ACTIVE_STATIC_KEY)
            dynamic = storage.kv_get(self._conn, ACTIVE_DYNAMIC_KEY)
            if static and dynamic and storage.has_bucket(self._conn, static):
                self._active = (static, dynamic)
                self._state = GenerationState.ACTIVE
        except StorageError as e:
            logger.warning("Failed to load active generation: %s", e)

    def _next_generation_names(self) -> tuple[str, str]:
        raw = storage.kv_get(self._conn, GENERATION_SERIAL_KEY)
        serial = (int(raw) if raw and raw.isdigit() else 0) + 1
        storage.kv_set(self._conn, GENERATION_SERIAL_KEY, str(serial))
        app = self._config.app.name
        return f"{app}-static-v{serial}", f"{app}-dynamic-v{serial}"

    def install(self) -> str:
        """Fetch the whole static manifest into a new waiting generation.

        Returns:
            Name of the new static generation.

        Raises:
            InstallError: If any essential resource cannot be fetched or
                stored. The previous generation stays active.
        """
        previous_state = self._state
        self._state = GenerationState.INSTALLING

        try:
            static, dynamic = self._next_generation_names()
            logger.info("Installing generation %s", static)

            responses: list[CachedResponse] = []
            for path in self._config.cache.essential_paths:
                url = self._config.resolve(path)
                try:
                    response = self._network_fetch(Request(url))
                except NetworkError as e:
                    raise InstallError(f"Failed to fetch essential resource {path}: {e}")
                if not response.ok:
                    raise InstallError(f"Essential resource {path} returned HTTP {response.status}")
                responses.append(response)

            storage.write_bucket(self._conn, static, GenerationKind.STATIC, responses)
        except (InstallError, StorageError) as e:
            self._state = previous_state
            logger.warning("Install failed, keeping %s: %s", self.active_generation or "no generation", e)
            if isinstance(e, InstallError):
                raise
            raise InstallError(str(e))

        with self._promote_lock:
            self._waiting = (static, dynamic)
        self._state = GenerationState.INSTALLED
        logger.info("Generation %s installed with %d resources", static, len(responses))
        return static

    def activate(self) -> str | None:
        """Promote the waiting generation and evict every other bucket.

        Idempotent: with nothing waiting this only returns the active
        generation's name.
        """
        with self._promote_lock:
            if self._waiting is None:
                return self.active_generation

            self._state = GenerationState.ACTIVATING
            static, dynamic = self._waiting

            try:
                deleted = storage.promote(
                    self._conn,
                    static,
                    dynamic,
                    {ACTIVE_STATIC_KEY: static, ACTIVE_DYNAMIC_KEY: dynamic},
                )
            except StorageError as e:
                logger.error("Activation of %s failed: %s", static, e)
                self._state = GenerationState.INSTALLED
                raise

            for name in deleted:
                logger.info("Deleted superseded cache %s", name)

            self._superseded = set(deleted)
            self._active = (static, dynamic)
            self._waiting = None
            self._waiting_descriptor = None
            self._state = GenerationState.ACTIVE
            logger.info("Generation %s is now active", static)
            return static

    def handle_fetch(self, request: Request) -> CachedResponse:
        """Serve a request: cache first, then network, then offline fallbacks.

        Raises:
            NetworkError: If the network fails and no fallback applies.
        """
        if not request.is_read_only:
            return self._network_fetch(request)

        cached = self.match(request.url)
        if cached is not None:
            logger.debug("Cache hit for %s", request.url)
            return cached

        try:
            response = self._network_fetch(request)
        except NetworkError as e:
            return self._offline_response(request, e)

        if response.ok and request.method.upper() == "GET":
            self._store_dynamic(request.url, response)
            if self._is_shell_page(request) and request.url != request.url_without_query:
                self._store_dynamic(request.url_without_query, response)
        return response

    def match(self, url: str) -> CachedResponse | None:
        """Exact lookup in the active static generation, then the dynamic one."""
        if self._active is None:
            return None
        for name in self._active:
            try:
                cached = storage.match(self._conn, name, url)
            except StorageError as e:
                logger.warning("Cache lookup in %s failed for %s: %s", name, url, e)
                continue
            if cached is not None:
                return cached
        return None

    def _offline_response(self, request: Request, error: NetworkError) -> CachedResponse:
        if self._is_shell_page(request):
            shell = self._shell_response(request.url_without_query)
            if shell is not None:
                return shell

        if request.is_navigation or request.accepts_html:
            offline_url = self._config.resolve(self._config.cache.offline_page)
            offline = self.match(offline_url)
            if offline is not None:
                return offline.with_header(FROM_CACHE_HEADER, "true")
            return CachedResponse(
                url=offline_url,
                status=200,
                headers={"Content-Type": "text/html; charset=utf-8", FROM_CACHE_HEADER: "true"},
                body=OFFLINE_FALLBACK_HTML,
            )

        raise error

    def _shell_response(self, shell_url: str) -> CachedResponse | None:
        cached = self.match(shell_url)
        if cached is not None:
            return cached.with_header(FROM_CACHE_HEADER, "true")

        try:
            response = self._network_fetch(Request(shell_url, mode="navigate", accept="text/html"))
        except NetworkError:
            return None
        if not response.ok:
            return None
        self._store_dynamic(shell_url, response)
        return response

    def _is_shell_page(self, request: Request) -> bool:
        return request.path in self._config.cache.shell_pages

    def _store_dynamic(self, url: str, response: CachedResponse) -> None:
        if self._active is None:
            return
        try:
            storage.put_entry(
                self._conn,
                self._active[1],
                CachedResponse(url=url, status=response.status, headers=dict(response.headers), body=response.body),
            )
        except StorageError as e:
            logger.warning("Failed to cache %s: %s", url, e)

    def _network_fetch(self, request: Request) -> CachedResponse:
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers={"Accept": request.accept},
                timeout=self._config.network.timeout_seconds,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Fetch failed for {request.url}: {e}")

        return CachedResponse(
            url=request.url,
            status=response.status_code,
            headers={k: v for k, v in response.headers.items() if k.lower() not in UNCACHEABLE_HEADERS},
            body=response.content,
        )

    def check_for_updates(self) -> VersionDescriptor | None:
        """Fetch the version descriptor and install a new generation if warranted.

        Re-entrant calls while a check is in flight return None immediately.

        Returns:
            The candidate descriptor that a waiting generation was built
            for, or None if there is nothing to update.
        """
        if not self._check_lock.acquire(blocking=False):
            logger.debug("Version check already in flight, skipping")
            return None

        try:
            self._ensure_active()

            candidate = self._fetch_version_descriptor()
            if candidate is None:
                return None

            if self._waiting is not None and candidate == self._waiting_descriptor:
                self._announce(candidate)
                return candidate

            applied = self._version_store.read()
            if applied.timestamp == 0:
                # Nothing applied yet: the generation just installed is the deployed one.
                self._version_store.write(candidate)
                return None

            if not self._policy.is_significant(candidate, applied):
                logger.debug("No update: deployed %s, applied %s", candidate.version, applied.version)
                return None

            logger.info("New version %s (build %s) detected", candidate.version, candidate.build)
            try:
                self.install()
            except InstallError:
                return None

            self._waiting_descriptor = candidate
            self._announce(candidate)
            return candidate
        finally:
            self._check_lock.release()

    def _fetch_version_descriptor(self) -> VersionDescriptor | None:
        url = self._config.resolve(self._config.updates.version_url)
        try:
            response = self._session.get(
                url,
                params={"t": self._clock()},
                headers={"Cache-Control": "no-cache"},
                timeout=self._config.network.timeout_seconds,
            )
            response.raise_for_status()
            return VersionDescriptor.from_dict(response.json())
        except requests.RequestException as e:
            logger.warning("Version check failed: %s", e)
        except ValueError as e:
            logger.warning("Invalid version descriptor at %s: %s", url, e)
        return None

    def _announce(self, candidate: VersionDescriptor) -> None:
        delivered = self._channel.broadcast(
            Message(
                MessageType.UPDATE_AVAILABLE,
                {"version": self.waiting_generation, "descriptor": candidate.to_dict()},
            )
        )
        logger.debug("Announced %s to %d session(s)", self.waiting_generation, delivered)

    def _ensure_active(self) -> None:
        """Install and activate right away when no active static generation exists.

        Covers the first start and recovery after all caches were cleared.
        """
        if self._active is not None:
            try:
                if storage.has_bucket(self._conn, self._active[0]):
                    return
            except StorageError as e:
                logger.warning("Failed to verify active generation: %s", e)
                return
            logger.warning("Active generation %s is gone, reinstalling", self._active[0])
            self._active = None

        try:
            self.install()
            static = self.activate()
        except (InstallError, StorageError):
            return

        self._channel.broadcast(Message(MessageType.SW_READY, {"version": static}))

    def handle_message(self, message: Message) -> None:
        """Handle one message from a foreground session."""
        if message.type == MessageType.SKIP_WAITING:
            try:
                static = self.activate()
                activated = True
            except StorageError:
                static = self.active_generation
                activated = False
            ready = Message(MessageType.SW_READY, {"version": static, "activated": activated})
            message.reply(ready)
            self._channel.broadcast(ready)

        elif message.type == MessageType.GET_VERSION:
            message.reply(Message(MessageType.VERSION, {"version": self.active_generation}))

        elif message.type == MessageType.CHECK_UPDATE:
            self.check_for_updates()

        else:
            logger.debug("Ignoring message %s", message.type.value)

    def start(self) -> None:
        """Start the background loop in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Cache manager already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="cache-manager")
        self._thread.start()
        logger.info(
            "Cache manager started (origin %s, polling every %ds)",
            self._config.app.origin,
            self._config.updates.poll_interval_seconds,
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the background loop gracefully."""
        if self._thread is None or not self._thread.is_alive():
            return

        logger.info("Stopping cache manager...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Cache manager thread did not stop within timeout")
        else:
            logger.info("Cache manager stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        """Main loop - runs in background thread."""
        logger.debug("Cache manager loop started")
        next_check = 0.0

        while not self._stop_event.is_set():
            if time.monotonic() >= next_check:
                self._safe_check()
                next_check = time.monotonic() + self._config.updates.poll_interval_seconds

            try:
                message = self._channel.inbox.get(timeout=1.0)
            except queue.Empty:
                continue

            try:
                self.handle_message(message)
            except Exception as e:
                logger.error("Failed to handle %s: %s", message.type.value, e)

        logger.debug("Cache manager loop exited")

    def _safe_check(self) -> None:
        try:
            self.check_for_updates()
        except Exception as e:
            logger.error("Version check crashed: %s", e)
