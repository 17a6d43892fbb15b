"""Data models for versioned caching and update coordination."""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit, urlunsplit


class GenerationKind(str, Enum):
    """Kind of cache generation."""

    STATIC = "static"
    DYNAMIC = "dynamic"


class GenerationState(str, Enum):
    """Lifecycle of the cache manager's generations."""

    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class UpdateAction(str, Enum):
    """Outcome of an update policy decision."""

    NO_UPDATE = "no_update"
    APPLY_SILENTLY = "apply_silently"
    PROMPT_USER = "prompt_user"


class PromptChoice(str, Enum):
    """Actions offered by an update prompt."""

    UPDATE_NOW = "update_now"
    CLEAR_AND_UPDATE = "clear_and_update"
    LATER = "later"


DEFAULT_VERSION = "1.0.0"


@dataclass(frozen=True)
class VersionDescriptor:
    """A deployed version of the application.

    Attributes:
        version: Semantic version string (major.minor.patch).
        build: Opaque build identifier.
        timestamp: Creation time in epoch milliseconds.
        changelog: Human-readable notes, informational only.
    """

    version: str = DEFAULT_VERSION
    build: str = ""
    timestamp: int = 0
    changelog: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "VersionDescriptor":
        """Build a descriptor from its JSON representation.

        Raises:
            ValueError: If the data is not a well-formed descriptor.
        """
        if not isinstance(data, dict):
            raise ValueError("Version descriptor must be a JSON object")

        version = data.get("version", DEFAULT_VERSION)
        if not isinstance(version, str) or not version:
            raise ValueError(f"Invalid version: {version!r}")

        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int | float):
            raise ValueError(f"Invalid timestamp: {timestamp!r}")
        if isinstance(timestamp, float) and not math.isfinite(timestamp):
            raise ValueError(f"Invalid timestamp: {timestamp!r}")

        changelog = data.get("changelog") or []
        if not isinstance(changelog, list):
            raise ValueError("changelog must be a list")

        return cls(
            version=version,
            build=str(data.get("build", "")),
            timestamp=int(timestamp),
            changelog=tuple(str(line) for line in changelog),
        )

    def to_dict(self) -> dict:
        """Return the JSON representation."""
        return {
            "version": self.version,
            "build": self.build,
            "timestamp": self.timestamp,
            "changelog": list(self.changelog),
        }


@dataclass(frozen=True)
class CachedResponse:
    """A response payload as stored in (or served from) a cache generation."""

    url: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return ""

    def with_header(self, name: str, value: str) -> "CachedResponse":
        """Return a copy with one header added or replaced."""
        headers = {k: v for k, v in self.headers.items() if k.lower() != name.lower()}
        headers[name] = value
        return CachedResponse(url=self.url, status=self.status, headers=headers, body=self.body)


@dataclass(frozen=True)
class Request:
    """A resource request seen by fetch interception.

    Attributes:
        url: Absolute request URL, used verbatim as the cache key.
        method: HTTP method; only GET and HEAD are read-only.
        mode: "navigate" for page navigations, anything else otherwise.
        accept: Value of the Accept header.
    """

    url: str
    method: str = "GET"
    mode: str = "no-cors"
    accept: str = "*/*"

    @property
    def is_read_only(self) -> bool:
        return self.method.upper() in ("GET", "HEAD")

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"

    @property
    def accepts_html(self) -> bool:
        return "text/html" in self.accept.lower()

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def url_without_query(self) -> str:
        parts = urlsplit(self.url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


@dataclass(frozen=True)
class CacheGeneration:
    """A named cache bucket of one kind."""

    name: str
    kind: GenerationKind
    created_at: int = 0


@dataclass
class UpdateState:
    """Update bookkeeping for one foreground session.

    Attributes:
        last_applied_timestamp: Epoch ms of the last update applied or prompt dismissed.
        app_start_timestamp: Epoch ms when the session began (survives reloads).
        pending_update_available: A new generation was detected but not applied.
        is_applying_update: Guards against duplicate apply operations.
    """

    last_applied_timestamp: int = 0
    app_start_timestamp: int = 0
    pending_update_available: bool = False
    is_applying_update: bool = False


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
