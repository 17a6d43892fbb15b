"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Minimum interval between background version checks in seconds.
# Lower values turn polling into a request storm against the origin.
MIN_POLL_INTERVAL = 10

DEFAULT_STATIC_MANIFEST = ("/", "/index.html", "/styles.css", "/app.js")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/hubcache/hubcache.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "hubcache" / "hubcache.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class AppConfig:
    """Identity of the cached application."""

    name: str = "hub"  # prefix for cache bucket names
    origin: str = "http://localhost:8000"

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("App name cannot be empty")
        if "-" in self.name:
            raise ConfigError(f"App name '{self.name}' must not contain '-'")
        if not self.origin.startswith(("http://", "https://")):
            raise ConfigError(f"Origin must start with http:// or https://, got '{self.origin}'")


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for cache storage and the static manifest."""

    db_path: str = DEFAULT_DB_PATH
    static_manifest: tuple[str, ...] = DEFAULT_STATIC_MANIFEST
    offline_page: str = "/offline.html"
    shell_pages: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.db_path:
            raise ConfigError("Cache db_path cannot be empty")
        if not self.offline_page.startswith("/"):
            raise ConfigError(f"Offline page must be an absolute path, got '{self.offline_page}'")
        for path in self.static_manifest:
            if not path.startswith("/"):
                raise ConfigError(f"Static manifest entry must be an absolute path, got '{path}'")
        for path in self.shell_pages:
            if not path.startswith("/"):
                raise ConfigError(f"Shell page must be an absolute path, got '{path}'")
        if len(set(self.static_manifest)) != len(self.static_manifest):
            raise ConfigError("Static manifest contains duplicate entries")

    @property
    def essential_paths(self) -> tuple[str, ...]:
        """Manifest entries plus the offline fallback page."""
        if self.offline_page in self.static_manifest:
            return self.static_manifest
        return self.static_manifest + (self.offline_page,)


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for network fetches."""

    timeout_seconds: float | None = None  # None leaves requests unbounded

    def __post_init__(self) -> None:
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigError(f"Network timeout must be positive (got {self.timeout_seconds})")


@dataclass(frozen=True)
class UpdateConfig:
    """Timing policy for version checks, prompts and silent updates."""

    version_url: str = "/version.json"
    poll_interval_seconds: int = 300
    significance_window_seconds: float = 60
    min_session_age_seconds: float = 120
    silent_cooldown_seconds: float = 120
    prompt_cooldown_seconds: float = 3600
    prompt_timeout_seconds: float = 10
    dismiss_grace_seconds: float = 5
    ack_timeout_seconds: float = 10

    def __post_init__(self) -> None:
        if not self.version_url.startswith("/"):
            raise ConfigError(f"Version URL must be an absolute path, got '{self.version_url}'")
        if self.poll_interval_seconds < MIN_POLL_INTERVAL:
            raise ConfigError(
                f"Poll interval must be at least {MIN_POLL_INTERVAL} seconds "
                f"(got {self.poll_interval_seconds})"
            )
        for name in (
            "significance_window_seconds",
            "min_session_age_seconds",
            "silent_cooldown_seconds",
            "prompt_cooldown_seconds",
            "prompt_timeout_seconds",
            "dismiss_grace_seconds",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be non-negative (got {getattr(self, name)})")
        if self.ack_timeout_seconds <= 0:
            raise ConfigError(f"ack_timeout_seconds must be positive (got {self.ack_timeout_seconds})")
        if self.prompt_cooldown_seconds < self.silent_cooldown_seconds:
            raise ConfigError("prompt_cooldown_seconds must not be shorter than silent_cooldown_seconds")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    app: AppConfig = field(default_factory=AppConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    updates: UpdateConfig = field(default_factory=UpdateConfig)

    def resolve(self, path: str) -> str:
        """Return the absolute URL of a path on the configured origin."""
        return self.app.origin.rstrip("/") + path


def _section(data: dict, name: str) -> dict:
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return section


def _parse_paths(value: object, name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"'{name}' must be a list")
    return tuple(str(item) for item in value)


def _parse_app_config(data: dict) -> AppConfig:
    """Parse app configuration section."""
    return AppConfig(
        name=str(data.get("name", "hub")),
        origin=str(data.get("origin", "http://localhost:8000")),
    )


def _parse_cache_config(data: dict) -> CacheConfig:
    """Parse cache configuration section."""
    manifest = data.get("static_manifest")
    shell_pages = data.get("shell_pages")

    return CacheConfig(
        db_path=os.path.expanduser(str(data.get("db_path", DEFAULT_DB_PATH))),
        static_manifest=(
            _parse_paths(manifest, "cache.static_manifest") if manifest is not None else DEFAULT_STATIC_MANIFEST
        ),
        offline_page=str(data.get("offline_page", "/offline.html")),
        shell_pages=_parse_paths(shell_pages, "cache.shell_pages") if shell_pages is not None else (),
    )


def _parse_network_config(data: dict) -> NetworkConfig:
    """Parse network configuration section."""
    timeout = data.get("timeout_seconds")
    return NetworkConfig(timeout_seconds=float(timeout) if timeout is not None else None)


def _parse_update_config(data: dict) -> UpdateConfig:
    """Parse updates configuration section."""
    defaults = UpdateConfig()
    try:
        return UpdateConfig(
            version_url=str(data.get("version_url", defaults.version_url)),
            poll_interval_seconds=int(data.get("poll_interval_seconds", defaults.poll_interval_seconds)),
            significance_window_seconds=float(
                data.get("significance_window_seconds", defaults.significance_window_seconds)
            ),
            min_session_age_seconds=float(data.get("min_session_age_seconds", defaults.min_session_age_seconds)),
            silent_cooldown_seconds=float(data.get("silent_cooldown_seconds", defaults.silent_cooldown_seconds)),
            prompt_cooldown_seconds=float(data.get("prompt_cooldown_seconds", defaults.prompt_cooldown_seconds)),
            prompt_timeout_seconds=float(data.get("prompt_timeout_seconds", defaults.prompt_timeout_seconds)),
            dismiss_grace_seconds=float(data.get("dismiss_grace_seconds", defaults.dismiss_grace_seconds)),
            ack_timeout_seconds=float(data.get("ack_timeout_seconds", defaults.ack_timeout_seconds)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in 'updates' section: {e}")


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - HUBCACHE_ORIGIN: Override app.origin
    - HUBCACHE_DB_PATH: Override cache.db_path
    - HUBCACHE_POLL_INTERVAL: Override updates.poll_interval_seconds
    - HUBCACHE_PROMPT_TIMEOUT: Override updates.prompt_timeout_seconds
    """
    for section in ("app", "cache", "updates"):
        if config_data.get(section) is None:
            config_data[section] = {}
        elif not isinstance(config_data[section], dict):
            raise ConfigError(f"'{section}' section must be a dictionary")

    origin = os.environ.get("HUBCACHE_ORIGIN")
    if origin is not None:
        config_data["app"]["origin"] = origin

    db_path = os.environ.get("HUBCACHE_DB_PATH")
    if db_path is not None:
        config_data["cache"]["db_path"] = db_path

    poll_interval = os.environ.get("HUBCACHE_POLL_INTERVAL")
    if poll_interval is not None:
        config_data["updates"]["poll_interval_seconds"] = int(poll_interval)

    prompt_timeout = os.environ.get("HUBCACHE_PROMPT_TIMEOUT")
    if prompt_timeout is not None:
        config_data["updates"]["prompt_timeout_seconds"] = float(prompt_timeout)

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    return Config(
        app=_parse_app_config(_section(data, "app")),
        cache=_parse_cache_config(_section(data, "cache")),
        network=_parse_network_config(_section(data, "network")),
        updates=_parse_update_config(_section(data, "updates")),
    )
