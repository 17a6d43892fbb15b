"""Deployment helpers for the published version descriptor file."""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from .models import VersionDescriptor
from .policy import parse_version

logger = logging.getLogger(__name__)


class DeployError(Exception):
    """Raised when the version descriptor file cannot be updated."""

    pass


def _build_id(moment: datetime) -> str:
    """Build identifier from a timestamp, e.g. "2024-01-15-09:30:00"."""
    return moment.strftime("%Y-%m-%dT%H:%M:%S").replace("T", "-")


def read_descriptor(path: Path) -> VersionDescriptor:
    """Read the descriptor file, or return the zero-value descriptor if absent."""
    if not path.exists():
        return VersionDescriptor()
    try:
        return VersionDescriptor.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as e:
        raise DeployError(f"Failed to read {path}: {e}")


def write_descriptor(path: Path, descriptor: VersionDescriptor) -> None:
    try:
        path.write_text(json.dumps(descriptor.to_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise DeployError(f"Failed to write {path}: {e}")


def bump_version(path: Path, notes: list[str] | None = None, moment: datetime | None = None) -> VersionDescriptor:
    """Increment the patch version and stamp a new build.

    Args:
        path: The version descriptor JSON file.
        notes: Changelog lines; a "Deployed at" line is always appended.
        moment: Deployment time, defaults to now.

    Returns:
        The descriptor that was written.
    """
    current = read_descriptor(path)
    parsed = parse_version(current.version)
    if parsed is None:
        raise DeployError(f"Cannot bump non-numeric version '{current.version}'")

    major, minor, patch = parsed
    moment = moment or datetime.now(UTC)
    descriptor = VersionDescriptor(
        version=f"{major}.{minor}.{patch + 1}",
        build=_build_id(moment),
        timestamp=int(moment.timestamp() * 1000),
        changelog=tuple(notes or ()) + (f"Deployed at {moment.strftime('%Y-%m-%d %H:%M:%S')} UTC",),
    )
    write_descriptor(path, descriptor)
    logger.info("Version updated to %s (build %s)", descriptor.version, descriptor.build)
    return descriptor


def touch_version(path: Path, moment: datetime | None = None) -> VersionDescriptor:
    """Refresh timestamp and build without changing the version.

    Clients compare versions first, so a re-stamped descriptor never
    triggers an update on its own.
    """
    current = read_descriptor(path)
    moment = moment or datetime.now(UTC)
    descriptor = VersionDescriptor(
        version=current.version,
        build=_build_id(moment),
        timestamp=int(moment.timestamp() * 1000),
        changelog=current.changelog,
    )
    write_descriptor(path, descriptor)
    logger.info("Version %s re-stamped (build %s)", descriptor.version, descriptor.build)
    return descriptor
