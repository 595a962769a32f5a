"""Plugin manifests and install records.

A manifest is a JSON file next to a plugin's source that names the plugin,
points at its entry file and optionally pins that file's sha256 digest:

    {
      "name": "weather",
      "version": "1.2.0",
      "entry": "weather_plugin.py",
      "dependencies": ["auth"],
      "integrity": {"algorithm": "sha256", "hash": "9f86d0..."}
    }
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_dispatch.errors import PluginLifecycleError

# Entry recorded for plugins registered in code rather than from a manifest
RUNTIME_ENTRY = "<runtime>"


class PluginIntegrity(BaseModel):
    """Expected digest of a plugin's entry file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    algorithm: Literal["sha256"] = "sha256"
    hash: str = Field(pattern=r"^[0-9a-fA-F]{64}$")


class PluginManifest(BaseModel):
    """Validated contents of a plugin manifest file.

    Args:
        name: Plugin name; must match the name of the plugin the entry defines.
        version: Plugin version.
        entry: Path of the plugin's Python file, relative to the manifest.
        attribute: Plugin class or instance in the entry module. Defaults
            to a module-level ``plugin``, else the module's only Plugin subclass.
        description: Free-form description.
        dependencies: Installed plugins to activate before this one.
        integrity: Optional checksum of the entry file.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    entry: str = Field(min_length=1)
    attribute: str | None = None
    description: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    integrity: PluginIntegrity | None = None


class InstallStatus(StrEnum):
    """Where an installed plugin is in its lifecycle."""

    INSTALLED = "installed"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"


@dataclass
class InstalledPlugin:
    """Install record kept by PluginManager for every known plugin.

    Args:
        manifest: The manifest, or one synthesized for runtime registrations.
        entry_path: Resolved entry file; None for runtime registrations.
        installed_at: When the plugin was installed or first registered (UTC).
        status: Current lifecycle status.
        checksum_verified: True when the entry matched the manifest's digest.
        activated_at: When the plugin was last loaded (UTC).
    """

    manifest: PluginManifest
    entry_path: Path | None
    installed_at: datetime
    status: InstallStatus = InstallStatus.INSTALLED
    checksum_verified: bool = False
    activated_at: datetime | None = None


def read_manifest(path: Path) -> PluginManifest:
    """Parse and validate a manifest file.

    Raises:
        PluginLifecycleError: If the file cannot be read or is not a valid manifest.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PluginLifecycleError(
            f"Cannot read plugin manifest {path}: {exc}", {"manifest": str(path)}
        ) from exc
    try:
        return PluginManifest.model_validate_json(raw)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise PluginLifecycleError(
            f"Invalid plugin manifest {path}", {"manifest": str(path), "errors": problems}
        ) from exc


def sha256_file(path: Path) -> str:
    with path.open("rb") as fh:
        return hashlib.file_digest(fh, "sha256").hexdigest()


def verify_integrity(manifest: PluginManifest, entry_path: Path) -> bool:
    """Check the entry file against the manifest's digest, if it has one.

    Returns:
        True if a digest was present and matched, False if there was none.

    Raises:
        PluginLifecycleError: If the digest does not match.
    """
    if manifest.integrity is None:
        return False
    actual = sha256_file(entry_path)
    expected = manifest.integrity.hash.lower()
    if actual != expected:
        raise PluginLifecycleError(
            f"Integrity check failed for plugin {manifest.name}: "
            f"expected {expected} but got {actual}",
            {"plugin": manifest.name, "expected": expected, "actual": actual},
        )
    return True
