"""Parse mod manifests and registry entries into ModManifest."""

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ParseError
from .models import ErrorKind, WarningKind
from .version import UNKNOWN_VERSION, Version

MANIFEST_FILENAME = "manifest.json"


@dataclass(frozen=True)
class PrereleaseInfo:
    """Prerelease build advertised by the registry for a mod."""

    version: Version
    download_url: str


@dataclass
class ModManifest:
    """Declared metadata for one mod, plus local or remote fields."""

    identity: str
    name: str
    author: str
    version: Version = UNKNOWN_VERSION
    dependencies: list[str] = field(default_factory=list)
    dependency_versions: dict[str, Version] = field(default_factory=dict)
    conflicts: list[str] = field(default_factory=list)
    min_loader_version: Version | None = None
    required: bool = False
    description: str = ""

    # Local only
    enabled: bool = False
    install_path: Path | None = None

    # Remote only
    download_url: str | None = None
    file_size: int = 0
    download_count: int = 0
    prerelease: PrereleaseInfo | None = None

    # Annotations: kind -> identities involved
    scan_errors: dict[ErrorKind, tuple[str, ...]] = field(default_factory=dict)
    errors: dict[ErrorKind, tuple[str, ...]] = field(default_factory=dict)
    warnings: dict[WarningKind, tuple[str, ...]] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return ErrorKind.INVALID_MANIFEST not in self.scan_errors

    def copy(self, **changes: Any) -> "ModManifest":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for callers that present or export mods."""
        return {
            "identity": self.identity,
            "name": self.name,
            "author": self.author,
            "version": str(self.version),
            "dependencies": list(self.dependencies),
            "conflicts": list(self.conflicts),
            "minLoaderVersion": str(self.min_loader_version) if self.min_loader_version else None,
            "required": self.required,
            "enabled": self.enabled,
            "installPath": str(self.install_path) if self.install_path else None,
            "downloadUrl": self.download_url,
            "fileSize": self.file_size,
            "errors": {k.value: list(v) for k, v in self.errors.items()},
            "warnings": {k.value: list(v) for k, v in self.warnings.items()},
        }


def _require_str(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ParseError(f"Field '{key}' must be a non-empty string")
        return value.strip()
    raise ParseError(f"Missing required field '{keys[0]}'")


def _optional_str(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ParseError(f"Field '{key}' must be a string")
    return value


def _parse_version(value: Any, key: str) -> Version:
    if value is None:
        return UNKNOWN_VERSION
    # Some authors write bare numbers ("version": 2)
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ParseError(f"Field '{key}' must be a version string")
    return Version.parse(str(value))


def _parse_identity_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ParseError(f"Field '{key}' must be a list of identities")
    return [v.strip() for v in value if v.strip()]


def _parse_dependencies(data: dict[str, Any]) -> tuple[list[str], dict[str, Version]]:
    value = data.get("dependencies")
    if value is None:
        return [], {}
    if not isinstance(value, list):
        raise ParseError("Field 'dependencies' must be a list")

    identities: list[str] = []
    min_versions: dict[str, Version] = {}
    for entry in value:
        if isinstance(entry, str):
            identity = entry.strip()
        elif isinstance(entry, dict):
            identity = _require_str(entry, "identity", "uniqueName")
            if entry.get("minVersion") is not None:
                min_versions[identity] = _parse_version(entry["minVersion"], "minVersion")
        else:
            raise ParseError(f"Invalid dependency entry: {entry!r}")
        if identity and identity not in identities:
            identities.append(identity)
    return identities, min_versions


def parse_manifest(data: Any) -> ModManifest:
    """
    Parse a manifest document into a ModManifest.

    Unknown keys are ignored. Raises ParseError when the document is not an
    object, the identity is missing, or a known field has the wrong shape.
    """
    if not isinstance(data, dict):
        raise ParseError("Manifest must be a JSON object")

    identity = _require_str(data, "identity", "uniqueName")
    dependencies, dependency_versions = _parse_dependencies(data)
    min_loader = data.get("minLoaderVersion")

    return ModManifest(
        identity=identity,
        name=_optional_str(data, "name", identity) or identity,
        author=_optional_str(data, "author"),
        version=_parse_version(data.get("version"), "version"),
        dependencies=dependencies,
        dependency_versions=dependency_versions,
        conflicts=_parse_identity_list(data, "conflicts"),
        min_loader_version=_parse_version(min_loader, "minLoaderVersion") if min_loader is not None else None,
        description=_optional_str(data, "description"),
    )


def parse_registry_entry(data: Any) -> ModManifest:
    """Parse one entry of the registry document (manifest fields + remote fields)."""
    manifest = parse_manifest(data)

    file_size = data.get("fileSize", 0) or 0
    download_count = data.get("downloadCount", 0) or 0
    if not isinstance(file_size, int) or not isinstance(download_count, int):
        raise ParseError(f"Numeric fields of {manifest.identity} must be integers")

    required = data.get("required", False)
    if not isinstance(required, bool):
        raise ParseError(f"Field 'required' of {manifest.identity} must be a boolean")

    prerelease = None
    raw_pre = data.get("prerelease")
    if raw_pre is not None:
        if not isinstance(raw_pre, dict):
            raise ParseError(f"Field 'prerelease' of {manifest.identity} must be an object")
        prerelease = PrereleaseInfo(
            version=_parse_version(raw_pre.get("version"), "prerelease.version"),
            download_url=_require_str(raw_pre, "downloadUrl"),
        )

    manifest.download_url = _require_str(data, "downloadUrl")
    manifest.file_size = file_size
    manifest.download_count = download_count
    manifest.required = required
    manifest.prerelease = prerelease
    return manifest


def read_manifest_file(path: Path) -> ModManifest:
    """Read and parse a manifest.json file.

    Raises ParseError for unreadable or malformed files.
    """
    try:
        # utf-8-sig: manifests written by Windows editors often carry a BOM
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in {path}: {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Could not read {path}: {e}")
    return parse_manifest(data)


def find_manifest(root: Path) -> Path | None:
    """Find the shallowest manifest.json under root (archives may nest a folder)."""
    candidates = sorted(
        root.rglob(MANIFEST_FILENAME),
        key=lambda p: (len(p.relative_to(root).parts), str(p)),
    )
    return candidates[0] if candidates else None
