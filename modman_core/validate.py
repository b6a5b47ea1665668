"""Validation pass: recompute per-mod error and warning annotations."""

from collections import defaultdict
from collections.abc import Iterable, Mapping

from .manifest import ModManifest
from .models import SCAN_ERROR_KINDS, ErrorKind, WarningKind
from .version import Version


def validate_mods(
    entries: Iterable[ModManifest],
    remote: Mapping[str, ModManifest] | None = None,
    loader_version: Version | None = None,
) -> list[ModManifest]:
    """
    Annotate local entries with errors and warnings.

    Pure: returns annotated copies and leaves the inputs untouched, so running
    it twice on the same inputs yields the same annotations.

    Args:
        entries: Local entries in scan order (invalid and duplicate entries included)
        remote: Remote mods by identity, used for the outdated warning
        loader_version: Installed loader version, used for minLoaderVersion checks
    """
    entries = list(entries)

    # First-seen valid entry per identity, matching LocalDatabase.get()
    by_identity: dict[str, ModManifest] = {}
    for entry in entries:
        if entry.is_valid and entry.identity not in by_identity:
            by_identity[entry.identity] = entry

    enabled_ids = {identity for identity, m in by_identity.items() if m.enabled}

    # identity -> enabled mods that declare a conflict with it
    conflicted_by: dict[str, set[str]] = defaultdict(set)
    for identity in enabled_ids:
        for other in by_identity[identity].conflicts:
            conflicted_by[other].add(identity)

    result = []
    for entry in entries:
        errors: dict[ErrorKind, tuple[str, ...]] = {
            kind: subjects for kind, subjects in entry.scan_errors.items() if kind in SCAN_ERROR_KINDS
        }
        warnings: dict[WarningKind, tuple[str, ...]] = {}

        if entry.is_valid:
            missing = tuple(dep for dep in entry.dependencies if dep not in by_identity)
            if missing:
                errors[ErrorKind.MISSING_DEPENDENCY] = missing

            if entry.enabled:
                disabled = tuple(
                    dep for dep in entry.dependencies
                    if dep in by_identity and not by_identity[dep].enabled
                )
                if disabled:
                    errors[ErrorKind.DISABLED_DEPENDENCY] = disabled

                conflicting = {c for c in entry.conflicts if c in enabled_ids}
                conflicting |= conflicted_by.get(entry.identity, set())
                conflicting.discard(entry.identity)
                if conflicting:
                    errors[ErrorKind.CONFLICT_ACTIVE] = tuple(sorted(conflicting))

            if (
                loader_version is not None
                and entry.min_loader_version is not None
                and entry.min_loader_version > loader_version
            ):
                errors[ErrorKind.UNSUPPORTED_LOADER] = (str(entry.min_loader_version),)

            remote_mod = remote.get(entry.identity) if remote else None
            if remote_mod is not None and remote_mod.version > entry.version:
                warnings[WarningKind.OUTDATED] = (str(remote_mod.version),)

        result.append(entry.copy(errors=errors, warnings=warnings))
    return result


def has_issues(entries: Iterable[ModManifest]) -> bool:
    """True when any enabled or broken entry carries an error."""
    return any(entry.errors and (entry.enabled or not entry.is_valid) for entry in entries)
