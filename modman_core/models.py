"""Annotation kinds attached to mods, plans and install outcomes."""

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_MANIFEST = "invalid_manifest"
    DUPLICATE = "duplicate"
    MISSING_DEPENDENCY = "missing_dependency"
    DISABLED_DEPENDENCY = "disabled_dependency"
    CONFLICT_ACTIVE = "conflict_active"
    CONFLICT_DETECTED = "conflict_detected"
    VERSION_MISMATCH = "version_mismatch"
    UNSUPPORTED_LOADER = "unsupported_loader"
    NOT_FOUND = "not_found"
    REQUIRED_MOD = "required_mod"
    NETWORK = "network"
    PARSE = "parse"
    IO = "io"
    CORRUPT_ARCHIVE = "corrupt_archive"
    IDENTITY_MISMATCH = "identity_mismatch"
    BUSY = "busy"
    CANCELLED = "cancelled"


class WarningKind(str, Enum):
    OUTDATED = "outdated"
    DEPENDENCY_CYCLE = "dependency_cycle"
    DEPENDENTS_AFFECTED = "dependents_affected"


# Kinds produced while scanning the mods directory; the validation pass
# carries these over instead of recomputing them.
SCAN_ERROR_KINDS = frozenset({ErrorKind.INVALID_MANIFEST, ErrorKind.DUPLICATE})
