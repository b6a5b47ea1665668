"""Version tokens for mods and the loader.

Mod authors do not follow semver consistently, so parsing is lenient:
anything that is not a dot-separated numeric prefix (optionally followed by a
suffix) becomes an *unknown* version, which sorts below every known one.
"""

import re
from dataclasses import dataclass, field
from functools import total_ordering

VERSION_RE = re.compile(
    r"^[vV]?(?P<release>\d+(?:\.\d+)*)"
    r"(?:[-+._]?(?P<suffix>[0-9A-Za-z][0-9A-Za-z.+_-]*))?$"
)


def _suffix_key(suffix: tuple[str, ...]) -> tuple:
    # Numeric identifiers sort before alphanumeric ones
    parts: list[tuple[int, int | str]] = []
    for ident in suffix:
        if ident.isdigit():
            parts.append((0, int(ident)))
        else:
            parts.append((1, ident.lower()))
    return tuple(parts)


@total_ordering
@dataclass(frozen=True)
class Version:
    """A comparable version token.

    ``release`` is ``None`` for unknown versions. Trailing zero segments are
    insignificant, so ``1.2`` and ``1.2.0`` compare equal.
    """

    raw: str
    release: tuple[int, ...] | None = None
    suffix: tuple[str, ...] = field(default=())

    @classmethod
    def parse(cls, raw: str | None) -> "Version":
        if raw is None:
            return cls(raw="")
        text = str(raw).strip()
        match = VERSION_RE.match(text)
        if not match:
            return cls(raw=text)

        release = tuple(int(part) for part in match.group("release").split("."))
        suffix_text = match.group("suffix") or ""
        suffix = tuple(p for p in re.split(r"[.+_-]", suffix_text) if p)
        return cls(raw=text, release=release, suffix=suffix)

    @property
    def is_known(self) -> bool:
        return self.release is not None

    @property
    def is_prerelease(self) -> bool:
        return bool(self.suffix)

    def _normalized_release(self) -> tuple[int, ...]:
        release = list(self.release or ())
        while release and release[-1] == 0:
            release.pop()
        return tuple(release)

    def _cmp_key(self) -> tuple:
        if self.release is None:
            return (0, self.raw)
        release_flag = 0 if self.suffix else 1
        return (1, self._normalized_release(), release_flag, _suffix_key(self.suffix))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._cmp_key() == other._cmp_key()

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._cmp_key() < other._cmp_key()

    def __hash__(self) -> int:
        return hash(self._cmp_key())

    def __str__(self) -> str:
        return self.raw if self.raw else "unknown"


UNKNOWN_VERSION = Version(raw="")
