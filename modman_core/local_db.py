"""Local database built by scanning the managed mods directory."""

import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path

from .errors import ModIOError, ModNotFoundError, ParseError
from .manifest import MANIFEST_FILENAME, ModManifest, read_manifest_file
from .models import ErrorKind
from .state import ManagerState

logger = logging.getLogger(__name__)

Validator = Callable[[list[ModManifest]], list[ModManifest]]


class _LocalSnapshot:
    """Immutable view of the installed mods at one point in time."""

    __slots__ = ("entries", "index")

    def __init__(self, entries: list[ModManifest]):
        self.entries: tuple[ModManifest, ...] = tuple(entries)
        self.index: dict[str, ModManifest] = {}
        for entry in self.entries:
            if entry.is_valid and entry.identity not in self.index:
                self.index[entry.identity] = entry


def _mark_duplicates(entries: list[ModManifest]) -> list[ModManifest]:
    """Flag every valid entry whose identity was already seen earlier in the list."""
    first_seen: dict[str, ModManifest] = {}
    marked = []
    for entry in entries:
        scan_errors = {k: v for k, v in entry.scan_errors.items() if k != ErrorKind.DUPLICATE}
        if entry.is_valid:
            first = first_seen.setdefault(entry.identity, entry)
            if first is not entry:
                scan_errors[ErrorKind.DUPLICATE] = (str(first.install_path or first.identity),)
        if scan_errors != entry.scan_errors:
            entry = entry.copy(scan_errors=scan_errors)
        marked.append(entry)
    return marked


class LocalDatabase:
    """
    Installed mods, keyed by identity.

    Readers always see a complete snapshot: every mutation builds a new
    snapshot and swaps the reference under the writer lock.
    """

    def __init__(
        self,
        mods_dir: Path,
        state: ManagerState,
        validator: Validator | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.mods_dir = Path(mods_dir)
        self.state = state
        self.validator = validator
        self.on_change = on_change
        self._snapshot = _LocalSnapshot([])
        self._write_lock = threading.RLock()

    # -- reads --

    def get(self, identity: str) -> ModManifest | None:
        """First-seen valid entry for an identity."""
        return self._snapshot.index.get(identity)

    def all(self) -> list[ModManifest]:
        """Every entry in scan order, broken and duplicate ones included."""
        return list(self._snapshot.entries)

    def valid(self) -> list[ModManifest]:
        return list(self._snapshot.index.values())

    def enabled(self) -> list[ModManifest]:
        return [m for m in self._snapshot.index.values() if m.enabled]

    def get_by_path(self, path: Path) -> ModManifest | None:
        target = Path(path).resolve()
        for entry in self._snapshot.entries:
            if entry.install_path and entry.install_path.resolve() == target:
                return entry
        return None

    def dependents_of(self, identity: str, enabled_only: bool = True) -> list[str]:
        """Identities of local mods that require the given identity."""
        return sorted(
            m.identity
            for m in self._snapshot.index.values()
            if identity in m.dependencies and (m.enabled or not enabled_only)
        )

    def __contains__(self, identity: str) -> bool:
        return identity in self._snapshot.index

    def __iter__(self) -> Iterator[ModManifest]:
        return iter(self._snapshot.entries)

    def __len__(self) -> int:
        return len(self._snapshot.entries)

    # -- writes --

    def refresh(self) -> None:
        """Rescan the mods directory and replace the whole snapshot."""
        entries = self._scan()
        with self._write_lock:
            self._swap(entries)
        logger.info("Scanned %d local mods in %s", len(entries), self.mods_dir)

    def revalidate(self) -> None:
        """Re-run the validation pass over the current entries."""
        with self._write_lock:
            self._swap(list(self._snapshot.entries))

    def register(self, manifest: ModManifest, enabled: bool) -> ModManifest:
        """Add or replace the entry for an installed mod and persist its flag."""
        entry = manifest.copy(
            enabled=enabled,
            download_url=None,
            file_size=0,
            download_count=0,
            prerelease=None,
            scan_errors={},
            errors={},
            warnings={},
        )
        with self._write_lock:
            entries = list(self._snapshot.entries)
            for i, existing in enumerate(entries):
                if existing.identity == entry.identity and existing.install_path == entry.install_path:
                    entries[i] = entry
                    break
            else:
                current = self._snapshot.index.get(entry.identity)
                if current is not None:
                    entries[entries.index(current)] = entry
                else:
                    entries.append(entry)

            self.state.record_install(entry.identity, str(entry.version), enabled)
            self.state.save()
            self._swap(entries)
        return self.get(entry.identity) or entry

    def unregister(self, identity: str, path: Path | None = None) -> None:
        """Drop the entry for an identity (or for a specific directory)."""
        with self._write_lock:
            if path is not None:
                target = self.get_by_path(path)
            else:
                target = self._snapshot.index.get(identity)
            if target is None:
                raise ModNotFoundError(identity)

            entries = [e for e in self._snapshot.entries if e is not target]
            if not any(e.identity == target.identity and e.is_valid for e in entries):
                self.state.remove_mod(target.identity)
                self.state.save()
            self._swap(entries)

    def set_enabled(self, identity: str, enabled: bool) -> None:
        """Set one mod's enabled flag. Does not touch dependencies or dependents."""
        self.set_enabled_many({identity: enabled})

    def set_enabled_many(self, changes: Mapping[str, bool]) -> None:
        """Apply several enabled flags in one pass, then validate once."""
        with self._write_lock:
            for identity in changes:
                if identity not in self._snapshot.index:
                    raise ModNotFoundError(identity)

            entries = [
                e.copy(enabled=changes[e.identity]) if e.is_valid and e.identity in changes else e
                for e in self._snapshot.entries
            ]
            for identity, enabled in changes.items():
                self.state.set_enabled(identity, enabled)
            self.state.save()
            self._swap(entries)

    # -- internal helpers --

    def _scan(self) -> list[ModManifest]:
        if not self.mods_dir.exists():
            logger.info("Mods directory %s does not exist yet", self.mods_dir)
            return []

        try:
            children = sorted(
                p for p in self.mods_dir.iterdir()
                if p.is_dir() and not p.name.startswith(".")
            )
        except OSError as e:
            raise ModIOError(f"Could not scan mods directory: {e}", self.mods_dir)

        entries: list[ModManifest] = []
        for child in children:
            manifest_path = child / MANIFEST_FILENAME
            if not manifest_path.is_file():
                logger.debug("Skipping %s: no %s", child, MANIFEST_FILENAME)
                continue
            try:
                manifest = read_manifest_file(manifest_path)
            except ParseError as e:
                logger.warning("Invalid manifest in %s: %s", child, e)
                entries.append(
                    ModManifest(
                        identity=child.name,
                        name=child.name,
                        author="",
                        install_path=child,
                        scan_errors={ErrorKind.INVALID_MANIFEST: (str(e),)},
                    )
                )
                continue

            manifest.install_path = child
            manifest.enabled = self.state.is_enabled(manifest.identity)
            entries.append(manifest)
        return entries

    def _swap(self, entries: list[ModManifest]) -> None:
        entries = _mark_duplicates(entries)
        if self.validator is not None:
            entries = self.validator(entries)
        self._snapshot = _LocalSnapshot(entries)
        if self.on_change is not None:
            self.on_change()
