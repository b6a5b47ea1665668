"""Installation pipeline: download, verify, extract and register mods."""

import logging
import re
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from .downloader import Downloader
from .errors import (
    BusyError,
    ModIOError,
    ModManagerError,
    ModNotFoundError,
    NetworkError,
    OperationCancelled,
    ParseError,
    ResolutionError,
)
from .events import INSTALL_COMPLETE, INSTALL_PROGRESS, EventEmitter
from .extractor import ExtractionError, extract_archive, verify_archive
from .local_db import LocalDatabase
from .manifest import ModManifest, find_manifest, read_manifest_file
from .models import ErrorKind
from .resolver import PlanAction, PlanStep, ResolutionPlan
from .state import DEFAULT_MAX_WORKERS

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".staging"
UNSAFE_NAME_RE = re.compile(r"[\\/:*?\"<>|\s]+")


class IdentityMismatchError(ParseError):
    """Raised when an archive's manifest declares a different identity than planned."""

    pass


class InstallPhase(str, Enum):
    QUEUED = "queued"
    DOWNLOAD = "download"
    VERIFY = "verify"
    EXTRACT = "extract"
    REGISTER = "register"
    DONE = "done"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    INSTALLED = "installed"
    UPDATED = "updated"
    ALREADY_SATISFIED = "already_satisfied"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class InstallRecord:
    """Transient state of one in-flight install."""

    identity: str
    source: ModManifest | None
    staging_dir: Path | None = None
    archive_path: Path | None = None
    target_dir: Path | None = None
    phase: InstallPhase = InstallPhase.QUEUED


@dataclass
class InstallOutcome:
    identity: str
    status: OutcomeStatus
    error_kind: ErrorKind | None = None
    message: str = ""
    version: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (
            OutcomeStatus.INSTALLED,
            OutcomeStatus.UPDATED,
            OutcomeStatus.ALREADY_SATISFIED,
        )


@dataclass
class InstallReport:
    """Per-identity outcomes of one plan, in plan order."""

    target: str
    outcomes: list[InstallOutcome] = field(default_factory=list)

    def get(self, identity: str) -> InstallOutcome | None:
        for outcome in self.outcomes:
            if outcome.identity == identity:
                return outcome
        return None

    @property
    def succeeded(self) -> list[InstallOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[InstallOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


def safe_dirname(identity: str) -> str:
    """Directory name for a mod identity (author/name -> author.name)."""
    name = UNSAFE_NAME_RE.sub(".", identity).strip(".")
    return name or "mod"


def _archive_filename(url: str) -> str:
    name = PurePosixPath(urlparse(url).path).name
    return name or "archive.zip"


def _check_cancel(cancel_event: threading.Event | None, identity: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"Install of {identity} cancelled")


class InstallPipeline:
    """
    Executes resolution plans against the mods directory.

    Entries are processed independently on a bounded worker pool; a failure
    for one identity is recorded in the report and never stops the others.
    At most one operation per identity runs at any time.
    """

    def __init__(
        self,
        local_db: LocalDatabase,
        downloader: Downloader | None = None,
        events: EventEmitter | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.local = local_db
        self.downloader = downloader or Downloader()
        self.events = events or EventEmitter()
        self.max_workers = max(1, max_workers)
        self._busy: set[str] = set()
        self._busy_lock = threading.Lock()
        self._target_lock = threading.Lock()

    @property
    def mods_dir(self) -> Path:
        return self.local.mods_dir

    @property
    def staging_root(self) -> Path:
        return self.mods_dir / STAGING_DIRNAME

    # -- busy tracking --

    def is_busy(self, identity: str) -> bool:
        with self._busy_lock:
            return identity in self._busy

    def busy(self) -> list[str]:
        with self._busy_lock:
            return sorted(self._busy)

    @contextmanager
    def claim(self, identity: str):
        """Hold the per-identity slot; raises BusyError if already taken."""
        with self._busy_lock:
            if identity in self._busy:
                raise BusyError(identity)
            self._busy.add(identity)
        try:
            yield
        finally:
            with self._busy_lock:
                self._busy.discard(identity)

    # -- install / update --

    def execute(
        self,
        plan: ResolutionPlan,
        cancel_event: threading.Event | None = None,
        force: bool = False,
    ) -> InstallReport:
        """
        Execute the install/update steps of a plan.

        Raises ResolutionError when the plan carries blocking errors, unless
        force is set (then whatever the plan still lists is installed).
        """
        if not plan.executable and not force:
            raise ResolutionError(plan)

        steps = [
            s for s in plan.steps
            if s.action in (PlanAction.INSTALL, PlanAction.UPDATE, PlanAction.SATISFIED)
        ]
        outcomes: dict[str, InstallOutcome] = {}
        work: list[PlanStep] = []

        for step in steps:
            if step.action == PlanAction.SATISFIED:
                outcome = InstallOutcome(
                    step.identity,
                    OutcomeStatus.ALREADY_SATISFIED,
                    version=str(step.manifest.version),
                )
                outcomes[step.identity] = outcome
                self.events.emit(INSTALL_COMPLETE, identity=step.identity, outcome=outcome)
            else:
                work.append(step)

        if work:
            workers = min(self.max_workers, len(work))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="modman-install") as pool:
                futures = [pool.submit(self._install_step, step, cancel_event) for step in work]
                for future in as_completed(futures):
                    outcome = future.result()
                    outcomes[outcome.identity] = outcome

        report = InstallReport(plan.target, [outcomes[s.identity] for s in steps])
        logger.info(
            "Plan for %s finished: %d ok, %d failed",
            plan.target, len(report.succeeded), len(report.failed),
        )
        return report

    def install_archive(
        self, archive_path: Path, cancel_event: threading.Event | None = None
    ) -> InstallOutcome:
        """Install a mod from a local archive; the identity comes from its manifest."""
        record = InstallRecord(identity=Path(archive_path).name, source=None)
        try:
            manifest, mod_root = self._stage(record, cancel_event, archive_path=Path(archive_path))
            record.identity = manifest.identity
            with self.claim(manifest.identity):
                outcome = self._commit(record, manifest, mod_root)
        except BusyError as e:
            outcome = self._failure(record, ErrorKind.BUSY, e)
        except (ModManagerError, OSError) as e:
            outcome = self._outcome_for_error(record, e)
        finally:
            self._cleanup(record)

        self.events.emit(INSTALL_COMPLETE, identity=record.identity, outcome=outcome)
        return outcome

    def _install_step(self, step: PlanStep, cancel_event: threading.Event | None) -> InstallOutcome:
        record = InstallRecord(identity=step.identity, source=step.manifest)
        try:
            with self.claim(step.identity):
                try:
                    manifest, mod_root = self._stage(record, cancel_event)
                    outcome = self._commit(record, manifest, mod_root)
                except (ModManagerError, OSError) as e:
                    outcome = self._outcome_for_error(record, e)
                finally:
                    self._cleanup(record)
        except BusyError as e:
            outcome = self._failure(record, ErrorKind.BUSY, e)

        self.events.emit(INSTALL_COMPLETE, identity=step.identity, outcome=outcome)
        return outcome

    def _stage(
        self,
        record: InstallRecord,
        cancel_event: threading.Event | None,
        archive_path: Path | None = None,
    ) -> tuple[ModManifest, Path]:
        """Download (unless given an archive), verify and extract into staging."""
        _check_cancel(cancel_event, record.identity)
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
            record.staging_dir = Path(
                tempfile.mkdtemp(prefix=f"{safe_dirname(record.identity)}-", dir=self.staging_root)
            )
        except OSError as e:
            raise ModIOError(f"Could not create staging directory: {e}", self.staging_root)

        if archive_path is None:
            source = record.source
            if source is None or not source.download_url:
                raise NetworkError(f"No download URL for {record.identity}")
            self._set_phase(record, InstallPhase.DOWNLOAD)

            def on_progress(downloaded: int, total: int) -> None:
                self.events.emit(
                    INSTALL_PROGRESS,
                    identity=record.identity,
                    phase=InstallPhase.DOWNLOAD,
                    downloaded=downloaded,
                    total=total,
                )

            record.archive_path = self.downloader.download(
                source.download_url,
                record.staging_dir,
                _archive_filename(source.download_url),
                on_progress=on_progress,
                cancel_event=cancel_event,
                expected_size=source.file_size,
            )
        else:
            record.archive_path = archive_path
        _check_cancel(cancel_event, record.identity)

        self._set_phase(record, InstallPhase.VERIFY)
        verify_archive(record.archive_path)
        _check_cancel(cancel_event, record.identity)

        self._set_phase(record, InstallPhase.EXTRACT)
        extract_dir = record.staging_dir / "extracted"
        extract_archive(record.archive_path, extract_dir)

        manifest_path = find_manifest(extract_dir)
        if manifest_path is None:
            raise ParseError(f"No manifest found in archive for {record.identity}")
        manifest = read_manifest_file(manifest_path)
        if record.source is not None and manifest.identity != record.identity:
            raise IdentityMismatchError(
                f"Archive for {record.identity} declares identity {manifest.identity}"
            )
        _check_cancel(cancel_event, record.identity)
        return manifest, manifest_path.parent

    def _commit(self, record: InstallRecord, manifest: ModManifest, mod_root: Path) -> InstallOutcome:
        """Swap the staged mod into place and register it."""
        self._set_phase(record, InstallPhase.REGISTER)
        existing = self.local.get(manifest.identity)
        if existing is not None and existing.install_path is not None:
            record.target_dir = existing.install_path
            self._swap_into_place(mod_root, record.target_dir)
        else:
            with self._target_lock:
                record.target_dir = self._free_target_dir(manifest.identity)
                self._swap_into_place(mod_root, record.target_dir)

        # Update keeps the user's choice; fresh installs start enabled
        enabled = existing.enabled if existing is not None else True
        self.local.register(manifest.copy(install_path=record.target_dir), enabled=enabled)

        self._set_phase(record, InstallPhase.DONE)
        status = OutcomeStatus.UPDATED if existing is not None else OutcomeStatus.INSTALLED
        logger.info("%s %s %s", status.value.capitalize(), manifest.identity, manifest.version)
        return InstallOutcome(manifest.identity, status, version=str(manifest.version))

    def _free_target_dir(self, identity: str) -> Path:
        """First directory for identity not already on disk or owned by a local entry."""
        base = safe_dirname(identity)
        candidate = self.mods_dir / base
        suffix = 2
        while candidate.exists() or self.local.get_by_path(candidate) is not None:
            candidate = self.mods_dir / f"{base}-{suffix}"
            suffix += 1
        if candidate.name != base:
            logger.info("%s is taken, installing %s into %s", base, identity, candidate.name)
        return candidate

    def _swap_into_place(self, mod_root: Path, target: Path) -> None:
        """
        Replace target with mod_root without a half-written state.

        The new tree is moved next to the target first; the old directory is
        renamed aside and only deleted after the new one is in place.
        """
        token = uuid.uuid4().hex[:8]
        incoming = target.with_name(f".{target.name}.incoming-{token}")
        backup = target.with_name(f".{target.name}.old-{token}")

        try:
            shutil.move(str(mod_root), str(incoming))
        except OSError as e:
            raise ModIOError(f"Could not stage extracted files: {e}", incoming)

        had_old = target.exists()
        try:
            if had_old:
                target.rename(backup)
            incoming.rename(target)
        except OSError as e:
            if had_old and backup.exists() and not target.exists():
                backup.rename(target)
            shutil.rmtree(incoming, ignore_errors=True)
            raise ModIOError(f"Could not move mod into place: {e}", target)

        if had_old:
            try:
                shutil.rmtree(backup)
            except OSError as e:
                logger.warning("Could not remove old copy %s: %s", backup, e)

    def _set_phase(self, record: InstallRecord, phase: InstallPhase) -> None:
        record.phase = phase
        self.events.emit(INSTALL_PROGRESS, identity=record.identity, phase=phase)

    def _cleanup(self, record: InstallRecord) -> None:
        if record.staging_dir is not None and record.staging_dir.exists():
            shutil.rmtree(record.staging_dir, ignore_errors=True)

    def _failure(self, record: InstallRecord, kind: ErrorKind, error: Exception) -> InstallOutcome:
        status = OutcomeStatus.CANCELLED if kind == ErrorKind.CANCELLED else OutcomeStatus.FAILED
        if status == OutcomeStatus.FAILED:
            record.phase = InstallPhase.FAILED
        logger.warning("Install of %s %s: %s", record.identity, status.value, error)
        return InstallOutcome(record.identity, status, error_kind=kind, message=str(error))

    def _outcome_for_error(self, record: InstallRecord, error: Exception) -> InstallOutcome:
        if isinstance(error, OperationCancelled):
            kind = ErrorKind.CANCELLED
        elif isinstance(error, ExtractionError):
            kind = ErrorKind.CORRUPT_ARCHIVE
        elif isinstance(error, IdentityMismatchError):
            kind = ErrorKind.IDENTITY_MISMATCH
        elif isinstance(error, NetworkError):
            kind = ErrorKind.NETWORK
        elif isinstance(error, ParseError):
            kind = ErrorKind.PARSE
        elif isinstance(error, BusyError):
            kind = ErrorKind.BUSY
        else:
            kind = ErrorKind.IO
        return self._failure(record, kind, error)

    # -- uninstall --

    def uninstall(self, identity: str) -> list[str]:
        """
        Remove an installed mod's directory and database entry.

        Returns the enabled mods that depend on it; the validation pass flags
        them with a missing dependency.
        """
        with self.claim(identity):
            entry = self.local.get(identity)
            if entry is None:
                raise ModNotFoundError(identity)
            dependents = [d for d in self.local.dependents_of(identity) if d != identity]
            if entry.install_path is not None:
                self._remove_dir(entry.install_path)
            self.local.unregister(identity, path=entry.install_path)
        logger.info("Uninstalled %s", identity)
        return dependents

    def uninstall_path(self, path: Path) -> None:
        """Remove a broken mod directory (one whose manifest could not be read)."""
        entry = self.local.get_by_path(path)
        if entry is None:
            raise ModNotFoundError(str(path))
        if entry.is_valid:
            raise ModManagerError(f"{entry.identity} is a valid mod, refusing to remove it by path")
        with self.claim(entry.identity):
            self._remove_dir(Path(path))
            self.local.unregister(entry.identity, path=Path(path))

    def _remove_dir(self, path: Path) -> None:
        if not path.exists():
            return
        # Rename first so a failed delete never leaves a half-removed mod in place
        doomed = path.with_name(f".{path.name}.removing-{uuid.uuid4().hex[:8]}")
        try:
            path.rename(doomed)
        except OSError as e:
            raise ModIOError(f"Could not remove mod: {e}", path)
        try:
            shutil.rmtree(doomed)
        except OSError as e:
            logger.warning("Could not delete %s: %s", doomed, e)
