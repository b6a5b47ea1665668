"""Service layer - the command surface shells call into."""

import json
import logging
import threading
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Callable

import requests

from .api import RegistryClient
from .downloader import Downloader
from .errors import BusyError, ModIOError, ModNotFoundError, ParseError, ResolutionError
from .events import DATABASE_CHANGED, INSTALL_PROGRESS, EventEmitter, Listener
from .installer import InstallOutcome, InstallPipeline, InstallReport
from .local_db import LocalDatabase
from .manifest import ModManifest
from .models import ErrorKind
from .remote_db import RemoteDatabase
from .resolver import DependencyResolver, PlanAction, ResolutionPlan
from .state import ManagerState
from .tasks import TaskManager
from .validate import has_issues, validate_mods
from .version import Version

logger = logging.getLogger(__name__)

DEFAULT_MODS_DIRNAME = "mods"


@dataclass
class ModView:
    """Local and remote view of one identity."""

    identity: str
    local: ModManifest | None
    remote: ModManifest | None

    @property
    def installed(self) -> bool:
        return self.local is not None

    @property
    def update_available(self) -> bool:
        return (
            self.local is not None
            and self.remote is not None
            and self.remote.version > self.local.version
        )


@dataclass
class RefreshResult:
    database: str
    mod_count: int
    changed: bool = True
    has_issues: bool = False


@dataclass
class InstallResult:
    identity: str
    plan: ResolutionPlan
    report: InstallReport | None = None
    enabled: list[str] = field(default_factory=list)
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and self.report is not None and self.report.ok


@dataclass
class EnableResult:
    identity: str
    plan: ResolutionPlan
    changes: dict[str, bool] = field(default_factory=dict)


@dataclass
class UninstallResult:
    identity: str
    dependents: list[str] = field(default_factory=list)


@dataclass
class ImportResult:
    identities: list[str]
    installed: list[InstallResult] = field(default_factory=list)
    enabled: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class ModManagerService:
    """Business logic for managing installed mods against a registry."""

    def __init__(
        self,
        state: ManagerState | None = None,
        mods_dir: Path | None = None,
        registry_url: str | None = None,
        session: requests.Session | None = None,
    ):
        self.state = state or ManagerState.open()
        if mods_dir is not None:
            self.state.install_root = str(mods_dir)
        if registry_url:
            self.state.registry_url = registry_url

        self.events = EventEmitter()
        self._session = session
        self.local = LocalDatabase(
            self.mods_dir,
            self.state,
            validator=self._validate,
            on_change=lambda: self.events.emit(DATABASE_CHANGED, database="local"),
        )
        self.remote = RemoteDatabase(on_change=self._remote_changed)
        self.resolver = DependencyResolver(self.local, self.remote)
        self.pipeline = InstallPipeline(
            self.local,
            Downloader(session=session, timeout=self.state.timeout),
            events=self.events,
            max_workers=self.state.max_workers,
        )
        self.tasks = TaskManager()

    @property
    def mods_dir(self) -> Path:
        if self.state.install_root:
            return Path(self.state.install_root)
        return self.state.state_file.parent / DEFAULT_MODS_DIRNAME

    @property
    def loader_version(self) -> Version | None:
        return Version.parse(self.state.loader_version) if self.state.loader_version else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to engine events. Returns an unsubscribe function."""
        return self.events.subscribe(listener)

    def _validate(self, entries: list[ModManifest]) -> list[ModManifest]:
        return validate_mods(entries, remote=self.remote.snapshot(), loader_version=self.loader_version)

    def _remote_changed(self) -> None:
        # Outdated warnings depend on the registry snapshot
        self.local.revalidate()
        self.events.emit(DATABASE_CHANGED, database="remote")

    # -- databases --

    def refresh_local(self) -> RefreshResult:
        """Rescan the mods directory."""
        self.local.refresh()
        entries = self.local.all()
        return RefreshResult("local", len(entries), has_issues=has_issues(entries))

    def refresh_remote(self) -> RefreshResult:
        """
        Fetch the registry. The previous snapshot stays in place when the
        fetch fails (the NetworkError or ParseError propagates).
        """
        if self.remote.client is None:
            self.remote.client = RegistryClient(
                self.state.registry_url, timeout=self.state.timeout, session=self._session
            )
        changed = self.remote.refresh()
        if changed:
            self.state.registry_etag = self.remote.etag
            self.state.registry_version = self.remote.version
            self.state.save()
        return RefreshResult("remote", len(self.remote), changed=changed)

    def get_mod(self, identity: str) -> ModView:
        local = self.local.get(identity)
        remote = self.remote.get(identity)
        if local is None and remote is None:
            raise ModNotFoundError(identity, "local or remote database")
        return ModView(identity, local, remote)

    def list_mods(self) -> list[ModManifest]:
        """Every local entry in scan order, broken ones included."""
        return self.local.all()

    def search_remote(self, query: str, limit: int | None = None) -> list[ModManifest]:
        return list(islice(self.remote.search(query), limit))

    def db_has_issues(self) -> bool:
        return has_issues(self.local.all())

    def is_busy(self, identity: str) -> bool:
        return self.pipeline.is_busy(identity)

    # -- install / update --

    def plan_install(self, identity: str, prerelease: bool = False) -> ResolutionPlan:
        return self.resolver.plan_install(identity, prerelease=prerelease)

    def install(
        self,
        identity: str,
        prerelease: bool = False,
        force: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> InstallResult:
        """
        Install a mod with its dependencies, then enable the closure.

        Raises ResolutionError when the plan has blocking errors and force is
        not set.
        """
        plan = self.resolver.plan_install(identity, prerelease=prerelease)
        report = self.pipeline.execute(plan, cancel_event=cancel_event, force=force)
        result = InstallResult(identity, plan, report)

        outcome = report.get(identity)
        if outcome is not None and outcome.ok:
            result.enabled = self._enable_closure(identity)
        return result

    def update(
        self,
        identity: str,
        force: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> InstallResult:
        """Update an installed mod to the registry version."""
        plan = self.resolver.plan_update(identity, force=force)
        report = self.pipeline.execute(plan, cancel_event=cancel_event)
        return InstallResult(identity, plan, report)

    def get_updatable(self) -> list[ModView]:
        """Installed mods with a newer version in the registry."""
        views = [ModView(m.identity, m, self.remote.get(m.identity)) for m in self.local.valid()]
        return sorted((v for v in views if v.update_available), key=lambda v: v.identity)

    def update_all(self, cancel_event: threading.Event | None = None) -> list[InstallResult]:
        """Update every outdated mod; one failure does not stop the rest."""
        results = []
        for view in self.get_updatable():
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                results.append(self.update(view.identity, cancel_event=cancel_event))
            except ResolutionError as e:
                results.append(InstallResult(view.identity, e.plan, error=str(e)))
            except BusyError as e:
                plan = ResolutionPlan(target=view.identity)
                plan.add_error(ErrorKind.BUSY, (view.identity,), str(e))
                results.append(InstallResult(view.identity, plan, error=str(e)))
        return results

    def install_archive(self, path: Path, cancel_event: threading.Event | None = None) -> InstallOutcome:
        """Install a mod from a local archive file."""
        path = Path(path)
        if not path.is_file():
            raise ModIOError("Archive not found", path)
        return self.pipeline.install_archive(path, cancel_event=cancel_event)

    def fix_deps(self, identity: str, cancel_event: threading.Event | None = None) -> InstallResult:
        """Install missing dependencies of an installed mod and enable disabled ones."""
        if self.local.get(identity) is None:
            raise ModNotFoundError(identity)
        plan = self.resolver.plan_install(identity)
        report = self.pipeline.execute(plan, cancel_event=cancel_event)
        return InstallResult(identity, plan, report, enabled=self._enable_closure(identity))

    def has_disabled_deps(self, identity: str) -> bool:
        entry = self.local.get(identity)
        if entry is None:
            raise ModNotFoundError(identity)
        for dep in entry.dependencies:
            dep_entry = self.local.get(dep)
            if dep_entry is not None and not dep_entry.enabled:
                return True
        return False

    # -- enable / disable --

    def enable(self, identity: str, enabled: bool = True) -> EnableResult:
        """
        Enable a mod with its dependency closure, or disable a single mod.

        Raises ResolutionError when the plan has blocking errors (missing
        dependency, conflict, required mod).
        """
        if enabled:
            plan = self.resolver.plan_enable(identity)
        else:
            plan = self.resolver.plan_disable(identity)
        if not plan.executable:
            raise ResolutionError(plan)

        changes = {
            step.identity: step.action == PlanAction.ENABLE
            for step in plan.steps
            if step.action in (PlanAction.ENABLE, PlanAction.DISABLE)
        }
        if changes:
            self.local.set_enabled_many(changes)
        for warning in plan.warnings:
            logger.warning(warning.message)
        return EnableResult(identity, plan, changes)

    def toggle_all(self, enabled: bool) -> dict[str, bool]:
        """Set every valid mod's flag at once. Required mods are never disabled."""
        changes = {}
        for mod in self.local.valid():
            if mod.enabled == enabled:
                continue
            remote = self.remote.get(mod.identity)
            if not enabled and (mod.required or (remote is not None and remote.required)):
                continue
            changes[mod.identity] = enabled
        if changes:
            self.local.set_enabled_many(changes)
        return changes

    def _enable_closure(self, identity: str) -> list[str]:
        if self.local.get(identity) is None:
            return []
        try:
            result = self.enable(identity, True)
        except ResolutionError as e:
            logger.warning("Installed %s but could not enable it: %s", identity, e)
            return []
        return sorted(result.changes)

    # -- uninstall --

    def uninstall(self, identity: str) -> UninstallResult:
        """Remove an installed mod. Enabled dependents are reported, not removed."""
        dependents = self.pipeline.uninstall(identity)
        if dependents:
            logger.warning("Removed %s; still required by %s", identity, ", ".join(dependents))
        return UninstallResult(identity, dependents)

    def uninstall_broken(self, path: Path) -> None:
        """Remove a mod directory whose manifest could not be read."""
        self.pipeline.uninstall_path(Path(path))

    # -- export / import --

    def export_mods(self, path: Path) -> list[str]:
        """Write the enabled identities to a JSON file. Returns them."""
        identities = sorted(m.identity for m in self.local.enabled())
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(identities, f, indent=2)
        except OSError as e:
            raise ModIOError(f"Could not write export file: {e}", path)
        return identities

    def import_mods(self, path: Path, cancel_event: threading.Event | None = None) -> ImportResult:
        """Install and enable every identity listed in an export file."""
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid export file {path}: {e}")
        except OSError as e:
            raise ModIOError(f"Could not read export file: {e}", path)
        if not isinstance(data, list) or not all(isinstance(i, str) for i in data):
            raise ParseError(f"Export file {path} must be a JSON array of identities")

        result = ImportResult(identities=list(data))
        for identity in data:
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                if self.local.get(identity) is None:
                    installed = self.install(identity, cancel_event=cancel_event)
                    result.installed.append(installed)
                    result.enabled.extend(installed.enabled)
                else:
                    result.enabled.extend(sorted(self.enable(identity, True).changes))
            except (ResolutionError, BusyError) as e:
                result.errors.append(str(e))
        return result

    # -- background variants --

    def _start_task(self, operation: str, fn: Callable, *args, **kwargs) -> str:
        """
        Run fn on a background task, copying install progress into the
        task's event queue while it runs. Returns the task id.
        """
        task_id = self.tasks.create(operation)

        def forward(event: str, payload: dict) -> None:
            if event == INSTALL_PROGRESS:
                msg = f"{payload['identity']}: {payload['phase'].value}"
                self.tasks.update_progress(task_id, msg, **payload)

        unsubscribe = self.events.subscribe(forward)

        def run(*a, cancel_event: threading.Event | None = None, **kw):
            try:
                return fn(*a, cancel_event=cancel_event, **kw)
            finally:
                unsubscribe()

        self.tasks.run_in_background(task_id, run, *args, **kwargs)
        return task_id

    def start_install(self, identity: str, prerelease: bool = False) -> str:
        """Run install() on a background task. Returns the task id."""
        return self._start_task(f"install {identity}", self.install, identity, prerelease=prerelease)

    def start_update_all(self) -> str:
        return self._start_task("update all", self.update_all)

    def cancel_task(self, task_id: str) -> bool:
        return self.tasks.cancel(task_id)
