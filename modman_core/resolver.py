"""Dependency resolution: turn a request into an ordered, checked plan."""

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum

from .local_db import LocalDatabase
from .manifest import ModManifest
from .models import ErrorKind, WarningKind
from .remote_db import RemoteDatabase
from .version import Version

logger = logging.getLogger(__name__)

_VISITING = 1
_DONE = 2


class PlanAction(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    SATISFIED = "satisfied"
    ENABLE = "enable"
    DISABLE = "disable"


@dataclass
class PlanStep:
    identity: str
    action: PlanAction
    manifest: ModManifest


@dataclass
class PlanIssue:
    kind: ErrorKind | WarningKind
    identities: tuple[str, ...]
    message: str


@dataclass
class ResolutionPlan:
    """Ordered steps for one request plus the issues found while planning."""

    target: str
    steps: list[PlanStep] = field(default_factory=list)
    errors: list[PlanIssue] = field(default_factory=list)
    warnings: list[PlanIssue] = field(default_factory=list)

    @property
    def executable(self) -> bool:
        return not self.errors

    @property
    def order(self) -> list[str]:
        return [step.identity for step in self.steps]

    @property
    def error_kinds(self) -> set[ErrorKind]:
        return {issue.kind for issue in self.errors}

    @property
    def warning_kinds(self) -> set[WarningKind]:
        return {issue.kind for issue in self.warnings}

    def step(self, identity: str) -> PlanStep | None:
        for step in self.steps:
            if step.identity == identity:
                return step
        return None

    def actionable(self) -> list[PlanStep]:
        """Steps that change something on disk or in the database."""
        return [s for s in self.steps if s.action != PlanAction.SATISFIED]

    def add_error(self, kind: ErrorKind, identities: tuple[str, ...], message: str) -> None:
        self.errors.append(PlanIssue(kind, identities, message))

    def add_warning(self, kind: WarningKind, identities: tuple[str, ...], message: str) -> None:
        if any(w.kind == kind and w.identities == identities for w in self.warnings):
            return
        self.warnings.append(PlanIssue(kind, identities, message))


def topological_order(steps: dict[str, PlanStep]) -> list[PlanStep]:
    """
    Order steps so dependencies come strictly before dependents.

    Kahn's algorithm with a heap keyed by identity so independent branches
    come out in identity order. Members of a cycle cannot be ordered and are
    appended in identity order.
    """
    edges: dict[str, set[str]] = defaultdict(set)
    in_degree: dict[str, int] = {identity: 0 for identity in steps}

    for identity, step in steps.items():
        for dep in step.manifest.dependencies:
            if dep in steps and dep != identity and identity not in edges[dep]:
                edges[dep].add(identity)
                in_degree[identity] += 1

    queue = [identity for identity, degree in in_degree.items() if degree == 0]
    heapq.heapify(queue)

    result: list[str] = []
    while queue:
        identity = heapq.heappop(queue)
        result.append(identity)
        for neighbor in edges.get(identity, ()):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                heapq.heappush(queue, neighbor)

    if len(result) < len(steps):
        result.extend(sorted(set(steps) - set(result)))

    return [steps[identity] for identity in result]


class DependencyResolver:
    """
    Plans installs, updates, enables and disables.

    Reads both databases and never mutates them; the returned plan is applied
    by the installation pipeline or the service.
    """

    def __init__(self, local: LocalDatabase, remote: RemoteDatabase):
        self.local = local
        self.remote = remote

    # -- install / update --

    def plan_install(
        self,
        identity: str,
        prerelease: bool = False,
        update: bool = False,
        force: bool = False,
    ) -> ResolutionPlan:
        """
        Plan installing a mod and its dependency closure.

        Installed dependencies are reused when they satisfy the minimum
        version the dependent records; otherwise the registry copy is used.

        Args:
            prerelease: Use the registry's prerelease build of the target
            update: Update the target when the registry holds a newer version
            force: Reinstall the target from the registry even if up to date
        """
        plan = ResolutionPlan(target=identity)
        chosen: dict[str, PlanStep] = {}
        marks: dict[str, int] = {}
        stack: list[str] = []

        def visit(current: str, parent: str | None, min_version: Version | None) -> None:
            mark = marks.get(current)
            if mark == _VISITING:
                cycle = tuple(stack[stack.index(current):] + [current])
                plan.add_warning(
                    WarningKind.DEPENDENCY_CYCLE,
                    cycle,
                    "Dependency cycle: " + " -> ".join(cycle),
                )
                return
            if mark == _DONE:
                if current in chosen and min_version is not None:
                    self._tighten(plan, chosen, current, parent, min_version, visit)
                return

            marks[current] = _VISITING
            stack.append(current)
            try:
                if parent is None:
                    step = self._choose_target(current, prerelease, update, force)
                    if step is None:
                        plan.add_error(
                            ErrorKind.NOT_FOUND,
                            (current,),
                            f"{current} is not installed and not in the registry",
                        )
                        return
                else:
                    step = self._choose_dependency(plan, current, parent, min_version)
                    if step is None:
                        return

                chosen[current] = step
                for dep in step.manifest.dependencies:
                    visit(dep, current, step.manifest.dependency_versions.get(dep))
            finally:
                stack.pop()
                marks[current] = _DONE

        visit(identity, None, None)

        # Installed and enabled mods stay as they are; everything else will be
        # installed, updated or enabled as a result of this plan.
        changing = {
            i for i, s in chosen.items()
            if s.action != PlanAction.SATISFIED or not s.manifest.enabled
        }
        if chosen and self._check_conflicts(plan, chosen, changing):
            return plan

        plan.steps = topological_order(chosen)
        return plan

    def plan_update(self, identity: str, force: bool = False) -> ResolutionPlan:
        """Plan updating an installed mod (and installing any new dependencies)."""
        if self.local.get(identity) is None:
            plan = ResolutionPlan(target=identity)
            plan.add_error(ErrorKind.NOT_FOUND, (identity,), f"{identity} is not installed")
            return plan
        return self.plan_install(identity, update=True, force=force)

    def _choose_target(
        self, identity: str, prerelease: bool, update: bool, force: bool
    ) -> PlanStep | None:
        local = self.local.get(identity)
        remote = self.remote.get(identity)
        if remote is not None and prerelease and remote.prerelease is not None:
            remote = remote.copy(
                version=remote.prerelease.version,
                download_url=remote.prerelease.download_url,
            )

        if local is not None:
            if remote is not None and (force or (update and remote.version > local.version)):
                return PlanStep(identity, PlanAction.UPDATE, remote)
            return PlanStep(identity, PlanAction.SATISFIED, local)
        if remote is not None:
            return PlanStep(identity, PlanAction.INSTALL, remote)
        return None

    def _choose_dependency(
        self,
        plan: ResolutionPlan,
        identity: str,
        parent: str,
        min_version: Version | None,
    ) -> PlanStep | None:
        local = self.local.get(identity)
        remote = self.remote.get(identity)

        if local is not None and (min_version is None or local.version >= min_version):
            return PlanStep(identity, PlanAction.SATISFIED, local)
        if remote is not None and (min_version is None or remote.version >= min_version):
            action = PlanAction.UPDATE if local is not None else PlanAction.INSTALL
            return PlanStep(identity, action, remote)

        if local is None and remote is None:
            plan.add_error(
                ErrorKind.MISSING_DEPENDENCY,
                (identity, parent),
                f"{parent} requires {identity}, which is not installed and not in the registry",
            )
        else:
            best = max(v.version for v in (local, remote) if v is not None)
            plan.add_error(
                ErrorKind.VERSION_MISMATCH,
                (identity, parent),
                f"{parent} requires {identity} >= {min_version}, best available is {best}",
            )
        return None

    def _tighten(self, plan, chosen, identity, parent, min_version, visit) -> None:
        """Re-check an already chosen dependency against a stricter minimum."""
        step = chosen[identity]
        if step.manifest.version >= min_version:
            return
        del chosen[identity]
        replacement = self._choose_dependency(plan, identity, parent, min_version)
        if replacement is None:
            return
        chosen[identity] = replacement
        for dep in replacement.manifest.dependencies:
            visit(dep, identity, replacement.manifest.dependency_versions.get(dep))

    # -- enable / disable --

    def plan_enable(self, identity: str) -> ResolutionPlan:
        """Plan enabling a mod together with its disabled dependencies."""
        plan = ResolutionPlan(target=identity)
        if self.local.get(identity) is None:
            plan.add_error(ErrorKind.NOT_FOUND, (identity,), f"{identity} is not installed")
            return plan

        chosen: dict[str, PlanStep] = {}
        marks: dict[str, int] = {}
        stack: list[str] = []

        def visit(current: str, parent: str | None) -> None:
            mark = marks.get(current)
            if mark == _VISITING:
                cycle = tuple(stack[stack.index(current):] + [current])
                plan.add_warning(
                    WarningKind.DEPENDENCY_CYCLE,
                    cycle,
                    "Dependency cycle: " + " -> ".join(cycle),
                )
                return
            if mark == _DONE:
                return

            marks[current] = _VISITING
            stack.append(current)
            try:
                manifest = self.local.get(current)
                if manifest is None:
                    hint = " (available in the registry)" if current in self.remote else ""
                    plan.add_error(
                        ErrorKind.MISSING_DEPENDENCY,
                        (current, parent or current),
                        f"{parent} requires {current}, which is not installed{hint}",
                    )
                    return
                action = PlanAction.SATISFIED if manifest.enabled else PlanAction.ENABLE
                chosen[current] = PlanStep(current, action, manifest)
                for dep in manifest.dependencies:
                    visit(dep, current)
            finally:
                stack.pop()
                marks[current] = _DONE

        visit(identity, None)

        changing = {i for i, s in chosen.items() if s.action == PlanAction.ENABLE}
        if self._check_conflicts(plan, chosen, changing):
            return plan

        plan.steps = topological_order(chosen)
        return plan

    def plan_disable(self, identity: str) -> ResolutionPlan:
        """
        Plan disabling a single mod.

        Dependencies are left alone. Enabled dependents produce a warning,
        not an error; required mods cannot be disabled.
        """
        plan = ResolutionPlan(target=identity)
        manifest = self.local.get(identity)
        if manifest is None:
            plan.add_error(ErrorKind.NOT_FOUND, (identity,), f"{identity} is not installed")
            return plan

        remote = self.remote.get(identity)
        if manifest.required or (remote is not None and remote.required):
            plan.add_error(ErrorKind.REQUIRED_MOD, (identity,), f"{identity} is required and cannot be disabled")
            return plan

        dependents = tuple(d for d in self.local.dependents_of(identity) if d != identity)
        if dependents and manifest.enabled:
            plan.add_warning(
                WarningKind.DEPENDENTS_AFFECTED,
                dependents,
                f"Disabling {identity} affects: {', '.join(dependents)}",
            )

        if manifest.enabled:
            plan.steps = [PlanStep(identity, PlanAction.DISABLE, manifest)]
        return plan

    # -- internal helpers --

    def _check_conflicts(
        self, plan: ResolutionPlan, chosen: dict[str, PlanStep], changing: set[str]
    ) -> bool:
        """
        Check the closure plus enabled local mods for declared conflicts.

        Pairs where neither side is changed by the plan are already enabled
        together and are left to the validation pass. Any hit aborts the plan.
        """
        participants: dict[str, ModManifest] = {m.identity: m for m in self.local.enabled()}
        participants.update({identity: step.manifest for identity, step in chosen.items()})

        found: set[tuple[str, str]] = set()
        for identity in sorted(chosen):
            manifest = participants[identity]
            for other_id, other in participants.items():
                if other_id == identity:
                    continue
                if identity not in changing and other_id not in changing:
                    continue
                if other_id in manifest.conflicts or identity in other.conflicts:
                    found.add(tuple(sorted((identity, other_id))))

        for pair in sorted(found):
            plan.add_error(
                ErrorKind.CONFLICT_DETECTED,
                pair,
                f"{pair[0]} conflicts with {pair[1]}",
            )
        if found:
            logger.info("Plan for %s aborted: %d conflicts", plan.target, len(found))
            plan.steps = []
        return bool(found)
