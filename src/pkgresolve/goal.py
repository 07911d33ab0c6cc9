"""Goal resolution: expand jobs into candidates, solve, then order and explain the result."""

import heapq
import logging
import threading
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase

from pkgresolve.constants import NATIVE_ARCH, compatible_arches
from pkgresolve.errors import ErrorKind, GoalError, ModuleError
from pkgresolve.installed import InstalledPackages
from pkgresolve.models import (
    SYSTEM_REPO_ID,
    Action,
    GoalJob,
    JobKind,
    ModuleChange,
    PackageRecord,
    Reason,
    Transaction,
    TransactionPackage,
)
from pkgresolve.module_index import ModuleIndex, ModuleSpec
from pkgresolve.solver import Rule, RuleKind, SatProblem
from pkgresolve.universe import PackageUniverse, UniverseView
from pkgresolve.version import Capability

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


class GoalState(str, Enum):
    BUILT = "built"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    UNRESOLVABLE = "unresolvable"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Problem:
    """One reason a goal cannot be resolved, in terms a user can act on."""

    kind: str
    message: str
    packages: tuple[str, ...] = ()

    @classmethod
    def from_rule(cls, rule: Rule) -> "Problem":
        return cls(kind=rule.kind.value, message=rule.description, packages=rule.subjects)

    def __str__(self) -> str:
        return self.message


class Goal:
    """An ordered list of jobs, resolved exactly once."""

    def __init__(self, jobs: Iterable[GoalJob] = ()):
        self._jobs: list[GoalJob] = []
        self.state = GoalState.BUILT
        self.transaction: Transaction | None = None
        self.problems: list[Problem] = []
        for job in jobs:
            self.add(job)

    @property
    def jobs(self) -> tuple[GoalJob, ...]:
        return tuple(self._jobs)

    def add(self, job: GoalJob) -> "Goal":
        if self.state != GoalState.BUILT:
            raise GoalError(ErrorKind.ALREADY_RESOLVED, f"goal is {self.state.value}, jobs can no longer be added")
        self._jobs.append(job)
        return self

    def install(self, spec: str, strict: bool = True) -> "Goal":
        return self.add(GoalJob(kind=JobKind.INSTALL, spec=spec, strict=strict))

    def remove(self, spec: str, strict: bool = True) -> "Goal":
        return self.add(GoalJob(kind=JobKind.REMOVE, spec=spec, strict=strict))

    def upgrade(self, spec: str | None = None, strict: bool = True) -> "Goal":
        return self.add(GoalJob(kind=JobKind.UPGRADE, spec=spec, strict=strict))

    def enable_module(self, spec: str, strict: bool = True) -> "Goal":
        return self.add(GoalJob(kind=JobKind.MODULE_ENABLE, spec=spec, strict=strict))

    def disable_module(self, spec: str, strict: bool = True) -> "Goal":
        return self.add(GoalJob(kind=JobKind.MODULE_DISABLE, spec=spec, strict=strict))


@dataclass
class _PackageJob:
    index: int
    kind: JobKind
    spec: str | None
    strict: bool

    def __str__(self) -> str:
        return f"{self.kind.value} {self.spec or '*'}"


@dataclass
class _Expansion:
    job: _PackageJob
    candidates: list[PackageRecord]
    # upgrade only: installed package -> newer candidates
    targets: dict[PackageRecord, list[PackageRecord]] = field(default_factory=dict)


def _nevra_forms(pkg: PackageRecord) -> set[str]:
    return {
        str(pkg),
        pkg.nevra,
        f"{pkg.name}-{pkg.version}",
        f"{pkg.name}-{pkg.version}-{pkg.release}",
        f"{pkg.name}-{pkg.epoch}:{pkg.version}-{pkg.release}",
    }


def match_spec(spec: str, view: UniverseView) -> list[PackageRecord]:
    """Packages a user spec refers to: name, name.arch, NEVRA forms, globs, then provides or file paths."""
    if _GLOB_CHARS & set(spec):
        return [
            pkg
            for pkg in view
            if fnmatchcase(pkg.name, spec) or fnmatchcase(f"{pkg.name}.{pkg.arch}", spec) or fnmatchcase(str(pkg), spec)
        ]
    if found := view.find_by_name(spec):
        return found
    name, _, arch = spec.rpartition(".")
    if name and (found := [pkg for pkg in view.find_by_name(name) if pkg.arch == arch]):
        return found
    if found := [pkg for pkg in view if spec in _nevra_forms(pkg)]:
        return found
    try:
        return view.find_by_provide(spec)
    except ValueError:
        return []


class _Resolution:
    """State of one resolution pass over fixed snapshots."""

    def __init__(self, engine: "GoalEngine", jobs: tuple[GoalJob, ...], cancel: threading.Event | None):
        self.jobs = jobs
        self.cancel = cancel
        self.arches = engine.arches
        self.view = engine.universe.view()
        self.modules = engine.modules.snapshot()
        self.installed = sorted(engine.installed.packages(), key=lambda pkg: (pkg.name, pkg.arch))
        self.installed_view = UniverseView.of(SYSTEM_REPO_ID, self.installed)
        self._installed_by_nevra = {pkg.nevra: pkg for pkg in self.installed}
        self._providers: dict[Capability, list[PackageRecord]] = {}
        self._obsoleters: dict[str, list[PackageRecord]] | None = None
        self.eligible: Callable[[PackageRecord], bool] = self.modules.eligibility()

    def refresh_eligibility(self) -> None:
        """Recompute modular filtering after module jobs changed the stream state."""
        self.eligible = self.modules.eligibility()
        self._providers.clear()

    def obsoleters(self, name: str) -> list[PackageRecord]:
        if self._obsoleters is None:
            index: defaultdict[str, list[PackageRecord]] = defaultdict(list)
            for pkg in self.view:
                for capability in pkg.obsolete_capabilities():
                    index[capability.name].append(pkg)
            self._obsoleters = dict(index)
        return self._obsoleters.get(name, [])

    def check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise GoalError(ErrorKind.CANCELLED, "resolution was cancelled")

    def arch_rank(self, pkg: PackageRecord) -> int:
        return self.arches.index(pkg.arch) if pkg.arch in self.arches else len(self.arches)

    def installable(self, pkg: PackageRecord) -> bool:
        return pkg.arch in self.arches and self.eligible(pkg)

    def canonical(self, pkg: PackageRecord) -> PackageRecord:
        # the available copy of an installed NEVRA is the installed package
        return self._installed_by_nevra.get(pkg.nevra, pkg)

    def available(self, found: Iterable[PackageRecord]) -> list[PackageRecord]:
        return list(dict.fromkeys(self.canonical(pkg) for pkg in found if self.installable(pkg)))

    def providers(self, capability: Capability) -> list[PackageRecord]:
        if capability not in self._providers:
            found = self.installed_view.find_by_provide(capability)
            found += [pkg for pkg in self.available(self.view.find_by_provide(capability)) if pkg not in found]
            self._providers[capability] = found
        return self._providers[capability]

    def best_first(self, candidates: Iterable[PackageRecord]) -> list[PackageRecord]:
        """Name groups in first-seen order; within a group best arch, then highest EVR."""
        groups: dict[str, list[PackageRecord]] = {}
        for pkg in candidates:
            groups.setdefault(pkg.name, []).append(pkg)
        ordered = []
        for group in groups.values():
            group.sort(key=lambda pkg: pkg.evr, reverse=True)
            group.sort(key=self.arch_rank)
            ordered.extend(group)
        return ordered

    # jobs

    def apply_module_jobs(self) -> tuple[list[ModuleChange], list[_PackageJob]]:
        changes: list[ModuleChange] = []
        package_jobs: list[_PackageJob] = []
        for index, job in enumerate(self.jobs):
            self.check_cancel()
            try:
                if job.kind == JobKind.MODULE_ENABLE:
                    name, stream = self._select_stream(job.spec)
                    changes += self.modules.enable(name, stream)
                elif job.kind == JobKind.MODULE_DISABLE:
                    changes += self.modules.disable(self._parse_module_spec(job.spec).name)
                elif job.kind == JobKind.INSTALL and job.spec.startswith("@"):
                    name, stream = self._select_stream(job.spec[1:])
                    pkg_names = self._profile_packages(job.spec[1:], name, stream)
                    changes += self.modules.enable(name, stream)
                    package_jobs += [
                        _PackageJob(index, JobKind.INSTALL, pkg_name, job.strict) for pkg_name in pkg_names
                    ]
                else:
                    package_jobs.append(_PackageJob(index, job.kind, job.spec, job.strict))
            except GoalError as e:
                if job.strict or e.kind != ErrorKind.NO_MATCH:
                    raise
                logger.warning(f"Skipping {job}: {e.message}")
            except ModuleError as e:
                if job.strict or e.kind != ErrorKind.NO_SUCH_STREAM:
                    raise
                logger.warning(f"Skipping {job}: {e.message}")
        return changes, package_jobs

    @staticmethod
    def _parse_module_spec(text: str) -> ModuleSpec:
        try:
            return ModuleSpec.parse(text)
        except ValueError as e:
            raise GoalError(ErrorKind.NO_MATCH, str(e), problems=[Problem("job", str(e))]) from e

    def _select_stream(self, text: str) -> tuple[str, str]:
        spec = self._parse_module_spec(text)
        pairs = sorted({(stream.name, stream.stream) for stream in self.modules.resolve_spec(spec._replace(profile=None))})
        if not pairs:
            if spec.stream is not None and self.modules.streams(spec.name):
                raise ModuleError(
                    ErrorKind.NO_SUCH_STREAM, f"module {spec.name} has no stream {spec.stream!r}", module=spec.name
                )
            message = f"no module stream matches {text}"
            raise GoalError(ErrorKind.NO_MATCH, message, problems=[Problem("job", message)])
        if len(pairs) > 1:
            message = f"{text} is ambiguous, it matches {', '.join(':'.join(pair) for pair in pairs)}"
            raise GoalError(ErrorKind.NO_MATCH, message, problems=[Problem("job", message)])
        return pairs[0]

    def _profile_packages(self, text: str, name: str, stream: str) -> list[str]:
        spec = self._parse_module_spec(text)
        profile = spec.profile or "default"
        streams = self.modules.resolve_spec(spec._replace(name=name, stream=stream, profile=None))
        for module_stream in sorted(streams, key=lambda s: s.version, reverse=True):
            if profile in module_stream.profiles:
                return list(module_stream.profiles[profile])
        message = f"module {name}:{stream} has no profile {profile!r}"
        raise GoalError(ErrorKind.NO_MATCH, message, problems=[Problem("job", message)])

    def expand(self, package_jobs: list[_PackageJob]) -> list[_Expansion]:
        expansions = []
        unmatched: list[Problem] = []
        for job in package_jobs:
            self.check_cancel()
            expansion = self._expand_one(job)
            if expansion is None:
                message = f"no package matches {job.spec}" if job.kind == JobKind.INSTALL else f"{job.spec} is not installed"
                if job.strict:
                    unmatched.append(Problem("job", message, (job.spec,)))
                else:
                    logger.warning(f"Skipping {job}: {message}")
                continue
            expansions.append(expansion)
        if unmatched:
            raise GoalError(ErrorKind.NO_MATCH, "some jobs match no packages", problems=unmatched)
        return expansions

    def _expand_one(self, job: _PackageJob) -> _Expansion | None:
        if job.kind == JobKind.INSTALL:
            candidates = self.available(match_spec(job.spec, self.view))
            candidates += [pkg for pkg in match_spec(job.spec, self.installed_view) if pkg not in candidates]
            return _Expansion(job, candidates) if candidates else None

        if job.kind == JobKind.REMOVE:
            candidates = match_spec(job.spec, self.installed_view)
            return _Expansion(job, candidates) if candidates else None

        # upgrade: installed targets, each with newer same-name or obsoleting candidates
        installed = self.installed if job.spec is None else match_spec(job.spec, self.installed_view)
        if not installed:
            return None if job.spec is not None else _Expansion(job, [])
        targets = {}
        for target in installed:
            newer = [
                pkg
                for pkg in self.available(self.view.find_by_name(target.name))
                if not pkg.is_installed
                and pkg.evr > target.evr
                and (pkg.arch == target.arch or "noarch" in (pkg.arch, target.arch))
            ]
            newer += [
                pkg
                for pkg in self.available(self.obsoleters(target.name))
                if not pkg.is_installed and target.is_obsoleted_by(pkg) and pkg not in newer
            ]
            if newer:
                targets[target] = newer
        candidates = list(dict.fromkeys(pkg for newer in targets.values() for pkg in newer))
        return _Expansion(job, candidates, targets)

    # encoding

    def closure(self, expansions: list[_Expansion]) -> list[PackageRecord]:
        seen: dict[PackageRecord, None] = {}
        pending = deque([*self.installed, *(pkg for exp in expansions for pkg in exp.candidates)])
        while pending:
            pkg = pending.popleft()
            if pkg in seen:
                continue
            seen[pkg] = None
            for capability in pkg.require_capabilities():
                pending.extend(provider for provider in self.providers(capability) if provider not in seen)
        return list(seen)

    def removal_sets(self, expansions: list[_Expansion]) -> tuple[set[PackageRecord], set[PackageRecord]]:
        """Packages named by remove jobs, and installed packages left without a provider by removing them."""
        targets = {pkg for exp in expansions if exp.job.kind == JobKind.REMOVE for pkg in exp.candidates}
        dependents: set[PackageRecord] = set()
        changed = bool(targets)
        while changed:
            changed = False
            gone = targets | dependents
            for pkg in self.installed:
                if pkg in gone:
                    continue
                for capability in pkg.require_capabilities():
                    if pkg.provides_capability(capability):
                        continue
                    providers = self.installed_view.find_by_provide(capability)
                    if providers and all(provider in gone for provider in providers):
                        dependents.add(pkg)
                        changed = True
                        break
        return targets, dependents

    def encode(
        self,
        problem: SatProblem,
        closure: list[PackageRecord],
        expansions: list[_Expansion],
        protected: set[PackageRecord],
    ) -> dict[PackageRecord, int]:
        var = {pkg: problem.var(pkg) for pkg in closure}
        closure_view = UniverseView.of("@closure", closure)

        for exp in expansions:
            job = exp.job
            if job.kind == JobKind.INSTALL:
                problem.add_rule(
                    RuleKind.JOB, f"install {job.spec}", [[var[pkg] for pkg in exp.candidates]], (job.spec,)
                )
            elif job.kind == JobKind.REMOVE:
                problem.add_rule(
                    RuleKind.JOB, f"remove {job.spec}", [[-var[pkg]] for pkg in exp.candidates], (job.spec,)
                )
            elif job.spec is not None and job.strict and exp.targets:
                problem.add_rule(
                    RuleKind.JOB,
                    f"upgrade {job.spec}",
                    [[var[pkg] for pkg in newer] for newer in exp.targets.values()],
                    (job.spec,),
                )

        for pkg in self.installed:
            if pkg not in protected:
                continue
            replacements = [
                other
                for other in closure
                if not other.is_installed
                and (
                    (other.name == pkg.name and (other.arch == pkg.arch or "noarch" in (other.arch, pkg.arch)))
                    or pkg.is_obsoleted_by(other)
                )
            ]
            problem.add_rule(
                RuleKind.INSTALLED,
                f"{pkg} is installed",
                [[var[pkg], *(var[other] for other in replacements)]],
                (str(pkg),),
            )

        conflict_pairs: set[frozenset[PackageRecord]] = set()
        for pkg in closure:
            for capability in pkg.require_capabilities():
                if pkg.provides_capability(capability):
                    continue
                providers = [provider for provider in self.providers(capability) if provider in var]
                if not providers:
                    if pkg.is_installed:
                        logger.debug(f"Installed {pkg} has unsatisfied requirement {capability}, ignoring")
                        continue
                    description = f"nothing provides {capability} needed by {pkg}"
                else:
                    description = f"{pkg} requires {capability}"
                problem.add_rule(
                    RuleKind.REQUIRES,
                    description,
                    [[-var[pkg], *(var[provider] for provider in providers)]],
                    (str(pkg), *(str(provider) for provider in providers)),
                )

            for capability in pkg.conflict_capabilities():
                for other in closure_view.find_by_provide(capability):
                    pair = frozenset((pkg, other))
                    if other.name == pkg.name or pair in conflict_pairs:
                        continue
                    conflict_pairs.add(pair)
                    problem.add_rule(
                        RuleKind.CONFLICTS,
                        f"{pkg} conflicts with {other}",
                        [[-var[pkg], -var[other]]],
                        (str(pkg), str(other)),
                    )

            if not pkg.is_installed:
                for capability in pkg.obsolete_capabilities():
                    for other in closure_view.find_by_name(capability.name):
                        if other.is_obsoleted_by(pkg):
                            problem.add_rule(
                                RuleKind.OBSOLETES,
                                f"{pkg} obsoletes {other}",
                                [[-var[pkg], -var[other]]],
                                (str(pkg), str(other)),
                            )

        by_name_arch: defaultdict[tuple[str, str], list[PackageRecord]] = defaultdict(list)
        for pkg in closure:
            by_name_arch[(pkg.name, pkg.arch)].append(pkg)
        for (name, arch), group in by_name_arch.items():
            if len(group) < 2:
                continue
            clauses = [[-var[a], -var[b]] for i, a in enumerate(group) for b in group[i + 1 :]]
            problem.add_rule(
                RuleKind.SINGLE_VERSION,
                f"only one version of {name}.{arch} can be installed",
                clauses,
                tuple(str(pkg) for pkg in group),
            )
        return var

    def choose(
        self,
        problem: SatProblem,
        var: dict[PackageRecord, int],
        expansions: list[_Expansion],
        protected: set[PackageRecord],
    ) -> set[PackageRecord]:
        """Greedy preferences over a satisfiable problem.

        In order: best candidate for each job, keep installed packages, then
        drop every package the rest does not need (worst versions tried first).
        """
        assumptions: list[int] = []

        def try_assume(literal: int) -> set[int] | None:
            self.check_cancel()
            model = problem.solve([*assumptions, literal])
            if model is not None:
                assumptions.append(literal)
            return model

        for exp in expansions:
            if exp.job.kind == JobKind.REMOVE:
                continue
            groups = list(exp.targets.values()) if exp.job.kind == JobKind.UPGRADE else [exp.candidates]
            for group in groups:
                for pkg in self.best_first(group):
                    if try_assume(var[pkg]) is not None:
                        break

        for pkg in self.installed:
            if pkg in protected:
                try_assume(var[pkg])

        model = problem.solve(assumptions)
        fixed = {abs(literal) for literal in assumptions}
        names = sorted({pkg.name for pkg in var}, reverse=True)
        by_name = defaultdict(list)
        for pkg in var:
            by_name[pkg.name].append(pkg)
        for name in names:
            for pkg in reversed(self.best_first(by_name[name])):
                literal = var[pkg]
                if literal in fixed:
                    continue
                if literal not in model:
                    assumptions.append(-literal)
                    continue
                trial = try_assume(-literal)
                if trial is not None:
                    model = trial
                else:
                    assumptions.append(literal)
        return {pkg for pkg, literal in var.items() if literal in model}

    # result

    def build_transaction(
        self,
        selected: set[PackageRecord],
        expansions: list[_Expansion],
        removal_targets: set[PackageRecord],
        module_changes: list[ModuleChange],
    ) -> Transaction:
        requested = {
            pkg for exp in expansions if exp.job.kind != JobKind.REMOVE for pkg in exp.candidates if pkg in selected
        }
        new = [pkg for pkg in selected if not pkg.is_installed]
        gone = [pkg for pkg in self.installed if pkg not in selected]

        def same_slot(a: PackageRecord, b: PackageRecord) -> bool:
            return a.name == b.name and (a.arch == b.arch or "noarch" in (a.arch, b.arch))

        installs: dict[PackageRecord, tuple[Action, Reason, tuple[PackageRecord, ...]]] = {}
        superseded: set[PackageRecord] = set()
        obsoleted: set[PackageRecord] = set()
        for pkg in new:
            same = [old for old in gone if same_slot(old, pkg)]
            displaced = [old for old in gone if old.name != pkg.name and old.is_obsoleted_by(pkg)]
            if same:
                cmp = pkg.evr.compare(same[0].evr)
                action = Action.UPGRADE if cmp > 0 else Action.DOWNGRADE if cmp < 0 else Action.REINSTALL
            else:
                action = Action.INSTALL
            reason = Reason.USER_REQUESTED if pkg in requested else Reason.DEPENDENCY
            installs[pkg] = (action, reason, tuple(same + displaced))
            superseded.update(same)
            obsoleted.update(displaced)

        erasures: dict[PackageRecord, tuple[Action, Reason]] = {}
        for pkg in gone:
            if pkg in superseded:
                continue
            if pkg in obsoleted:
                erasures[pkg] = (Action.OBSOLETED, Reason.OBSOLETES)
            elif pkg in removal_targets:
                erasures[pkg] = (Action.ERASE, Reason.USER_REQUESTED)
            else:
                erasures[pkg] = (Action.ERASE, Reason.DEPENDENCY)

        origin = self._job_origins(list(installs), expansions, removal_targets)
        ordered = self._order(list(installs), origin, requirements_first=True)
        ordered += self._order(list(erasures), origin, requirements_first=False)

        items = []
        for position, pkg in enumerate(ordered):
            if pkg in installs:
                action, reason, replaces = installs[pkg]
            else:
                (action, reason), replaces = erasures[pkg], ()
            items.append(
                TransactionPackage(package=pkg, action=action, reason=reason, order=position, replaces=replaces)
            )
        return Transaction(packages=tuple(items), module_changes=tuple(module_changes))

    def _job_origins(
        self,
        installs: list[PackageRecord],
        expansions: list[_Expansion],
        removal_targets: set[PackageRecord],
    ) -> dict[PackageRecord, int]:
        """Index of the first job that (transitively) brought each package into the transaction."""
        origin: dict[PackageRecord, int] = {}
        install_view = UniverseView.of("@transaction", installs)
        for exp in expansions:
            pending = deque(pkg for pkg in exp.candidates if pkg in installs or pkg in removal_targets)
            while pending:
                pkg = pending.popleft()
                if pkg in origin:
                    continue
                origin[pkg] = exp.job.index
                if pkg.is_installed:
                    continue
                for capability in pkg.require_capabilities():
                    pending.extend(dep for dep in install_view.find_by_provide(capability) if dep not in origin)
        return origin

    def _order(
        self, packages: list[PackageRecord], origin: dict[PackageRecord, int], requirements_first: bool
    ) -> list[PackageRecord]:
        """Topological order; ties by job submission order, then name. Cycles are broken at the smallest key."""
        if not packages:
            return []
        view = UniverseView.of("@order", packages)
        after: dict[PackageRecord, set[PackageRecord]] = {pkg: set() for pkg in packages}
        indegree = dict.fromkeys(packages, 0)
        for pkg in packages:
            for capability in pkg.require_capabilities():
                for provider in view.find_by_provide(capability):
                    if provider == pkg:
                        continue
                    first, then = (provider, pkg) if requirements_first else (pkg, provider)
                    if then not in after[first]:
                        after[first].add(then)
                        indegree[then] += 1

        fallback = len(self.jobs)
        keys = {pkg: (origin.get(pkg, fallback), pkg.name, pkg.nevra, pkg.repo_id) for pkg in packages}
        heap = [(keys[pkg], pkg) for pkg in packages if indegree[pkg] == 0]
        heapq.heapify(heap)
        remaining = set(packages)
        result = []
        while remaining:
            if not heap:
                stuck = min(remaining, key=keys.__getitem__)
                logger.debug(f"Breaking dependency cycle at {stuck}")
                indegree[stuck] = 0
                heap.append((keys[stuck], stuck))
            _, pkg = heapq.heappop(heap)
            if pkg not in remaining:
                continue
            remaining.discard(pkg)
            result.append(pkg)
            for then in sorted(after[pkg], key=keys.__getitem__):
                if then not in remaining:
                    continue
                indegree[then] -= 1
                if indegree[then] == 0:
                    heapq.heappush(heap, (keys[then], then))
        return result


class GoalEngine:
    """Turns goals into ordered transactions.

    Resolution reads immutable snapshots of the universe, the module index
    and the installed-package database; it performs no I/O and never
    changes the live module state. Apply ``transaction.module_changes`` with
    ``ModuleIndex.apply`` once the transaction has been carried out.
    """

    def __init__(
        self,
        universe: PackageUniverse,
        modules: ModuleIndex,
        installed: InstalledPackages,
        arch: str = NATIVE_ARCH,
    ):
        self.universe = universe
        self.modules = modules
        self.installed = installed
        self.arches = compatible_arches(arch)

    def resolve(self, goal: Goal, cancel: threading.Event | None = None) -> Transaction:
        """Resolve a goal.

        Raises:
            GoalError: ALREADY_RESOLVED, NO_MATCH, UNRESOLVABLE (with ``problems``) or CANCELLED
            ModuleError: For module jobs that conflict with the current stream state
        """
        if goal.state != GoalState.BUILT:
            raise GoalError(ErrorKind.ALREADY_RESOLVED, f"goal is already {goal.state.value}")
        goal.state = GoalState.RESOLVING

        try:
            transaction = self._resolve(goal.jobs, cancel)
        except GoalError as e:
            goal.state = GoalState.CANCELLED if e.kind == ErrorKind.CANCELLED else GoalState.UNRESOLVABLE
            goal.problems = list(e.problems)
            raise
        except Exception:
            goal.state = GoalState.UNRESOLVABLE
            raise

        goal.state = GoalState.RESOLVED
        goal.transaction = transaction
        logger.info(
            f"Resolved {len(goal.jobs)} jobs into {len(transaction)} package actions "
            f"and {len(transaction.module_changes)} module changes"
        )
        return transaction

    def _resolve(self, jobs: tuple[GoalJob, ...], cancel: threading.Event | None) -> Transaction:
        run = _Resolution(self, jobs, cancel)
        module_changes, package_jobs = run.apply_module_jobs()
        if module_changes:
            run.refresh_eligibility()
        expansions = run.expand(package_jobs)
        run.check_cancel()

        closure = run.closure(expansions)
        removal_targets, dependents = run.removal_sets(expansions)
        protected = {pkg for pkg in run.installed if pkg not in removal_targets and pkg not in dependents}
        logger.debug(f"Resolving over {len(closure)} packages ({len(run.installed)} installed)")

        with SatProblem() as problem:
            var = run.encode(problem, closure, expansions, protected)
            run.check_cancel()
            if problem.solve() is None:
                core = problem.minimal_core(run.check_cancel)
                problems = [Problem.from_rule(rule) for rule in core]
                raise GoalError(ErrorKind.UNRESOLVABLE, "goal cannot be resolved", problems=problems)
            selected = run.choose(problem, var, expansions, protected)

        run.check_cancel()
        return run.build_transaction(selected, expansions, removal_targets, module_changes)
