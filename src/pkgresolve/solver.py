"""CNF encoding helpers on top of python-sat.

Every rule owns a selector literal that is passed as an assumption, so an
unsatisfiable problem can be traced back to the rules that caused it.
"""

import logging
from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from pysat.formula import IDPool
from pysat.solvers import Solver

logger = logging.getLogger(__name__)

SOLVER_NAME = "minisat22"


class RuleKind(str, Enum):
    JOB = "job"
    INSTALLED = "installed"
    REQUIRES = "requires"
    CONFLICTS = "conflicts"
    OBSOLETES = "obsoletes"
    SINGLE_VERSION = "single-version"


@dataclass(frozen=True)
class Rule:
    kind: RuleKind
    description: str
    selector: int
    clauses: tuple[tuple[int, ...], ...] = field(repr=False)
    subjects: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.description


class SatProblem:
    """A set of rules over hashable keys, solved incrementally.

    Use as a context manager; the underlying solver is created on first
    ``solve`` and no rules may be added after that.
    """

    def __init__(self):
        self._pool = IDPool()
        self._rules: list[Rule] = []
        self._by_selector: dict[int, Rule] = {}
        self._solver: Solver | None = None

    def __enter__(self) -> "SatProblem":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._solver is not None:
            self._solver.delete()
            self._solver = None

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    def var(self, key: Hashable) -> int:
        return self._pool.id(("var", key))

    def key(self, var: int) -> Hashable:
        return self._pool.obj(abs(var))[1]

    def add_rule(
        self,
        kind: RuleKind,
        description: str,
        clauses: Iterable[Sequence[int]],
        subjects: Iterable[str] = (),
    ) -> Rule:
        if self._solver is not None:
            raise RuntimeError("rules cannot be added once solving has started")
        selector = self._pool.id(("rule", len(self._rules)))
        rule = Rule(
            kind=kind,
            description=description,
            selector=selector,
            clauses=tuple(tuple(clause) for clause in clauses),
            subjects=tuple(subjects),
        )
        self._rules.append(rule)
        self._by_selector[selector] = rule
        return rule

    def _get_solver(self) -> Solver:
        if self._solver is None:
            clauses = [[*clause, -rule.selector] for rule in self._rules for clause in rule.clauses]
            self._solver = Solver(name=SOLVER_NAME, bootstrap_with=clauses)
            logger.debug(f"Solver loaded with {len(self._rules)} rules, {len(clauses)} clauses")
        return self._solver

    def _selectors(self, excluded: set[int] | None = None) -> list[int]:
        return [rule.selector for rule in self._rules if not excluded or rule.selector not in excluded]

    def solve(self, assumptions: Iterable[int] = ()) -> set[int] | None:
        """Solve with every rule active plus ``assumptions``.

        Returns:
            The positive variables of a model, or None if unsatisfiable
        """
        solver = self._get_solver()
        if not solver.solve(assumptions=[*self._selectors(), *assumptions]):
            return None
        return {lit for lit in solver.get_model() or [] if lit > 0}

    def minimal_core(self, check_cancel: Callable[[], None] | None = None) -> list[Rule]:
        """Shrink the solver's unsat core to a minimal set of conflicting rules.

        Must be called when ``solve()`` without extra assumptions is unsatisfiable.
        """
        solver = self._get_solver()
        if solver.solve(assumptions=self._selectors()):
            raise RuntimeError("problem is satisfiable, there is no core")
        core = [lit for lit in solver.get_core() or [] if lit in self._by_selector]

        # deletion-based: drop every rule the rest stays unsatisfiable without
        index = 0
        while index < len(core):
            if check_cancel is not None:
                check_cancel()
            trial = core[:index] + core[index + 1 :]
            if not solver.solve(assumptions=trial):
                reduced = set(solver.get_core() or trial)
                core = [lit for lit in trial if lit in reduced]
            else:
                index += 1
        return [self._by_selector[lit] for lit in sorted(core)]
