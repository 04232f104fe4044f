from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterator, Literal


DurationUnit = Literal["business_days", "calendar_days"]
"""Duration arithmetic: business days skip Saturdays and Sundays, calendar days do not."""

PhaseStatus = Literal["pending", "in-progress", "completed"]
"""Derived phase state from completed vs total task counts."""

NodeKind = Literal["phase", "bar"]
"""Allowed render node types: phase heading (bracket) and task bar."""

DURATION_UNITS: tuple[str, ...] = ("business_days", "calendar_days")


class CatalogValidationError(Exception):
    """Raised when a phase catalog is structurally invalid (duplicate keys, bad units, unknown sink)."""


@dataclass(frozen=True)
class TaskTemplate:
    """Catalog definition of a single task owned by exactly one phase."""

    key: str
    title: str
    duration: int = 1
    unit: DurationUnit = "business_days"
    roles: frozenset[str] = frozenset()
    note: str | None = None


@dataclass(frozen=True)
class Phase:
    """One stage of the workflow; `duration`/`unit` apply only when it has no tasks."""

    key: str
    title: str
    group: str | None = None
    duration: int = 0
    unit: DurationUnit = "business_days"
    tasks: tuple[TaskTemplate, ...] = ()


@dataclass(frozen=True)
class PhaseCatalog:
    """
    Immutable, totally ordered list of phases.

    Phase keys and task keys must be unique across the catalog. The sink is
    the terminal phase that only accepts tasks from its immediate predecessor;
    it defaults to the last phase.
    """

    phases: tuple[Phase, ...]
    name: str = "workflow"
    sink: str | None = None
    _index: dict[str, int] = field(init=False, repr=False, compare=False)
    _tasks: dict[str, tuple[TaskTemplate, str]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        phases = tuple(self.phases)
        object.__setattr__(self, "phases", phases)
        if not phases:
            raise CatalogValidationError("catalog must define at least one phase")

        index: dict[str, int] = {}
        tasks: dict[str, tuple[TaskTemplate, str]] = {}
        for position, phase in enumerate(phases):
            if phase.key in index:
                raise CatalogValidationError(f"Duplicate phase key '{phase.key}'")
            index[phase.key] = position
            _check_duration(phase.duration, phase.unit, f"phase '{phase.key}'")
            for task in phase.tasks:
                if task.key in tasks:
                    owner = tasks[task.key][1]
                    raise CatalogValidationError(
                        f"Duplicate task key '{task.key}' (first seen in phase '{owner}', again in '{phase.key}')"
                    )
                _check_duration(task.duration, task.unit, f"task '{task.key}'")
                tasks[task.key] = (task, phase.key)

        for task_key in tasks:
            if task_key in index:
                raise CatalogValidationError(f"Task key '{task_key}' collides with a phase key")

        if self.sink is not None and self.sink not in index:
            raise CatalogValidationError(f"Unknown sink phase '{self.sink}'")

        object.__setattr__(self, "_index", index)
        object.__setattr__(self, "_tasks", tasks)

    def __iter__(self) -> Iterator[Phase]:
        return iter(self.phases)

    def __len__(self) -> int:
        return len(self.phases)

    def keys(self) -> list[str]:
        return [phase.key for phase in self.phases]

    @property
    def sink_key(self) -> str:
        return self.sink if self.sink is not None else self.phases[-1].key

    def has_phase(self, key: str) -> bool:
        return key in self._index

    def phase(self, key: str) -> Phase:
        try:
            return self.phases[self._index[key]]
        except KeyError:
            raise KeyError(f"unknown phase '{key}'") from None

    def index_of(self, key: str) -> int | None:
        return self._index.get(key)

    def task(self, key: str) -> TaskTemplate | None:
        entry = self._tasks.get(key)
        return entry[0] if entry else None

    def native_phase_of(self, task_key: str) -> str | None:
        """Phase that owns the task in the catalog (before any reassignment)."""
        entry = self._tasks.get(task_key)
        return entry[1] if entry else None

    def default_order(self, phase_key: str) -> list[str]:
        if phase_key not in self._index:
            return []
        return [task.key for task in self.phase(phase_key).tasks]

    def is_adjacent(self, from_key: str, to_key: str) -> bool:
        """True when the two phases are immediate neighbours in catalog order."""
        from_idx = self._index.get(from_key)
        to_idx = self._index.get(to_key)
        if from_idx is None or to_idx is None:
            return False
        return abs(from_idx - to_idx) == 1


def _check_duration(duration: int, unit: str, label: str) -> None:
    if isinstance(duration, bool) or not isinstance(duration, int) or duration < 0:
        raise CatalogValidationError(f"{label} has invalid duration={duration!r}")
    if unit not in DURATION_UNITS:
        raise CatalogValidationError(f"{label} has unknown unit '{unit}'")


@dataclass(frozen=True)
class TaskView:
    """
    Computed, display-ready task. Also the card type held in the live Kanban columns.

    `phase_key` is the column the task is shown in; `native_phase_key` is its catalog owner.
    """

    key: str
    title: str
    phase_key: str
    native_phase_key: str
    duration: int
    unit: DurationUnit
    start_date: date | None = None
    end_date: date | None = None
    roles: frozenset[str] = frozenset()
    note: str | None = None
    is_completed: bool = False
    is_fixed: bool = False

    @property
    def is_locked(self) -> bool:
        """Completed tasks cannot be dragged, reordered or reassigned."""
        return self.is_completed


@dataclass(frozen=True)
class PhaseView:
    """Computed phase with its resolved task list, dates, status and alert flags."""

    key: str
    title: str
    group: str | None
    status: PhaseStatus
    total_tasks: int
    completed_tasks: int
    tasks: tuple[TaskView, ...] = ()
    start_date: date | None = None
    end_date: date | None = None
    is_overdue: bool = False
    is_upcoming: bool = False
    note: str | None = None


@dataclass(frozen=True)
class NextAction:
    title: str
    phase_key: str
    phase_title: str


@dataclass(frozen=True)
class TimelineSummary:
    """Roll-up of a computed timeline for dashboards."""

    overall_progress: int
    current_phase: PhaseView | None
    overdue_count: int
    upcoming_count: int
    next_action: NextAction | None


@dataclass(frozen=True)
class ProgressEntry:
    """A progress record to seed for a project: one title with its planned date."""

    title: str
    planned_date: date
    phase_key: str


@dataclass
class FlatRenderRow:
    """
    Flattened view of a timeline used by the renderer.

    Only the fields relevant to drawing are kept: positional order,
    indentation level, node kind, phase ownership, date boundaries and alert state.
    """

    order: int
    indent: int
    node_type: NodeKind
    node_id: str
    name: str
    phase: str
    start_date: date | None = None
    finish_date: date | None = None
    status: PhaseStatus = "pending"
    is_overdue: bool = False
    is_upcoming: bool = False
