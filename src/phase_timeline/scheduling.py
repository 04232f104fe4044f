from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable

from .catalog_models import (
    NextAction,
    Phase,
    PhaseCatalog,
    PhaseStatus,
    PhaseView,
    ProgressEntry,
    TaskTemplate,
    TaskView,
    TimelineSummary,
)
from .overrides import OverridePatch, PhaseOverride
from .workdays import parse_completion_date, shift

logger = logging.getLogger(__name__)

UPCOMING_WINDOW_DAYS = 7

_Span = tuple[date, date]


def compute_timeline(
    catalog: PhaseCatalog,
    completion: date | str | None,
    patch: OverridePatch | None = None,
    completed_titles: Iterable[str] = (),
    today: date | None = None,
    upcoming_days: int = UPCOMING_WINDOW_DAYS,
) -> list[PhaseView]:
    """
    Derive dates, status and alerts for every phase and task.

    - Anchors the end of the last phase on the completion date and walks the
      catalog backwards; each task ends where its successor starts.
    - Task sets honour reassignment, skips and custom order from the patch.
    - Custom durations and fixed task dates are applied during the walk.
    - Phase start/end overrides replace the computed values without shifting
      neighbouring phases.
    - Returns an empty list when the completion date cannot be parsed.
    """

    anchor = parse_completion_date(completion)
    if anchor is None:
        logger.debug("No timeline: unusable completion date %r", completion)
        return []

    patch = patch or OverridePatch()
    completed = frozenset(completed_titles)
    today = today or date.today()

    task_sets = resolve_task_sets(catalog, patch)
    phase_spans, task_spans = _backward_pass(catalog, task_sets, patch, anchor)

    views: list[PhaseView] = []
    for phase in catalog:
        override = patch.phase(phase.key)
        tasks = tuple(
            _task_view(catalog, phase.key, task, task_spans[task.key], patch, completed)
            for task in task_sets[phase.key]
        )
        start_date, end_date = phase_spans[phase.key]
        if override.start_date:
            start_date = override.start_date
        if override.end_date:
            end_date = override.end_date

        total, done = _progress_counts(phase, tasks, completed)
        status = _status(total, done)
        is_overdue, is_upcoming = _alert_flags(status, end_date, today, upcoming_days)
        views.append(
            PhaseView(
                key=phase.key,
                title=phase.title,
                group=phase.group,
                status=status,
                total_tasks=total,
                completed_tasks=done,
                tasks=tasks,
                start_date=start_date,
                end_date=end_date,
                is_overdue=is_overdue,
                is_upcoming=is_upcoming,
                note=override.note,
            )
        )
    return views


def resolve_task_sets(catalog: PhaseCatalog, patch: OverridePatch) -> dict[str, list[TaskTemplate]]:
    """
    Return the ordered task list of every phase after applying the patch.

    Tasks reassigned into a phase are appended after its catalog tasks, then
    skipped and reassigned-away tasks are dropped, then the custom order (if
    any) is applied with unlisted tasks kept at the end in their prior order.
    """

    incoming: dict[str, list[TaskTemplate]] = {key: [] for key in catalog.keys()}
    for task_key, phase_key in patch.task_assignments.items():
        template = catalog.task(task_key)
        if template is None or not catalog.has_phase(phase_key):
            logger.debug("Ignoring assignment of '%s' to '%s'", task_key, phase_key)
            continue
        if catalog.native_phase_of(task_key) != phase_key:
            incoming[phase_key].append(template)

    resolved: dict[str, list[TaskTemplate]] = {}
    for phase in catalog:
        override = patch.phase(phase.key)
        skipped = set(override.skipped_sub_phases)
        candidates = list(phase.tasks) + incoming[phase.key]
        kept = [
            task
            for task in candidates
            if task.key not in skipped and _effective_phase(catalog, patch, task.key) == phase.key
        ]
        resolved[phase.key] = _apply_order(kept, override.sub_phase_order)
    return resolved


def _effective_phase(catalog: PhaseCatalog, patch: OverridePatch, task_key: str) -> str | None:
    assigned = patch.task_assignments.get(task_key)
    if assigned and catalog.has_phase(assigned):
        return assigned
    return catalog.native_phase_of(task_key)


def _apply_order(tasks: list[TaskTemplate], order: tuple[str, ...]) -> list[TaskTemplate]:
    if not order:
        return tasks
    by_key = {task.key: task for task in tasks}
    ordered = [by_key[key] for key in dict.fromkeys(order) if key in by_key]
    listed = {task.key for task in ordered}
    ordered.extend(task for task in tasks if task.key not in listed)
    return ordered


def _backward_pass(
    catalog: PhaseCatalog,
    task_sets: dict[str, list[TaskTemplate]],
    patch: OverridePatch,
    anchor: date,
) -> tuple[dict[str, _Span], dict[str, _Span]]:
    phase_spans: dict[str, _Span] = {}
    task_spans: dict[str, _Span] = {}
    cursor = anchor

    for phase in reversed(catalog.phases):
        tasks = task_sets[phase.key]
        if not tasks:
            phase_spans[phase.key] = (shift(cursor, -phase.duration, phase.unit), cursor)
            cursor = phase_spans[phase.key][0]
            continue

        override = patch.phase(phase.key)
        chain_end = cursor
        for task in reversed(tasks):
            duration = _duration_for(catalog, patch, override, task)
            fixed = override.fixed_dates.get(task.key)
            if fixed is not None:
                span = (fixed, shift(fixed, duration, task.unit))
            else:
                span = (shift(chain_end, -duration, task.unit), chain_end)
            task_spans[task.key] = span
            chain_end = span[0]

        starts = [task_spans[task.key][0] for task in tasks]
        finishes = [task_spans[task.key][1] for task in tasks]
        phase_spans[phase.key] = (min(starts), max(finishes))
        cursor = phase_spans[phase.key][0]

    return phase_spans, task_spans


def _duration_for(
    catalog: PhaseCatalog,
    patch: OverridePatch,
    override: PhaseOverride,
    task: TaskTemplate,
) -> int:
    if task.key in override.custom_durations:
        return override.custom_durations[task.key]
    native = catalog.native_phase_of(task.key)
    if native is not None:
        native_durations = patch.phase(native).custom_durations
        if task.key in native_durations:
            return native_durations[task.key]
    return task.duration


def _task_view(
    catalog: PhaseCatalog,
    phase_key: str,
    task: TaskTemplate,
    span: _Span,
    patch: OverridePatch,
    completed: frozenset[str],
) -> TaskView:
    override = patch.phase(phase_key)
    return TaskView(
        key=task.key,
        title=task.title,
        phase_key=phase_key,
        native_phase_key=catalog.native_phase_of(task.key) or phase_key,
        duration=_duration_for(catalog, patch, override, task),
        unit=task.unit,
        start_date=span[0],
        end_date=span[1],
        roles=task.roles,
        note=task.note,
        is_completed=task.title in completed,
        is_fixed=task.key in override.fixed_dates,
    )


def _progress_counts(phase: Phase, tasks: tuple[TaskView, ...], completed: frozenset[str]) -> tuple[int, int]:
    if not tasks:
        # A task-less phase counts as one implicit task named after the phase.
        return 1, int(phase.title in completed)
    return len(tasks), sum(1 for task in tasks if task.is_completed)


def _status(total: int, done: int) -> PhaseStatus:
    if done == 0:
        return "pending"
    if done >= total:
        return "completed"
    return "in-progress"


def _alert_flags(status: PhaseStatus, end_date: date | None, today: date, upcoming_days: int) -> tuple[bool, bool]:
    if status == "completed" or end_date is None:
        return False, False
    if end_date < today:
        return True, False
    return False, end_date < today + timedelta(days=upcoming_days)


def summarize(views: list[PhaseView]) -> TimelineSummary:
    """Overall progress, current phase, alert counts and the next action to take."""

    total = sum(view.total_tasks for view in views)
    done = sum(view.completed_tasks for view in views)
    overall = round(done * 100 / total) if total else 0

    current = next((view for view in views if view.status == "in-progress"), None)
    if current is None:
        current = next((view for view in views if view.status == "pending"), None)

    return TimelineSummary(
        overall_progress=overall,
        current_phase=current,
        overdue_count=sum(1 for view in views if view.is_overdue),
        upcoming_count=sum(1 for view in views if view.is_upcoming),
        next_action=_next_action(views),
    )


def _next_action(views: list[PhaseView]) -> NextAction | None:
    for view in views:
        if view.status == "completed":
            continue
        if view.tasks:
            for task in view.tasks:
                if not task.is_completed:
                    return NextAction(title=task.title, phase_key=view.key, phase_title=view.title)
        else:
            return NextAction(title=view.title, phase_key=view.key, phase_title=view.title)
    return None


def progress_entries(views: list[PhaseView], existing_titles: Iterable[str] = ()) -> list[ProgressEntry]:
    """
    Progress records to seed from a computed timeline.

    One entry per dated task (at its start date), or one per task-less phase
    (at its start, else end date). Titles already tracked are skipped, and a
    title is only emitted once.
    """

    seen = set(existing_titles)
    entries: list[ProgressEntry] = []
    for view in views:
        if view.tasks:
            candidates = [(task.title, task.start_date) for task in view.tasks]
        else:
            candidates = [(view.title, view.start_date or view.end_date)]
        for title, planned in candidates:
            if planned is None or title in seen:
                continue
            seen.add(title)
            entries.append(ProgressEntry(title=title, planned_date=planned, phase_key=view.key))
    return entries
