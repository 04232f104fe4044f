"""
Kanban reconciler: turns drag/drop gestures into a validated override patch.

States
------
idle      Live columns are a projection of the computed timeline; `sync`
          replaces them.
dragging  A task is picked up. Live columns change only through
          `preview_move`; upstream resyncs are ignored.
settling  The task was dropped; the new patch is derived and the save is in
          flight. Resyncs are still ignored and no new drag can start.

`preview_move`, `reorder_within` and `commit_diff` are pure functions over
columns so each step can be exercised without the state machine.

A failed save is logged and reported but the live columns are not rolled
back; `retry_save` re-sends the current patch. Saves are serialised per
reconciler (a save that timed out is awaited before the next one is sent),
but writers in other processes are not coordinated (last write
wins).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Iterable, Literal

from .catalog_models import PhaseCatalog, PhaseView, TaskView
from .overrides import OverridePatch
from .persistence import PersistenceAdapter, PersistenceError, ProjectId, SaveOutcome

logger = logging.getLogger(__name__)

COLUMN_PREFIX = "column:"
"""Drop targets that are whole columns use ids like 'column:<phase key>'."""

ReconcilerState = Literal["idle", "dragging", "settling"]
SaveStatus = Literal["idle", "saving", "saved", "failed"]

Columns = dict[str, list[TaskView]]


class ReconcilerStateError(Exception):
    """Raised when a transition is requested from the wrong state."""


def column_id(phase_key: str) -> str:
    return f"{COLUMN_PREFIX}{phase_key}"


def build_columns(catalog: PhaseCatalog, views: Iterable[PhaseView]) -> Columns:
    """One column per catalog phase, holding that phase's computed tasks in order."""

    columns: Columns = {key: [] for key in catalog.keys()}
    for view in views:
        if view.key in columns:
            columns[view.key] = list(view.tasks)
    return columns


def find_column(columns: Columns, task_id: str) -> str | None:
    for phase_key, tasks in columns.items():
        if any(task.key == task_id for task in tasks):
            return phase_key
    return None


def resolve_over_column(columns: Columns, over_id: str) -> str | None:
    """Column addressed by a drop target: a column id, or the column holding a task id."""
    if over_id.startswith(COLUMN_PREFIX):
        key = over_id[len(COLUMN_PREFIX):]
        return key if key in columns else None
    return find_column(columns, over_id)


def can_move_between(catalog: PhaseCatalog, from_key: str, to_key: str) -> bool:
    """
    Adjacency rule for cross-column moves.

    The destination must neighbour the column the task currently sits in,
    and the sink accepts tasks only from its immediate predecessor.
    """

    if from_key == to_key:
        return False
    sink = catalog.sink_key
    if to_key == sink:
        sink_idx = catalog.index_of(sink)
        if sink_idx is None or catalog.index_of(from_key) != sink_idx - 1:
            return False
    return catalog.is_adjacent(from_key, to_key)


def preview_move(catalog: PhaseCatalog, columns: Columns, task_id: str, over_id: str) -> Columns | None:
    """
    Move a task into the column under the pointer, if the move is allowed.

    The task is inserted at the position of the task it hovers, or appended
    when hovering the column itself. Returns the new columns, or None when
    the hover is not a valid cross-column move.
    """

    active = find_column(columns, task_id)
    target = resolve_over_column(columns, over_id)
    if active is None or target is None or active == target:
        return None
    if not can_move_between(catalog, active, target):
        logger.debug("Rejected move of '%s' from '%s' to '%s'", task_id, active, target)
        return None

    source = list(columns[active])
    index = next(i for i, task in enumerate(source) if task.key == task_id)
    if source[index].is_locked:
        return None
    moved = replace(source.pop(index), phase_key=target)

    destination = columns[target]
    insert_at = next((i for i, task in enumerate(destination) if task.key == over_id), len(destination))

    updated = dict(columns)
    updated[active] = source
    updated[target] = _insert_keeping_locked(destination, moved, insert_at)
    return updated


def reorder_within(columns: Columns, phase_key: str, task_id: str, over_id: str) -> Columns | None:
    """
    Move a task to the index of the task it was dropped on, inside one column.

    Completed tasks keep their slots; the other tasks shuffle around them.
    Returns None when there is nothing to reorder.
    """

    tasks = columns.get(phase_key, [])
    keys = [task.key for task in tasks]
    if task_id not in keys or over_id not in keys:
        return None
    old, new = keys.index(task_id), keys.index(over_id)
    if old == new or tasks[old].is_locked:
        return None
    updated = dict(columns)
    updated[phase_key] = _move_keeping_locked(tasks, old, new)
    return updated


def commit_diff(
    catalog: PhaseCatalog,
    columns: Columns,
    previous: OverridePatch,
    changed: Iterable[str] | None = None,
) -> OverridePatch:
    """
    Derive the override patch that reproduces the live columns.

    - Every task resident outside its native phase gets a task assignment.
    - Only `changed` columns (all columns when None) touch `subPhaseOrder`:
      a non-empty column whose keys differ from the catalog default (minus
      skipped tasks) records its full key list; a column back in default
      order drops its stale custom order.
    - Every other override field and phase is carried over from `previous`.
    """

    assignments: dict[str, str] = {}
    on_board: set[str] = set()
    for phase_key in catalog.keys():
        for task in columns.get(phase_key, []):
            on_board.add(task.key)
            native = catalog.native_phase_of(task.key)
            if native is not None and native != phase_key:
                assignments[task.key] = phase_key

    # Tasks hidden from the board (skipped) keep whatever assignment they had.
    for task_key, phase_key in previous.task_assignments.items():
        if task_key not in on_board:
            assignments.setdefault(task_key, phase_key)

    phases = dict(previous.phases)
    targets = set(catalog.keys()) if changed is None else set(changed)
    for phase_key in catalog.keys():
        if phase_key not in targets:
            continue
        keys = [task.key for task in columns.get(phase_key, [])]
        entry = previous.phase(phase_key)
        skipped = set(entry.skipped_sub_phases)
        default = [key for key in catalog.default_order(phase_key) if key not in skipped]

        if keys and keys != default:
            phases[phase_key] = replace(entry, sub_phase_order=tuple(keys))
        elif keys == default and entry.sub_phase_order:
            phases[phase_key] = replace(entry, sub_phase_order=())

    return OverridePatch(phases=phases, task_assignments=assignments).pruned()


def changed_columns(before: Columns, after: Columns) -> set[str]:
    """Keys of the columns whose task order differs between two board states."""
    keys = set(before) | set(after)
    return {
        key
        for key in keys
        if [task.key for task in before.get(key, [])] != [task.key for task in after.get(key, [])]
    }


def _move_keeping_locked(tasks: list[TaskView], old: int, new: int) -> list[TaskView]:
    moved = tasks[old]
    free = [i for i, task in enumerate(tasks) if not task.is_locked and i != old]
    if old < new:
        rank = sum(1 for i in free if i <= new)
    else:
        rank = sum(1 for i in free if i < new)
    others = [tasks[i] for i in free]
    others.insert(rank, moved)
    remaining = iter(others)
    return [task if task.is_locked else next(remaining) for task in tasks]


def _insert_keeping_locked(tasks: list[TaskView], item: TaskView, index: int) -> list[TaskView]:
    rank = sum(1 for task in tasks[:index] if not task.is_locked)
    unlocked = [task for task in tasks if not task.is_locked]
    unlocked.insert(rank, item)
    remaining = iter(unlocked)
    result = [task if task.is_locked else next(remaining) for task in tasks]
    result.extend(remaining)
    return result


class KanbanReconciler:
    """Single owner of the live columns, the current patch and the drag state."""

    def __init__(
        self,
        catalog: PhaseCatalog,
        adapter: PersistenceAdapter,
        project_id: ProjectId,
        patch: OverridePatch | None = None,
        views: Iterable[PhaseView] = (),
        save_timeout: float | None = None,
    ):
        self.catalog = catalog
        self.adapter = adapter
        self.project_id = str(project_id)
        self.save_timeout = save_timeout
        self.patch: OverridePatch = patch or OverridePatch()
        self.columns: Columns = build_columns(catalog, views)
        self.state: ReconcilerState = "idle"
        self.save_status: SaveStatus = "idle"
        self.last_outcome: SaveOutcome | None = None
        self.active_task_id: str | None = None
        self.origin_column: str | None = None
        self._snapshot: Columns | None = None
        self._save_lock = asyncio.Lock()
        self._straggler: asyncio.Future | None = None

    @property
    def is_dragging(self) -> bool:
        return self.state != "idle"

    def task(self, task_id: str) -> TaskView | None:
        for tasks in self.columns.values():
            for task in tasks:
                if task.key == task_id:
                    return task
        return None

    def order(self, phase_key: str) -> list[str]:
        return [task.key for task in self.columns.get(phase_key, [])]

    # -------------------- upstream synchronisation --------------------
    def sync(self, views: Iterable[PhaseView], patch: OverridePatch | None = None) -> bool:
        """Replace live columns (and optionally the patch) from a recomputed timeline; ignored unless idle."""
        if self.state != "idle":
            logger.debug("Ignoring resync while %s", self.state)
            return False
        self.columns = build_columns(self.catalog, views)
        if patch is not None:
            self.patch = patch
        return True

    # -------------------- drag transitions --------------------
    def can_drag(self, task_id: str) -> bool:
        task = self.task(task_id)
        return task is not None and not task.is_locked

    def begin_drag(self, task_id: str) -> bool:
        """idle -> dragging. Locked or unknown tasks cannot be picked up."""
        if self.state != "idle" or not self.can_drag(task_id):
            return False
        self.state = "dragging"
        self.active_task_id = task_id
        self.origin_column = find_column(self.columns, task_id)
        self._snapshot = {key: list(tasks) for key, tasks in self.columns.items()}
        return True

    def preview_move(self, over_id: str) -> bool:
        """Apply a cross-column hover; invalid hovers are silently ignored."""
        if self.state != "dragging":
            raise ReconcilerStateError(f"preview_move requires a drag in progress (state={self.state})")
        updated = preview_move(self.catalog, self.columns, self.active_task_id or "", over_id)
        if updated is None:
            return False
        self.columns = updated
        return True

    def cancel_drag(self) -> None:
        """dragging -> idle, restoring the columns captured when the drag began."""
        if self.state != "dragging":
            raise ReconcilerStateError(f"cancel_drag requires a drag in progress (state={self.state})")
        if self._snapshot is not None:
            self.columns = self._snapshot
        self._reset_drag()

    async def drop(self, over_id: str | None = None) -> SaveOutcome:
        """
        dragging -> settling -> idle.

        Finishes the move (reorder inside the column, or a last cross-column
        move when the drop lands on a new valid column), derives the new patch
        from the live columns and saves it. The save always happens, even when
        nothing changed.
        """

        if self.state != "dragging":
            raise ReconcilerStateError(f"drop requires a drag in progress (state={self.state})")
        task_id = self.active_task_id or ""
        before = self._snapshot or self.columns
        self.state = "settling"
        try:
            if over_id is not None:
                self._finish_move(task_id, over_id)
            self.patch = commit_diff(self.catalog, self.columns, self.patch, changed_columns(before, self.columns))
            return await self._persist()
        finally:
            self._reset_drag()

    def _finish_move(self, task_id: str, over_id: str) -> None:
        current = find_column(self.columns, task_id)
        target = resolve_over_column(self.columns, over_id)
        if current is None or target is None:
            return
        if current == target:
            updated = reorder_within(self.columns, current, task_id, over_id)
        else:
            updated = preview_move(self.catalog, self.columns, task_id, over_id)
        if updated is not None:
            self.columns = updated

    def _reset_drag(self) -> None:
        self.state = "idle"
        self.active_task_id = None
        self.origin_column = None
        self._snapshot = None

    # -------------------- persistence --------------------
    async def save_phase_edit(self, phase_key: str, **changes) -> SaveOutcome:
        """Set a phase's start/end date or note (see OverridePatch.edit_phase) and save."""
        if self.state != "idle":
            raise ReconcilerStateError(f"cannot edit a phase while {self.state}")
        if not self.catalog.has_phase(phase_key):
            raise KeyError(f"unknown phase '{phase_key}'")
        self.patch = self.patch.edit_phase(phase_key, **changes)
        return await self._persist()

    async def retry_save(self) -> SaveOutcome:
        """Re-send the current patch after a failed save."""
        return await self._persist()

    async def _persist(self) -> SaveOutcome:
        async with self._save_lock:
            payload = self.patch.serialize()
            self.save_status = "saving"
            try:
                await self._await_straggler()
                await self._send(payload)
            except (PersistenceError, asyncio.TimeoutError) as exc:
                outcome = self._failed(payload, str(exc) or type(exc).__name__)
            except Exception as exc:
                logger.exception("Unexpected error from %s", type(self.adapter).__name__)
                outcome = self._failed(payload, f"{type(exc).__name__}: {exc}")
            else:
                logger.info("Saved overrides for project %s", self.project_id)
                outcome = SaveOutcome(ok=True, project_id=self.project_id, payload=payload)
                self.save_status = "saved"
            self.last_outcome = outcome
            return outcome

    async def _send(self, payload: str | None) -> None:
        if self.save_timeout is None:
            await self.adapter.save(self.project_id, payload)
            return
        save = asyncio.ensure_future(self.adapter.save(self.project_id, payload))
        try:
            await asyncio.wait_for(asyncio.shield(save), self.save_timeout)
        except asyncio.TimeoutError:
            # The adapter may still complete (e.g. a worker thread); the next save waits for it.
            self._straggler = save
            raise

    async def _await_straggler(self) -> None:
        straggler, self._straggler = self._straggler, None
        if straggler is None or straggler.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(straggler), self.save_timeout)
        except asyncio.TimeoutError:
            self._straggler = straggler
            raise PersistenceError("previous save is still in flight") from None
        except Exception as exc:
            logger.debug("Timed-out save finished with %s", type(exc).__name__)

    def _failed(self, payload: str | None, error: str) -> SaveOutcome:
        logger.error("Failed to save overrides for project %s: %s", self.project_id, error)
        self.save_status = "failed"
        return SaveOutcome(ok=False, project_id=self.project_id, payload=payload, error=error)
