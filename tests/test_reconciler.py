import asyncio
import datetime as dt
import json

import pytest

from phase_timeline.catalog_models import Phase, PhaseCatalog, TaskTemplate
from phase_timeline.overrides import OverridePatch, PhaseOverride, parse_overrides
from phase_timeline.persistence import InMemoryOverrideStore, PersistenceError
from phase_timeline.reconciler import (
    KanbanReconciler,
    ReconcilerStateError,
    build_columns,
    column_id,
    commit_diff,
    preview_move,
)
from phase_timeline.scheduling import compute_timeline

COMPLETION = dt.date(2026, 3, 31)


def _task(key, duration=1):
    return TaskTemplate(key=key, title=f"Task {key}", duration=duration)


def _catalog():
    return PhaseCatalog(
        phases=(
            Phase(key="A", title="Phase A", tasks=(_task("a1"), _task("a2"), _task("a3"))),
            Phase(key="B", title="Phase B", tasks=(_task("b1"), _task("b2"))),
            Phase(key="C", title="Phase C", tasks=(_task("c1"),)),
            Phase(key="D", title="Construction", tasks=(_task("d1"),)),
        )
    )


def _reconciler(patch=None, completed=(), adapter=None, catalog=None):
    catalog = catalog or _catalog()
    patch = patch or OverridePatch()
    views = compute_timeline(catalog, COMPLETION, patch, completed_titles=completed)
    return KanbanReconciler(catalog, adapter or InMemoryOverrideStore(), "p1", patch=patch, views=views)


class FailingStore(InMemoryOverrideStore):
    async def save(self, project_id, payload):
        raise PersistenceError("network down")


class SlowStore(InMemoryOverrideStore):
    async def save(self, project_id, payload):
        await asyncio.sleep(1)


def test_cross_phase_drop_records_assignment_and_recomputes_under_destination():
    reconciler = _reconciler()

    assert reconciler.begin_drag("b1")
    assert reconciler.preview_move(column_id("A"))
    outcome = asyncio.run(reconciler.drop(column_id("A")))

    assert outcome.ok
    assert reconciler.state == "idle"
    assert reconciler.patch.task_assignments == {"b1": "A"}
    assert reconciler.order("A") == ["a1", "a2", "a3", "b1"]
    assert json.loads(outcome.payload) == {
        "phases": {
            "A": {"subPhaseOrder": ["a1", "a2", "a3", "b1"]},
            "B": {"subPhaseOrder": ["b2"]},
        },
        "taskAssignments": {"b1": "A"},
    }

    stored = parse_overrides(reconciler.adapter.payloads["p1"])
    views = {view.key: view for view in compute_timeline(_catalog(), COMPLETION, stored)}
    assert "b1" in [task.key for task in views["A"].tasks]
    assert "b1" not in [task.key for task in views["B"].tasks]


def test_hover_on_task_inserts_at_its_position():
    reconciler = _reconciler()
    reconciler.begin_drag("b1")
    assert reconciler.preview_move("a2")
    assert reconciler.order("A") == ["a1", "b1", "a2", "a3"]
    assert reconciler.task("b1").phase_key == "A"


def test_non_adjacent_move_leaves_state_and_patch_unchanged():
    previous = OverridePatch(phases={"C": PhaseOverride(note="keep me")})
    reconciler = _reconciler(patch=previous)
    before = {key: list(tasks) for key, tasks in reconciler.columns.items()}

    reconciler.begin_drag("a1")
    assert not reconciler.preview_move(column_id("C"))
    assert not reconciler.preview_move("c1")
    outcome = asyncio.run(reconciler.drop(column_id("C")))

    assert outcome.ok
    assert reconciler.columns == before
    assert reconciler.patch == previous
    assert reconciler.adapter.payloads["p1"] == previous.serialize()


def test_task_moves_one_step_at_a_time_from_current_column():
    reconciler = _reconciler()
    reconciler.begin_drag("a1")
    assert reconciler.preview_move(column_id("B"))
    assert reconciler.preview_move(column_id("C"))
    asyncio.run(reconciler.drop(column_id("C")))

    assert reconciler.patch.task_assignments == {"a1": "C"}
    assert reconciler.order("C") == ["c1", "a1"]


def test_sink_accepts_only_from_its_predecessor():
    catalog = PhaseCatalog(phases=_catalog().phases, sink="C")
    reconciler = _reconciler(catalog=catalog)

    reconciler.begin_drag("d1")
    assert not reconciler.preview_move(column_id("C"))
    reconciler.cancel_drag()

    reconciler.begin_drag("b2")
    assert reconciler.preview_move(column_id("C"))


def test_reorder_within_phase_only_touches_that_phase():
    reconciler = _reconciler()
    reconciler.begin_drag("a3")
    outcome = asyncio.run(reconciler.drop("a1"))

    assert reconciler.order("A") == ["a3", "a1", "a2"]
    assert set(reconciler.patch.phases) == {"A"}
    assert reconciler.patch.phase("A").sub_phase_order == ("a3", "a1", "a2")
    assert reconciler.patch.task_assignments == {}
    assert json.loads(outcome.payload) == {"A": {"subPhaseOrder": ["a3", "a1", "a2"]}}


def test_reordering_back_to_default_drops_custom_order():
    patch = OverridePatch(phases={"A": PhaseOverride(sub_phase_order=("a2", "a1", "a3"), note="n")})
    reconciler = _reconciler(patch=patch)
    assert reconciler.order("A") == ["a2", "a1", "a3"]

    reconciler.begin_drag("a1")
    asyncio.run(reconciler.drop("a2"))

    assert reconciler.order("A") == ["a1", "a2", "a3"]
    assert reconciler.patch.phase("A") == PhaseOverride(note="n")


def test_locked_task_cannot_be_picked_up():
    reconciler = _reconciler(completed={"Task b1"})

    assert not reconciler.can_drag("b1")
    assert not reconciler.begin_drag("b1")
    assert reconciler.state == "idle"
    with pytest.raises(ReconcilerStateError):
        asyncio.run(reconciler.drop(column_id("A")))


def test_locked_task_keeps_its_slot_when_others_reorder():
    reconciler = _reconciler(completed={"Task a2"})

    reconciler.begin_drag("a3")
    asyncio.run(reconciler.drop("a1"))
    assert reconciler.order("A") == ["a3", "a2", "a1"]

    reconciler.begin_drag("b1")
    reconciler.preview_move("a2")
    asyncio.run(reconciler.drop("a2"))
    assert reconciler.order("A")[1] == "a2"
    assert "a2" not in reconciler.patch.task_assignments


def test_resync_is_ignored_during_drag():
    reconciler = _reconciler()
    fresh = compute_timeline(_catalog(), COMPLETION)

    reconciler.begin_drag("b1")
    reconciler.preview_move(column_id("A"))
    assert not reconciler.sync(fresh)
    assert "b1" in reconciler.order("A")

    reconciler.cancel_drag()
    assert reconciler.order("B") == ["b1", "b2"]
    assert reconciler.sync(fresh)


def test_resync_is_ignored_while_save_in_flight():
    reconciler = _reconciler(adapter=SlowStore())
    fresh = compute_timeline(_catalog(), COMPLETION)

    async def scenario():
        reconciler.begin_drag("a3")
        pending = asyncio.create_task(reconciler.drop("a1"))
        await asyncio.sleep(0)
        assert reconciler.state == "settling"
        assert not reconciler.sync(fresh)
        assert not reconciler.begin_drag("a2")
        await pending

    asyncio.run(scenario())
    assert reconciler.state == "idle"
    assert reconciler.order("A") == ["a3", "a1", "a2"]


def test_failed_save_keeps_live_state_and_can_be_retried():
    reconciler = _reconciler(adapter=FailingStore())
    reconciler.begin_drag("b1")
    reconciler.preview_move(column_id("A"))
    outcome = asyncio.run(reconciler.drop(column_id("A")))

    assert not outcome.ok
    assert outcome.error == "network down"
    assert reconciler.save_status == "failed"
    assert "b1" in reconciler.order("A")
    assert reconciler.patch.task_assignments == {"b1": "A"}

    reconciler.adapter = InMemoryOverrideStore()
    retried = asyncio.run(reconciler.retry_save())
    assert retried.ok
    assert reconciler.save_status == "saved"
    assert retried.payload == outcome.payload


def test_save_timeout_is_reported_as_failure():
    catalog = _catalog()
    reconciler = KanbanReconciler(
        catalog,
        SlowStore(),
        "p1",
        views=compute_timeline(catalog, COMPLETION),
        save_timeout=0.01,
    )
    reconciler.begin_drag("a2")
    outcome = asyncio.run(reconciler.drop("a1"))

    assert not outcome.ok
    assert reconciler.state == "idle"


def test_unchanged_drop_still_saves_and_clears_overrides():
    store = InMemoryOverrideStore({"p1": '{"A":{"note":""}}'})
    reconciler = _reconciler(adapter=store)
    reconciler.begin_drag("a1")
    outcome = asyncio.run(reconciler.drop("a1"))

    assert outcome.ok
    assert outcome.payload is None
    assert store.history == [("p1", None)]
    assert "p1" not in store.payloads


def test_phase_edit_is_saved_through_the_same_adapter():
    reconciler = _reconciler()
    outcome = asyncio.run(reconciler.save_phase_edit("B", end_date=dt.date(2026, 4, 15)))

    assert outcome.ok
    assert json.loads(outcome.payload) == {"B": {"endDate": "2026-04-15"}}


def test_commit_diff_ignores_skipped_tasks_and_keeps_their_assignments():
    catalog = _catalog()
    previous = OverridePatch(
        phases={"A": PhaseOverride(skipped_sub_phases=("b1",))},
        task_assignments={"b1": "A"},
    )
    columns = build_columns(catalog, compute_timeline(catalog, COMPLETION, previous))
    assert [task.key for task in columns["A"]] == ["a1", "a2", "a3"]
    assert [task.key for task in columns["B"]] == ["b2"]

    patch = commit_diff(catalog, columns, previous)
    assert patch.task_assignments == {"b1": "A"}
    assert patch.phase("A") == previous.phase("A")


def test_commit_diff_records_order_when_incoming_task_is_not_last():
    catalog = _catalog()
    columns = build_columns(catalog, compute_timeline(catalog, COMPLETION))
    columns = preview_move(catalog, columns, "b1", "a2")

    patch = commit_diff(catalog, columns, OverridePatch())
    assert patch.task_assignments == {"b1": "A"}
    assert patch.phase("A").sub_phase_order == ("a1", "b1", "a2", "a3")
    assert patch.phase("B").sub_phase_order == ("b2",)


def test_preview_move_is_pure():
    catalog = _catalog()
    columns = build_columns(catalog, compute_timeline(catalog, COMPLETION))
    snapshot = {key: list(tasks) for key, tasks in columns.items()}

    updated = preview_move(catalog, columns, "c1", column_id("B"))

    assert columns == snapshot
    assert [task.key for task in updated["B"]] == ["b1", "b2", "c1"]
    assert updated["C"] == []


def test_drop_leaves_custom_order_of_untouched_phases_alone():
    catalog = PhaseCatalog(
        phases=(
            Phase(key="A", title="Phase A", tasks=(_task("a1"), _task("a2"), _task("a3"))),
            Phase(key="C", title="Phase C", tasks=(_task("c1"), _task("c2"), _task("c3"))),
        )
    )
    previous = OverridePatch(
        phases={"C": PhaseOverride(sub_phase_order=("c3", "c1", "c2"), skipped_sub_phases=("c3",))}
    )
    reconciler = _reconciler(patch=previous, catalog=catalog)
    assert reconciler.order("C") == ["c1", "c2"]

    reconciler.begin_drag("a3")
    asyncio.run(reconciler.drop("a1"))

    assert reconciler.patch.phase("C") == previous.phase("C")
    assert reconciler.patch.phase("A").sub_phase_order == ("a3", "a1", "a2")


class BrokenTransportStore(InMemoryOverrideStore):
    async def save(self, project_id, payload):
        raise ConnectionError("connection reset")


def test_unexpected_adapter_error_is_reported_as_failed_save():
    reconciler = _reconciler(adapter=BrokenTransportStore())
    reconciler.begin_drag("a3")
    outcome = asyncio.run(reconciler.drop("a1"))

    assert not outcome.ok
    assert "connection reset" in outcome.error
    assert reconciler.save_status == "failed"
    assert reconciler.state == "idle"
    assert reconciler.order("A") == ["a3", "a1", "a2"]


class LaggingStore(InMemoryOverrideStore):
    def __init__(self, delays):
        super().__init__()
        self.delays = list(delays)

    async def save(self, project_id, payload):
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        await super().save(project_id, payload)


def test_timed_out_save_lands_before_the_next_one():
    store = LaggingStore([0.2])
    catalog = _catalog()
    reconciler = KanbanReconciler(
        catalog, store, "p1", views=compute_timeline(catalog, COMPLETION), save_timeout=0.15
    )

    async def scenario():
        reconciler.begin_drag("a3")
        first = await reconciler.drop("a1")
        assert not first.ok
        assert store.history == []
        second = await reconciler.save_phase_edit("B", note="grid reply pending")
        return first, second

    first, second = asyncio.run(scenario())

    assert second.ok
    assert [payload for _, payload in store.history] == [first.payload, second.payload]
