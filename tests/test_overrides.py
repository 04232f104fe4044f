import datetime as dt
import json

from phase_timeline.overrides import (
    NO_OVERRIDE,
    OverridePatch,
    PhaseOverride,
    parse_overrides,
    serialize_overrides,
)


def test_bare_and_envelope_forms_normalise_to_the_same_patch():
    bare = parse_overrides('{"A":{"note":"hold"}}')
    envelope = parse_overrides('{"phases":{"A":{"note":"hold"}}}')

    assert bare == envelope
    assert bare.phase("A").note == "hold"
    assert bare.task_assignments == {}


def test_corrupt_or_missing_input_yields_empty_patch():
    for raw in (None, "", "   ", "{not json", "[1, 2]", "42", b"\xff"):
        assert parse_overrides(raw) == OverridePatch()


def test_malformed_fields_are_dropped_individually():
    patch = parse_overrides(
        json.dumps(
            {
                "A": {
                    "startDate": "2026-02-30",
                    "endDate": "2026-03-10",
                    "subPhaseOrder": ["a2", 7, "a1"],
                    "customDurations": {"a1": 2, "a2": -1, "a3": "x", "a4": 1.5},
                    "fixedDates": {"a1": "nope", "a2": "2026-03-02"},
                },
                "B": "not a mapping",
            }
        )
    )

    entry = patch.phase("A")
    assert entry.start_date is None
    assert entry.end_date == dt.date(2026, 3, 10)
    assert entry.sub_phase_order == ("a2", "a1")
    assert entry.custom_durations == {"a1": 2}
    assert entry.fixed_dates == {"a2": dt.date(2026, 3, 2)}
    assert "B" not in patch.phases


def test_serialize_collapses_to_bare_form_without_assignments():
    phases = {"A": PhaseOverride(sub_phase_order=("a2", "a1"))}

    raw = serialize_overrides(phases, {})
    assert json.loads(raw) == {"A": {"subPhaseOrder": ["a2", "a1"]}}

    raw = serialize_overrides(phases, {"b1": "A"})
    assert json.loads(raw) == {
        "phases": {"A": {"subPhaseOrder": ["a2", "a1"]}},
        "taskAssignments": {"b1": "A"},
    }


def test_empty_note_override_is_pruned():
    raw = serialize_overrides({"A": PhaseOverride(note=""), "B": PhaseOverride(note="keep")})
    assert json.loads(raw) == {"B": {"note": "keep"}}

    assert serialize_overrides({"A": PhaseOverride(note="")}) is NO_OVERRIDE
    assert parse_overrides('{"A":{"note":""}}').serialize() is NO_OVERRIDE


def test_assignments_alone_keep_envelope_with_empty_phases():
    raw = serialize_overrides({}, {"b1": "A"})
    assert json.loads(raw) == {"phases": {}, "taskAssignments": {"b1": "A"}}


def test_round_trip_preserves_patch():
    patch = OverridePatch(
        phases={
            "A": PhaseOverride(
                start_date=dt.date(2026, 3, 1),
                end_date=dt.date(2026, 3, 20),
                note="waiting on landowner",
                sub_phase_order=("a2", "a1"),
                skipped_sub_phases=("a3",),
                custom_durations={"a1": 4},
                fixed_dates={"a2": dt.date(2026, 3, 5)},
            ),
            "B": PhaseOverride(note="grid"),
        },
        task_assignments={"b2": "A"},
    )
    assert parse_overrides(serialize_overrides(patch.phases, patch.task_assignments)) == patch

    bare_only = OverridePatch(phases={"B": PhaseOverride(end_date=dt.date(2026, 4, 1))})
    assert parse_overrides(bare_only.serialize()) == bare_only


def test_edit_phase_keeps_other_fields_and_prunes_when_cleared():
    patch = OverridePatch(phases={"A": PhaseOverride(sub_phase_order=("a2", "a1"))})

    edited = patch.edit_phase("A", start_date=dt.date(2026, 3, 2), note="moved up")
    assert edited.phase("A").sub_phase_order == ("a2", "a1")
    assert edited.phase("A").start_date == dt.date(2026, 3, 2)
    assert edited.phase("A").note == "moved up"

    only_note = OverridePatch().edit_phase("B", note="tmp")
    assert only_note.edit_phase("B", note="").phases == {}
