"""
Per-project override patch: model, lenient parsing and compact serialization.

Two on-disk shapes are accepted: the bare per-phase mapping and the envelope
``{"phases": {...}, "taskAssignments": {...}}``. Both normalise to an
:class:`OverridePatch`. Serialization prunes empty phase entries, collapses to
the bare shape when there are no task assignments, and returns ``None`` when
nothing is left ("clear all overrides").
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Mapping

logger = logging.getLogger(__name__)

NO_OVERRIDE = None
"""Serialized form of an empty patch; tells the store to clear the project's overrides."""

_UNSET: Any = object()


@dataclass(frozen=True)
class PhaseOverride:
    """Manual deviations for one phase. Every field is optional."""

    start_date: date | None = None
    end_date: date | None = None
    note: str | None = None
    sub_phase_order: tuple[str, ...] = ()
    skipped_sub_phases: tuple[str, ...] = ()
    custom_durations: Mapping[str, int] = field(default_factory=dict)
    fixed_dates: Mapping[str, date] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.start_date
            or self.end_date
            or self.note
            or self.sub_phase_order
            or self.skipped_sub_phases
            or self.custom_durations
            or self.fixed_dates
        )

    def to_dict(self) -> dict[str, Any]:
        """Populated fields only, using the persisted camelCase names."""
        data: dict[str, Any] = {}
        if self.start_date:
            data["startDate"] = self.start_date.isoformat()
        if self.end_date:
            data["endDate"] = self.end_date.isoformat()
        if self.note:
            data["note"] = self.note
        if self.sub_phase_order:
            data["subPhaseOrder"] = list(self.sub_phase_order)
        if self.skipped_sub_phases:
            data["skippedSubPhases"] = list(self.skipped_sub_phases)
        if self.custom_durations:
            data["customDurations"] = dict(self.custom_durations)
        if self.fixed_dates:
            data["fixedDates"] = {key: value.isoformat() for key, value in self.fixed_dates.items()}
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "PhaseOverride":
        """Build from a decoded mapping; malformed fields are dropped one by one."""
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            start_date=_coerce_date(data.get("startDate")),
            end_date=_coerce_date(data.get("endDate")),
            note=data["note"] if isinstance(data.get("note"), str) else None,
            sub_phase_order=_coerce_keys(data.get("subPhaseOrder")),
            skipped_sub_phases=_coerce_keys(data.get("skippedSubPhases")),
            custom_durations=_coerce_durations(data.get("customDurations")),
            fixed_dates=_coerce_date_map(data.get("fixedDates")),
        )


@dataclass(frozen=True)
class OverridePatch:
    """Normalised override envelope for one project."""

    phases: Mapping[str, PhaseOverride] = field(default_factory=dict)
    task_assignments: Mapping[str, str] = field(default_factory=dict)

    def phase(self, key: str) -> PhaseOverride:
        return self.phases.get(key) or PhaseOverride()

    def is_empty(self) -> bool:
        return not self.task_assignments and all(entry.is_empty() for entry in self.phases.values())

    def pruned(self) -> "OverridePatch":
        """Copy without phase entries that have no populated field."""
        phases = {key: entry for key, entry in self.phases.items() if not entry.is_empty()}
        return OverridePatch(phases=phases, task_assignments=dict(self.task_assignments))

    def with_phase_override(self, key: str, override: PhaseOverride) -> "OverridePatch":
        phases = dict(self.phases)
        phases[key] = override
        return OverridePatch(phases=phases, task_assignments=dict(self.task_assignments)).pruned()

    def edit_phase(
        self,
        key: str,
        start_date: date | None = _UNSET,
        end_date: date | None = _UNSET,
        note: str | None = _UNSET,
    ) -> "OverridePatch":
        """
        Set the date range and/or note of one phase, keeping its other fields.

        Only the arguments that are passed change; passing None or "" clears
        that field. The phase entry disappears when nothing is left in it.
        """

        changes: dict[str, Any] = {}
        if start_date is not _UNSET:
            changes["start_date"] = start_date
        if end_date is not _UNSET:
            changes["end_date"] = end_date
        if note is not _UNSET:
            changes["note"] = note or None
        return self.with_phase_override(key, replace(self.phase(key), **changes))

    def to_dict(self) -> dict[str, Any]:
        """Envelope form of the pruned patch."""
        pruned = self.pruned()
        data: dict[str, Any] = {"phases": {key: entry.to_dict() for key, entry in pruned.phases.items()}}
        if pruned.task_assignments:
            data["taskAssignments"] = dict(pruned.task_assignments)
        return data

    def serialize(self) -> str | None:
        return serialize_overrides(self.phases, self.task_assignments)


def parse_overrides(raw: str | bytes | Mapping[str, Any] | None) -> OverridePatch:
    """
    Normalise a stored override blob into an OverridePatch.

    Never raises: missing, corrupt or non-mapping input yields an empty patch
    so a broken override cannot block the timeline from rendering.
    """

    if raw is None:
        return OverridePatch()
    if isinstance(raw, (str, bytes, bytearray)):
        if not raw.strip():
            return OverridePatch()
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            logger.warning("Ignoring corrupt phase overrides: %s", exc)
            return OverridePatch()
    else:
        decoded = raw

    if not isinstance(decoded, Mapping):
        logger.warning("Ignoring phase overrides of type %s; expected an object", type(decoded).__name__)
        return OverridePatch()

    if isinstance(decoded.get("phases"), Mapping):
        phases_raw = decoded["phases"]
        assignments_raw = decoded.get("taskAssignments")
    else:
        phases_raw = decoded
        assignments_raw = None

    phases = {
        str(key): PhaseOverride.from_dict(value)
        for key, value in phases_raw.items()
        if isinstance(value, Mapping)
    }
    assignments: dict[str, str] = {}
    if isinstance(assignments_raw, Mapping):
        assignments = {
            str(task_key): phase_key
            for task_key, phase_key in assignments_raw.items()
            if isinstance(phase_key, str) and phase_key
        }
    return OverridePatch(phases=phases, task_assignments=assignments)


def serialize_overrides(
    phases: Mapping[str, PhaseOverride],
    task_assignments: Mapping[str, str] | None = None,
) -> str | None:
    """
    Serialize per-phase overrides and task assignments for the store.

    Returns the bare per-phase JSON when there are no task assignments, the
    envelope otherwise, and NO_OVERRIDE when the pruned patch is empty.
    """

    body = {key: entry.to_dict() for key, entry in phases.items() if not entry.is_empty()}
    assignments = dict(task_assignments or {})
    if not body and not assignments:
        return NO_OVERRIDE
    if not assignments:
        return json.dumps(body, ensure_ascii=False, separators=(",", ":"))
    envelope = {"phases": body, "taskAssignments": assignments}
    return json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))


def _coerce_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _coerce_keys(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str) and item)


def _coerce_durations(value: Any) -> dict[str, int]:
    if not isinstance(value, Mapping):
        return {}
    durations: dict[str, int] = {}
    for key, raw in value.items():
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            continue
        if not math.isfinite(raw) or raw < 0 or raw != int(raw):
            continue
        durations[str(key)] = int(raw)
    return durations


def _coerce_date_map(value: Any) -> dict[str, date]:
    if not isinstance(value, Mapping):
        return {}
    dates: dict[str, date] = {}
    for key, raw in value.items():
        parsed = _coerce_date(raw)
        if parsed is not None:
            dates[str(key)] = parsed
    return dates
