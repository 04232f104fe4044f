from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml

from .catalog_models import DURATION_UNITS, CatalogValidationError, Phase, PhaseCatalog, TaskTemplate


@dataclass(frozen=True)
class _Path:
    """Helper to produce readable YAML path strings like phases[0].tasks[1]."""

    parts: tuple[str, ...] = ()

    def child(self, segment: str) -> "_Path":
        return _Path(self.parts + (segment,))

    def __str__(self) -> str:  # pragma: no cover - trivial
        return ".".join(self.parts) if self.parts else "root"


def load_catalog(path: str) -> PhaseCatalog:
    """Load a PhaseCatalog from a YAML file at the given path."""

    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    return parse_catalog(raw)


def parse_catalog(data: Any) -> PhaseCatalog:
    """Build a PhaseCatalog from already-decoded YAML/JSON data."""

    path = _Path()
    if not isinstance(data, dict):
        raise CatalogValidationError(f"{path}: expected mapping at top level")
    _assert_allowed_keys(data, {"catalog", "phases"}, path)

    name = "workflow"
    sink = None
    catalog_raw = data.get("catalog")
    if catalog_raw is not None:
        if not isinstance(catalog_raw, dict):
            raise CatalogValidationError(f"{path.child('catalog')}: expected mapping")
        _assert_allowed_keys(catalog_raw, {"name", "sink"}, path.child("catalog"))
        if "name" in catalog_raw:
            name = _require_str(catalog_raw, "name", path.child("catalog"))
        if "sink" in catalog_raw:
            sink = _require_str(catalog_raw, "sink", path.child("catalog"))

    phases_raw = data.get("phases")
    if phases_raw is None:
        raise CatalogValidationError(f"{path}: missing required field 'phases'")
    if not isinstance(phases_raw, list):
        raise CatalogValidationError(f"{path.child('phases')}: expected list")

    phases = [_parse_phase(phase_raw, path.child(f"phases[{idx}]")) for idx, phase_raw in enumerate(phases_raw)]
    return PhaseCatalog(phases=tuple(phases), name=name, sink=sink)


def _parse_phase(data: Any, path: _Path) -> Phase:
    if not isinstance(data, dict):
        raise CatalogValidationError(f"{path}: expected mapping for phase")

    _assert_allowed_keys(data, {"key", "title", "group", "duration", "unit", "tasks"}, path)
    key = _require_str(data, "key", path)
    title = _require_str(data, "title", path)
    group = _optional_str(data, "group", path)

    tasks_raw = data.get("tasks", [])
    if tasks_raw is None:
        tasks_raw = []
    if not isinstance(tasks_raw, list):
        raise CatalogValidationError(f"{path.child('tasks')}: expected list")
    if tasks_raw and "duration" in data:
        raise CatalogValidationError(f"{path}: phases with tasks derive their duration; remove 'duration'")

    tasks = tuple(_parse_task(task_raw, path.child(f"tasks[{idx}]")) for idx, task_raw in enumerate(tasks_raw))
    return Phase(
        key=key,
        title=title,
        group=group,
        duration=_parse_duration(data.get("duration", 0), path.child("duration")),
        unit=_parse_unit(data.get("unit", "business_days"), path.child("unit")),
        tasks=tasks,
    )


def _parse_task(data: Any, path: _Path) -> TaskTemplate:
    if not isinstance(data, dict):
        raise CatalogValidationError(f"{path}: expected mapping for task")

    _assert_allowed_keys(data, {"key", "title", "duration", "unit", "roles", "note"}, path)
    roles_raw = data.get("roles", [])
    if roles_raw is None:
        roles_raw = []
    if not isinstance(roles_raw, list):
        raise CatalogValidationError(f"{path.child('roles')}: expected list of role names")
    roles: set[str] = set()
    for idx, role in enumerate(roles_raw):
        if not isinstance(role, str) or not role.strip():
            raise CatalogValidationError(f"{path.child(f'roles[{idx}]')}: expected non-empty string")
        roles.add(role)

    return TaskTemplate(
        key=_require_str(data, "key", path),
        title=_require_str(data, "title", path),
        duration=_parse_duration(data.get("duration", 1), path.child("duration")),
        unit=_parse_unit(data.get("unit", "business_days"), path.child("unit")),
        roles=frozenset(roles),
        note=_optional_str(data, "note", path),
    )


def _parse_duration(value: Any, path: _Path) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise CatalogValidationError(f"{path}: expected integer")
    if value < 0:
        raise CatalogValidationError(f"{path}: expected non-negative integer")
    return value


def _parse_unit(value: Any, path: _Path) -> Any:
    if value not in DURATION_UNITS:
        raise CatalogValidationError(f"{path}: expected one of {list(DURATION_UNITS)}")
    return value


def _assert_allowed_keys(data: dict[str, Any], allowed: set[str], path: _Path) -> None:
    extras = sorted(set(data.keys()) - allowed)
    if extras:
        raise CatalogValidationError(f"{path}: unexpected fields {extras}")


def _require_str(data: dict[str, Any], key: str, path: _Path) -> str:
    if key not in data:
        raise CatalogValidationError(f"{path}: missing required field '{key}'")
    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise CatalogValidationError(f"{path.child(key)}: expected non-empty string")
    return value


def _optional_str(data: dict[str, Any], key: str, path: _Path) -> str | None:
    if data.get(key) is None:
        return None
    return _require_str(data, key, path)
