from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import logging
import sys
import webbrowser
from pathlib import Path

import yaml

from .catalog_models import CatalogValidationError, PhaseCatalog, PhaseView
from .default_catalog import default_catalog
from .overrides import parse_overrides
from .parse_catalog import load_catalog
from .persistence import JsonFileOverrideStore, PersistenceError
from .reconciler import KanbanReconciler, column_id
from .render_rows import to_render_rows
from .render_timeline import render_timeline
from .scheduling import UPCOMING_WINDOW_DAYS, compute_timeline, summarize


def _parse_date(value: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from exc


def _parse_pair(value: str) -> tuple[str, str]:
    left, sep, right = value.partition("=")
    if not sep or not left or not right:
        raise argparse.ArgumentTypeError(f"invalid pair '{value}', expected KEY=VALUE")
    return left, right


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Phase timeline planner",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("catalog", nargs="?", help="Path to phase catalog YAML; built-in catalog when omitted")
    parser.add_argument("--completion", required=True, help="Target completion date (YYYY-MM-DD or YYYY-MM)")
    parser.add_argument("--project", default="default", help="Project id used as the override store key")
    parser.add_argument("--store", default="data/overrides.json", help="Override store JSON path")
    parser.add_argument("--completed", help="Text file with one completed task/phase title per line")
    parser.add_argument("--today", type=_parse_date, help="Reference date for overdue/upcoming alerts")
    parser.add_argument("--upcoming-days", type=int, default=UPCOMING_WINDOW_DAYS, help="Lookahead window for upcoming alerts")
    parser.add_argument(
        "--move",
        type=_parse_pair,
        action="append",
        default=[],
        metavar="TASK=PHASE",
        help="Move a task into an adjacent phase and save the result",
    )
    parser.add_argument(
        "--reorder",
        type=_parse_pair,
        action="append",
        default=[],
        metavar="TASK=TARGET",
        help="Move a task to the position of another task in the same phase and save the result",
    )
    parser.add_argument("--out", default="output/timeline.svg", help="Output SVG path")
    parser.add_argument(
        "--view",
        dest="view",
        action="store_true",
        default=True,
        help="Best-effort open the output file after rendering",
    )
    parser.add_argument(
        "--no-view",
        dest="view",
        action="store_false",
        help="Do not open the output file after rendering",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def _read_completed(path: str | None) -> frozenset[str]:
    if not path:
        return frozenset()
    with open(path, "r", encoding="utf-8") as fh:
        return frozenset(line.strip() for line in fh if line.strip())


async def _apply_edits(
    reconciler: KanbanReconciler,
    moves: list[tuple[str, str]],
    reorders: list[tuple[str, str]],
) -> list[str]:
    problems: list[str] = []
    for task_key, phase_key in moves:
        if not reconciler.begin_drag(task_key):
            problems.append(f"cannot move '{task_key}': unknown or completed task")
            continue
        target = column_id(phase_key)
        if not reconciler.preview_move(target):
            problems.append(f"move of '{task_key}' to '{phase_key}' rejected: phases are not adjacent")
        outcome = await reconciler.drop(target)
        if not outcome.ok:
            problems.append(f"save failed: {outcome.error}")
    for task_key, target_key in reorders:
        if not reconciler.begin_drag(task_key):
            problems.append(f"cannot reorder '{task_key}': unknown or completed task")
            continue
        outcome = await reconciler.drop(target_key)
        if not outcome.ok:
            problems.append(f"save failed: {outcome.error}")
    return problems


def _print_timeline(views: list[PhaseView]) -> None:
    summary = summarize(views)
    for view in views:
        flag = " OVERDUE" if view.is_overdue else (" upcoming" if view.is_upcoming else "")
        print(f"{view.start_date} .. {view.end_date}  [{view.status}] {view.title}{flag}")
        for task in view.tasks:
            mark = "x" if task.is_completed else " "
            print(f"    [{mark}] {task.start_date} .. {task.end_date}  {task.title}")
    print(f"Progress: {summary.overall_progress}%")
    if summary.next_action is not None:
        print(f"Next: {summary.next_action.title} ({summary.next_action.phase_title})")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        catalog: PhaseCatalog = load_catalog(args.catalog) if args.catalog else default_catalog()
    except (yaml.YAMLError, CatalogValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except FileNotFoundError:
        print(f"Error: catalog file not found: {args.catalog}", file=sys.stderr)
        return 1

    store = JsonFileOverrideStore(args.store)
    try:
        patch = parse_overrides(store.load_sync(args.project))
        completed = _read_completed(args.completed)
    except PersistenceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: cannot read completed titles: {exc}", file=sys.stderr)
        return 1

    def compute(current_patch):
        return compute_timeline(
            catalog,
            args.completion,
            current_patch,
            completed_titles=completed,
            today=args.today,
            upcoming_days=args.upcoming_days,
        )

    views = compute(patch)
    if not views:
        print(f"Error: no timeline available for completion '{args.completion}'", file=sys.stderr)
        return 2

    if args.move or args.reorder:
        reconciler = KanbanReconciler(catalog, store, args.project, patch=patch, views=views)
        problems = asyncio.run(_apply_edits(reconciler, args.move, args.reorder))
        for problem in problems:
            print(f"Warning: {problem}", file=sys.stderr)
        views = compute(reconciler.patch)

    _print_timeline(views)

    try:
        render_timeline(
            rows=to_render_rows(views),
            out_path=args.out,
            title=f"{catalog.name} ({args.project})",
            today=args.today or dt.date.today(),
        )
    except (OSError, ValueError) as exc:
        print(f"Error while rendering: {exc}", file=sys.stderr)
        return 1

    if args.view:
        try:
            webbrowser.open(Path(args.out).resolve().as_uri())
        except webbrowser.Error:
            pass

    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
