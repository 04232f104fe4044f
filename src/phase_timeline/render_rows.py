from __future__ import annotations

from typing import List

from .catalog_models import FlatRenderRow, PhaseView


def to_render_rows(views: list[PhaseView]) -> list[FlatRenderRow]:
    """
    Convert a computed timeline into a flat list of render rows with indentation.

    Each phase heading is emitted first, followed by its tasks in resolved order.
    Task rows inherit the alert flags of their phase; completed tasks are marked
    completed regardless of the phase status.
    """

    rows: List[FlatRenderRow] = []
    order = 0

    for view in views:
        rows.append(
            FlatRenderRow(
                order=order,
                indent=0,
                node_type="phase",
                node_id=view.key,
                name=view.title,
                phase=view.key,
                start_date=view.start_date,
                finish_date=view.end_date,
                status=view.status,
                is_overdue=view.is_overdue,
                is_upcoming=view.is_upcoming,
            )
        )
        order += 1
        for task in view.tasks:
            rows.append(
                FlatRenderRow(
                    order=order,
                    indent=1,
                    node_type="bar",
                    node_id=task.key,
                    name=task.title,
                    phase=view.key,
                    start_date=task.start_date,
                    finish_date=task.end_date,
                    status="completed" if task.is_completed else "pending",
                    is_overdue=view.is_overdue and not task.is_completed,
                    is_upcoming=view.is_upcoming and not task.is_completed,
                )
            )
            order += 1

    return rows
