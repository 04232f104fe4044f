from __future__ import annotations

import datetime as dt
from importlib import metadata
from pathlib import Path

import matplotlib

matplotlib.use("Agg")  # ensure headless, deterministic output
import matplotlib.dates as mdates
import matplotlib.pyplot as plt

from .catalog_models import FlatRenderRow

TIMELINE_PAD_DAYS = 7  # add breathing room before first and after last date
BRACKET_LW = 2.5
ROW_HEIGHT = 0.6
FONT_SCALE = 1.0
TITLE_FONT = 14 * FONT_SCALE
LABEL_FONT = 10 * FONT_SCALE
FOOTER_FONT = 8 * FONT_SCALE
TICK_FONT = 9 * FONT_SCALE
TOP_MARGIN_FRAC = 0.85
TITLE_Y = 0.985

STATUS_COLORS = {
    "completed": "#4caf50",
    "in-progress": "#2196f3",
    "pending": "#9e9e9e",
}
OVERDUE_COLOR = "#e53935"
UPCOMING_COLOR = "#ffb300"
TODAY_COLOR = "#d81b60"


def render_timeline(
    rows: list[FlatRenderRow],
    out_path: str,
    title: str,
    today: dt.date | None = None,
    min_date: dt.date | None = None,
    max_date: dt.date | None = None,
) -> None:
    """
    Render a static SVG timeline to `out_path`.

    - Expects computed rows (dates already resolved).
    - Phases are drawn as brackets, tasks as bars; colour follows status,
      with overdue in red and upcoming in amber.
    - A vertical marker shows `today` when it falls inside the window.
    """

    if not rows:
        raise ValueError("rows must not be empty")

    min_date, max_date = _resolve_date_window(rows, min_date, max_date)

    span_days = (max_date - min_date).days + 1
    fig_height = max(3.0, ROW_HEIGHT * len(rows) + 2.0)
    fig_width = max(12.0, min(24.0, span_days / 7.0 * 2.0 + 6.0))
    fig = plt.figure(figsize=(fig_width, fig_height))
    # Allocate explicit grid: left column for labels, right for chart.
    gs = fig.add_gridspec(1, 2, width_ratios=[1.2, 4.0], wspace=0.05, left=0.06, right=0.98, top=TOP_MARGIN_FRAC, bottom=0.1)
    label_ax = fig.add_subplot(gs[0, 0])
    ax = fig.add_subplot(gs[0, 1], sharey=label_ax)

    ax.set_ylim(-1, len(rows))
    ax.invert_yaxis()
    ax.set_xlim(
        mdates.date2num(min_date - dt.timedelta(days=TIMELINE_PAD_DAYS)),
        mdates.date2num(max_date + dt.timedelta(days=TIMELINE_PAD_DAYS)),
    )
    ax.xaxis_date()
    ax.xaxis.tick_top()
    major_locator, major_formatter = _major_tick_strategy(span_days)
    ax.xaxis.set_major_locator(major_locator)
    ax.xaxis.set_major_formatter(major_formatter)
    ax.grid(True, axis="x", which="major", linestyle="--", alpha=0.4)
    ax.tick_params(axis="x", labelrotation=30, labelsize=TICK_FONT, pad=4)
    ax.set_yticks([])

    label_ax.set_ylim(-1, len(rows))
    label_ax.invert_yaxis()
    label_ax.set_xlim(0, 1)
    label_ax.axis("off")

    fig.suptitle(title, x=0.5, fontsize=TITLE_FONT, y=TITLE_Y)
    footer = f"phase-timeline v{_tool_version()}"
    fig.text(0.99, 0.01, footer, ha="right", va="bottom", fontsize=FOOTER_FONT, alpha=0.8)

    for idx, row in enumerate(rows):
        y = idx
        label_ax.text(
            0.98 - 0.04 * row.indent,
            y,
            row.name,
            ha="right",
            va="center",
            fontsize=LABEL_FONT,
            fontweight="bold" if row.node_type == "phase" else "normal",
            transform=label_ax.transData,
        )
        if row.start_date is None or row.finish_date is None:
            continue

        x_start = mdates.date2num(row.start_date)
        # Zero-length spans still get a sliver so they remain visible.
        x_end = max(mdates.date2num(row.finish_date), x_start + 0.5)
        color = _row_color(row)

        if row.node_type == "bar":
            ax.barh(
                y,
                width=x_end - x_start,
                left=x_start,
                height=ROW_HEIGHT,
                color=color,
                edgecolor="black",
                linewidth=0.5,
            )
        else:
            cap = ROW_HEIGHT / 2.2
            ax.plot([x_start, x_end], [y, y], color=color, linewidth=BRACKET_LW, zorder=2)
            ax.plot([x_start, x_start], [y - cap, y + cap], color=color, linewidth=BRACKET_LW, zorder=2)
            ax.plot([x_end, x_end], [y - cap, y + cap], color=color, linewidth=BRACKET_LW, zorder=2)

    if today is not None and min_date <= today <= max_date:
        ax.axvline(mdates.date2num(today), color=TODAY_COLOR, linestyle="-", linewidth=1.2, zorder=3)

    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, format="svg", bbox_inches="tight")
    plt.close(fig)


def _row_color(row: FlatRenderRow) -> str:
    if row.is_overdue:
        return OVERDUE_COLOR
    if row.is_upcoming:
        return UPCOMING_COLOR
    return STATUS_COLORS.get(row.status, "#999999")


def _resolve_date_window(
    rows: list[FlatRenderRow], min_date: dt.date | None, max_date: dt.date | None
) -> tuple[dt.date, dt.date]:
    starts = [row.start_date for row in rows if row.start_date]
    finishes = [row.finish_date for row in rows if row.finish_date]
    if not starts and min_date is None:
        raise ValueError("Cannot infer min_date; no date values present")
    computed_min = min_date or min(starts)
    candidates = finishes + starts
    if not candidates and max_date is None:
        raise ValueError("Cannot infer max_date; no date values present")
    computed_max = max_date or max(candidates)
    return computed_min, computed_max


def _tool_version() -> str:
    try:
        return metadata.version("phase-timeline")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def _major_tick_strategy(span_days: int) -> tuple[mdates.DateLocator, mdates.DateFormatter]:
    """Choose a major tick locator/formatter to avoid overlapping labels."""
    if span_days > 180:
        return mdates.MonthLocator(interval=1), mdates.DateFormatter("%b %Y")
    if span_days > 90:
        return mdates.WeekdayLocator(byweekday=mdates.MO, interval=2), mdates.DateFormatter("%b %d")
    if span_days > 45:
        return mdates.WeekdayLocator(byweekday=mdates.MO, interval=1), mdates.DateFormatter("%b %d")
    return mdates.DayLocator(interval=2), mdates.DateFormatter("%b %d")
