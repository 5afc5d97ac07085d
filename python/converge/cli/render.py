"""
converge/cli/render.py

Plain-text rendering of plans and apply reports for the CLI.
"""

from __future__ import annotations

import json
from typing import Any, List

from converge.models.apply import TERMINAL_STATUSES, ApplyReport
from converge.models.plan import Action, Plan, PlanEntry

_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DESTROY: "-",
    Action.NOOP: " ",
}


def _fmt(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True)


def _entry_lines(entry: PlanEntry) -> List[str]:
    header = f"  {_SYMBOLS[entry.action]} {entry.action.value:<8} {entry.address}"
    if entry.deposed:
        header += f" (deposed object {entry.identity})"
    elif entry.replace:
        header += f" (replace, forced by {', '.join(entry.replace_reasons)})"
    lines = [header]

    before = entry.before or {}
    after = entry.after or {}
    if entry.action is Action.CREATE and not entry.replace:
        for name in entry.changed:
            lines.append(f"        {name} = {_fmt(after.get(name))}")
    elif entry.action in (Action.UPDATE, Action.CREATE):
        for name in entry.changed:
            lines.append(
                f"        {name}: {_fmt(before.get(name))} -> {_fmt(after.get(name))}"
            )
    return lines


def render_plan(plan: Plan) -> str:
    """Human-readable plan: one block per change, then the summary line."""
    if not plan.has_changes:
        return "No changes. Infrastructure matches the configuration."
    lines = ["Planned actions:"]
    for entry in plan.changes():
        lines.extend(_entry_lines(entry))
    counts = plan.summary()
    lines.append("")
    lines.append(
        f"Plan: {counts['create']} to add, {counts['update']} to change, "
        f"{counts['destroy']} to destroy, {counts['replace']} to replace."
    )
    return "\n".join(lines)


def render_report(report: ApplyReport) -> str:
    """Per-resource outcome table followed by summary counts."""
    if not report.results:
        return "No changes were applied."
    rows = [("OPERATION", "STATUS", "ATTEMPTS", "DETAIL")]
    for result in report.results:
        rows.append(
            (
                result.key,
                result.status.value,
                str(result.attempts),
                result.error or "",
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(3)]
    lines = [
        f"{row[0]:<{widths[0]}}  {row[1]:<{widths[1]}}  {row[2]:>{widths[2]}}  {row[3]}".rstrip()
        for row in rows
    ]

    counts = report.summary()
    summary = ", ".join(
        f"{counts[status.value]} {status.value}" for status in TERMINAL_STATUSES
    )
    lines.append("")
    if report.ok:
        lines.append(f"Apply complete: {summary}.")
    else:
        lines.append(f"Apply finished with problems: {summary}.")
    if report.cancelled:
        lines.append("The run was cancelled; re-run to converge the remaining resources.")
    return "\n".join(lines)


__all__ = ["render_plan", "render_report"]
