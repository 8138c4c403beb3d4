"""Human-readable and JSON renderings of a plan, with sensitive values masked."""

import json
from typing import Any, Dict, List

from lakeform.models.plan import Action, AttributeChange, Plan, PlanNode
from lakeform.utils.logger import REDACTED

SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.NOOP: " ",
}

LABELS = {
    Action.CREATE: "will be created",
    Action.UPDATE: "will be updated in-place",
    Action.REPLACE: "must be replaced",
    Action.DELETE: "will be destroyed",
    Action.NOOP: "unchanged",
}

KNOWN_AFTER_APPLY = "(known after apply)"


def format_value(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True, default=str)


def _change_value(change: AttributeChange, which: str, show_sensitive: bool) -> str:
    if change.sensitive and not show_sensitive:
        return REDACTED
    if which == "new" and not change.known:
        return KNOWN_AFTER_APPLY
    return format_value(getattr(change, which))


def render_node(node: PlanNode, show_sensitive: bool = False) -> List[str]:
    """Header line plus one line per attribute change."""
    lines = [f"{SYMBOLS[node.action]} {node.address} {LABELS[node.action]}"]
    if node.action in (Action.NOOP, Action.DELETE):
        return lines
    for change in node.changes:
        new = _change_value(change, "new", show_sensitive)
        if node.action == Action.CREATE:
            line = f"    {change.name} = {new}"
        else:
            old = _change_value(change, "old", show_sensitive)
            line = f"    {change.name}: {old} -> {new}"
        if change.forces_replacement and node.action == Action.REPLACE:
            line += "  # forces replacement"
        lines.append(line)
    if node.pending:
        lines.append(
            "    blocked until supplied: " + ", ".join(f"var.{v}" for v in node.pending)
        )
    return lines


def summary_line(plan: Plan) -> str:
    counts = plan.summary()
    if plan.destroy:
        return f"Plan: {counts['delete']} to destroy."
    return (
        f"Plan: {counts['create']} to add, {counts['update']} to change, "
        f"{counts['replace']} to replace, {counts['delete']} to destroy, "
        f"{counts['noop']} unchanged."
    )


def render_plan(plan: Plan, show_sensitive: bool = False, show_unchanged: bool = False) -> List[str]:
    lines: List[str] = []
    for node in plan.nodes:
        if node.action == Action.NOOP and not show_unchanged:
            continue
        lines.extend(render_node(node, show_sensitive))
    if not plan.has_changes:
        lines.append("No changes. Infrastructure matches the declarations.")
    lines.append(summary_line(plan))
    return lines


def plan_to_dict(plan: Plan, show_sensitive: bool = False) -> Dict[str, Any]:
    """JSON-ready plan. Sensitive attribute values and prior snapshots are masked."""
    data = plan.model_dump(mode="json")
    if show_sensitive:
        return data
    for node_data, node in zip(data["nodes"], plan.nodes):
        for change_data, change in zip(node_data["changes"], node.changes):
            if change.sensitive:
                change_data["old"] = REDACTED
                change_data["new"] = REDACTED
        sensitive_names = set(node.sensitive_attributes)
        if node.prior is not None:
            sensitive_names.update(node.prior.sensitive_attributes)
            attributes = node_data["prior"]["attributes"]
            for name in sensitive_names:
                if name in attributes:
                    attributes[name] = REDACTED
        for name in sensitive_names:
            if name in node_data["desired"]:
                node_data["desired"][name] = REDACTED
    data["summary"] = plan.summary()
    return data
