"""Human-readable rendering of CRUD and plan execution results."""

from typing import Any, Dict, List, Optional

from .schemas import CrudResult, ExecutionPlan, StepResult

_MAX_LISTED_ITEMS = 20


def _describe_record(record: Dict[str, Any]) -> str:
    visible = {k: v for k, v in record.items() if not k.startswith("_")}
    return ", ".join(f"{k}={v}" for k, v in visible.items()) or str(record.get("_id", "?"))


def _item_lines(items: List[Dict[str, Any]], indent: str = "   ") -> List[str]:
    lines = [f"{indent}- {_describe_record(i)}" for i in items[:_MAX_LISTED_ITEMS]]
    if len(items) > _MAX_LISTED_ITEMS:
        lines.append(f"{indent}... and {len(items) - _MAX_LISTED_ITEMS} more")
    return lines


def format_crud_result(result: CrudResult) -> str:
    if not result.success:
        return "\n".join([
            "❌ **Operation Failed**",
            "",
            f"**Error:** {result.error}",
            f"**Details:** {result.details}",
        ])
    lines = [f"✅ **{result.operation.upper()} {result.entity_type.upper()}**", "", result.details]
    data = result.data or {}
    if result.operation == "list":
        lines.extend(_item_lines(data.get("items") or [], indent=""))
    elif isinstance(data.get("record"), dict):
        lines.append(_describe_record(data["record"]))
    return "\n".join(lines)


def format_plan_report(plan: ExecutionPlan, results: List[StepResult], summary: Optional[str] = None) -> str:
    steps_by_id = {s.id: s for s in plan.steps}
    executed = [r for r in results if not r.skipped]
    succeeded = [r for r in executed if r.success]

    lines = ["🤖 **Workflow Execution Results**", ""]
    if summary or plan.summary:
        lines.extend(["📋 **Plan:**", summary or plan.summary or "", ""])

    lines.append("⚡ **Steps:**")
    for idx, result in enumerate(results, start=1):
        step = steps_by_id.get(result.step_id)
        label = (step.description if step and step.description else
                 f"{result.operation} {result.entity_type}")
        if result.skipped:
            mark = "⏭️"
        else:
            mark = "✅" if result.success else "❌"
        lines.append(f"{idx}. {mark} [{result.step_id}] {label}")
        if result.error:
            lines.append(f"   Error: {result.error}")
        lines.append(f"   Result: {result.details}")
        if result.operation == "list" and result.success and not result.skipped:
            lines.extend(_item_lines(result.items, indent="     "))
    lines.append("")
    skipped = len(results) - len(executed)
    lines.append(
        f"📊 **Summary:** {len(succeeded)}/{len(executed)} executed step(s) succeeded"
        + (f", {skipped} skipped" if skipped else "")
    )
    return "\n".join(lines)
