"""
Plan executor.

Interprets an ExecutionPlan step by step against the CRUD dispatcher:

    pending -> gated-out (condition false)     -> resolved (success, meta.skipped)
    pending -> running (single/repeat/fan-out) -> resolved (success or failure)

Steps run strictly in order because later steps read earlier StepResults
through ``condition`` and ``fromStep``. A failing step never aborts the plan;
its error is recorded and execution moves on to the next step.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import get_settings
from .errors import StepExecutionError, ValidationError
from .metrics import plan_steps_total
from .registry import EntityRegistry, Operation
from .schemas import CrudResult, ExecutionPlan, PlanCondition, PlanStep, SortSpec, StepResult
from .templates import TemplateError, render_template, render_value

logger = logging.getLogger(__name__)

_TARGETED_OPS = (Operation.READ, Operation.UPDATE, Operation.DELETE)
# per-item calls that may run concurrently when fan-out concurrency > 1
_INDEPENDENT_OPS = (Operation.CREATE, Operation.DELETE)


@dataclass
class _Outcome:
    success: bool
    items: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0
    ids: List[str] = field(default_factory=list)
    details: str = ""
    error: Optional[str] = None


# ============================================================================
# CONDITIONS, FILTERS, SORTING
# ============================================================================

def evaluate_condition(condition: PlanCondition, results: Dict[str, StepResult]) -> bool:
    """Evaluate a step condition against already materialized results.

    A reference to a step that has not run (missing or later in the plan)
    evaluates to False.
    """
    ref = results.get(condition.from_step)
    if ref is None:
        logger.warning("Condition references unknown or later step '%s'; treating as not satisfied",
                       condition.from_step)
        return False

    if condition.field == "items.length":
        actual = len(ref.items)
    else:
        actual = ref.count if ref.count is not None else len(ref.items)

    ctype = condition.type
    if ctype == "exists":
        return actual > 0
    if ctype == "not_exists":
        return actual == 0

    if condition.value is None:
        logger.warning("Condition %s on step '%s' has no value; treating as not satisfied",
                       ctype, condition.from_step)
        return False
    value = condition.value
    if ctype == "count_gt":
        return actual > value
    if ctype == "count_gte":
        return actual >= value
    if ctype == "count_lt":
        return actual < value
    if ctype == "count_lte":
        return actual <= value
    if ctype == "count_eq":
        return actual == value
    return False


def _norm(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except (TypeError, ValueError):
        return None


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "eq":
        return _norm(actual) == _norm(expected)
    if op == "ne":
        return _norm(actual) != _norm(expected)
    if op in ("contains", "startswith", "endswith"):
        if actual is None or expected is None:
            return False
        haystack, needle = str(actual).lower(), str(expected).lower()
        if op == "contains":
            return needle in haystack
        if op == "startswith":
            return haystack.startswith(needle)
        return haystack.endswith(needle)
    if op == "in":
        options = expected if isinstance(expected, (list, tuple, set)) else [expected]
        return _norm(actual) in {_norm(o) for o in options}
    if op in ("gt", "gte", "lt", "lte"):
        a, b = _to_number(actual), _to_number(expected)
        if a is None or b is None:
            return False
        return {"gt": a > b, "gte": a >= b, "lt": a < b, "lte": a <= b}[op]
    raise ValidationError(f"unknown filter operator '{op}'")


def apply_filter(items: List[Dict[str, Any]], spec: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not spec:
        return list(items)
    kept = []
    for item in items:
        ok = True
        for field_name, cond in spec.items():
            actual = item.get(field_name)
            checks = cond.items() if isinstance(cond, dict) else [("eq", cond)]
            if not all(_compare(str(op).lower(), actual, expected) for op, expected in checks):
                ok = False
                break
        if ok:
            kept.append(item)
    return kept


def _sort_key(value: Any):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, float(value), "")
    if isinstance(value, str):
        return (1, 0.0, value.lower())
    return (2, 0.0, str(value))


def apply_sort(items: List[Dict[str, Any]], sort: Optional[SortSpec]) -> List[Dict[str, Any]]:
    """Stable sort on ``sort.by``; records lacking the field go last in either direction."""
    if sort is None:
        return list(items)
    present = [i for i in items if i.get(sort.by) is not None]
    missing = [i for i in items if i.get(sort.by) is None]
    present.sort(key=lambda i: _sort_key(i[sort.by]), reverse=(sort.order == "desc"))
    return present + missing


# ============================================================================
# EXECUTOR
# ============================================================================

class PlanExecutor:
    def __init__(
        self,
        dispatcher: Any,
        registry: Optional[EntityRegistry] = None,
        max_concurrency: Optional[int] = None,
        max_repeat: Optional[int] = None,
    ):
        cfg = get_settings()
        self.dispatcher = dispatcher
        self.registry = registry if registry is not None else getattr(dispatcher, "registry", None)
        self.max_concurrency = max(1, int(max_concurrency if max_concurrency is not None
                                          else cfg.PLAN_FANOUT_CONCURRENCY))
        self.max_repeat = max(1, int(max_repeat if max_repeat is not None else cfg.PLAN_MAX_REPEAT))
        self.semaphore = asyncio.Semaphore(self.max_concurrency)

    async def execute(self, plan: ExecutionPlan, instruction: str = "") -> List[StepResult]:
        results: Dict[str, StepResult] = {}
        ordered: List[StepResult] = []
        for step in plan.steps:
            logger.debug("Starting step '%s' (operation=%s, entity=%s)",
                         step.id, step.operation.value, step.entity_type)
            try:
                result = await self._run_step(step, results, instruction)
            except StepExecutionError as exc:
                result = StepResult(step.id, False, step.operation.value, step.entity_type,
                                    details=exc.message, error=exc.message)
            except Exception as exc:
                logger.exception("Step '%s' failed unexpectedly", step.id)
                result = StepResult(step.id, False, step.operation.value, step.entity_type,
                                    details="Step failed due to an internal error", error=str(exc) or repr(exc))
            results[step.id] = result
            ordered.append(result)

            outcome = "skipped" if result.skipped else ("success" if result.success else "failure")
            plan_steps_total.labels(operation=step.operation.value, outcome=outcome).inc()
            logger.info("Step '%s' %s: %s", step.id, outcome, result.error or result.details)
        return ordered

    async def _run_step(self, step: PlanStep, results: Dict[str, StepResult], instruction: str) -> StepResult:
        if step.condition is not None and not evaluate_condition(step.condition, results):
            c = step.condition
            threshold = "" if c.value is None else f" {c.value:g}"
            return StepResult(step.id, True, step.operation.value, step.entity_type, count=0,
                              details=f"Skipped: condition {c.type}{threshold} on step '{c.from_step}' not met",
                              meta={"skipped": True})

        if step.from_step is not None:
            return await self._run_fan_out(step, results, instruction)

        repeat = step.repeat or 1
        if repeat > self.max_repeat:
            logger.warning("Step '%s' repeat=%d clamped to %d", step.id, repeat, self.max_repeat)
            repeat = self.max_repeat
        if repeat > 1:
            outcomes = []
            for _ in range(repeat):
                outcomes.append(await self._dispatch(step, step.data, step.identifier, instruction))
            return self._aggregate(step, outcomes, meta={"repeat": repeat})

        outcome = await self._dispatch(step, step.data, step.identifier, instruction)
        return StepResult(step.id, outcome.success, step.operation.value, step.entity_type,
                          items=outcome.items, count=outcome.count, ids=outcome.ids,
                          details=outcome.details, error=outcome.error)

    async def _run_fan_out(self, step: PlanStep, results: Dict[str, StepResult], instruction: str) -> StepResult:
        source = results.get(step.from_step)
        if source is None:
            raise StepExecutionError(f"fromStep '{step.from_step}' does not refer to an earlier step",
                                     step_id=step.id)
        items = list(source.items)
        if not items:
            return StepResult(step.id, True, step.operation.value, step.entity_type, count=0,
                              details=f"No items from step '{step.from_step}'; nothing to do",
                              meta={"fanOut": 0})

        async def run_item(item: Dict[str, Any]) -> _Outcome:
            try:
                data = render_template(step.data_template, item) if step.data_template else step.data
                identifier = None
                if step.operation in _TARGETED_OPS:
                    if step.identifier is not None:
                        identifier = render_value(step.identifier, item)
                    else:
                        identifier = self._item_identifier(step, source, item)
            except TemplateError as e:
                return _Outcome(False, details=f"Template error: {e.message}", error=e.message)
            return await self._dispatch(step, data, identifier, instruction)

        if self.max_concurrency > 1 and step.operation in _INDEPENDENT_OPS:
            async def bounded(item):
                async with self.semaphore:
                    return await run_item(item)
            # gather keeps item order in the aggregate
            outcomes = list(await asyncio.gather(*(bounded(i) for i in items)))
        else:
            outcomes = [await run_item(item) for item in items]
        return self._aggregate(step, outcomes, meta={"fanOut": len(items)})

    def _identifier_field(self, entity_type: str) -> Optional[str]:
        config = self.registry.get(entity_type) if self.registry is not None else None
        return config.identifier_field if config else None

    def _item_identifier(self, step: PlanStep, source: StepResult, item: Dict[str, Any]) -> Optional[Any]:
        for field_name in (self._identifier_field(step.entity_type),
                           self._identifier_field(source.entity_type),
                           "_id"):
            if field_name and item.get(field_name) not in (None, ""):
                return item[field_name]
        return None

    async def _dispatch(self, step: PlanStep, data: Optional[Dict[str, Any]], identifier: Any,
                        instruction: str) -> _Outcome:
        try:
            crud = await self.dispatcher.dispatch(
                step.operation, step.entity_type, raw_instruction=instruction,
                data=data, identifier=identifier, extract=False,
            )
        except Exception as e:
            logger.exception("Dispatcher raised for step '%s'", step.id)
            return _Outcome(False, details="Dispatch failed", error=str(e) or repr(e))
        try:
            return self._outcome(step, crud)
        except ValidationError as e:
            return _Outcome(False, details=e.message, error=e.message)

    def _outcome(self, step: PlanStep, crud: CrudResult) -> _Outcome:
        if not crud.success:
            return _Outcome(False, details=crud.details, error=crud.error or crud.details)
        data = crud.data or {}
        if step.operation == Operation.LIST:
            items = apply_filter(data.get("items") or [], step.filter)
            items = apply_sort(items, step.sort)
            if step.limit is not None:
                items = items[: step.limit]
            id_field = self._identifier_field(step.entity_type) or "_id"
            ids = [str(i.get(id_field, i.get("_id"))) for i in items if i.get(id_field, i.get("_id")) is not None]
            details = crud.details
            if step.filter or step.sort or step.limit is not None:
                details = f"{crud.details}; {len(items)} after filter/sort/limit"
            return _Outcome(True, items=items, count=len(items), ids=ids, details=details)

        record = data.get("record")
        ident = data.get("id")
        return _Outcome(
            True,
            items=[record] if isinstance(record, dict) else [],
            count=1,
            ids=[str(ident)] if ident is not None else [],
            details=crud.details,
        )

    def _aggregate(self, step: PlanStep, outcomes: List[_Outcome], meta: Dict[str, Any]) -> StepResult:
        ok = sum(1 for o in outcomes if o.success)
        errors = [o.error for o in outcomes if o.error]
        items: List[Dict[str, Any]] = []
        ids: List[str] = []
        for o in outcomes:
            items.extend(o.items)
            ids.extend(o.ids)
        error = None
        if errors:
            unique = list(dict.fromkeys(errors))
            error = "; ".join(unique[:5]) + (f" (+{len(unique) - 5} more)" if len(unique) > 5 else "")
        return StepResult(
            step.id,
            all(o.success for o in outcomes),
            step.operation.value,
            step.entity_type,
            items=items,
            count=sum(o.count for o in outcomes),
            ids=ids,
            details=f"{ok}/{len(outcomes)} {step.operation.value} call(s) succeeded",
            error=error,
            meta=dict(meta, succeeded=ok, failed=len(outcomes) - ok),
        )
