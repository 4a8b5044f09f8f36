import pytest

from agent_service.plan_executor import PlanExecutor, apply_filter, apply_sort, evaluate_condition
from agent_service.schemas import ExecutionPlan, PlanCondition, SortSpec, StepResult

from conftest import make_users


class SpyDispatcher:
    """Records every dispatch and forwards it to the real dispatcher."""

    def __init__(self, inner):
        self.inner = inner
        self.registry = inner.registry
        self.calls = []

    async def dispatch(self, operation, entity_type, **kwargs):
        self.calls.append((operation.value, entity_type, kwargs.get("data"), kwargs.get("identifier")))
        return await self.inner.dispatch(operation, entity_type, **kwargs)


class ExplodingDispatcher:
    registry = None

    async def dispatch(self, *args, **kwargs):
        raise RuntimeError("boom")


def plan_of(*steps, summary=None):
    return ExecutionPlan.model_validate({"steps": list(steps), "summary": summary})


def executor_for(dispatcher, **kwargs):
    spy = SpyDispatcher(dispatcher)
    kwargs.setdefault("max_concurrency", 1)
    kwargs.setdefault("max_repeat", 100)
    return PlanExecutor(spy, dispatcher.registry, **kwargs), spy


BRANCH_PLAN = (
    {"id": "L1", "operation": "list", "entityType": "users"},
    {"id": "C1", "operation": "create", "entityType": "users",
     "data": {"name": "Temp", "email": "temp@demo.com"},
     "condition": {"type": "count_lte", "fromStep": "L1", "value": 3}},
)


@pytest.mark.asyncio
async def test_condition_true_executes_step(dispatcher, store):
    store.seed("users", "email", make_users(2))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(*BRANCH_PLAN))
    assert results[0].count == 2
    assert results[1].success
    assert not results[1].skipped
    assert results[1].ids == ["temp@demo.com"]
    assert len(store.tables["users"]) == 3


@pytest.mark.asyncio
async def test_condition_false_skips_without_dispatch(dispatcher, store):
    store.seed("users", "email", make_users(5))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(*BRANCH_PLAN))
    skipped = results[1]
    assert skipped.success
    assert skipped.skipped
    assert skipped.meta == {"skipped": True}
    assert skipped.count == 0
    assert [c for c in spy.calls if c[0] == "create"] == []
    assert store.calls_for("create") == []


@pytest.mark.asyncio
async def test_unknown_entity_type_fails_cleanly(dispatcher):
    executor, _ = executor_for(dispatcher)
    results = await executor.execute(plan_of({"id": "p", "operation": "list", "entityType": "products"}))
    assert len(results) == 1
    assert not results[0].success
    assert "not configured" in results[0].error


@pytest.mark.asyncio
@pytest.mark.parametrize("ctype,executed", [
    ("count_gt", False),
    ("count_gte", True),
    ("count_lt", False),
    ("count_lte", True),
    ("count_eq", True),
])
async def test_count_comparator_boundaries(dispatcher, store, ctype, executed):
    store.seed("users", "email", make_users(3))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "a", "operation": "list", "entityType": "users"},
        {"id": "b", "operation": "list", "entityType": "users",
         "condition": {"type": ctype, "fromStep": "a", "value": 3}},
    ))
    assert results[1].skipped is (not executed)
    assert len(spy.calls) == (2 if executed else 1)


@pytest.mark.asyncio
async def test_condition_on_missing_or_later_step_is_skipped(dispatcher, store):
    store.seed("users", "email", make_users(1))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "a", "operation": "list", "entityType": "users",
         "condition": {"type": "exists", "fromStep": "b"}},
        {"id": "b", "operation": "list", "entityType": "users"},
        {"id": "c", "operation": "list", "entityType": "users",
         "condition": {"type": "exists", "fromStep": "nope"}},
    ))
    assert results[0].skipped
    assert not results[1].skipped
    assert results[2].skipped
    assert len(spy.calls) == 1


@pytest.mark.asyncio
async def test_exists_and_not_exists_after_failed_read(dispatcher, store):
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "r", "operation": "read", "entityType": "users", "identifier": "ghost@example.com"},
        {"id": "if_found", "operation": "list", "entityType": "users",
         "condition": {"type": "exists", "fromStep": "r"}},
        {"id": "if_missing", "operation": "create", "entityType": "users",
         "data": {"name": "Ghost", "email": "ghost@example.com"},
         "condition": {"type": "not_exists", "fromStep": "r"}},
    ))
    assert not results[0].success
    assert results[1].skipped
    assert results[2].success and not results[2].skipped


def test_evaluate_condition_fields():
    results = {
        "s": StepResult("s", True, "list", "users", items=[{"a": 1}, {"a": 2}], count=5),
    }
    by_count = PlanCondition.model_validate({"type": "count_eq", "fromStep": "s", "value": 5})
    by_items = PlanCondition.model_validate({"type": "count_eq", "fromStep": "s", "field": "items.length", "value": 2})
    no_value = PlanCondition.model_validate({"type": "count_gt", "fromStep": "s"})
    assert evaluate_condition(by_count, results)
    assert evaluate_condition(by_items, results)
    assert not evaluate_condition(no_value, results)


@pytest.mark.asyncio
async def test_fan_out_delete_counts_and_ids(dispatcher, store):
    store.seed("users", "email", make_users(3))
    store.seed("users", "email", [{"name": "Keep", "email": "keep@other.org"}])
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "s1", "operation": "list", "entityType": "users", "filter": {"email": {"endswith": "@example.com"}}},
        {"id": "s2", "operation": "delete", "entityType": "users", "fromStep": "s1"},
    ))
    source, fan = results
    assert source.count == 3
    assert fan.success
    assert fan.count == sum(1 for _ in source.items)
    assert len(fan.ids) == fan.count
    assert fan.ids == ["user1@example.com", "user2@example.com", "user3@example.com"]
    assert fan.meta["fanOut"] == 3
    assert list(store.tables["users"]) == ["keep@other.org"]


@pytest.mark.asyncio
async def test_fan_out_update_with_domain_template(dispatcher, store):
    store.seed("users", "email", [
        {"name": "Admin Ann", "email": "ann@old.org"},
        {"name": "Bob", "email": "bob@old.org"},
        {"name": "SysADMIN Cy", "email": "cy@old.org"},
    ])
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "s1", "operation": "list", "entityType": "users", "filter": {"name": {"contains": "admin"}}},
        {"id": "s2", "operation": "update", "entityType": "users", "fromStep": "s1",
         "identifier": "{{item.email}}",
         "dataTemplate": {"email": "{{item.email | replace_domain:company.com}}"}},
    ))
    assert results[1].success
    assert results[1].ids == ["ann@company.com", "cy@company.com"]
    assert sorted(store.tables["users"]) == ["ann@company.com", "bob@old.org", "cy@company.com"]
    assert spy.calls[1][3] == "ann@old.org"


@pytest.mark.asyncio
async def test_fan_out_over_empty_source_is_trivial_success(dispatcher, store):
    store.seed("users", "email", make_users(2))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "s1", "operation": "list", "entityType": "users", "filter": {"name": "Nobody"}},
        {"id": "s2", "operation": "delete", "entityType": "users", "fromStep": "s1"},
    ))
    assert results[1].success
    assert results[1].count == 0
    assert results[1].meta == {"fanOut": 0}
    assert len(spy.calls) == 1


@pytest.mark.asyncio
async def test_fan_out_from_unknown_step_fails_without_dispatch(dispatcher):
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "s2", "operation": "delete", "entityType": "users", "fromStep": "s1"},
        {"id": "s3", "operation": "list", "entityType": "users"},
    ))
    assert not results[0].success
    assert results[0].error == "fromStep 's1' does not refer to an earlier step"
    assert results[0].details == results[0].error
    assert results[1].success
    assert [c[0] for c in spy.calls] == ["list"]


@pytest.mark.asyncio
async def test_template_error_fails_only_that_step(dispatcher, store):
    store.seed("users", "email", make_users(2))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "s1", "operation": "list", "entityType": "users"},
        {"id": "s2", "operation": "create", "entityType": "users", "fromStep": "s1",
         "dataTemplate": {"name": "{{item.nickname}}", "email": "{{item.email}}"}},
        {"id": "s3", "operation": "list", "entityType": "users"},
    ))
    assert not results[1].success
    assert results[1].meta["failed"] == 2
    assert "nickname" in results[1].error
    assert results[2].success
    assert results[2].count == 2


@pytest.mark.asyncio
async def test_sort_then_limit_returns_earliest_record(dispatcher, store):
    store.seed("users", "email", make_users(4))
    # store hands items back newest-first
    store.tables["users"] = dict(reversed(list(store.tables["users"].items())))
    executor, _ = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "first", "operation": "list", "entityType": "users",
         "sort": {"by": "_creationTime", "order": "asc"}, "limit": 1},
        {"id": "newest", "operation": "list", "entityType": "users",
         "sort": {"by": "_creationTime", "order": "desc"}, "limit": 2},
    ))
    assert results[0].count == 1
    assert results[0].items[0]["email"] == "user1@example.com"
    assert results[0].ids == ["user1@example.com"]
    assert [i["email"] for i in results[1].items] == ["user4@example.com", "user3@example.com"]


@pytest.mark.asyncio
async def test_repeat_aggregates_outcomes(dispatcher, store):
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "r", "operation": "create", "entityType": "users", "repeat": 3,
         "data": {"name": "Same", "email": "same@example.com"}},
    ))
    res = results[0]
    assert not res.success
    assert res.count == 1
    assert res.meta == {"repeat": 3, "succeeded": 1, "failed": 2}
    assert "already exists" in res.error
    assert len(spy.calls) == 3


@pytest.mark.asyncio
async def test_repeat_is_clamped(dispatcher, store):
    store.seed("users", "email", make_users(2))
    executor, spy = executor_for(dispatcher, max_repeat=2)
    results = await executor.execute(plan_of(
        {"id": "r", "operation": "list", "entityType": "users", "repeat": 5},
    ))
    assert results[0].meta["repeat"] == 2
    assert results[0].count == 4
    assert len(spy.calls) == 2


@pytest.mark.asyncio
async def test_failed_step_does_not_abort_plan(dispatcher, store):
    store.seed("users", "email", make_users(1))
    executor, _ = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "bad", "operation": "read", "entityType": "users", "identifier": "missing@example.com"},
        {"id": "bad_filter", "operation": "list", "entityType": "users", "filter": {"name": {"regex": "x"}}},
        {"id": "good", "operation": "list", "entityType": "users"},
    ))
    assert [r.success for r in results] == [False, False, True]
    assert "unknown filter operator" in results[1].error


@pytest.mark.asyncio
async def test_dispatcher_exception_is_captured():
    executor = PlanExecutor(ExplodingDispatcher(), max_concurrency=1, max_repeat=10)
    results = await executor.execute(plan_of({"id": "x", "operation": "list", "entityType": "users"}))
    assert not results[0].success
    assert results[0].error == "boom"


@pytest.mark.asyncio
async def test_concurrent_fan_out_preserves_item_order(dispatcher, store):
    store.seed("users", "email", make_users(3))
    executor, spy = executor_for(dispatcher, max_concurrency=3)
    results = await executor.execute(plan_of(
        {"id": "s1", "operation": "list", "entityType": "users"},
        {"id": "s2", "operation": "create", "entityType": "users", "fromStep": "s1",
         "dataTemplate": {"name": "{{item.name | upper}}", "email": "{{item.email | replace_domain:copy.io}}"}},
    ))
    assert results[1].success
    assert results[1].ids == ["user1@copy.io", "user2@copy.io", "user3@copy.io"]
    assert store.tables["users"]["user2@copy.io"]["name"] == "USER 2"


def test_apply_filter_operators():
    items = [
        {"name": "Ann", "age": 30},
        {"name": "bob", "age": "41"},
        {"name": "Cy", "age": None},
    ]
    assert apply_filter(items, {"age": {"gt": 35}}) == [items[1]]
    assert apply_filter(items, {"age": {"gte": 30, "lt": 41}}) == [items[0]]
    assert apply_filter(items, {"name": {"in": ["ann", "BOB"]}}) == items[:2]
    assert apply_filter(items, {"name": "ANN"}) == [items[0]]
    assert apply_filter(items, {"name": {"ne": "cy"}}) == items[:2]
    assert apply_filter(items, {"name": {"startswith": "b"}}) == [items[1]]
    assert apply_filter(items, None) == items


def test_apply_sort_puts_missing_values_last_both_ways():
    items = [{"n": 2}, {"n": None}, {"n": 1}, {}, {"n": 3}]
    asc = apply_sort(items, SortSpec(by="n"))
    desc = apply_sort(items, SortSpec(by="n", order="DESC"))
    assert [i.get("n") for i in asc] == [1, 2, 3, None, None]
    assert [i.get("n") for i in desc] == [3, 2, 1, None, None]


@pytest.mark.asyncio
async def test_steps_keyed_by_identifier_in_data(dispatcher, store):
    store.seed("users", "email", make_users(3))
    executor, spy = executor_for(dispatcher)
    results = await executor.execute(plan_of(
        {"id": "r", "operation": "read", "entityType": "users", "data": {"email": "user1@example.com"}},
        {"id": "u", "operation": "update", "entityType": "users",
         "data": {"email": "user3@example.com", "name": "Renamed"}},
        {"id": "d", "operation": "delete", "entityType": "users", "data": {"email": "user2@example.com"}},
    ))
    assert [r.success for r in results] == [True, True, True]
    assert results[0].ids == ["user1@example.com"]
    assert results[0].items[0]["name"] == "User 1"
    assert results[1].ids == ["user3@example.com"]
    assert results[2].ids == ["user2@example.com"]
    assert sorted(store.tables["users"]) == ["user1@example.com", "user3@example.com"]
    assert store.tables["users"]["user3@example.com"]["name"] == "Renamed"
    assert [c[3] for c in spy.calls] == [None, None, None]
