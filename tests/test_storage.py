import pytest

from agent_service.dispatcher import CrudDispatcher
from agent_service.entities import build_default_registry
from agent_service.errors import DuplicateRecordError, RecordNotFoundError, ValidationError
from agent_service.plan_executor import PlanExecutor
from agent_service.schemas import ExecutionPlan
from agent_service.storage import EntityStore, bind_store_operations

pytestmark = pytest.mark.asyncio

ASYNC_SQLITE_DSN = "sqlite+aiosqlite:///:memory:"


async def test_create_get_list_round_trip():
    store = EntityStore(ASYNC_SQLITE_DSN)
    try:
        created = await store.create("users", "email", {"name": "Ada", "email": "ada@example.com"})
        assert created["id"] == "ada@example.com"
        assert created["record"]["name"] == "Ada"
        assert created["record"]["_id"]

        await store.create("users", "email", {"name": "Bob", "email": "bob@example.com"})
        await store.create("orders", "ref", {"ref": "o-1", "total": 12.5})

        got = await store.get("users", "ada@example.com")
        assert got["record"]["email"] == "ada@example.com"

        listed = await store.list("users")
        assert listed["count"] == 2
        assert [i["name"] for i in listed["items"]] == ["Ada", "Bob"]
        assert listed["items"][0]["_creationTime"] < listed["items"][1]["_creationTime"]

        orders = await store.list("orders")
        assert orders["items"][0]["total"] == 12.5
    finally:
        await store.dispose()


async def test_duplicates_and_missing_records():
    store = EntityStore(ASYNC_SQLITE_DSN)
    try:
        await store.create("users", "email", {"name": "Ada", "email": "ada@example.com"})
        with pytest.raises(DuplicateRecordError):
            await store.create("users", "email", {"name": "Ada 2", "email": "ada@example.com"})
        # same identifier under another entity type is fine
        await store.create("admins", "email", {"email": "ada@example.com"})
        with pytest.raises(RecordNotFoundError):
            await store.get("users", "ghost@example.com")
        with pytest.raises(RecordNotFoundError):
            await store.delete("users", "ghost@example.com")
        with pytest.raises(ValidationError):
            await store.create("users", "email", {"name": "No Email"})
    finally:
        await store.dispose()


async def test_update_merges_and_renames():
    store = EntityStore(ASYNC_SQLITE_DSN)
    try:
        await store.create("users", "email", {"name": "Ada", "email": "ada@old.org"})
        await store.create("users", "email", {"name": "Bob", "email": "bob@old.org"})

        upd = await store.update("users", "email", "ada@old.org", {"location": "London"})
        assert upd["record"]["location"] == "London"
        assert upd["record"]["name"] == "Ada"

        renamed = await store.update("users", "email", "ada@old.org", {"email": "ada@new.org"})
        assert renamed["id"] == "ada@new.org"
        assert (await store.get("users", "ada@new.org"))["record"]["location"] == "London"
        with pytest.raises(RecordNotFoundError):
            await store.get("users", "ada@old.org")

        with pytest.raises(DuplicateRecordError):
            await store.update("users", "email", "bob@old.org", {"email": "ada@new.org"})
    finally:
        await store.dispose()


async def test_delete_returns_removed_record():
    store = EntityStore(ASYNC_SQLITE_DSN)
    try:
        await store.create("users", "email", {"name": "Ada", "email": "ada@example.com"})
        gone = await store.delete("users", "ada@example.com")
        assert gone["id"] == "ada@example.com"
        assert gone["record"]["name"] == "Ada"
        assert (await store.list("users"))["count"] == 0
    finally:
        await store.dispose()


async def test_bound_operations_forward_to_store():
    store = EntityStore(ASYNC_SQLITE_DSN)
    try:
        ops = bind_store_operations(store, "notes", "title")
        await ops.create({"title": "t1", "body": "x"})
        assert (await ops.read("t1"))["record"]["body"] == "x"
        await ops.update("t1", {"body": "y"})
        assert (await ops.list())["items"][0]["body"] == "y"
        await ops.delete("t1")
        assert (await ops.list())["count"] == 0
    finally:
        await store.dispose()


async def test_plan_against_sql_store():
    store = EntityStore(ASYNC_SQLITE_DSN)
    try:
        registry = build_default_registry(store, schema_path="")
        dispatcher = CrudDispatcher(registry, store_timeout_s=5)
        executor = PlanExecutor(dispatcher, registry, max_concurrency=1, max_repeat=10)
        plan = ExecutionPlan.model_validate({"steps": [
            {"id": "c1", "operation": "create", "entityType": "users",
             "data": {"name": "First", "email": "first@example.com"}},
            {"id": "c2", "operation": "create", "entityType": "users",
             "data": {"name": "Second", "email": "second@example.com"}},
            {"id": "r1", "operation": "read", "entityType": "users", "identifier": "first@example.com"},
            {"id": "oldest", "operation": "list", "entityType": "users",
             "sort": {"by": "_creationTime", "order": "asc"}, "limit": 1},
            {"id": "del", "operation": "delete", "entityType": "users", "fromStep": "oldest"},
            {"id": "rest", "operation": "list", "entityType": "users"},
        ]})
        results = {r.step_id: r for r in await executor.execute(plan)}
        assert all(r.success for r in results.values())
        assert results["r1"].items[0]["name"] == "First"
        assert results["del"].ids == ["first@example.com"]
        assert [i["email"] for i in results["rest"].items] == ["second@example.com"]
    finally:
        await store.dispose()
