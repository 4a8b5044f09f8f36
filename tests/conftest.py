import json
import uuid

import pytest

from agent_service.dispatcher import CrudDispatcher
from agent_service.entities import build_default_registry
from agent_service.errors import CollaboratorUnavailableError, DuplicateRecordError, RecordNotFoundError


class ScriptedLLM:
    """LLM collaborator fake.

    Replies are consumed in order; an Exception instance is raised instead of
    returned. Dict replies are sent as JSON text. When the script runs out the
    collaborator behaves as unreachable.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, system_prompt, user_prompt, **kwargs):
        self.calls.append((system_prompt, user_prompt))
        if not self.replies:
            raise CollaboratorUnavailableError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


class MemoryStore:
    """Dict-backed store with the same operation surface as EntityStore."""

    def __init__(self):
        self.tables = {}
        self.calls = []
        self._clock = 1_700_000_000_000

    def _stamp(self):
        self._clock += 1
        return self._clock

    def seed(self, entity_type, identifier_field, records):
        table = self.tables.setdefault(entity_type, {})
        for data in records:
            table[str(data[identifier_field])] = dict(data, _id=uuid.uuid4().hex, _creationTime=self._stamp())

    def _table(self, entity_type):
        return self.tables.setdefault(entity_type, {})

    async def create(self, entity_type, identifier_field, data):
        self.calls.append(("create", entity_type, data))
        table = self._table(entity_type)
        ident = str(data[identifier_field])
        if ident in table:
            raise DuplicateRecordError(entity_type, ident)
        table[ident] = dict(data, _id=uuid.uuid4().hex, _creationTime=self._stamp())
        return {"id": ident, "record": dict(table[ident])}

    async def get(self, entity_type, identifier):
        self.calls.append(("read", entity_type, identifier))
        record = self._table(entity_type).get(str(identifier))
        if record is None:
            raise RecordNotFoundError(entity_type, str(identifier))
        return {"record": dict(record)}

    async def update(self, entity_type, identifier_field, identifier, changes):
        self.calls.append(("update", entity_type, identifier, changes))
        table = self._table(entity_type)
        ident = str(identifier)
        if ident not in table:
            raise RecordNotFoundError(entity_type, ident)
        new_ident = str(changes.get(identifier_field) or ident)
        if new_ident != ident and new_ident in table:
            raise DuplicateRecordError(entity_type, new_ident)
        record = dict(table.pop(ident), **changes)
        table[new_ident] = record
        return {"id": new_ident, "record": dict(record)}

    async def delete(self, entity_type, identifier):
        self.calls.append(("delete", entity_type, identifier))
        table = self._table(entity_type)
        ident = str(identifier)
        if ident not in table:
            raise RecordNotFoundError(entity_type, ident)
        return {"id": ident, "record": table.pop(ident)}

    async def list(self, entity_type):
        self.calls.append(("list", entity_type))
        items = [dict(r) for r in self._table(entity_type).values()]
        return {"count": len(items), "items": items}

    def calls_for(self, operation):
        return [c for c in self.calls if c[0] == operation]


def make_users(n, domain="example.com"):
    return [{"name": f"User {i}", "email": f"user{i}@{domain}"} for i in range(1, n + 1)]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(store):
    return build_default_registry(store, schema_path="")


@pytest.fixture
def dispatcher(registry):
    return CrudDispatcher(registry, llm=None, store_timeout_s=2)
