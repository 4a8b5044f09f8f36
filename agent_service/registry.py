"""
Entity registry: entity-type name -> schema, identifier field and the typed
store operations that implement create/read/update/delete/list for it.

The registry is an explicit object built at startup and injected into the
dispatcher, plan generator and coordinator. Registration takes a lock;
lookups read an immutable snapshot so concurrent readers never block.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OPTIONAL_STRING = "optional_string"
    OPTIONAL_NUMBER = "optional_number"


class Operation(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"

    @classmethod
    def parse(cls, value: Any) -> Optional["Operation"]:
        if isinstance(value, Operation):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# Typed store operation handles, resolved once at registration time.
CreateOp = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
ReadOp = Callable[[str], Awaitable[Dict[str, Any]]]
UpdateOp = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]
DeleteOp = Callable[[str], Awaitable[Dict[str, Any]]]
ListOp = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class FieldSpec:
    type: FieldType = FieldType.STRING
    required: bool = False
    validate: Optional[Callable[[Any], bool]] = None


@dataclass(frozen=True)
class EntityOperations:
    create: Optional[CreateOp] = None
    read: Optional[ReadOp] = None
    update: Optional[UpdateOp] = None
    delete: Optional[DeleteOp] = None
    list: Optional[ListOp] = None

    def get(self, operation: Operation) -> Optional[Callable[..., Awaitable[Dict[str, Any]]]]:
        return getattr(self, operation.value)

    def available(self) -> List[str]:
        return [op.value for op in Operation if self.get(op) is not None]


@dataclass(frozen=True)
class EntityConfig:
    table: str
    fields: Mapping[str, FieldSpec]
    identifier_field: str
    operations: EntityOperations = field(default_factory=EntityOperations)

    def __post_init__(self):
        if self.identifier_field not in self.fields:
            raise ConfigurationError(
                f"identifier field '{self.identifier_field}' is not a declared field of '{self.table}'",
                entity_type=self.table,
            )
        # freeze the field mapping in declaration order
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))


class EntityRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._configs: Mapping[str, EntityConfig] = MappingProxyType({})

    def register(self, entity_type: str, config: EntityConfig) -> None:
        if not entity_type or not isinstance(entity_type, str):
            raise ConfigurationError("entity type name must be a non-empty string")
        with self._lock:
            updated = dict(self._configs)
            if entity_type in updated:
                logger.warning("Replacing existing configuration for entity type '%s'", entity_type)
            updated[entity_type] = config
            self._configs = MappingProxyType(updated)
        logger.info(
            "Registered entity type '%s' (identifier=%s, operations=%s)",
            entity_type, config.identifier_field, ",".join(config.operations.available()),
        )

    def get(self, entity_type: str) -> Optional[EntityConfig]:
        return self._configs.get(entity_type)

    def list_types(self) -> List[str]:
        return list(self._configs.keys())

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._configs

    def __len__(self) -> int:
        return len(self._configs)

    def schema_info(self) -> Dict[str, Dict[str, Any]]:
        info: Dict[str, Dict[str, Any]] = {}
        for entity_type, config in self._configs.items():
            info[entity_type] = {
                "fields": {
                    name: {"type": spec.type.value, "required": spec.required}
                    for name, spec in config.fields.items()
                },
                "identifierField": config.identifier_field,
                "operations": config.operations.available(),
            }
        return info

    def describe_schemas(self) -> str:
        """Human-readable schema text, embedded verbatim in LLM prompts."""
        blocks = []
        for entity_type, config in self._configs.items():
            lines = [f"{entity_type}:"]
            for name, spec in config.fields.items():
                req = "required" if spec.required else "optional"
                lines.append(f"  - {name}: {spec.type.value} ({req})")
            lines.append(f"  identifier: {config.identifier_field}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)


def load_entity_definitions(path: str) -> List[Dict[str, Any]]:
    """Read extra entity definitions from a JSON file.

    Expected shape: a list of ``{"entityType", "identifierField", "fields",
    "table"?}`` where ``fields`` maps names to ``{"type", "required"}``.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ConfigurationError(f"entity definitions in {path} must be a JSON list")
    definitions = []
    for entry in raw:
        try:
            fields = {
                name: FieldSpec(type=FieldType(spec.get("type", "string")), required=bool(spec.get("required", False)))
                for name, spec in entry["fields"].items()
            }
            definitions.append(
                {
                    "entity_type": entry["entityType"],
                    "table": entry.get("table") or entry["entityType"],
                    "identifier_field": entry["identifierField"],
                    "fields": fields,
                }
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"invalid entity definition in {path}: {e}")
    return definitions
