"""Default entity definitions and registry construction."""

import logging
import re
from typing import Any, Optional

from .config import get_settings
from .registry import EntityConfig, EntityRegistry, FieldSpec, FieldType, load_entity_definitions
from .storage import bind_store_operations

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value))


USER_FIELDS = {
    "name": FieldSpec(FieldType.STRING, required=True),
    "email": FieldSpec(FieldType.STRING, required=True, validate=is_valid_email),
    "bio": FieldSpec(FieldType.OPTIONAL_STRING),
    "location": FieldSpec(FieldType.OPTIONAL_STRING),
    "website": FieldSpec(FieldType.OPTIONAL_STRING),
}


def register_store_entity(registry: EntityRegistry, store: Any, entity_type: str, fields, identifier_field: str,
                          table: Optional[str] = None) -> EntityConfig:
    config = EntityConfig(
        table=table or entity_type,
        fields=fields,
        identifier_field=identifier_field,
        operations=bind_store_operations(store, entity_type, identifier_field),
    )
    registry.register(entity_type, config)
    return config


def build_default_registry(store: Any, schema_path: Optional[str] = None) -> EntityRegistry:
    """Registry with ``users`` plus any types declared in ENTITY_SCHEMA_PATH."""
    registry = EntityRegistry()
    register_store_entity(registry, store, "users", USER_FIELDS, "email")

    schema_path = get_settings().ENTITY_SCHEMA_PATH if schema_path is None else schema_path
    if schema_path:
        for definition in load_entity_definitions(schema_path):
            register_store_entity(
                registry,
                store,
                definition["entity_type"],
                definition["fields"],
                definition["identifier_field"],
                table=definition["table"],
            )
        logger.info("Loaded entity definitions from %s", schema_path)
    return registry
