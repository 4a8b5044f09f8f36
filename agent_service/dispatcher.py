"""
Generic CRUD dispatcher.

Turns one (operation, entity type, instruction, hints) request into a single
validated store call and always answers with a CrudResult. Nothing raised by
the registry, the validators, the field extractor or the store escapes
``dispatch``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import get_settings
from .errors import ConfigurationError, LLMOutputError, CollaboratorUnavailableError, StoreError, ValidationError
from .llm_json import decode_llm_json
from .metrics import crud_dispatch_total, store_op_latency_seconds
from .prompts import EXTRACTOR_SYSTEM, extraction_prompt
from .registry import EntityConfig, EntityRegistry, FieldSpec, FieldType, Operation
from .schemas import CrudResult, EntityHint

logger = logging.getLogger(__name__)

_TRUE = {"true", "yes", "y", "1"}
_FALSE = {"false", "no", "n", "0"}


def _hint_pairs(hints: Any) -> List[Tuple[str, Any]]:
    """Normalize hints (EntityHint list, dict list or mapping) to (field, value) pairs."""
    if not hints:
        return []
    if isinstance(hints, Mapping):
        return [(str(k), v) for k, v in hints.items()]
    pairs: List[Tuple[str, Any]] = []
    for hint in hints:
        if isinstance(hint, EntityHint):
            pairs.append((hint.type, hint.value))
        elif isinstance(hint, Mapping) and "type" in hint:
            pairs.append((str(hint["type"]), hint.get("value")))
    return pairs


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_field(name: str, spec: FieldSpec, value: Any) -> Any:
    """Coerce a raw value to the declared field type or raise ValidationError."""
    if value is None:
        return None
    if spec.type in (FieldType.STRING, FieldType.OPTIONAL_STRING):
        if isinstance(value, (dict, list)):
            raise ValidationError(f"Invalid value for field '{name}': expected string", field=name)
        return value if isinstance(value, str) else str(value)
    if spec.type in (FieldType.NUMBER, FieldType.OPTIONAL_NUMBER):
        if isinstance(value, bool):
            raise ValidationError(f"Invalid value for field '{name}': expected number", field=name)
        if isinstance(value, (int, float)):
            return value
        try:
            text = str(value).strip()
            return int(text) if text.lstrip("-").isdigit() else float(text)
        except ValueError:
            raise ValidationError(f"Invalid value for field '{name}': expected number", field=name)
    if spec.type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValidationError(f"Invalid value for field '{name}': expected boolean", field=name)
    return value


def validate_entity_data(config: EntityConfig, data: Dict[str, Any], operation: Operation) -> Dict[str, Any]:
    """Type-coerce, run custom validators and (for create) check required fields."""
    cleaned: Dict[str, Any] = {}
    for name, value in data.items():
        spec = config.fields.get(name)
        if spec is None:
            continue
        cleaned[name] = coerce_field(name, spec, value)

    if operation == Operation.CREATE:
        for name, spec in config.fields.items():
            if spec.required and _is_blank(cleaned.get(name)):
                raise ValidationError(f"Required field '{name}' is missing", field=name)

    for name, value in cleaned.items():
        spec = config.fields[name]
        if spec.validate is not None and value is not None and not spec.validate(value):
            raise ValidationError(f"Invalid value for field '{name}'", field=name)
    return cleaned


class CrudDispatcher:
    def __init__(self, registry: EntityRegistry, llm: Any = None, store_timeout_s: Optional[float] = None):
        self.registry = registry
        self.llm = llm
        cfg = get_settings()
        self.store_timeout_s = float(store_timeout_s if store_timeout_s is not None else cfg.STORE_TIMEOUT_SECONDS)

    async def dispatch(
        self,
        operation: Any,
        entity_type: str,
        raw_instruction: str = "",
        hints: Optional[Iterable[Any]] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
        identifier: Optional[Any] = None,
        extract: bool = True,
    ) -> CrudResult:
        """Validate and execute one operation against the store.

        Args:
            operation: create/read/update/delete/list (any case) or an Operation.
            entity_type: registered entity type name.
            raw_instruction: free text used for best-effort field extraction.
            hints: already-extracted values, honored over anything extracted.
            data: explicit field values (plan steps); merged over hints.
            identifier: explicit target identifier for read/update/delete.
            extract: ask the collaborator for missing fields from raw_instruction.
        """
        op = Operation.parse(operation)
        op_name = op.value if op else str(operation)
        result: CrudResult
        try:
            config = self.registry.get(entity_type)
            if config is None:
                raise ConfigurationError(f"Entity type '{entity_type}' not configured", entity_type=entity_type)
            if op is None:
                raise ConfigurationError(f"Unsupported operation: {operation}", entity_type=entity_type)
            handle = config.operations.get(op)
            if handle is None:
                raise ConfigurationError(
                    f"{op.value.capitalize()} operation not configured for '{entity_type}'",
                    entity_type=entity_type, operation=op.value,
                )

            pairs = _hint_pairs(hints)
            if op == Operation.CREATE:
                result = await self._handle_create(config, entity_type, handle, raw_instruction, pairs, data, extract)
            elif op == Operation.READ:
                ident = self._require_identifier(config, pairs, identifier, data)
                payload = await self._call_store(op, handle, ident)
                record = payload.get("record")
                result = CrudResult(True, op.value, entity_type, f"Found {entity_type} record {ident}",
                                    table=config.table, data={"id": ident, "record": record})
            elif op == Operation.UPDATE:
                result = await self._handle_update(config, entity_type, handle, raw_instruction, pairs, data,
                                                   identifier, extract)
            elif op == Operation.DELETE:
                ident = self._require_identifier(config, pairs, identifier, data)
                payload = await self._call_store(op, handle, ident)
                result = CrudResult(True, op.value, entity_type, f"Deleted {entity_type} record {ident}",
                                    table=config.table, data={"id": str(payload.get("id", ident)),
                                                              "record": payload.get("record")})
            else:
                payload = await self._call_store(op, handle)
                items = list(payload.get("items") or [])
                count = payload.get("count")
                count = int(count) if isinstance(count, (int, float)) else len(items)
                result = CrudResult(True, op.value, entity_type, f"Found {count} {entity_type} record(s)",
                                    table=config.table, data={"count": count, "items": items})
        except ConfigurationError as e:
            result = CrudResult(False, op_name, entity_type, e.message, error=e.message)
        except ValidationError as e:
            result = CrudResult(False, op_name, entity_type, e.message, error=e.message)
        except asyncio.TimeoutError:
            msg = f"{op_name} on '{entity_type}' timed out after {self.store_timeout_s}s"
            result = CrudResult(False, op_name, entity_type, "Store operation timed out", error=msg)
        except StoreError as e:
            result = CrudResult(False, op_name, entity_type, e.message, error=e.message)
        except Exception as e:
            logger.exception("Store operation %s on '%s' failed", op_name, entity_type)
            result = CrudResult(False, op_name, entity_type, "Operation failed due to error", error=str(e) or repr(e))

        crud_dispatch_total.labels(operation=op_name, result="success" if result.success else "failure").inc()
        if not result.success:
            logger.info("Dispatch %s %s failed: %s", op_name, entity_type, result.error)
        return result

    # ------------------------------------------------------------------
    # operation handlers
    # ------------------------------------------------------------------

    async def _handle_create(self, config, entity_type, handle, raw_instruction, pairs, data, extract) -> CrudResult:
        draft: Dict[str, Any] = {}
        for name, value in pairs:
            if name in config.fields and name not in draft and not _is_blank(value):
                draft[name] = value
        for name, value in (data or {}).items():
            if name in config.fields:
                draft[name] = value

        missing = [name for name in config.fields if _is_blank(draft.get(name))]
        if extract and missing and raw_instruction:
            extracted = await self._extract_fields(config, entity_type, raw_instruction, draft)
            for name, value in extracted.items():
                if name in missing and not _is_blank(value):
                    draft[name] = value

        record = validate_entity_data(config, draft, Operation.CREATE)
        payload = await self._call_store(Operation.CREATE, handle, record)
        ident = str(payload.get("id", record.get(config.identifier_field)))
        return CrudResult(True, "create", entity_type, f"Created {entity_type} record {ident}",
                          table=config.table, data={"id": ident, "record": payload.get("record", record)})

    async def _handle_update(self, config, entity_type, handle, raw_instruction, pairs, data, identifier,
                             extract) -> CrudResult:
        id_field = config.identifier_field
        id_hints = [v for name, v in pairs if name == id_field and not _is_blank(v)]
        ident = self._require_identifier(config, pairs, identifier, data)

        changes: Dict[str, Any] = {}
        for name, value in pairs:
            if name in config.fields and name != id_field and name not in changes and not _is_blank(value):
                changes[name] = value
        # a second identifier hint is the new identifier value
        if identifier is None and len(id_hints) > 1:
            changes[id_field] = id_hints[1]
        for name, value in (data or {}).items():
            if name in config.fields:
                changes[name] = value
        if changes.get(id_field) is not None and str(changes[id_field]) == ident:
            changes.pop(id_field)

        if extract and raw_instruction and not data:
            known = dict(changes)
            known[id_field] = ident
            extracted = await self._extract_fields(config, entity_type, raw_instruction, known)
            for name, value in extracted.items():
                if name in config.fields and name != id_field and name not in changes and not _is_blank(value):
                    changes[name] = value

        if not changes:
            raise ValidationError(f"No fields to update for {entity_type} record {ident}")
        changes = validate_entity_data(config, changes, Operation.UPDATE)
        payload = await self._call_store(Operation.UPDATE, handle, ident, changes)
        new_ident = str(payload.get("id", ident))
        return CrudResult(True, "update", entity_type, f"Updated {entity_type} record {new_ident}",
                          table=config.table,
                          data={"id": new_ident, "previousId": ident, "record": payload.get("record"),
                                "changes": changes})

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_identifier(config: EntityConfig, pairs: List[Tuple[str, Any]], identifier: Any,
                            data: Optional[Dict[str, Any]] = None) -> str:
        if not _is_blank(identifier):
            return str(identifier)
        for name, value in pairs:
            if name == config.identifier_field and not _is_blank(value):
                return str(value)
        # plan steps may carry the key only in data
        value = (data or {}).get(config.identifier_field)
        if not _is_blank(value):
            return str(value)
        raise ValidationError(f"Missing {config.identifier_field}", field=config.identifier_field)

    async def _call_store(self, op: Operation, handle, *args) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            payload = await asyncio.wait_for(handle(*args), timeout=self.store_timeout_s)
        finally:
            store_op_latency_seconds.labels(operation=op.value).observe(time.perf_counter() - started)
        if not isinstance(payload, dict):
            raise StoreError(f"store {op.value} operation returned {type(payload).__name__}, expected a mapping")
        return payload

    async def _extract_fields(self, config: EntityConfig, entity_type: str, raw_instruction: str,
                              known: Dict[str, Any]) -> Dict[str, Any]:
        """Best-effort LLM extraction; any failure yields an empty dict."""
        if self.llm is None:
            return {}
        prompt = extraction_prompt(entity_type, raw_instruction, list(config.fields.keys()), known)
        try:
            text = await self.llm.complete(EXTRACTOR_SYSTEM, prompt)
            extracted = decode_llm_json(text)
        except (LLMOutputError, CollaboratorUnavailableError) as e:
            logger.info("Field extraction for '%s' skipped: %s", entity_type, e)
            return {}
        except Exception as e:
            logger.warning("Field extraction for '%s' failed unexpectedly: %s", entity_type, e)
            return {}
        return {k: v for k, v in extracted.items() if k in config.fields}
