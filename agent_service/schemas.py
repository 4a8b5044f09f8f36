"""
Data contracts.

Pydantic models cover everything recovered from collaborator output or
received over HTTP (plans, classifications, response envelopes, requests).
Dataclasses cover the internal result envelopes passed between the
dispatcher, plan executor and coordinator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .registry import Operation

# ============================================================================
# EXECUTION PLAN (produced by the plan generator)
# ============================================================================

ConditionType = Literal["count_gt", "count_gte", "count_lt", "count_lte", "count_eq", "exists", "not_exists"]


class PlanCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: ConditionType
    from_step: str = Field(alias="fromStep")
    field: Literal["count", "items.length"] = "count"
    value: Optional[float] = None

    @field_validator("from_step", mode="before")
    @classmethod
    def coerce_step_ref(cls, v):
        return str(v) if v is not None else v

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        return str(v).strip().lower() if v is not None else v

    @field_validator("field", mode="before")
    @classmethod
    def default_field(cls, v):
        return "count" if v in (None, "") else v


class SortSpec(BaseModel):
    by: str
    order: Literal["asc", "desc"] = "asc"

    @field_validator("order", mode="before")
    @classmethod
    def normalize_order(cls, v):
        return "asc" if v in (None, "") else str(v).strip().lower()


class PlanStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    operation: Operation
    entity_type: str = Field(alias="entityType", min_length=1)
    description: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    identifier: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    sort: Optional[SortSpec] = None
    limit: Optional[int] = Field(default=None, ge=0)
    condition: Optional[PlanCondition] = None
    repeat: Optional[int] = Field(default=None, ge=1)
    from_step: Optional[str] = Field(default=None, alias="fromStep")
    data_template: Optional[Dict[str, Any]] = Field(default=None, alias="dataTemplate")

    @field_validator("id", "from_step", "identifier", mode="before")
    @classmethod
    def coerce_str(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("operation", mode="before")
    @classmethod
    def parse_operation(cls, v):
        op = Operation.parse(v)
        if op is None:
            raise ValueError(f"unsupported operation: {v!r}")
        return op

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v):
        if not v.strip():
            raise ValueError("step id must not be blank")
        return v


class ExecutionPlan(BaseModel):
    steps: List[PlanStep] = Field(min_length=1)
    summary: Optional[str] = None

    @model_validator(mode="after")
    def unique_step_ids(self):
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id: {step.id!r}")
            seen.add(step.id)
        return self


# ============================================================================
# CLASSIFICATION & RESPONSES
# ============================================================================

class Intent(str, Enum):
    GREETING = "GREETING"
    SIMPLE_QUESTION = "SIMPLE_QUESTION"
    CRUD_OPERATION = "CRUD_OPERATION"
    COMPLEX_WORKFLOW = "COMPLEX_WORKFLOW"
    SAFETY_VIOLATION = "SAFETY_VIOLATION"
    UNKNOWN = "UNKNOWN"


class EntityHint(BaseModel):
    type: str
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v):
        return "" if v is None else str(v)


class Classification(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent: Intent = Intent.UNKNOWN
    confidence: float = 0.0
    entities: List[EntityHint] = Field(default_factory=list)
    operation: Optional[Operation] = None
    table: Optional[str] = None
    requires_multi_agent: bool = Field(default=False, alias="requiresMultiAgent")
    reasoning: str = ""

    @field_validator("intent", mode="before")
    @classmethod
    def normalize_intent(cls, v):
        if isinstance(v, Intent):
            return v
        key = str(v or "").strip().upper().replace("-", "_").replace(" ", "_")
        return Intent.__members__.get(key, Intent.UNKNOWN)

    @field_validator("confidence", mode="before")
    @classmethod
    def clip_confidence(cls, v):
        try:
            v = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(max(v, 0.0), 1.0)

    @field_validator("operation", mode="before")
    @classmethod
    def parse_operation(cls, v):
        if v in (None, ""):
            return None
        return Operation.parse(v)

    @field_validator("table", mode="before")
    @classmethod
    def blank_table(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("entities", mode="before")
    @classmethod
    def drop_malformed_entities(cls, v):
        if not isinstance(v, list):
            return []
        return [e for e in v if isinstance(e, dict) and e.get("type")]

    @classmethod
    def fallback(cls, reasoning: str = "Failed to classify prompt - using fallback") -> "Classification":
        return cls(intent=Intent.UNKNOWN, confidence=0.0, entities=[], reasoning=reasoning)


class ResponderEnvelope(BaseModel):
    message: str = Field(min_length=1)
    understanding: str = ""
    reasoning: str = ""

    @field_validator("understanding", "reasoning", mode="before")
    @classmethod
    def stringify(cls, v):
        return "" if v is None else str(v)


class Strategy(str, Enum):
    DIRECT = "DIRECT"
    SIMPLE_CRUD = "SIMPLE_CRUD"
    MULTI_AGENT = "MULTI_AGENT"
    REJECTED = "REJECTED"


class ProcessRequest(BaseModel):
    instruction: str = Field(min_length=1)

    @field_validator("instruction")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("instruction must not be blank")
        return v.strip()


class ProcessResult(BaseModel):
    success: bool
    result: str
    strategy: Strategy
    reasoning: List[str] = Field(default_factory=list)
    error: Optional[str] = None


# ============================================================================
# RESULT ENVELOPES
# ============================================================================

@dataclass
class CrudResult:
    """Uniform envelope returned by the CRUD dispatcher."""
    success: bool
    operation: str
    entity_type: str
    details: str
    table: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.table is None:
            self.table = self.entity_type


@dataclass
class StepResult:
    """Materialized outcome of one plan step."""
    step_id: str
    success: bool
    operation: str
    entity_type: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0
    ids: List[str] = field(default_factory=list)
    details: str = ""
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return bool(self.meta.get("skipped"))
