"""Prometheus metrics used by the coordinator, plan executor and collaborators.

Collectors register on the default registry at import; ``GET /metrics``
renders them with ``generate_latest``.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

requests_processed_total = Counter(
    "agent_requests_processed_total", "Instructions processed", ["strategy", "result"]
)
plan_steps_total = Counter(
    "agent_plan_steps_total", "Plan steps resolved", ["operation", "outcome"]
)
plans_generated_total = Counter(
    "agent_plans_generated_total", "Plan generation attempts", ["result"]
)
llm_calls_total = Counter(
    "agent_llm_calls_total", "LLM collaborator calls", ["outcome"]
)
crud_dispatch_total = Counter(
    "agent_crud_dispatch_total", "CRUD dispatches", ["operation", "result"]
)
store_op_latency_seconds = Histogram(
    "agent_store_op_latency_seconds", "Entity store operation latency", ["operation"]
)
