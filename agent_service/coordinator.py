"""
Coordinator: classify an instruction, pick a strategy and run it.

Routing table (a closed set of intents):

    GREETING / SIMPLE_QUESTION / UNKNOWN  -> DIRECT       (direct responder)
    SAFETY_VIOLATION                      -> REJECTED     (direct responder, success=False)
    CRUD_OPERATION                        -> SIMPLE_CRUD  (one dispatcher call)
    COMPLEX_WORKFLOW                      -> MULTI_AGENT  (plan generator + plan executor)

``process`` never raises; every outcome is a ProcessResult.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from .classifier import IntentClassifier
from .config import get_settings
from .dispatcher import CrudDispatcher
from .entities import build_default_registry
from .errors import CollaboratorUnavailableError, PlanGenerationError
from .llm_client import LLMClient
from .logging_setup import request_id_var
from .metrics import requests_processed_total
from .plan_executor import PlanExecutor
from .planner import PlanGenerator
from .registry import EntityRegistry, Operation
from .report import format_crud_result, format_plan_report
from .responder import DirectResponder
from .schemas import Classification, Intent, ProcessResult, Strategy
from .storage import EntityStore

logger = logging.getLogger(__name__)

ROUTES = {
    Intent.GREETING: Strategy.DIRECT,
    Intent.SIMPLE_QUESTION: Strategy.DIRECT,
    Intent.UNKNOWN: Strategy.DIRECT,
    Intent.SAFETY_VIOLATION: Strategy.REJECTED,
    Intent.CRUD_OPERATION: Strategy.SIMPLE_CRUD,
    Intent.COMPLEX_WORKFLOW: Strategy.MULTI_AGENT,
}

# strategies answered by the direct responder, which is the only consumer of store context
_CONTEXT_STRATEGIES = (Strategy.DIRECT, Strategy.REJECTED)


def route(classification: Classification) -> Strategy:
    return ROUTES.get(classification.intent, Strategy.DIRECT)


class Coordinator:
    def __init__(
        self,
        registry: EntityRegistry,
        llm: Any,
        store: Any = None,
        dispatcher: Optional[CrudDispatcher] = None,
        planner: Optional[PlanGenerator] = None,
        executor: Optional[PlanExecutor] = None,
        classifier: Optional[IntentClassifier] = None,
        responder: Optional[DirectResponder] = None,
        default_entity_type: Optional[str] = None,
    ):
        self.registry = registry
        self.llm = llm
        self.store = store
        self.dispatcher = dispatcher or CrudDispatcher(registry, llm)
        self.planner = planner or PlanGenerator(llm)
        self.executor = executor or PlanExecutor(self.dispatcher, registry)
        self.classifier = classifier or IntentClassifier(llm, registry.list_types())
        self.responder = responder or DirectResponder(llm)
        self.default_entity_type = default_entity_type or get_settings().DEFAULT_ENTITY_TYPE

    async def process(self, instruction: str) -> ProcessResult:
        token = request_id_var.set(uuid.uuid4().hex[:12])
        reasoning: List[str] = []
        strategy = Strategy.DIRECT
        try:
            instruction = (instruction or "").strip()
            if not instruction:
                result = ProcessResult(success=False, result="Please provide an instruction.",
                                       strategy=strategy, reasoning=reasoning, error="Empty instruction")
            else:
                logger.info("Processing instruction: %s", instruction[:200])
                classification = await self.classifier.classify(instruction, self.registry.list_types())
                reasoning.append(
                    f"Classified as {classification.intent.value} (confidence {classification.confidence:.2f})"
                )
                if classification.reasoning:
                    reasoning.append(f"Classifier: {classification.reasoning}")
                strategy = route(classification)
                reasoning.append(f"Strategy: {strategy.value}")

                if strategy in _CONTEXT_STRATEGIES:
                    result = await self._respond_directly(instruction, classification, strategy, reasoning)
                elif strategy == Strategy.SIMPLE_CRUD:
                    result = await self._run_crud(instruction, classification, reasoning)
                else:
                    result = await self._run_workflow(instruction, reasoning)
        except Exception as e:
            logger.exception("Unhandled error while processing instruction")
            result = ProcessResult(
                success=False,
                result="❌ The instruction could not be processed because of an internal error.",
                strategy=strategy,
                reasoning=reasoning,
                error=str(e) or repr(e),
            )
        finally:
            request_id_var.reset(token)

        requests_processed_total.labels(
            strategy=result.strategy.value, result="success" if result.success else "failure"
        ).inc()
        return result

    # ------------------------------------------------------------------
    # strategies
    # ------------------------------------------------------------------

    async def _respond_directly(self, instruction: str, classification: Classification, strategy: Strategy,
                                reasoning: List[str]) -> ProcessResult:
        store_context = await self.get_store_context()
        reply = await self.responder.respond(instruction, classification, store_context)
        reasoning.extend(reply.reasoning)
        if strategy == Strategy.REJECTED:
            logger.warning("Rejected unsafe instruction")
            return ProcessResult(success=False, result=reply.message, strategy=strategy, reasoning=reasoning,
                                 error="Instruction rejected as unsafe or destructive")
        return ProcessResult(success=True, result=reply.message, strategy=strategy, reasoning=reasoning)

    async def _run_crud(self, instruction: str, classification: Classification,
                        reasoning: List[str]) -> ProcessResult:
        operation = classification.operation or Operation.LIST
        entity_type = self.infer_entity_type(classification)
        reasoning.append(f"Dispatching {operation.value} on '{entity_type}'")
        crud = await self.dispatcher.dispatch(operation, entity_type, raw_instruction=instruction,
                                              hints=classification.entities)
        reasoning.append(crud.details)
        return ProcessResult(success=crud.success, result=format_crud_result(crud), strategy=Strategy.SIMPLE_CRUD,
                             reasoning=reasoning, error=crud.error)

    async def _run_workflow(self, instruction: str, reasoning: List[str]) -> ProcessResult:
        try:
            plan = await self.planner.create_plan(instruction, self.registry)
        except (PlanGenerationError, CollaboratorUnavailableError) as e:
            logger.warning("Plan generation failed: %s", e.message)
            reasoning.append("Plan generation failed; nothing was executed")
            return ProcessResult(success=False, result=f"❌ **Could not build an execution plan**\n\n{e.message}",
                                 strategy=Strategy.MULTI_AGENT, reasoning=reasoning, error=e.message)

        reasoning.append(f"Generated plan with {len(plan.steps)} step(s)")
        results = await self.executor.execute(plan, instruction)
        failed = [r for r in results if not r.success]
        for r in results:
            status = "skipped" if r.skipped else ("ok" if r.success else "failed")
            reasoning.append(f"Step {r.step_id}: {status}")
        error = None
        if failed:
            error = "; ".join(f"{r.step_id}: {r.error or r.details}" for r in failed)
        return ProcessResult(success=not failed, result=format_plan_report(plan, results),
                             strategy=Strategy.MULTI_AGENT, reasoning=reasoning, error=error)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def infer_entity_type(self, classification: Classification) -> str:
        """Classifier table guess, then the type whose fields best match the hints, then the default."""
        table = classification.table
        if table:
            lowered = table.lower()
            for candidate in (table, lowered, lowered + "s", lowered.rstrip("s")):
                if candidate in self.registry:
                    return candidate
            # unregistered names are passed through so dispatch reports "not configured"
            return table

        hint_fields = {h.type for h in classification.entities}
        best, best_hits = None, 0
        for entity_type in self.registry.list_types():
            hits = len(hint_fields & set(self.registry.get(entity_type).fields))
            if hits > best_hits:
                best, best_hits = entity_type, hits
        return best or self.default_entity_type

    async def get_store_context(self) -> Dict[str, Any]:
        """Per-type record counts and available operations for the direct responder."""
        counts: Dict[str, int] = {}
        operations: Dict[str, List[str]] = {}
        for entity_type in self.registry.list_types():
            config = self.registry.get(entity_type)
            operations[entity_type] = config.operations.available()
            count = 0
            if config.operations.list is not None:
                crud = await self.dispatcher.dispatch(Operation.LIST, entity_type, extract=False)
                if crud.success:
                    count = int((crud.data or {}).get("count", 0))
                else:
                    logger.warning("Could not count '%s' records: %s", entity_type, crud.error)
            counts[entity_type] = count
        return {
            "availableEntities": list(counts.keys()),
            "entityCounts": counts,
            "availableOperations": operations,
            "totalEntities": sum(counts.values()),
        }

    async def aclose(self) -> None:
        close = getattr(self.llm, "close", None)
        if close is not None:
            await close()
        if self.store is not None:
            await self.store.dispose()


def build_coordinator() -> Coordinator:
    """Wire the production collaborators from settings."""
    cfg = get_settings()
    llm = LLMClient()
    store = EntityStore(cfg.DATABASE_URL)
    registry = build_default_registry(store, cfg.ENTITY_SCHEMA_PATH)
    return Coordinator(registry, llm, store=store, default_entity_type=cfg.DEFAULT_ENTITY_TYPE)
