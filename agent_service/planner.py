"""Plan generator: instruction + registry schema -> ExecutionPlan via the LLM collaborator."""

import logging
from typing import Any, Optional

from .config import get_settings
from .errors import LLMOutputError, PlanGenerationError
from .llm_json import decode_llm_json
from .metrics import plans_generated_total
from .prompts import PLANNER_SYSTEM, planner_prompt
from .registry import EntityRegistry
from .schemas import ExecutionPlan

logger = logging.getLogger(__name__)


class PlanGenerator:
    def __init__(self, llm: Any, max_steps: Optional[int] = None):
        self.llm = llm
        self.max_steps = int(max_steps if max_steps is not None else get_settings().PLAN_MAX_STEPS)

    def build_prompt(self, instruction: str, registry: EntityRegistry) -> str:
        return planner_prompt(instruction, registry.describe_schemas(), registry.list_types())

    async def create_plan(self, instruction: str, registry: EntityRegistry) -> ExecutionPlan:
        """Ask the collaborator for a plan and validate it against the plan grammar.

        Entity types absent from the registry are accepted here; they fail
        cleanly at dispatch time.

        Raises:
            PlanGenerationError: output not decodable as a valid plan.
            CollaboratorUnavailableError: the collaborator could not be reached.
        """
        prompt = self.build_prompt(instruction, registry)
        text = await self.llm.complete(PLANNER_SYSTEM, prompt)
        try:
            plan = decode_llm_json(text, ExecutionPlan)
        except LLMOutputError as e:
            plans_generated_total.labels(result="invalid").inc()
            logger.warning("Rejected plan output: %s", e.message)
            raise PlanGenerationError(f"Could not parse execution plan: {e.message}", raw_output=text)

        if len(plan.steps) > self.max_steps:
            plans_generated_total.labels(result="invalid").inc()
            raise PlanGenerationError(
                f"Execution plan has {len(plan.steps)} steps, more than the allowed {self.max_steps}",
                raw_output=text,
            )

        unknown = sorted({s.entity_type for s in plan.steps if s.entity_type not in registry})
        if unknown:
            logger.info("Plan references unregistered entity types: %s", ", ".join(unknown))
        plans_generated_total.labels(result="ok").inc()
        logger.info("Generated plan with %d step(s): %s", len(plan.steps), plan.summary or "-")
        return plan
