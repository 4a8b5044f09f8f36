"""
Direct responder for conversational intents.

Degrades in three tiers so a caller always gets a coherent answer:
  1. JSON envelope {message, understanding, reasoning} from the collaborator
  2. plain-text completion from a simpler prompt
  3. a fixed template naming the live entity types
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import CollaboratorUnavailableError, LLMOutputError
from .llm_json import decode_llm_json
from .prompts import RESPONDER_SYSTEM, responder_plain_prompt, responder_prompt
from .schemas import Classification, Intent, ResponderEnvelope

logger = logging.getLogger(__name__)

CONTEXT_TYPES = {
    Intent.GREETING: "greeting",
    Intent.SIMPLE_QUESTION: "question",
    Intent.SAFETY_VIOLATION: "safety",
}


@dataclass
class ResponderReply:
    message: str
    reasoning: List[str] = field(default_factory=list)
    tier: str = "primary"


def _entity_phrase(entity_types: List[str]) -> str:
    if not entity_types:
        return "records"
    if len(entity_types) == 1:
        return f"{entity_types[0]} records"
    return f"{', '.join(entity_types[:-1])} and {entity_types[-1]} records"


def template_response(instruction: str, context_type: str, entity_types: List[str]) -> str:
    phrase = _entity_phrase(entity_types)
    if context_type == "safety":
        return (
            f"I can't carry out \"{instruction}\" because it could destroy or damage stored data. "
            f"I can still help you create, read, update, delete or list individual {phrase}."
        )
    return (
        f"I understand you said \"{instruction}\". I can help you create, read, update, delete or list "
        f"{phrase}, and run multi-step or conditional workflows over them. What would you like to do?"
    )


class DirectResponder:
    def __init__(self, llm: Any):
        self.llm = llm

    async def respond(self, instruction: str, classification: Classification,
                      store_context: Optional[Dict[str, Any]] = None) -> ResponderReply:
        store_context = store_context or {}
        context_type = CONTEXT_TYPES.get(classification.intent, "unknown")
        entity_types = list(store_context.get("availableEntities") or [])
        reasoning: List[str] = []

        try:
            text = await self.llm.complete(
                RESPONDER_SYSTEM,
                responder_prompt(instruction, context_type, classification.model_dump(mode="json", by_alias=True),
                                 store_context),
            )
            envelope = decode_llm_json(text, ResponderEnvelope)
            reasoning.append(f"Understanding: {envelope.understanding}")
            reasoning.append(f"Reasoning: {envelope.reasoning}")
            return ResponderReply(envelope.message.strip(), reasoning, tier="primary")
        except CollaboratorUnavailableError as e:
            logger.warning("Responder collaborator unavailable: %s", e)
            reasoning.append("Collaborator unavailable; used template response")
            return ResponderReply(template_response(instruction, context_type, entity_types), reasoning,
                                  tier="template")
        except LLMOutputError as e:
            logger.info("Responder envelope unparseable, falling back to plain text: %s", e.message)
            reasoning.append("Fell back to plain-text response generation")

        try:
            text = await self.llm.complete(RESPONDER_SYSTEM,
                                           responder_plain_prompt(instruction, context_type, store_context))
            message = (text or "").strip()
            if message:
                reasoning.append("Generated plain-text response")
                return ResponderReply(message, reasoning, tier="plain")
            reasoning.append("Plain-text response was empty")
        except CollaboratorUnavailableError as e:
            logger.warning("Responder plain-text fallback failed: %s", e)
            reasoning.append("Plain-text fallback failed")

        reasoning.append("Used template response")
        return ResponderReply(template_response(instruction, context_type, entity_types), reasoning,
                              tier="template")
