"""Intent classification: deterministic safety denylist, then the LLM collaborator."""

import logging
import re
from typing import Any, List, Optional, Sequence

from .config import get_settings
from .errors import CollaboratorUnavailableError, LLMOutputError
from .llm_json import decode_llm_json
from .prompts import CLASSIFIER_SYSTEM, classifier_prompt
from .schemas import Classification, Intent

logger = logging.getLogger(__name__)


class IntentClassifier:
    def __init__(self, llm: Any, entity_types: Sequence[str] = (), denylist: Optional[List[str]] = None,
                 enable_denylist: Optional[bool] = None):
        cfg = get_settings()
        self.llm = llm
        self.entity_types = list(entity_types)
        enabled = cfg.ENABLE_SAFETY_DENYLIST if enable_denylist is None else enable_denylist
        patterns = cfg.SAFETY_DENYLIST_PATTERNS if denylist is None else denylist
        self._denylist = [re.compile(p, re.IGNORECASE) for p in patterns] if enabled else []

    def check_denylist(self, instruction: str) -> Optional[str]:
        for pattern in self._denylist:
            if pattern.search(instruction):
                return pattern.pattern
        return None

    async def classify(self, instruction: str, entity_types: Optional[Sequence[str]] = None) -> Classification:
        matched = self.check_denylist(instruction)
        if matched:
            logger.warning("Instruction matched safety denylist pattern %r", matched)
            return Classification(
                intent=Intent.SAFETY_VIOLATION,
                confidence=1.0,
                reasoning=f"Matched safety denylist pattern {matched!r}",
            )

        known = list(entity_types or self.entity_types)
        try:
            text = await self.llm.complete(CLASSIFIER_SYSTEM, classifier_prompt(instruction, known))
            result = decode_llm_json(text, Classification)
        except (LLMOutputError, CollaboratorUnavailableError) as e:
            logger.warning("Classification failed, using fallback: %s", e)
            return Classification.fallback()

        if result.intent != Intent.CRUD_OPERATION:
            result.operation = None
            result.table = None
        logger.info("Classified as %s (confidence=%.2f)", result.intent.value, result.confidence)
        return result
