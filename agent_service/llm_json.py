"""Decoder for structured output returned by the LLM collaborator.

The collaborator's text is untrusted: it may be wrapped in markdown code
fences, surrounded by prose, or not JSON at all. Every component that
expects structured output goes through ``decode_llm_json`` and handles the
single failure mode, ``LLMOutputError``.
"""

import json
import re
from typing import Any, Dict, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from .errors import LLMOutputError

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?|\n?\s*```")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def extract_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span in ``text``.

    Braces inside JSON string literals are ignored, as are escaped quotes.
    Returns None when no opening brace is ever closed.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start: idx + 1]
        # unbalanced from this brace; nothing later can close it either
        return None
    return None


def decode_llm_json(text: Any, model: Optional[Type[M]] = None) -> Union[Dict[str, Any], M]:
    """Strip fences, extract the first balanced object, parse and validate.

    Args:
        text: raw collaborator output.
        model: optional pydantic model the object must satisfy.

    Returns:
        The parsed dict, or an instance of ``model`` when given.

    Raises:
        LLMOutputError: on any decoding or validation failure.
    """
    if not isinstance(text, str) or not text.strip():
        raise LLMOutputError("empty collaborator output", raw_output=text if isinstance(text, str) else None)

    cleaned = strip_code_fences(text)
    parsed: Any = None
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        candidate = extract_balanced_object(cleaned)
        if candidate is None:
            raise LLMOutputError("no balanced JSON object found in collaborator output", raw_output=text)
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise LLMOutputError(f"invalid JSON in collaborator output: {e}", raw_output=text)

    if not isinstance(parsed, dict):
        raise LLMOutputError("collaborator output is not a JSON object", raw_output=text)

    if model is None:
        return parsed
    try:
        return model.model_validate(parsed)
    except SchemaValidationError as e:
        raise LLMOutputError(f"collaborator output does not match {model.__name__}: {e}", raw_output=text)
