"""
Per-item data templates for fan-out plan steps.

Placeholders look like ``{{item.email}}`` and may pipe the value through
named transforms: ``{{item.email | replace_domain:company.com}}``. A template
that consists of exactly one placeholder keeps the raw value type.
"""

import re
from typing import Any, Callable, Dict, Optional

from .errors import ValidationError

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")


class TemplateError(ValidationError):
    """A placeholder referenced a missing field or an unknown transform."""


def _split_email(value: Any, transform: str):
    text = str(value)
    if text.count("@") != 1:
        raise TemplateError(f"{transform}: {text!r} is not an email address")
    return text.split("@")


def _replace_domain(value: Any, arg: Optional[str]) -> str:
    if not arg:
        raise TemplateError("replace_domain requires a domain argument")
    local, _ = _split_email(value, "replace_domain")
    return f"{local}@{arg.strip().lstrip('@')}"


TRANSFORMS: Dict[str, Callable[[Any, Optional[str]], Any]] = {
    "lower": lambda v, _: str(v).lower(),
    "upper": lambda v, _: str(v).upper(),
    "strip": lambda v, _: str(v).strip(),
    "local_part": lambda v, _: _split_email(v, "local_part")[0],
    "domain": lambda v, _: _split_email(v, "domain")[1],
    "replace_domain": _replace_domain,
}


def _resolve_path(item: Dict[str, Any], path: str) -> Any:
    parts = path.split(".")
    if parts[0] != "item":
        raise TemplateError(f"unsupported placeholder root in {{{{{path}}}}}; expected item.<field>")
    value: Any = item
    for part in parts[1:]:
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            raise TemplateError(f"field '{'.'.join(parts[1:])}' not present on item", field=parts[-1])
    return value


def evaluate_placeholder(expression: str, item: Dict[str, Any]) -> Any:
    segments = [s.strip() for s in expression.split("|")]
    value = _resolve_path(item, segments[0])
    for segment in segments[1:]:
        name, _, arg = segment.partition(":")
        name = name.strip()
        fn = TRANSFORMS.get(name)
        if fn is None:
            raise TemplateError(f"unknown template transform '{name}'")
        value = fn(value, arg or None)
    return value


def render_value(template: Any, item: Dict[str, Any]) -> Any:
    if isinstance(template, dict):
        return {k: render_value(v, item) for k, v in template.items()}
    if isinstance(template, list):
        return [render_value(v, item) for v in template]
    if not isinstance(template, str):
        return template

    whole = _PLACEHOLDER_RE.fullmatch(template.strip())
    if whole:
        return evaluate_placeholder(whole.group(1), item)
    return _PLACEHOLDER_RE.sub(lambda m: str(evaluate_placeholder(m.group(1), item)), template)


def render_template(data_template: Dict[str, Any], item: Dict[str, Any]) -> Dict[str, Any]:
    return {field: render_value(template, item) for field, template in data_template.items()}
