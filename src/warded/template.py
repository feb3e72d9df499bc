"""Prompt templates.

Templates use `{{name}}` placeholders bound from the method arguments:

    @user_message("Translate {{text}} into {{language}}")
    def translate(self, text: str, language: str) -> str: ...

A method with a single argument can refer to it as `{{it}}`. The
variables `{{current_date}}`, `{{current_time}}` and
`{{current_date_time}}` are always available.

Rendering is pluggable: pass any object with a `render(template,
variables)` method as `build_service(renderer=...)`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from warded.exceptions import TemplateError

_VARIABLE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

BUILTIN_VARIABLES = frozenset({"current_date", "current_time", "current_date_time"})


@runtime_checkable
class TemplateRenderer(Protocol):
    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        ...


def template_variables(template: str) -> set[str]:
    """Names of all `{{variable}}` placeholders in `template`."""
    return set(_VARIABLE.findall(template))


def format_value(value: Any) -> str:
    """Text form of a template value."""
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, (list, tuple, set, frozenset)):
        return "\n".join(format_value(item) for item in value)
    return str(value)


def _builtin_values() -> dict[str, str]:
    now = datetime.now()
    return {
        "current_date": now.date().isoformat(),
        "current_time": now.time().replace(microsecond=0).isoformat(),
        "current_date_time": now.replace(microsecond=0).isoformat(),
    }


class DefaultTemplateRenderer:
    """Substitutes `{{name}}` placeholders; raises TemplateError on missing names."""

    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        builtins: dict[str, str] | None = None

        def substitute(match: re.Match[str]) -> str:
            nonlocal builtins
            name = match.group(1)
            if name in variables:
                return format_value(variables[name])
            if name in BUILTIN_VARIABLES:
                if builtins is None:
                    builtins = _builtin_values()
                return builtins[name]
            raise TemplateError(f"Value for the variable '{name}' is missing", name)

        return _VARIABLE.sub(substitute, template)


__all__ = [
    "BUILTIN_VARIABLES",
    "TemplateRenderer",
    "template_variables",
    "format_value",
    "DefaultTemplateRenderer",
]
