"""Return-type handling: format instructions and response parsing.

The declared return annotation of a service method decides what the
caller receives:

- `str`: the response text
- `AiMessage` / `ChatResponse`: the raw model message or response
- `bool`, `int`, `float`, `Decimal`, enums: parsed from the text
- pydantic models, dataclasses, TypedDicts, `list[...]`, `set[...]`:
  parsed from JSON (or one item per line for lists of plain values)
- `Result[T]`: any of the above wrapped with call metadata

For anything but plain text, format instructions are appended to the user
message so the model knows what shape to answer in.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from functools import cached_property
from decimal import Decimal
from typing import Any, get_args, get_origin

from pydantic import TypeAdapter, ValidationError

from warded.exceptions import OutputParsingError
from warded.messages import AiMessage, ChatResponse
from warded.result import Result


class OutputKind(str, enum.Enum):
    TEXT = "text"
    AI_MESSAGE = "ai_message"
    CHAT_RESPONSE = "chat_response"
    SCALAR = "scalar"
    ENUM = "enum"
    LINES = "lines"
    JSON = "json"


_SCALARS = (bool, int, float, Decimal)
_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")


def _type_name(tp: Any) -> str:
    return getattr(tp, "__name__", None) or repr(tp)


def _is_enum(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, enum.Enum)


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE.match(stripped)
    return match.group(1).strip() if match else stripped


def _extract_json(text: str) -> str:
    """Best-effort JSON extraction from a model answer."""
    candidate = _strip_fences(text)
    if candidate[:1] in ("{", "["):
        return candidate
    starts = [i for i in (candidate.find("{"), candidate.find("[")) if i >= 0]
    if not starts:
        return candidate
    start = min(starts)
    end = max(candidate.rfind("}"), candidate.rfind("]"))
    return candidate[start : end + 1] if end > start else candidate[start:]


def _parse_enum(enum_type: type[enum.Enum], text: str) -> enum.Enum:
    cleaned = _strip_fences(text).rstrip(".").strip("\"'`").strip()
    for member in enum_type:
        if str(member.value) == cleaned or member.name == cleaned:
            return member
    lowered = cleaned.lower()
    for member in enum_type:
        if str(member.value).lower() == lowered or member.name.lower() == lowered:
            return member
    raise ValueError(f"{cleaned!r} is not one of {[m.name for m in enum_type]}")


@dataclass(frozen=True)
class OutputSpec:
    """How to instruct the model and how to parse its answer.

    Attributes:
        annotation: The declared return annotation.
        target: The value type, with any Result[...] wrapper removed.
        kind: Parsing strategy.
        wrap_result: Whether the caller receives a Result.
    """

    annotation: Any
    target: Any
    kind: OutputKind
    wrap_result: bool = False

    @cached_property
    def adapter(self) -> TypeAdapter[Any]:
        return TypeAdapter(self.target)

    @property
    def item_type(self) -> Any:
        args = get_args(self.target)
        return args[0] if args else str

    def json_schema(self) -> dict[str, Any] | None:
        if self.kind is not OutputKind.JSON:
            return None
        return self.adapter.json_schema()

    def format_instructions(self) -> str | None:
        """Instruction appended to the user message, or None for text."""
        if self.kind is OutputKind.SCALAR:
            if self.target is bool:
                return "You must answer strictly with one of these values: true, false"
            if self.target is int:
                return "You must answer strictly in the following format: integer number"
            return "You must answer strictly in the following format: floating point number"
        if self.kind is OutputKind.ENUM:
            names = "\n".join(m.name for m in self.target)
            return f"You must answer strictly with one of these enums:\n{names}"
        if self.kind is OutputKind.LINES:
            item = self.item_type
            if _is_enum(item):
                names = "\n".join(m.name for m in item)
                return f"You must put every item on a separate line, each one of these enums:\n{names}"
            return "You must put every item on a separate line."
        if self.kind is OutputKind.JSON:
            schema = json.dumps(self.json_schema())
            return f"You must answer strictly in the following JSON format: {schema}"
        return None

    def accepts(self, value: Any) -> bool:
        """Whether `value` can be returned as-is for this return type."""
        if self.kind is OutputKind.TEXT:
            return isinstance(value, str)
        if self.kind is OutputKind.AI_MESSAGE:
            return isinstance(value, AiMessage)
        if self.kind is OutputKind.CHAT_RESPONSE:
            return isinstance(value, ChatResponse)
        if isinstance(self.target, type) and get_origin(self.target) is None:
            if self.target is float:
                return isinstance(value, float)
            if self.target is int:
                return isinstance(value, int) and not isinstance(value, bool)
            return isinstance(value, self.target)
        try:
            self.adapter.validate_python(value, strict=True)
        except ValidationError:
            return False
        return True

    def parse(self, response: ChatResponse, method_name: str = "") -> Any:
        """Turn the accepted response into the value for the caller.

        Raises:
            OutputParsingError: If the text does not fit the return type.
        """
        if self.kind is OutputKind.TEXT:
            return response.text
        if self.kind is OutputKind.AI_MESSAGE:
            return response.message
        if self.kind is OutputKind.CHAT_RESPONSE:
            return response

        text = response.text
        try:
            if self.kind is OutputKind.SCALAR:
                return self.adapter.validate_python(_strip_fences(text).strip().rstrip("."))
            if self.kind is OutputKind.ENUM:
                return _parse_enum(self.target, text)
            if self.kind is OutputKind.LINES:
                return self._parse_lines(text)
            return self.adapter.validate_json(_extract_json(text))
        except (ValidationError, ValueError) as e:
            where = f" for {method_name}" if method_name else ""
            raise OutputParsingError(
                f"Could not parse the model response into {_type_name(self.target)}{where}: {e}",
                text=text,
                target=self.target,
            ) from e

    def _parse_lines(self, text: str) -> Any:
        body = _strip_fences(text)
        if body.startswith("["):
            return self.adapter.validate_json(body)
        items: list[Any] = []
        item_type = self.item_type
        for line in body.splitlines():
            cleaned = _BULLET.sub("", line).strip()
            if not cleaned:
                continue
            items.append(_parse_enum(item_type, cleaned) if _is_enum(item_type) else cleaned)
        return self.adapter.validate_python(items)


def classify_output(annotation: Any) -> OutputSpec:
    """Build the OutputSpec for a return annotation."""
    wrap = False
    target = annotation
    if get_origin(annotation) is Result:
        args = get_args(annotation)
        target = args[0] if args else str
        wrap = True
    elif annotation is Result:
        target = str
        wrap = True

    if target in (None, type(None), str, Any):
        kind = OutputKind.TEXT
    elif target is AiMessage:
        kind = OutputKind.AI_MESSAGE
    elif target is ChatResponse:
        kind = OutputKind.CHAT_RESPONSE
    elif target in _SCALARS:
        kind = OutputKind.SCALAR
    elif _is_enum(target):
        kind = OutputKind.ENUM
    elif get_origin(target) in (list, set, frozenset) and _is_line_item(get_args(target)):
        kind = OutputKind.LINES
    else:
        kind = OutputKind.JSON

    if kind is OutputKind.TEXT:
        target = str
    return OutputSpec(annotation=annotation, target=target, kind=kind, wrap_result=wrap)


def _is_line_item(args: tuple[Any, ...]) -> bool:
    if not args:
        return True
    item = args[0]
    return item is str or _is_enum(item)


__all__ = [
    "OutputKind",
    "OutputSpec",
    "classify_output",
]
