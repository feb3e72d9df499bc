"""Retrieval augmentation of the user message.

An augmentor receives the rendered user message before input guardrails
run and returns a (usually enriched) replacement plus the retrieved
contents. The contents are exposed as `Result.sources` and to guardrails
through `CommonGuardrailParams.augmentation`.

`ContentInjectingAugmentor` covers the common case: call a retriever with
the user text and inject the results with a template.

    def search_docs(query: str) -> list[str]:
        ...

    assistant = build_service(
        Assistant,
        model=model,
        augmentor=ContentInjectingAugmentor(search_docs, max_results=3),
    )
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Hashable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Protocol, Union, runtime_checkable

from warded.messages import ChatMessage, UserMessage
from warded.template import DefaultTemplateRenderer, TemplateRenderer

DEFAULT_INJECTION_TEMPLATE = "{{user_message}}\n\nAnswer using the following information:\n{{contents}}"


@dataclass(frozen=True)
class Content:
    """A retrieved piece of content."""

    text: str
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class AugmentationMetadata:
    """Call information available to an augmentor."""

    memory_id: Hashable | None = None
    history: tuple[ChatMessage, ...] = ()
    method_name: str = ""


@dataclass(frozen=True)
class AugmentationResult:
    """Replacement user message and the contents used to build it."""

    user_message: UserMessage
    contents: tuple[Content, ...] = ()


@runtime_checkable
class RetrievalAugmentor(Protocol):
    def augment(
        self, user_message: UserMessage, metadata: AugmentationMetadata
    ) -> AugmentationResult | Awaitable[AugmentationResult]:
        ...


async def run_augmentor(
    augmentor: RetrievalAugmentor, user_message: UserMessage, metadata: AugmentationMetadata
) -> AugmentationResult:
    result = augmentor.augment(user_message, metadata)
    if inspect.isawaitable(result):
        result = await result
    return result


Retriever = Callable[[str], Union[Iterable[Union[Content, str]], Awaitable[Iterable[Union[Content, str]]]]]


class ContentInjectingAugmentor:
    """Retrieve contents for the user text and inject them into the message.

    Args:
        retriever: Function from query text to contents (strings or
            Content). May be async; sync retrievers run on the default
            thread pool.
        max_results: Keep at most this many contents.
        template: Injection template with `{{user_message}}` and
            `{{contents}}` placeholders.
        renderer: Renderer used for the injection template.
    """

    def __init__(
        self,
        retriever: Retriever,
        *,
        max_results: int | None = None,
        template: str = DEFAULT_INJECTION_TEMPLATE,
        renderer: TemplateRenderer | None = None,
    ):
        self.retriever = retriever
        self.max_results = max_results
        self.template = template
        self.renderer = renderer or DefaultTemplateRenderer()

    async def _retrieve(self, query: str) -> list[Content]:
        if inspect.iscoroutinefunction(self.retriever):
            found = await self.retriever(query)
        else:
            found = await asyncio.to_thread(self.retriever, query)
        contents = [item if isinstance(item, Content) else Content(str(item)) for item in found or ()]
        if self.max_results is not None:
            contents = contents[: self.max_results]
        return contents

    async def augment(self, user_message: UserMessage, metadata: AugmentationMetadata) -> AugmentationResult:
        contents = await self._retrieve(user_message.text)
        if not contents:
            return AugmentationResult(user_message=user_message)
        text = self.renderer.render(
            self.template,
            {"user_message": user_message.text, "contents": "\n\n".join(c.text for c in contents)},
        )
        return AugmentationResult(user_message=user_message.with_text(text), contents=tuple(contents))


__all__ = [
    "DEFAULT_INJECTION_TEMPLATE",
    "Content",
    "AugmentationMetadata",
    "AugmentationResult",
    "RetrievalAugmentor",
    "run_augmentor",
    "Retriever",
    "ContentInjectingAugmentor",
]
