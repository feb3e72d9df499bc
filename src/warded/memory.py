"""Chat memory: conversation history persisted across calls.

The engine reads a snapshot of the history before a call and appends the
call's messages once, after the call succeeded. Failed calls, discarded
retry attempts and reprompt instructions are never written.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Sequence
from typing import Protocol, runtime_checkable

from warded.messages import AiMessage, ChatMessage, SystemMessage, ToolResultMessage

DEFAULT_MEMORY_ID = "default"


@runtime_checkable
class ChatMemoryStore(Protocol):
    """Storage for per-conversation message history.

    Implementations must be safe to call from several threads; the engine
    may serve concurrent calls with different memory ids.
    """

    def messages(self, memory_id: Hashable) -> list[ChatMessage]:
        ...

    def append(self, memory_id: Hashable, messages: Sequence[ChatMessage]) -> None:
        ...

    def clear(self, memory_id: Hashable) -> None:
        ...


class InMemoryChatMemoryStore:
    """Process-local message window per memory id.

    Keeps at most one system message, always first; appending a different
    system message replaces it. When `max_messages` is set, the oldest
    non-system messages are evicted, together with any tool results left
    without the request that produced them.

    Example:
        memory = InMemoryChatMemoryStore(max_messages=20)
        assistant = build_service(Assistant, model=model, memory=memory)
    """

    def __init__(self, max_messages: int | None = None):
        if max_messages is not None and max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self._conversations: dict[Hashable, list[ChatMessage]] = {}
        self._lock = threading.Lock()

    def messages(self, memory_id: Hashable) -> list[ChatMessage]:
        with self._lock:
            return list(self._conversations.get(memory_id, ()))

    def append(self, memory_id: Hashable, messages: Sequence[ChatMessage]) -> None:
        with self._lock:
            conversation = self._conversations.setdefault(memory_id, [])
            for message in messages:
                if isinstance(message, SystemMessage):
                    conversation[:] = [m for m in conversation if not isinstance(m, SystemMessage)]
                    conversation.insert(0, message)
                else:
                    conversation.append(message)
            self._evict(conversation)

    def clear(self, memory_id: Hashable) -> None:
        with self._lock:
            self._conversations.pop(memory_id, None)

    def memory_ids(self) -> list[Hashable]:
        with self._lock:
            return list(self._conversations)

    def _evict(self, conversation: list[ChatMessage]) -> None:
        if self.max_messages is None:
            return
        while len(conversation) > self.max_messages:
            index = 1 if conversation and isinstance(conversation[0], SystemMessage) else 0
            if index >= len(conversation):
                return
            evicted = conversation.pop(index)
            if isinstance(evicted, AiMessage) and evicted.has_tool_calls:
                while index < len(conversation) and isinstance(conversation[index], ToolResultMessage):
                    conversation.pop(index)


__all__ = [
    "DEFAULT_MEMORY_ID",
    "ChatMemoryStore",
    "InMemoryChatMemoryStore",
]
