"""Moderation of the outgoing conversation.

Methods marked with `@moderate` have their conversation checked by a
moderation checker in parallel with the model call. The verdict is
awaited (with a timeout) right after the first model response and before
any tool runs; a flagged conversation fails the call even though the model
answered successfully.

A checker is any object with a `moderate(messages)` method, or a plain
function taking the messages. Both may be sync or async; sync checkers
run on the default thread pool so they never block the model call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Union, runtime_checkable

from warded.exceptions import ModerationError, ModerationTimeoutError
from warded.messages import AiMessage, ChatMessage, ToolResultMessage

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Moderation:
    """Verdict of a moderation check."""

    flagged: bool = False
    flagged_text: str | None = None

    @classmethod
    def not_flagged(cls) -> Moderation:
        return cls()

    @classmethod
    def flag(cls, text: str) -> Moderation:
        return cls(flagged=True, flagged_text=text)


@runtime_checkable
class ModerationChecker(Protocol):
    def moderate(self, messages: Sequence[ChatMessage]) -> Moderation | Awaitable[Moderation]:
        ...


ModerationCheckerLike = Union[ModerationChecker, Callable[[Sequence[ChatMessage]], Any]]


def moderated_messages(messages: Sequence[ChatMessage]) -> tuple[ChatMessage, ...]:
    """Messages sent to the checker: everything except tool traffic."""
    return tuple(
        m
        for m in messages
        if not isinstance(m, ToolResultMessage) and not (isinstance(m, AiMessage) and m.has_tool_calls)
    )


async def _check(checker: ModerationCheckerLike, messages: tuple[ChatMessage, ...]) -> Moderation:
    moderate = checker.moderate if isinstance(checker, ModerationChecker) else checker
    if inspect.iscoroutinefunction(moderate):
        verdict = await moderate(messages)
    else:
        verdict = await asyncio.to_thread(moderate, messages)
        if inspect.isawaitable(verdict):
            verdict = await verdict
    if verdict is None:
        return Moderation.not_flagged()
    return verdict


class ModerationTask:
    """A moderation check running alongside one call.

    Example:
        task = ModerationTask.start(checker, messages, timeout=10.0)
        response = await model.chat(request)
        await task.verify("Assistant.chat")   # raises if flagged
    """

    def __init__(self, task: asyncio.Task[Moderation], timeout: float | None):
        self._task = task
        self.timeout = timeout

    @classmethod
    def start(
        cls,
        checker: ModerationCheckerLike,
        messages: Sequence[ChatMessage],
        *,
        timeout: float | None = None,
    ) -> ModerationTask:
        """Schedule the check on the running loop and return immediately."""
        task = asyncio.create_task(_check(checker, moderated_messages(messages)), name="warded-moderation")
        return cls(task, timeout)

    @property
    def done(self) -> bool:
        return self._task.done()

    async def verify(self, method_name: str = "") -> Moderation:
        """Wait for the verdict.

        Raises:
            ModerationTimeoutError: If no verdict arrives within `timeout`.
            ModerationError: If the conversation was flagged or the
                checker itself failed.
        """
        where = f" for {method_name}" if method_name else ""
        try:
            verdict = await asyncio.wait_for(self._task, self.timeout)
        except asyncio.TimeoutError as e:
            raise ModerationTimeoutError(f"Moderation timed out after {self.timeout}s{where}") from e
        except Exception as e:
            raise ModerationError(f"Moderation check failed{where}: {e}") from e

        if verdict.flagged:
            _logger.debug("Moderation flagged the conversation%s", where)
            raise ModerationError(f'Text "{verdict.flagged_text}" violates content policy', verdict.flagged_text)
        return verdict

    def cancel(self) -> None:
        """Stop the check, or collect the error of a check that already failed."""
        if not self._task.done():
            self._task.cancel()
        elif not self._task.cancelled() and self._task.exception() is not None:
            _logger.debug("Discarding moderation error: %s", self._task.exception())


__all__ = [
    "Moderation",
    "ModerationChecker",
    "ModerationCheckerLike",
    "moderated_messages",
    "ModerationTask",
]
