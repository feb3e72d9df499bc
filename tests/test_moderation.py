"""Tests for moderation checks running alongside a call."""

import asyncio
import gc

import pytest

from warded import Moderation, ModerationError, ModerationTimeoutError
from warded.messages import AiMessage, SystemMessage, ToolCall, ToolResultMessage, UserMessage
from warded.moderation import ModerationTask, moderated_messages

CONVERSATION = (
    SystemMessage("Be kind."),
    UserMessage("hello"),
    AiMessage(tool_calls=(ToolCall("c1", "lookup"),)),
    ToolResultMessage("c1", "lookup", "found"),
    AiMessage("done"),
)


class KeywordChecker:
    def __init__(self, keyword: str):
        self.keyword = keyword
        self.seen = None

    def moderate(self, messages):
        self.seen = messages
        for message in messages:
            if self.keyword in (message.text or ""):
                return Moderation.flag(message.text)
        return Moderation.not_flagged()


class TestModeratedMessages:
    """Tests for the messages handed to the checker."""

    def test_tool_traffic_removed(self):
        assert moderated_messages(CONVERSATION) == (SystemMessage("Be kind."), UserMessage("hello"), AiMessage("done"))


class TestModerationTask:
    """Tests for ModerationTask."""

    @pytest.mark.asyncio
    async def test_not_flagged(self):
        checker = KeywordChecker("forbidden")
        task = ModerationTask.start(checker, CONVERSATION)
        verdict = await task.verify("Assistant.chat")

        assert not verdict.flagged
        assert task.done
        assert len(checker.seen) == 3

    @pytest.mark.asyncio
    async def test_flagged(self):
        task = ModerationTask.start(KeywordChecker("hello"), CONVERSATION)
        with pytest.raises(ModerationError, match='Text "hello" violates content policy') as exc_info:
            await task.verify()
        assert exc_info.value.flagged_text == "hello"

    @pytest.mark.asyncio
    async def test_async_function_checker(self):
        async def checker(messages):
            return Moderation.flag("x") if len(messages) > 1 else None

        with pytest.raises(ModerationError):
            await ModerationTask.start(checker, CONVERSATION).verify()

    @pytest.mark.asyncio
    async def test_none_verdict_means_not_flagged(self):
        verdict = await ModerationTask.start(lambda messages: None, CONVERSATION).verify()
        assert verdict == Moderation.not_flagged()

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(messages):
            await asyncio.sleep(1)
            return Moderation.not_flagged()

        task = ModerationTask.start(slow, CONVERSATION, timeout=0.01)
        with pytest.raises(ModerationTimeoutError, match="0.01s for Assistant.chat"):
            await task.verify("Assistant.chat")

    @pytest.mark.asyncio
    async def test_checker_error_wrapped(self):
        def broken(messages):
            raise ConnectionError("moderation service down")

        with pytest.raises(ModerationError, match="service down") as exc_info:
            await ModerationTask.start(broken, CONVERSATION).verify()
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_cancel(self):
        async def slow(messages):
            await asyncio.sleep(1)

        task = ModerationTask.start(slow, CONVERSATION)
        task.cancel()
        await asyncio.sleep(0.01)
        assert task.done

    @pytest.mark.asyncio
    async def test_cancel_collects_checker_error(self, caplog):
        def broken(messages):
            raise ConnectionError("moderation service down")

        task = ModerationTask.start(broken, CONVERSATION)
        await asyncio.sleep(0.05)
        assert task.done

        task.cancel()
        del task
        gc.collect()

        assert "never retrieved" not in caplog.text
