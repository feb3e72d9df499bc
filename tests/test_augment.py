"""Tests for retrieval augmentation."""

import pytest

from warded import Content, ContentInjectingAugmentor
from warded.augment import AugmentationMetadata, AugmentationResult, run_augmentor
from warded.messages import UserMessage

DOCS = ["Refunds take 5 days.", "Shipping is free over $50.", "Support is open 9-5."]


class TestContentInjectingAugmentor:
    """Tests for ContentInjectingAugmentor."""

    @pytest.mark.asyncio
    async def test_injects_contents(self):
        queries = []

        def search(query):
            queries.append(query)
            return DOCS

        augmentor = ContentInjectingAugmentor(search, max_results=2)
        result = await augmentor.augment(UserMessage("How long do refunds take?"), AugmentationMetadata())

        assert queries == ["How long do refunds take?"]
        assert result.contents == (Content(DOCS[0]), Content(DOCS[1]))
        assert result.user_message.text == (
            "How long do refunds take?\n\nAnswer using the following information:\n"
            "Refunds take 5 days.\n\nShipping is free over $50."
        )

    @pytest.mark.asyncio
    async def test_no_results_keeps_message(self):
        message = UserMessage("hi")
        result = await ContentInjectingAugmentor(lambda q: []).augment(message, AugmentationMetadata())
        assert result.user_message is message
        assert result.contents == ()

    @pytest.mark.asyncio
    async def test_async_retriever_and_custom_template(self):
        async def search(query):
            return [Content("42", metadata={"source": "faq"})]

        augmentor = ContentInjectingAugmentor(search, template="Context: {{contents}}\nQ: {{user_message}}")
        result = await augmentor.augment(UserMessage("meaning?"), AugmentationMetadata())

        assert result.user_message.text == "Context: 42\nQ: meaning?"
        assert result.contents[0].metadata["source"] == "faq"


class TestRunAugmentor:
    """Tests for run_augmentor."""

    @pytest.mark.asyncio
    async def test_sync_augmentor(self):
        class Upper:
            def augment(self, user_message, metadata):
                return AugmentationResult(user_message.with_text(user_message.text.upper()))

        metadata = AugmentationMetadata(memory_id="u1", method_name="Assistant.chat")
        result = await run_augmentor(Upper(), UserMessage("quiet"), metadata)
        assert result.user_message.text == "QUIET"
