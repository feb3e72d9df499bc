"""Streaming responses with environment-specific model aliases.

Demonstrates:
- Streaming methods returning TokenStream
- Callbacks vs. async iteration over stream events
- Config aliases switched per environment without touching the service
- Execution logging to the console
"""

import asyncio
import os

from warded import (
    Config,
    PartialText,
    RetryStarted,
    TokenStream,
    build_service,
    setup_logging,
)


class Storyteller:
    def tell(self, topic: str) -> TokenStream:
        """Tell a three-sentence story about the topic."""
        ...

    async def poem(self, topic: str) -> TokenStream:
        """Write a four-line poem about the topic."""
        ...


# --- Environment configs ---

DEV_CONFIG = Config(models={"default": {"model": "anthropic:claude-haiku-4-5", "temperature": 0.9}})
PROD_CONFIG = Config(models={"default": {"model": "anthropic:claude-sonnet-4-5", "temperature": 0.7}})


async def main() -> None:
    storyteller = build_service(Storyteller)

    print("--- callbacks ---")
    stream = storyteller.tell("a lighthouse keeper")
    stream.on_partial_text(lambda text: print(text, end="", flush=True))
    stream.on_complete(lambda response: print(f"\n[{response.token_usage.total_tokens} tokens]"))
    await stream.result()

    print("\n--- async iteration ---")
    stream = await storyteller.poem("autumn rain")
    async for event in stream:
        if isinstance(event, PartialText):
            print(event.text, end="", flush=True)
        elif isinstance(event, RetryStarted):
            print(f"\n[retry {event.retry}]")
    print()


if __name__ == "__main__":
    setup_logging()
    config = PROD_CONFIG if os.getenv("ENV") == "prod" else DEV_CONFIG
    with config:
        asyncio.run(main())
