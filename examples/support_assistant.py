"""Customer support assistant with guardrails, tools and memory.

Demonstrates:
- Input guardrails that block a request before the model is called
- Output guardrails that reprompt the model with a correction
- Tools the model can call (order lookup)
- Per-customer chat memory with Annotated[..., MemoryId]
- Result[T] for token usage, retries and tool executions
"""

from typing import Annotated

from pydantic import BaseModel

from warded import (
    Config,
    InMemoryChatMemoryStore,
    InputGuardrailError,
    InputGuardrailResult,
    MemoryId,
    OutputGuardrail,
    Result,
    build_service,
    guardrails,
    system_message,
    user_message,
)


# --- Tools the model can call ---

ORDERS = {
    "A-100": "shipped on Monday, arriving Thursday",
    "A-101": "waiting for stock, ships next week",
}


def lookup_order(order_id: str) -> str:
    """Look up the shipping status of an order."""
    print(f"    [tool] lookup_order('{order_id}')")
    return ORDERS.get(order_id.upper(), f"No order found with id {order_id}")


# --- Guardrails ---


def no_card_numbers(params):
    """Reject messages that look like they contain a card number."""
    digits = sum(ch.isdigit() for ch in params.user_message.text)
    if digits >= 12:
        return InputGuardrailResult.failure("Please do not share card numbers in chat")
    return None


class PolitePrefix(OutputGuardrail):
    """Every answer must open with a greeting."""

    def validate(self, params):
        if not params.response.text.lower().startswith(("hi", "hello")):
            return self.reprompt("Missing greeting", "Start your answer with 'Hi' and answer again.")
        return self.success()


class Ticket(BaseModel):
    summary: str
    priority: str


# --- Service declaration ---


class SupportAssistant:
    @system_message("You are a support agent for an online shop. Be brief.")
    @guardrails.input(no_card_numbers)
    @guardrails.output(PolitePrefix(), max_retries=2)
    def chat(self, customer: Annotated[str, MemoryId], message: str) -> Result[str]:
        ...

    @user_message("Turn this complaint into a ticket. Priority is low, normal or high.\n\n{{complaint}}")
    def ticket(self, complaint: str) -> Ticket:
        ...


# --- Demo ---

if __name__ == "__main__":
    config = Config(models={"default": {"model": "anthropic:claude-haiku-4-5"}})

    with config:
        assistant = build_service(
            SupportAssistant,
            tools=[lookup_order],
            memory=InMemoryChatMemoryStore(max_messages=20),
        )

        print("=" * 50)
        print("Support Assistant")
        print("=" * 50)

        for message in ("Where is my order A-100?", "And what about A-101?"):
            print(f"\nCustomer: {message}")
            result = assistant.chat("customer-42", message)
            print(f"Assistant: {result.content}")
            print(f"  tools used: {[e.request.name for e in result.tool_executions]}")
            print(f"  retries: {result.retry_count}, tokens: {result.total_tokens}")

        print("\nCustomer: My card is 4111 1111 1111 1111, why was it charged twice?")
        try:
            assistant.chat("customer-42", "My card is 4111 1111 1111 1111, why was it charged twice?")
        except InputGuardrailError as e:
            print(f"Blocked: {e}")

        ticket = assistant.ticket("The parcel arrived crushed and the vase inside is broken!")
        print(f"\nTicket: {ticket.summary} [{ticket.priority}]")
