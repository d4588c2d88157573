"""Interactive example: chat with a model that edits files, approving each tool call.

Demonstrates:
- Loading Settings from CONDUIT_* environment variables
- Connecting the `claude mcp serve` tool backend in the background
- Falling back to the in-memory text editor when no backend comes up
- Approving or cancelling tool results before the model sees them

Usage:
    uv run --env-file=.env examples/text_editor_chat.py
    uv run --env-file=.env examples/text_editor_chat.py --no-backend --trace
    CONDUIT_PROVIDER=openai CONDUIT_MODEL=gpt-4o-mini uv run examples/text_editor_chat.py --no-backend
"""

import argparse
import asyncio

from conduit.backend import connect_backend
from conduit.config import get_settings
from conduit.conversation import Conversation, ConversationState
from conduit.file_store import InMemoryFileStore
from conduit.message import MessageRole
from conduit.provider import configure_logging


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from conduit.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


def print_new_messages(conversation: Conversation, seen: int) -> int:
    for message in conversation.messages[seen:]:
        if not message.content:
            continue
        if message.role is MessageRole.ASSISTANT:
            print(f"Assistant: {message.content}\n")
        elif message.role is MessageRole.TOOL_USE:
            print(message.content)
        elif message.role is MessageRole.TOOL_RESULT:
            print(f"Result:\n{message.content}\n")
    return len(conversation.messages)


async def main():
    parser = argparse.ArgumentParser(description="Text editor chat")
    parser.add_argument("--no-backend", action="store_true")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_file, settings.log_level)
    if args.trace:
        setup_tracing("text-editor-chat")

    handle = None
    if settings.use_backend and not args.no_backend:
        handle = connect_backend(
            settings.backend_command, settings.backend_args, cwd=settings.root_directory
        )

    store = InMemoryFileStore()
    conversation = Conversation.from_settings(settings, handle=handle, store=store)

    print("Text Editor Chat")
    print(f"Files: {', '.join(store.paths())}\n")

    seen = 0
    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break
            if not user_input.strip():
                continue

            seen += 1  # the user message
            conversation.submit(user_input)
            await conversation.wait()
            seen = print_new_messages(conversation, seen)

            while conversation.state is ConversationState.TOOLS_PENDING:
                answer = await asyncio.to_thread(input, "Send this result to the model? [y/N] ")
                if answer.strip().lower() in ("y", "yes"):
                    seen += 1  # the tool_result envelope
                    conversation.approve()
                    await conversation.wait()
                    seen = print_new_messages(conversation, seen)
                else:
                    conversation.cancel_tool()

            if conversation.error_message:
                print(f"[{conversation.error_message}]\n")
    finally:
        await conversation.close()
        if handle is not None:
            await handle.close()


if __name__ == "__main__":
    asyncio.run(main())
