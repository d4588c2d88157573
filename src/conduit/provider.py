from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from conduit import streaming
from conduit.instrumentation import completion_span, record_usage
from conduit.streaming import ContentBlock, Delta, StreamEvent, event_from_raw
from conduit.tools import ToolDescriptor

logger = logging.getLogger(__name__)


def configure_logging(log_file: str | None = "conduit.log", level: str = "INFO") -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
    )


@dataclass
class ModelRequest:
    model: str
    messages: list[dict]
    tools: list[ToolDescriptor] = field(default_factory=list)
    max_tokens: int = 4000
    system: str | None = None


class ModelProvider:
    """Streams one model response as normalised :class:`StreamEvent` objects."""

    name = "unknown"

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError


class AnthropicProvider(ModelProvider):
    name = "anthropic"

    def __init__(self, api_key: str | None = None):
        if not api_key:
            api_key = os.getenv("ANTHROPIC_API_KEY")
        self.client = AsyncAnthropic(
            api_key=api_key,
            max_retries=5,
            timeout=600.0,
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": request.messages,
            "stream": True,
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = [t.to_anthropic() for t in request.tools]

        logger.info(
            f"Creating chat request with {len(request.messages)} messages "
            f"and {len(request.tools)} tools"
        )
        async with completion_span(self.name, request.model) as span:
            response = await self.client.messages.create(**payload)
            usage: dict[str, int] = {}
            model = None
            async for raw in response:
                event = event_from_raw(raw)
                usage.update(event.usage)
                model = event.model or model
                yield event
            record_usage(span, usage, response_model=model)


_FINISH_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


class OpenAIStreamTranslator:
    """Re-frames chat-completion chunks as content-block events.

    Text goes to block 0; tool call ``i`` becomes block ``i + 1``.  Each
    tool call is closed when the next one starts or the choice finishes.
    """

    def __init__(self) -> None:
        self._started = False
        self._text_open = False
        self._tool_open: int | None = None
        self._finished = False

    def _start(self) -> list[StreamEvent]:
        if self._started:
            return []
        self._started = True
        return [StreamEvent(type=streaming.MESSAGE_START)]

    def _close_blocks(self) -> list[StreamEvent]:
        events = []
        if self._text_open:
            events.append(StreamEvent(type=streaming.CONTENT_BLOCK_STOP, index=0))
            self._text_open = False
        if self._tool_open is not None:
            events.append(StreamEvent(type=streaming.CONTENT_BLOCK_STOP, index=self._tool_open))
            self._tool_open = None
        return events

    def feed(self, chunk: Any) -> list[StreamEvent]:
        events = self._start()
        usage = getattr(chunk, "usage", None)
        if not chunk.choices:
            if usage is not None:
                counts = {
                    "input_tokens": usage.prompt_tokens,
                    "output_tokens": usage.completion_tokens,
                }
                events.append(StreamEvent(
                    type=streaming.MESSAGE_DELTA,
                    delta=Delta(),
                    usage={k: v for k, v in counts.items() if isinstance(v, int)},
                ))
            return events

        choice = chunk.choices[0]
        delta = choice.delta
        if delta is not None and delta.content:
            if not self._text_open:
                events.append(StreamEvent(
                    type=streaming.CONTENT_BLOCK_START,
                    index=0,
                    content_block=ContentBlock(type="text", text=""),
                ))
                self._text_open = True
            events.append(StreamEvent(
                type=streaming.CONTENT_BLOCK_DELTA,
                index=0,
                delta=Delta(type=streaming.TEXT_DELTA, text=delta.content),
            ))

        for fragment in (delta.tool_calls or []) if delta is not None else []:
            index = fragment.index + 1
            if self._tool_open != index:
                events.extend(self._close_blocks())
                function = fragment.function
                events.append(StreamEvent(
                    type=streaming.CONTENT_BLOCK_START,
                    index=index,
                    content_block=ContentBlock(
                        type=streaming.TOOL_USE_BLOCK,
                        id=fragment.id,
                        name=function.name if function else None,
                    ),
                ))
                self._tool_open = index
            arguments = fragment.function.arguments if fragment.function else None
            if arguments:
                events.append(StreamEvent(
                    type=streaming.CONTENT_BLOCK_DELTA,
                    index=index,
                    delta=Delta(type="input_json_delta", partial_json=arguments),
                ))

        if choice.finish_reason:
            events.extend(self.finish(choice.finish_reason))
        return events

    def finish(self, finish_reason: str | None = None) -> list[StreamEvent]:
        if self._finished:
            return []
        self._finished = True
        events = self._start()
        events.extend(self._close_blocks())
        events.append(StreamEvent(
            type=streaming.MESSAGE_DELTA,
            delta=Delta(stop_reason=_FINISH_REASONS.get(finish_reason or "stop", finish_reason)),
        ))
        events.append(StreamEvent(type=streaming.MESSAGE_STOP))
        return events


class OpenAIProvider(ModelProvider):
    """Any chat-completions endpoint, translated to content-block events."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
    ):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=5,
            timeout=timeout,
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        messages = list(request.messages)
        if request.system:
            messages.insert(0, {"role": "system", "content": request.system})
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "stream": True,
        }
        # Hosted tools have no chat-completions equivalent.
        tools = [t.to_openai() for t in request.tools if t.type is None]
        if tools:
            payload["tools"] = tools

        translator = OpenAIStreamTranslator()
        async with completion_span(self.name, request.model) as span:
            response = await self.client.chat.completions.create(**payload)
            usage: dict[str, int] = {}
            async for chunk in response:
                for event in translator.feed(chunk):
                    usage.update(event.usage)
                    yield event
            for event in translator.finish():
                yield event
            record_usage(span, usage, response_model=request.model)


class OpenRouter(OpenAIProvider):
    name = "openrouter"

    def __init__(self, api_key: str | None = None):
        super().__init__(
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
            base_url="https://openrouter.ai/api/v1",
            timeout=180.0,
        )


class VLLMProvider(OpenAIProvider):
    name = "vllm"

    def __init__(self, url: str, port: int):
        self.base_url = f"http://{url}:{port}/v1"
        super().__init__(api_key="DUMMY", base_url=self.base_url)


def create_provider(settings) -> ModelProvider:
    """Build the provider named by ``settings.provider``."""
    if settings.provider == "anthropic":
        return AnthropicProvider(api_key=settings.anthropic_api_key)
    if settings.provider == "openai":
        return OpenAIProvider(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    if settings.provider == "openrouter":
        return OpenRouter(api_key=settings.openrouter_api_key)
    if settings.provider == "vllm":
        return VLLMProvider(url=settings.vllm_host, port=settings.vllm_port)
    raise ValueError(f"Unknown provider: {settings.provider}")
