"""Shared fixtures: settings, channel config, scripted transport, tools."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from conductor.api.models import (
    Content,
    ContentPart,
    FunctionCall,
    FunctionResponse,
    GenerateRequest,
    GenerateResponse,
    StreamChunk,
    UsageMetadata,
)
from conductor.api.runner import AgentRunner
from conductor.api.tools import ToolContext, ToolRegistry
from conductor.config import ChannelConfig, Settings, StaticConfigStore
from conductor.storage.checkpoints import InMemoryCheckpointManager
from conductor.storage.conversation import InMemoryConversationStore

# ---------------------------------------------------------------------------
# Content builders
# ---------------------------------------------------------------------------


def user(text: str, **kwargs: Any) -> Content:
    return Content(role="user", parts=[ContentPart(text=text)], **kwargs)


def model(text: str, **kwargs: Any) -> Content:
    return Content(role="model", parts=[ContentPart(text=text)], **kwargs)


def model_call(name: str, args: dict | None = None, call_id: str | None = "call-1", **kwargs: Any) -> Content:
    return Content(
        role="model",
        parts=[ContentPart(function_call=FunctionCall(name=name, args=args or {}, id=call_id))],
        **kwargs,
    )


def tool_result(name: str, response: dict | None = None, call_id: str | None = "call-1") -> Content:
    return Content(
        role="user",
        parts=[
            ContentPart(
                function_response=FunctionResponse(name=name, response=response or {"success": True}, id=call_id)
            )
        ],
        is_function_response=True,
    )


def text_chunk(text: str, thought: bool = False, **kwargs: Any) -> StreamChunk:
    return StreamChunk(delta=[ContentPart(text=text, thought=thought)], **kwargs)


def call_chunk(name: str, args: dict | None = None, call_id: str | None = None, **kwargs: Any) -> StreamChunk:
    return StreamChunk(
        delta=[ContentPart(function_call=FunctionCall(name=name, args=args or {}, id=call_id))],
        **kwargs,
    )


def done_chunk(prompt: int = 10, candidates: int = 5) -> StreamChunk:
    return StreamChunk(
        done=True,
        usage=UsageMetadata(prompt_token_count=prompt, candidates_token_count=candidates),
        finish_reason="stop",
    )


# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------


Step = list[StreamChunk | BaseException] | GenerateResponse | BaseException


class ScriptedTransport:
    """Replays one scripted step per generate() call.

    A step is a list of chunks (streamed; an exception in the list is
    raised mid-stream), a GenerateResponse, or an exception to raise.
    With repeat_last the final step is replayed forever.
    """

    def __init__(self, steps: list[Step] | None = None, repeat_last: bool = False) -> None:
        self.steps = list(steps or [])
        self.repeat_last = repeat_last
        self.requests: list[GenerateRequest] = []

    async def generate(self, request: GenerateRequest) -> GenerateResponse | AsyncIterator[StreamChunk]:
        self.requests.append(request)
        if not self.steps:
            raise AssertionError("ScriptedTransport ran out of steps")
        step = self.steps[0] if self.repeat_last and len(self.steps) == 1 else self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, GenerateResponse):
            return step
        return self._stream(list(step))

    async def _stream(self, chunks: list[StreamChunk | BaseException]) -> AsyncIterator[StreamChunk]:
        for chunk in chunks:
            await asyncio.sleep(0)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def channel_config() -> ChannelConfig:
    return ChannelConfig(id="test", type="custom", model="test-model")


@pytest.fixture
def configs(channel_config: ChannelConfig) -> StaticConfigStore:
    return StaticConfigStore([channel_config])


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def checkpoints() -> InMemoryCheckpointManager:
    return InMemoryCheckpointManager()


@pytest.fixture
def echo_registry() -> ToolRegistry:
    """Registry with echo (returns its args) and fail (always raises)."""
    registry = ToolRegistry()

    async def echo(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        return {"success": True, "echo": args, "tool_id": context.tool_id}

    async def fail(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        raise RuntimeError("boom")

    registry.register("echo", echo, description="Echo the arguments back")
    registry.register("fail", fail, description="Always fails")
    return registry


@pytest.fixture
def make_runner(settings, configs, store, checkpoints, echo_registry):
    """Factory: make_runner(transport, **settings_overrides) -> AgentRunner."""

    def _make(transport: ScriptedTransport, **overrides: Any) -> AgentRunner:
        runner_settings = settings.model_copy(update=overrides) if overrides else settings
        return AgentRunner(
            runner_settings,
            configs,
            transport,
            store=store,
            registry=echo_registry,
            checkpoints=checkpoints,
        )

    return _make


async def collect(events) -> list:
    return [event async for event in events]
