"""Settings via pydantic-settings with CONDUCTOR_ env prefix.

Process-level knobs (iteration cap, tool auto-exec policy, checkpoint
policy, token counting, summarization) live on Settings.  Per-channel
knobs (context threshold, tool mode, thinking disclosure) live on
ChannelConfig, which is looked up per request through a ConfigStore.
"""

from __future__ import annotations

import math
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ChannelType = Literal["gemini", "openai", "anthropic", "openai-responses", "custom"]
ToolMode = Literal["function_call", "xml", "json"]

DEFAULT_MAX_TOOL_ITERATIONS = 20
DEFAULT_MAX_CONTEXT_TOKENS = 128000
DEFAULT_THRESHOLD_PERCENT = 80


class TokenCountConfig(BaseModel):
    """Remote token counting endpoint for one channel type."""

    enabled: bool = False
    base_url: str = ""
    api_key: str = ""
    model: str = ""


class ChannelConfig(BaseModel):
    """One model channel as seen by the orchestration loop."""

    id: str
    type: ChannelType = "custom"
    enabled: bool = True
    model: str = ""
    tool_mode: ToolMode = "function_call"

    # Context window
    context_threshold_enabled: bool = False
    context_threshold: int | str = "80%"
    context_trim_extra_cut: int | str = 0
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS

    multimodal_tools_enabled: bool = False

    # Thinking disclosure
    send_history_thoughts: bool = False
    send_history_thought_signatures: bool = False
    send_current_thoughts: bool | None = None  # None = provider default
    send_current_thought_signatures: bool | None = None  # None = provider default
    history_thinking_rounds: int = -1  # -1 = all rounds

    tool_options: dict[str, Any] = Field(default_factory=dict)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONDUCTOR_", env_file=".env")

    log_level: str = "info"

    # Tool loop
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS  # -1 = unlimited

    # Confirmation gate
    tool_auto_exec_default: bool = True
    tool_auto_exec: dict[str, bool] = Field(default_factory=dict)

    # Checkpoints
    checkpoint_before_user_message: bool = False
    checkpoint_after_user_message: bool = False
    checkpoint_before_model_message: bool = False
    checkpoint_after_model_message: bool = False
    checkpoint_model_outer_layer_only: bool = True

    # Token counting, keyed by channel type
    token_count: dict[str, TokenCountConfig] = Field(default_factory=dict)
    token_count_timeout: float = 10.0

    # Context summarization
    summarize_keep_recent_rounds: int = 2
    summarize_prompt: str = ""
    summarize_config_id: str = ""
    summarize_model: str = ""

    system_prompt: str = ""

    @field_validator("max_tool_iterations")
    @classmethod
    def _validate_iterations(cls, value: int) -> int:
        if value == 0 or value < -1:
            raise ValueError("max_tool_iterations must be positive or -1 (unlimited)")
        return value

    @field_validator("summarize_keep_recent_rounds")
    @classmethod
    def _validate_keep_rounds(cls, value: int) -> int:
        if value < 0:
            raise ValueError("summarize_keep_recent_rounds must be >= 0")
        return value


class ConfigStore(Protocol):
    """Read-only lookup of channel configs by id."""

    async def get_config(self, config_id: str) -> ChannelConfig | None: ...


class StaticConfigStore:
    """ConfigStore backed by a dict, for embedding and tests."""

    def __init__(self, configs: list[ChannelConfig] | None = None) -> None:
        self._configs: dict[str, ChannelConfig] = {c.id: c for c in configs or []}

    def add(self, config: ChannelConfig) -> None:
        self._configs[config.id] = config

    async def get_config(self, config_id: str) -> ChannelConfig | None:
        return self._configs.get(config_id)


def resolve_threshold(value: int | str, max_context_tokens: int) -> int:
    """Resolve an absolute or "N%" threshold against max_context_tokens.

    Unparsable or out-of-range percentages fall back to 80%.
    """
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.endswith("%"):
        try:
            percent = float(text[:-1])
        except ValueError:
            percent = math.nan
        if 0 < percent <= 100:
            return math.floor(max_context_tokens * percent / 100)
    elif text.isdigit():
        return int(text)
    return math.floor(max_context_tokens * DEFAULT_THRESHOLD_PERCENT / 100)


def resolve_extra_cut(value: int | str, max_context_tokens: int) -> int:
    """Like resolve_threshold, but anything unparsable means no extra cut."""
    if isinstance(value, int):
        return max(0, value)
    text = str(value).strip()
    if text.endswith("%"):
        try:
            percent = float(text[:-1])
        except ValueError:
            return 0
        if 0 <= percent <= 100:
            return math.floor(max_context_tokens * percent / 100)
        return 0
    if text.isdigit():
        return int(text)
    return 0
