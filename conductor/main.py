"""Component wiring for embedding conductor.

  Settings -> logging -> EventBus -> ToolRegistry -> TokenCountService
           -> McpToolProxy -> AgentRunner

The model transport and channel configs come from the embedding
application; everything else has an in-process default.
"""

from __future__ import annotations

import logging

import httpx
from mcp import ClientSession

from conductor.api.compaction import ModelTransport, TokenCountService
from conductor.api.mcp import McpToolProxy
from conductor.api.runner import AgentRunner, SystemPromptProvider
from conductor.api.tools import ToolRegistry
from conductor.config import ConfigStore, Settings
from conductor.events import EventBus
from conductor.storage.checkpoints import CheckpointManager, InMemoryCheckpointManager
from conductor.storage.conversation import ConversationStore, InMemoryConversationStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(
    settings: Settings,
    transport: ModelTransport,
    configs: ConfigStore,
    *,
    store: ConversationStore | None = None,
    checkpoints: CheckpointManager | None = None,
    mcp_sessions: dict[str, ClientSession] | None = None,
    prompts: SystemPromptProvider | None = None,
) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components; pass it to shutdown_components().
    """
    bus = EventBus()
    registry = ToolRegistry()

    token_http = None
    token_counter = None
    if any(cfg.enabled for cfg in settings.token_count.values()):
        token_http = httpx.AsyncClient(timeout=httpx.Timeout(settings.token_count_timeout))
        token_counter = TokenCountService(settings, token_http)
        logger.info(
            "Remote token counting enabled for: %s",
            ", ".join(t for t, cfg in settings.token_count.items() if cfg.enabled),
        )

    mcp = McpToolProxy(mcp_sessions) if mcp_sessions else None
    if mcp is not None:
        logger.info("MCP proxy: %d server(s)", len(mcp_sessions or {}))

    runner = AgentRunner(
        settings,
        configs,
        transport,
        store=store or InMemoryConversationStore(),
        registry=registry,
        checkpoints=checkpoints or InMemoryCheckpointManager(),
        mcp=mcp,
        token_counter=token_counter,
        prompts=prompts,
        bus=bus,
    )
    await runner.start()

    logger.info(
        "Conductor ready (max_tool_iterations=%d, auto_exec_default=%s)",
        settings.max_tool_iterations, settings.tool_auto_exec_default,
    )
    return {
        "settings": settings,
        "bus": bus,
        "registry": registry,
        "mcp": mcp,
        "token_http": token_http,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    runner = components.get("runner")
    if runner is not None:
        await runner.close()

    token_http = components.get("token_http")
    if token_http is not None:
        await token_http.aclose()

    logger.info("Conductor shutdown complete.")
