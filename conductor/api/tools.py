"""Tool registry, tool context and tool references.

Provides:
- ToolRegistry: registers native tools ({declaration + handler}) and
  looks them up by name
- ToolContext: what a handler receives alongside its args
- parse_tool_ref: classifies a call name as native or MCP-proxied

Handlers are async callables ``handler(args, context) -> dict``.  The
returned dict becomes the tool's function_response payload; it may carry
``success``/``error``, a ``cancelled`` flag and a ``multimodal`` list of
attachments ({mime_type, data, name}).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from conductor.config import ChannelConfig
from conductor.events import EventBus
from conductor.storage.conversation import NO_MULTIMODAL, MultimodalCapability

logger = logging.getLogger(__name__)

MCP_PREFIX = "mcp__"


# ---------------------------------------------------------------------------
# Context and tool records
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    """Per-call context handed to a tool handler."""

    tool_id: str  # the call id, stable for this invocation
    conversation_id: str
    cancel: asyncio.Event | None = None
    config: ChannelConfig | None = None
    bus: EventBus | None = None
    capability: MultimodalCapability = NO_MULTIMODAL
    tool_options: dict[str, Any] = field(default_factory=dict)

    @property
    def multimodal_enabled(self) -> bool:
        return self.capability.supports_images or self.capability.supports_documents

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[dict[str, Any]]]


@dataclass
class Tool:
    name: str
    declaration: dict[str, Any]
    handler: ToolHandler


@dataclass(frozen=True)
class NativeTool:
    name: str


@dataclass(frozen=True)
class ProxiedTool:
    server_id: str
    tool_name: str

    @property
    def full_name(self) -> str:
        return f"{MCP_PREFIX}{self.server_id}__{self.tool_name}"


def parse_tool_ref(name: str) -> NativeTool | ProxiedTool | None:
    """Classify a call name.

    ``mcp__{server}__{tool}`` is proxied; the tool part may itself contain
    ``__``.  A name with the prefix but no server or tool returns None.
    """
    if not name.startswith(MCP_PREFIX):
        return NativeTool(name)
    pieces = name.split("__")
    if len(pieces) < 3 or not pieces[1]:
        return None
    tool_name = "__".join(pieces[2:])
    if not tool_name:
        return None
    return ProxiedTool(server_id=pieces[1], tool_name=tool_name)


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Registers native tool handlers with their declarations."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        parameters: dict[str, Any] | None = None,
        description: str = "",
    ) -> None:
        """Register a tool handler with its JSON schema."""
        if name.startswith(MCP_PREFIX):
            raise ValueError(f"Native tool names cannot use the {MCP_PREFIX} prefix: {name}")
        declaration = {
            "name": name,
            "description": description,
            "parameters": parameters or {"type": "object", "properties": {}},
        }
        self._tools[name] = Tool(name=name, declaration=declaration, handler=handler)
        logger.debug("Registered tool %s", name)

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All native tool declarations, in registration order."""
        return [tool.declaration for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
