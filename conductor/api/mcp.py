"""MCP proxy -- routes mcp__{server}__{tool} calls to connected servers.

Sessions are opened and initialized by the embedding application (stdio,
SSE or streamable HTTP); the proxy only needs a live ClientSession per
server id.
"""

from __future__ import annotations

import logging
from typing import Any

from mcp import ClientSession
from mcp.types import TextContent

from conductor.api.errors import message
from conductor.api.tools import MCP_PREFIX, ProxiedTool

logger = logging.getLogger(__name__)


class McpToolProxy:
    def __init__(self, sessions: dict[str, ClientSession] | None = None) -> None:
        self._sessions: dict[str, ClientSession] = dict(sessions or {})

    def add_session(self, server_id: str, session: ClientSession) -> None:
        if "__" in server_id:
            raise ValueError(f"MCP server id cannot contain '__': {server_id}")
        self._sessions[server_id] = session

    def has_server(self, server_id: str) -> bool:
        return server_id in self._sessions

    async def call_tool(self, server_id: str, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        """Call a tool on a connected server; never raises.

        Text content items are joined with newlines.  isError results and
        exceptions become {success: False, error}.
        """
        session = self._sessions.get(server_id)
        if session is None:
            return {"success": False, "error": f"MCP server not connected: {server_id}"}

        try:
            result = await session.call_tool(tool_name, arguments=args)
            text = "\n".join(item.text for item in result.content if isinstance(item, TextContent))
            is_error = bool(result.isError)
        except Exception as e:
            logger.warning("MCP call %s/%s failed: %s", server_id, tool_name, e)
            return {"success": False, "error": str(e) or message("mcp_tool_call_failed")}

        if is_error:
            return {"success": False, "error": text or message("mcp_tool_call_failed")}
        return {"success": True, "content": text or message("tool_execution_success")}

    async def tool_declarations(self) -> list[dict[str, Any]]:
        """Declarations for every connected server's tools, under prefixed names."""
        declarations: list[dict[str, Any]] = []
        for server_id, session in self._sessions.items():
            try:
                listed = await session.list_tools()
                server_declarations = [
                    {
                        "name": ProxiedTool(server_id=server_id, tool_name=tool.name).full_name,
                        "description": tool.description or "",
                        "parameters": tool.inputSchema or {"type": "object", "properties": {}},
                    }
                    for tool in listed.tools
                ]
            except Exception:
                logger.warning("Listing tools failed for MCP server %s", server_id, exc_info=True)
                continue
            declarations.extend(server_declarations)
        logger.debug("Listed %d MCP tools (%s*)", len(declarations), MCP_PREFIX)
        return declarations
