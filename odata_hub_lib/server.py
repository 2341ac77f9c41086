"""
FastMCP binding: exposes the hub's generated tools and a few static management tools.
"""

import asyncio
import json
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import NotFoundError
from fastmcp.tools import Tool
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from pydantic import PrivateAttr

from .errors import ODataHubError
from .hub import ODataHub
from .models import GeneratedTool
from .registry import SystemToolSet


def _as_text(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


def _error_payload(error: Exception) -> Dict[str, Any]:
    if isinstance(error, ODataHubError):
        return {"error": error.to_dict()}
    return {"error": {"kind": "internal_error", "message": str(error)}}


class GeneratedODataTool(Tool):
    """MCP tool whose schema comes from OData metadata and whose calls go to the hub."""

    _hub: Optional[ODataHub] = PrivateAttr(default=None)

    @classmethod
    def from_generated(cls, generated: GeneratedTool, hub: ODataHub) -> "GeneratedODataTool":
        tool = cls(
            name=generated.name,
            description=generated.description,
            parameters=generated.input_schema,
            tags={generated.operation.value, generated.system_id or "default"},
        )
        tool._hub = hub
        return tool

    async def run(self, arguments: Dict[str, Any]) -> ToolResult:
        try:
            payload = await self._hub.call_tool(self.name, arguments)
        except ODataHubError as e:
            print(f"ERROR: Error in tool {self.name}: {e.message}", file=sys.stderr)
            payload = _error_payload(e)
        except Exception as e:
            print(f"ERROR: Error in tool {self.name}: {e}", file=sys.stderr)
            if self._hub.verbose:
                traceback.print_exc(file=sys.stderr)
            payload = _error_payload(e)
        return ToolResult(content=[TextContent(type="text", text=_as_text(payload))])


class ODataMCPServer:
    """Keeps a FastMCP server's tool list in step with the hub's tool sets."""

    def __init__(self, hub: ODataHub, name: str = "odata-mcp-hub"):
        self.hub = hub
        self.mcp = FastMCP(name=name)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        hub.add_listener(self._on_refresh)
        self._register_static_tools()

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.hub.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Server VERBOSE] {message}", file=sys.stderr)

    def _on_refresh(self, previous: Optional[SystemToolSet], current: SystemToolSet):
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and self._loop.is_running() and running is not self._loop:
            # Refreshes run in worker threads; apply the diff on the server loop
            self._loop.call_soon_threadsafe(self.sync_tools, previous, current)
        else:
            self.sync_tools(previous, current)

    def sync_tools(self, previous: Optional[SystemToolSet], current: SystemToolSet):
        """Replace a system's previous tools with its current ones."""
        current_names = {tool.name for tool in current.tools}
        old_names = {tool.name for tool in previous.tools} if previous else set()
        for name in old_names | current_names:
            self._remove_tool(name)
        for generated in current.tools:
            self.mcp.add_tool(GeneratedODataTool.from_generated(generated, self.hub))
        self._log_verbose(f"System {current.system_id}: {len(old_names - current_names)} tools removed, "
                          f"{len(current_names)} registered.")

    def _remove_tool(self, name: str):
        try:
            self.mcp.remove_tool(name)
        except NotFoundError:
            pass  # already absent

    def _register_static_tools(self):
        hub = self.hub
        server = self

        @self.mcp.tool(name="list_odata_systems",
                       description="List the configured OData systems with their load status and tool counts")
        async def list_odata_systems() -> str:
            return _as_text(hub.list_systems())

        @self.mcp.tool(name="odata_service_info",
                       description="Get entity sets, keys, capabilities, functions and generated tools "
                                   "of the services of an OData system")
        async def odata_service_info(system_id: str, service_url: Optional[str] = None) -> str:
            try:
                return _as_text(hub.service_info(system_id, service_url))
            except ODataHubError as e:
                return _as_text(_error_payload(e))

        @self.mcp.tool(name="discover_odata_services",
                       description="Discover the OData services available on a system "
                                   "(SAP catalog discovery for SAP systems, base service otherwise)")
        async def discover_odata_services(system_id: str) -> str:
            try:
                client = hub.get_client(system_id)
                return _as_text(await asyncio.to_thread(client.discover_services))
            except ODataHubError as e:
                return _as_text(_error_payload(e))

        @self.mcp.tool(name="test_odata_connection",
                       description="Check whether the base URL of an OData system answers")
        async def test_odata_connection(system_id: str) -> str:
            try:
                return _as_text(await asyncio.to_thread(hub.test_connection, system_id))
            except ODataHubError as e:
                return _as_text(_error_payload(e))

        @self.mcp.tool(name="disconnect_odata_system",
                       description="Remove the generated tools of an OData system and close its "
                                   "connection; refresh_odata_system connects it again")
        async def disconnect_odata_system(system_id: str) -> str:
            server._loop = asyncio.get_running_loop()
            try:
                previous = hub.disconnect_system(system_id)
            except ODataHubError as e:
                return _as_text(_error_payload(e))
            return _as_text({
                "system_id": system_id,
                "disconnected": True,
                "tools_removed": len(previous.tools) if previous else 0,
            })

        @self.mcp.tool(name="refresh_odata_system",
                       description="Re-fetch metadata and regenerate the tools of one system, or of all "
                                   "systems when no system_id is given")
        async def refresh_odata_system(system_id: Optional[str] = None) -> str:
            server._loop = asyncio.get_running_loop()
            try:
                if system_id:
                    tool_sets = [await asyncio.to_thread(hub.refresh_system, system_id)]
                else:
                    tool_sets = await asyncio.to_thread(hub.refresh_all)
            except ODataHubError as e:
                return _as_text(_error_payload(e))
            return _as_text([
                {
                    "system_id": ts.system_id,
                    "tool_count": len(ts.tools),
                    "services": [s.service_url for s in ts.services],
                    "errors": list(ts.errors),
                    "warnings": list(ts.warnings),
                }
                for ts in tool_sets
            ])

    def run(self, transport: str = "stdio", **kwargs):
        self.mcp.run(transport=transport, **kwargs)
