import asyncio
import json
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Sequence, Tuple

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from ..errors import ToolError
from ..models import Err, ErrorKind, Ok, Result, ToolCallRequest, ToolSpec

logger = logging.getLogger(__name__)


class ToolProvider(Protocol):
    """Anything that can list callable tools and execute one by name."""

    name: str

    async def list_tools(self) -> List[ToolSpec]:
        ...

    async def call(self, tool_name: str, arguments: Dict[str, Any]) -> str:
        ...


def parse_tool_arguments(arguments_json: str | None) -> Dict[str, Any]:
    """Parse a tool call's JSON arguments into a dict; invalid input yields {}."""
    if not arguments_json or not arguments_json.strip():
        return {}
    try:
        parsed = json.loads(arguments_json)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse tool arguments: %s", e)
        return {}
    if not isinstance(parsed, dict):
        logger.error("Tool arguments are not a JSON object: %r", arguments_json[:200])
        return {}
    return parsed


class McpToolProvider:
    """Tool provider backed by an MCP server launched over stdio.

    Each operation opens a short-lived session, so a crashed server only
    affects the calls made while it is down.
    """

    def __init__(self, name: str, command: str, env: Dict[str, str] | None = None) -> None:
        parts = shlex.split(command)
        if not parts:
            raise ValueError(f"Empty MCP command for server '{name}'")
        self.name = name
        self._params = StdioServerParameters(
            command=parts[0],
            args=parts[1:],
            env={**os.environ, **(env or {})},
        )

    async def list_tools(self) -> List[ToolSpec]:
        try:
            async with stdio_client(self._params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    tools_result = await session.list_tools()
        except (OSError, ConnectionError, TimeoutError, McpError, ExceptionGroup) as e:
            raise ToolError(self.name, f"failed to list tools: {e}") from e

        return [
            ToolSpec(
                name=tool_info.name,
                description=tool_info.description or "",
                parameters=tool_info.inputSchema or {},
            )
            for tool_info in tools_result.tools
        ]

    async def call(self, tool_name: str, arguments: Dict[str, Any]) -> str:
        logger.info("Calling MCP tool %s on server %s", tool_name, self.name)
        try:
            async with stdio_client(self._params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(tool_name, arguments)
        except (OSError, ConnectionError, TimeoutError, McpError, ExceptionGroup) as e:
            raise ToolError(tool_name, str(e)) from e

        text = "\n".join(
            block.text for block in (result.content or []) if getattr(block, "text", None)
        )
        if result.isError:
            raise ToolError(tool_name, text or "tool reported an error")
        return text


@dataclass(frozen=True)
class ToolCatalog:
    """Tools available for one turn; read-only once built."""

    tools: Tuple[ToolSpec, ...]
    owners: Dict[str, ToolProvider]
    timeout_seconds: float

    def __len__(self) -> int:
        return len(self.tools)

    async def execute(self, call: ToolCallRequest) -> Result[str]:
        """Run one requested tool call; failures are returned, never raised."""
        provider = self.owners.get(call.tool_name)
        if provider is None:
            logger.error("Tool %s not found on any tool provider", call.tool_name)
            return Err(ErrorKind.TOOL, f"Tool {call.tool_name} not found")

        arguments = parse_tool_arguments(call.arguments_json)
        logger.info("Executing tool: %s", call.tool_name)
        logger.debug("Tool arguments: %s", arguments)
        try:
            text = await asyncio.wait_for(
                provider.call(call.tool_name, arguments), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error("Tool %s timed out after %ss", call.tool_name, self.timeout_seconds)
            return Err(ErrorKind.TOOL, f"timed out after {self.timeout_seconds}s")
        except ToolError as e:
            logger.error("Error executing tool %s: %s", call.tool_name, e)
            return Err(ErrorKind.TOOL, str(e))
        except Exception as e:
            logger.exception("Unexpected error executing tool %s", call.tool_name)
            return Err(ErrorKind.TOOL, str(e) or type(e).__name__)

        logger.info("Tool %s completed successfully", call.tool_name)
        return Ok(text)


class ToolRegistry:
    """Aggregates the configured tool providers and builds a fresh catalog per turn."""

    def __init__(self, providers: Sequence[ToolProvider], timeout_seconds: float) -> None:
        self._providers = list(providers)
        self._timeout = timeout_seconds

    @property
    def providers(self) -> List[ToolProvider]:
        return list(self._providers)

    async def catalog(self) -> ToolCatalog:
        """List tools from every provider; an unavailable provider contributes none."""
        tools: List[ToolSpec] = []
        owners: Dict[str, ToolProvider] = {}

        for provider in self._providers:
            try:
                provider_tools = await asyncio.wait_for(
                    provider.list_tools(), timeout=self._timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Tool provider '%s' did not list tools within %ss; skipping",
                    provider.name,
                    self._timeout,
                )
                continue
            except ToolError as e:
                logger.warning("Tool provider '%s' unavailable: %s", provider.name, e)
                continue
            except Exception:
                logger.exception("Unexpected error listing tools from '%s'; skipping", provider.name)
                continue

            for tool in provider_tools:
                if tool.name in owners:
                    logger.debug(
                        "Tool %s from '%s' shadowed by an earlier provider",
                        tool.name,
                        provider.name,
                    )
                    continue
                owners[tool.name] = provider
                tools.append(tool)

        logger.info("Found %d available tools from %d providers", len(tools), len(self._providers))
        return ToolCatalog(tools=tuple(tools), owners=owners, timeout_seconds=self._timeout)


def build_tool_registry(servers: Dict[str, str], timeout_seconds: float) -> ToolRegistry:
    """Create MCP tool providers from a name -> command mapping."""
    providers: List[ToolProvider] = []
    for name, command in servers.items():
        if not command or not command.strip():
            logger.info("MCP server '%s' has no startup command configured; skipping", name)
            continue
        try:
            providers.append(McpToolProvider(name, command))
        except ValueError as e:
            logger.warning("Invalid MCP command format for '%s': %s", name, e)
    return ToolRegistry(providers, timeout_seconds=timeout_seconds)
