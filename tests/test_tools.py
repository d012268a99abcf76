from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatcore.agent.tools import (
    McpToolProvider,
    ToolRegistry,
    build_tool_registry,
    parse_tool_arguments,
)
from chatcore.errors import ToolError
from chatcore.models import Err, ErrorKind, Ok, ToolCallRequest

from fakes import FakeToolProvider


def _boom(**kwargs) -> str:
    raise ToolError("create_ticket", "database is locked")


def _crash(**kwargs) -> str:
    raise RuntimeError("unexpected")


def test_parse_tool_arguments() -> None:
    assert parse_tool_arguments('{"code": "USD", "amount": 2}') == {"code": "USD", "amount": 2}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments(None) == {}
    assert parse_tool_arguments("{not json") == {}
    assert parse_tool_arguments("[1, 2]") == {}


@pytest.mark.asyncio
async def test_catalog_skips_unavailable_provider() -> None:
    """A provider failing at list time contributes zero tools; the rest still load."""
    down = FakeToolProvider("news", {"search_news": lambda **kw: "n"}, unavailable=True)
    notes = FakeToolProvider("notes", {"list_notes": lambda **kw: "[]"})
    catalog = await ToolRegistry([down, notes], timeout_seconds=1.0).catalog()

    assert [t.name for t in catalog.tools] == ["list_notes"]


@pytest.mark.asyncio
async def test_catalog_skips_provider_that_times_out() -> None:
    class SlowProvider(FakeToolProvider):
        async def list_tools(self):
            import asyncio

            await asyncio.sleep(1)
            return []

    slow = SlowProvider("slow")
    fast = FakeToolProvider("fast", {"ping": lambda **kw: "pong"})
    catalog = await ToolRegistry([slow, fast], timeout_seconds=0.05).catalog()

    assert len(catalog) == 1


@pytest.mark.asyncio
async def test_first_provider_wins_for_duplicate_tool_names() -> None:
    first = FakeToolProvider("first", {"get_rate": lambda **kw: "first"})
    second = FakeToolProvider("second", {"get_rate": lambda **kw: "second"})
    catalog = await ToolRegistry([first, second], timeout_seconds=1.0).catalog()

    outcome = await catalog.execute(ToolCallRequest(id="c1", tool_name="get_rate"))

    assert len(catalog.tools) == 1
    assert outcome == Ok("first")
    assert second.calls == []


@pytest.mark.asyncio
async def test_execute_success_passes_parsed_arguments() -> None:
    provider = FakeToolProvider("fx", {"get_rate": lambda code: f"{code}=90.1"})
    catalog = await ToolRegistry([provider], timeout_seconds=1.0).catalog()

    outcome = await catalog.execute(
        ToolCallRequest(id="c1", tool_name="get_rate", arguments_json='{"code": "USD"}')
    )

    assert outcome == Ok("USD=90.1")
    assert provider.calls == [("get_rate", {"code": "USD"})]


@pytest.mark.asyncio
async def test_execute_failures_become_err() -> None:
    provider = FakeToolProvider("tickets", {"create_ticket": _boom, "crash": _crash})
    catalog = await ToolRegistry([provider], timeout_seconds=1.0).catalog()

    tool_error = await catalog.execute(ToolCallRequest(id="c1", tool_name="create_ticket"))
    crash = await catalog.execute(ToolCallRequest(id="c2", tool_name="crash"))
    missing = await catalog.execute(ToolCallRequest(id="c3", tool_name="nope"))

    assert isinstance(tool_error, Err) and "database is locked" in tool_error.message
    assert isinstance(crash, Err) and crash.message == "unexpected"
    assert isinstance(missing, Err) and missing.kind is ErrorKind.TOOL
    assert "not found" in missing.message


@pytest.mark.asyncio
async def test_execute_timeout_is_a_tool_failure() -> None:
    provider = FakeToolProvider("vps", {"reboot": lambda **kw: "done"}, delay=1.0)
    catalog = await ToolRegistry([provider], timeout_seconds=0.05).catalog()

    outcome = await catalog.execute(ToolCallRequest(id="c1", tool_name="reboot"))

    assert isinstance(outcome, Err)
    assert "timed out" in outcome.message


def test_build_tool_registry_skips_blank_commands() -> None:
    registry = build_tool_registry(
        {"notes": "python -m notes_server --stdio", "news": "  "}, timeout_seconds=5.0
    )
    assert [p.name for p in registry.providers] == ["notes"]


@pytest.mark.asyncio
async def test_catalog_skips_provider_raising_unexpected_error() -> None:
    """A provider crashing with a non-ToolError still contributes zero tools."""

    class CrashingProvider(FakeToolProvider):
        async def list_tools(self):
            raise RuntimeError("server crashed during handshake")

    crashing = CrashingProvider("broken")
    notes = FakeToolProvider("notes", {"list_notes": lambda **kw: "[]"})
    catalog = await ToolRegistry([crashing, notes], timeout_seconds=1.0).catalog()

    assert [t.name for t in catalog.tools] == ["list_notes"]


@pytest.fixture
def mcp_session() -> MagicMock:
    """Mock MCP ClientSession with async methods."""
    session = MagicMock()
    session.initialize = AsyncMock(return_value=None)
    session.list_tools = AsyncMock(return_value=SimpleNamespace(tools=[]))
    session.call_tool = AsyncMock(return_value=SimpleNamespace(content=[], isError=False))
    return session


@pytest.fixture
def mcp_transport(mcp_session: MagicMock):
    """Patch stdio_client and ClientSession so no server process is started."""
    stdio_cm = MagicMock()
    stdio_cm.__aenter__ = AsyncMock(return_value=("read", "write"))
    stdio_cm.__aexit__ = AsyncMock(return_value=False)
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=mcp_session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    with patch("chatcore.agent.tools.stdio_client", return_value=stdio_cm) as stdio, patch(
        "chatcore.agent.tools.ClientSession", return_value=session_cm
    ) as session_cls:
        yield SimpleNamespace(stdio=stdio, stdio_cm=stdio_cm, session_cls=session_cls)


def test_mcp_provider_rejects_empty_command() -> None:
    with pytest.raises(ValueError):
        McpToolProvider("empty", "   ")


@pytest.mark.asyncio
async def test_mcp_list_tools_maps_tool_info(mcp_session: MagicMock, mcp_transport) -> None:
    mcp_session.list_tools.return_value = SimpleNamespace(
        tools=[
            SimpleNamespace(
                name="get_rate",
                description="Currency rate",
                inputSchema={"type": "object", "properties": {"code": {"type": "string"}}},
            ),
            SimpleNamespace(name="ping", description=None, inputSchema=None),
        ]
    )
    provider = McpToolProvider("fx", "python -m fx_server --stdio")

    tools = await provider.list_tools()

    assert [(t.name, t.description) for t in tools] == [("get_rate", "Currency rate"), ("ping", "")]
    assert tools[0].parameters["properties"] == {"code": {"type": "string"}}
    assert tools[1].parameters == {}
    params = mcp_transport.stdio.call_args.args[0]
    assert params.command == "python"
    assert params.args == ["-m", "fx_server", "--stdio"]
    mcp_transport.session_cls.assert_called_once_with("read", "write")
    mcp_session.initialize.assert_awaited_once()


@pytest.mark.asyncio
async def test_mcp_call_joins_text_blocks(mcp_session: MagicMock, mcp_transport) -> None:
    mcp_session.call_tool.return_value = SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="USD 90.1"),
            SimpleNamespace(type="image", data="..."),
            SimpleNamespace(type="text", text="EUR 98.5"),
        ],
        isError=False,
    )
    provider = McpToolProvider("fx", "python -m fx_server")

    text = await provider.call("get_rates", {"codes": ["USD", "EUR"]})

    assert text == "USD 90.1\nEUR 98.5"
    mcp_session.call_tool.assert_awaited_once_with("get_rates", {"codes": ["USD", "EUR"]})


@pytest.mark.asyncio
async def test_mcp_call_error_result_raises_tool_error(mcp_session: MagicMock, mcp_transport) -> None:
    mcp_session.call_tool.return_value = SimpleNamespace(
        content=[SimpleNamespace(type="text", text="note not found")], isError=True
    )
    provider = McpToolProvider("notes", "python -m notes_server")

    with pytest.raises(ToolError) as exc_info:
        await provider.call("get_note", {"id": 7})

    assert exc_info.value.tool_name == "get_note"
    assert "note not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_mcp_transport_failure_raises_tool_error(mcp_transport) -> None:
    mcp_transport.stdio_cm.__aenter__ = AsyncMock(side_effect=OSError("No such file or directory"))
    provider = McpToolProvider("notes", "missing-binary --stdio")

    with pytest.raises(ToolError, match="failed to list tools"):
        await provider.list_tools()
    with pytest.raises(ToolError, match="No such file"):
        await provider.call("list_notes", {})
