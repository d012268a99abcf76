"""Conversation orchestration for the chat backend.

This package exposes the session orchestrator while keeping the pieces it
drives (compaction, the tool-calling loop, MCP tool providers) in separate
modules.
"""

from .compaction import CompactionEngine
from .coordinator import FALLBACK_MESSAGE, ToolCallingCoordinator, ToolLoopOutcome
from .orchestrator import SessionOrchestrator, SessionStore, create_orchestrator
from .tools import McpToolProvider, ToolCatalog, ToolProvider, ToolRegistry, parse_tool_arguments

__all__ = [
    "CompactionEngine",
    "FALLBACK_MESSAGE",
    "McpToolProvider",
    "SessionOrchestrator",
    "SessionStore",
    "ToolCallingCoordinator",
    "ToolCatalog",
    "ToolLoopOutcome",
    "ToolProvider",
    "ToolRegistry",
    "create_orchestrator",
    "parse_tool_arguments",
]
