class ChatCoreError(Exception):
    """Base class for errors raised by the conversation core."""


class BackendError(ChatCoreError):
    """AI vendor unreachable, returned a non-success status, or timed out."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class ToolError(ChatCoreError):
    """A single tool invocation failed (including timeouts and unknown tools)."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class CompactionError(ChatCoreError):
    """History summarization failed; the caller keeps the full history."""


class EnrichmentError(ChatCoreError):
    """Context retrieval failed; the caller keeps the unenriched text."""
