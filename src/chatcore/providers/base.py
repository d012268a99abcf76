import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Sequence

from ..models import ConversationMessage, GenerationResult, Role, ToolSpec

logger = logging.getLogger(__name__)


class AiProvider(str, Enum):
    GIGACHAT = "gigachat"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"

    @property
    def display_name(self) -> str:
        return {
            AiProvider.GIGACHAT: "GigaChat",
            AiProvider.OPENROUTER: "OpenRouter",
            AiProvider.OLLAMA: "Ollama (Local)",
        }[self]

    @property
    def tracks_model(self) -> bool:
        """Providers whose sessions are reset when the caller switches model."""
        return self in (AiProvider.OPENROUTER, AiProvider.OLLAMA)

    @classmethod
    def from_string(cls, value: str | None) -> "AiProvider":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.GIGACHAT

    @classmethod
    def is_known(cls, value: str | None) -> bool:
        return (value or "").strip().lower() in {p.value for p in cls}


class AiBackend(ABC):
    """Anything that can turn a transcript into a generated reply."""

    provider: AiProvider
    supports_tools: bool = False
    compaction_enabled: bool = True
    language: str = "en"
    default_model: str | None = None

    @abstractmethod
    async def generate(
        self,
        history: Sequence[ConversationMessage],
        system_prompt: str,
        temperature: float,
        tools: Sequence[ToolSpec] | None = None,
        model: str | None = None,
    ) -> GenerationResult:
        """Run one generation call.

        Raises:
            BackendError: on transport failures, non-success responses and timeouts.
        """

    async def aclose(self) -> None:
        """Release network resources held by the backend."""


def message_to_payload(message: ConversationMessage) -> Dict[str, Any]:
    """Convert a transcript entry to the chat-completions message shape."""
    payload: Dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.role is Role.TOOL and message.tool_call_id is not None:
        payload["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        payload["content"] = message.content or None
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.tool_name, "arguments": call.arguments_json},
            }
            for call in message.tool_calls
        ]
    return payload


def build_payload_messages(
    history: Sequence[ConversationMessage], system_prompt: str
) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": Role.SYSTEM.value, "content": system_prompt})
    messages.extend(message_to_payload(m) for m in history)
    return messages


def tool_to_schema(tool: ToolSpec) -> Dict[str, Any]:
    """Tool spec in OpenAI function format."""
    parameters = tool.parameters or {"type": "object", "properties": {}}
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "No description provided",
            "parameters": parameters,
        },
    }
