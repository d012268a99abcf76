from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Tuple, TypeVar, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model inside an assistant message."""

    id: str
    tool_name: str
    arguments_json: str = "{}"


@dataclass(frozen=True)
class ConversationMessage:
    """A single immutable transcript entry."""

    role: Role
    content: str
    tool_call_id: str | None = None
    tool_calls: Tuple[ToolCallRequest, ...] = ()

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str, tool_calls: Tuple[ToolCallRequest, ...] = ()
    ) -> "ConversationMessage":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "ConversationMessage":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    text: str
    is_error: bool = False

    def to_message(self) -> ConversationMessage:
        return ConversationMessage.tool(self.tool_call_id, self.text)


@dataclass(frozen=True)
class ToolSpec:
    """A callable tool as advertised by a tool provider."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class GenerationResult:
    """What a backend returns for one generation call."""

    text: str
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage | None = None
    elapsed_ms: int = 0


class ErrorKind(str, Enum):
    BACKEND = "backend"
    TOOL = "tool"
    COMPACTION = "compaction"
    ENRICHMENT = "enrichment"


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str


Result = Union[Ok[T], Err]


class ConversationHistory:
    """Ordered transcript plus the turn counter that drives compaction.

    ``message_count`` counts turns submitted for generation since the last
    compaction, so only USER messages increment it.
    """

    def __init__(self) -> None:
        self._messages: List[ConversationMessage] = []
        self.message_count = 0

    def add(self, message: ConversationMessage) -> None:
        self._messages.append(message)
        if message.role is Role.USER:
            self.message_count += 1

    def extend(self, messages: List[ConversationMessage]) -> None:
        for message in messages:
            self.add(message)

    def replace_with_summary(self, message: ConversationMessage) -> None:
        self._messages = [message]
        self.message_count = 0

    def clear(self) -> None:
        self._messages = []
        self.message_count = 0

    def snapshot(self) -> Tuple[ConversationMessage, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


@dataclass
class SessionState:
    """Per (provider, session) conversation state."""

    provider: str
    session_id: str
    history: ConversationHistory = field(default_factory=ConversationHistory)
    usage_total: TokenUsage | None = None
    model: str | None = None

    @property
    def message_count(self) -> int:
        return self.history.message_count

    def add_usage(self, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        self.usage_total = usage if self.usage_total is None else self.usage_total + usage

    def reset(self) -> None:
        self.history.clear()
        self.usage_total = None


class ResponseStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ChatResult:
    """Caller-facing outcome of one turn."""

    text: str
    status: ResponseStatus
    token_usage_cumulative: TokenUsage | None = None
    token_usage_last: TokenUsage | None = None
    elapsed_ms: int = 0
    model: str | None = None
    iterations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "status": self.status.value,
            "tokenUsage": self.token_usage_cumulative.to_dict()
            if self.token_usage_cumulative
            else None,
            "lastResponseTokenUsage": self.token_usage_last.to_dict()
            if self.token_usage_last
            else None,
            "responseTimeMs": self.elapsed_ms,
            "model": self.model,
            "iterations": self.iterations,
        }
