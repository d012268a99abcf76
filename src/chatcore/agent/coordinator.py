import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from ..models import (
    ConversationMessage,
    Err,
    TokenUsage,
    ToolCallRequest,
    ToolResult,
)
from ..providers import AiBackend
from .tools import ToolCatalog, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5
FALLBACK_MESSAGE = (
    "Maximum tool calling iterations reached. Please try rephrasing your question."
)


@dataclass
class ToolLoopOutcome:
    """Result of one tool-calling turn.

    ``messages`` holds everything the turn appended to the transcript, starting
    with the user message, so the caller can commit it in one step.
    """

    text: str
    messages: List[ConversationMessage] = field(default_factory=list)
    usage_total: TokenUsage | None = None
    usage_last: TokenUsage | None = None
    generate_calls: int = 0
    exhausted: bool = False


class ToolCallingCoordinator:
    """Runs the bounded generate / execute-tools loop for a single user turn."""

    def __init__(self, registry: ToolRegistry, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._registry = registry
        self.max_iterations = max_iterations

    async def execute_tool_calls(
        self, catalog: ToolCatalog, calls: Sequence[ToolCallRequest]
    ) -> List[ToolResult]:
        """Execute each call independently; a failing call yields an error result."""
        logger.info("Executing %d tool call(s)...", len(calls))
        results: List[ToolResult] = []
        for call in calls:
            outcome = await catalog.execute(call)
            if isinstance(outcome, Err):
                results.append(
                    ToolResult(
                        tool_call_id=call.id,
                        text=f"Error executing tool: {outcome.message}",
                        is_error=True,
                    )
                )
            else:
                results.append(ToolResult(tool_call_id=call.id, text=outcome.value))
        return results

    async def run(
        self,
        backend: AiBackend,
        history: Sequence[ConversationMessage],
        user_message: ConversationMessage,
        system_prompt: str,
        temperature: float,
        model: str | None = None,
    ) -> ToolLoopOutcome:
        """Drive the model until it answers without tool calls or the cap is hit.

        Raises:
            BackendError: if any generation call fails; tool failures never raise.
        """
        catalog = await self._registry.catalog()
        tools = catalog.tools or None

        working: List[ConversationMessage] = list(history)
        outcome = ToolLoopOutcome(text="", messages=[user_message])
        working.append(user_message)

        iteration = 0
        while True:
            logger.info("Tool calling iteration %d/%d", iteration + 1, self.max_iterations)
            result = await backend.generate(
                working,
                system_prompt=system_prompt,
                temperature=temperature,
                tools=tools,
                model=model,
            )
            outcome.generate_calls += 1
            if result.usage is not None:
                outcome.usage_last = result.usage
                outcome.usage_total = (
                    result.usage
                    if outcome.usage_total is None
                    else outcome.usage_total + result.usage
                )

            assistant = ConversationMessage.assistant(result.text, result.tool_calls)
            working.append(assistant)
            outcome.messages.append(assistant)

            if not result.tool_calls:
                outcome.text = result.text
                logger.info("Tool calling workflow completed after %d iteration(s)", iteration + 1)
                return outcome

            for tool_result in await self.execute_tool_calls(catalog, result.tool_calls):
                message = tool_result.to_message()
                working.append(message)
                outcome.messages.append(message)

            iteration += 1
            if iteration >= self.max_iterations:
                break

        logger.warning("Reached max iterations (%d) without final response", self.max_iterations)
        outcome.text = FALLBACK_MESSAGE
        outcome.exhausted = True
        outcome.messages.append(ConversationMessage.assistant(FALLBACK_MESSAGE))
        return outcome
