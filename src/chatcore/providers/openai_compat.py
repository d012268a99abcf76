import asyncio
import logging
import time
from typing import Any, Dict, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from ..errors import BackendError
from ..models import ConversationMessage, GenerationResult, TokenUsage, ToolCallRequest, ToolSpec
from .base import AiBackend, AiProvider, build_payload_messages, tool_to_schema

logger = logging.getLogger(__name__)


def parse_completion(response: Any) -> GenerationResult:
    """Map a chat-completions response object to a GenerationResult (without timing)."""
    if not response.choices:
        raise ValueError("response has no choices")
    message = response.choices[0].message

    tool_calls = tuple(
        ToolCallRequest(
            id=call.id,
            tool_name=call.function.name,
            arguments_json=call.function.arguments or "{}",
        )
        for call in (message.tool_calls or [])
        if call.function and call.function.name
    )

    usage = None
    if response.usage is not None:
        usage = TokenUsage(
            prompt_tokens=response.usage.prompt_tokens or 0,
            completion_tokens=response.usage.completion_tokens or 0,
            total_tokens=response.usage.total_tokens or 0,
        )

    return GenerationResult(text=message.content or "", tool_calls=tool_calls, usage=usage)


class OpenAICompatibleBackend(AiBackend):
    """Backend for any vendor exposing the OpenAI chat-completions API (OpenRouter, Ollama)."""

    def __init__(
        self,
        provider: AiProvider,
        *,
        api_key: str,
        base_url: str,
        default_model: str,
        timeout_seconds: float,
        max_tokens: int | None = None,
        supports_tools: bool = True,
        compaction_enabled: bool = True,
        client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider = provider
        self.default_model = default_model
        self.supports_tools = supports_tools
        self.compaction_enabled = compaction_enabled
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
            http_client=http_client,
        )

    async def _client_for_request(self) -> AsyncOpenAI:
        return self._client

    async def generate(
        self,
        history: Sequence[ConversationMessage],
        system_prompt: str,
        temperature: float,
        tools: Sequence[ToolSpec] | None = None,
        model: str | None = None,
    ) -> GenerationResult:
        name = self.provider.display_name
        request: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": build_payload_messages(history, system_prompt),
            "temperature": temperature,
        }
        if self._max_tokens:
            request["max_tokens"] = self._max_tokens
        if tools:
            request["tools"] = [tool_to_schema(t) for t in tools]
            request["tool_choice"] = "auto"

        logger.debug(
            "%s request: model=%s messages=%d tools=%d",
            name,
            request["model"],
            len(request["messages"]),
            len(tools or []),
        )

        started = time.monotonic()
        try:
            client = await self._client_for_request()
            response = await asyncio.wait_for(
                client.chat.completions.create(**request), timeout=self._timeout
            )
        except asyncio.TimeoutError as e:
            raise BackendError(name, f"request timed out after {self._timeout}s") from e
        except openai.APIStatusError as e:
            raise BackendError(name, f"API error {e.status_code}: {e.message}", e.status_code) from e
        except openai.APIError as e:
            raise BackendError(name, str(e)) from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            result = parse_completion(response)
        except (AttributeError, IndexError, ValueError) as e:
            raise BackendError(name, f"malformed response: {e}") from e

        if result.usage:
            logger.info(
                "%s responded in %dms (prompt=%d completion=%d total=%d)",
                name,
                elapsed_ms,
                result.usage.prompt_tokens,
                result.usage.completion_tokens,
                result.usage.total_tokens,
            )
        else:
            logger.info("%s responded in %dms", name, elapsed_ms)

        return GenerationResult(
            text=result.text,
            tool_calls=result.tool_calls,
            usage=result.usage,
            elapsed_ms=elapsed_ms,
        )

    async def aclose(self) -> None:
        await self._client.close()
