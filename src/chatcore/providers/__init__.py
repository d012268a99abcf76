"""AI backend implementations and provider selection.

The orchestrator only ever talks to :class:`AiBackend`; vendor specifics
(authentication, base URLs, tool support) stay inside the adapters here.
"""

import logging
from typing import Dict

from ..settings import Settings
from .base import AiBackend, AiProvider, build_payload_messages, message_to_payload, tool_to_schema
from .gigachat import GigaChatBackend
from .openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)


def build_backends(settings: Settings) -> Dict[AiProvider, AiBackend]:
    """Create one backend per provider that has enough configuration to run."""
    backends: Dict[AiProvider, AiBackend] = {}

    if settings.openrouter_api_key:
        backends[AiProvider.OPENROUTER] = OpenAICompatibleBackend(
            AiProvider.OPENROUTER,
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
            default_model=settings.openrouter_model,
            timeout_seconds=settings.backend_timeout_seconds,
            max_tokens=settings.openrouter_max_tokens,
        )

    if settings.ollama_base_url:
        backends[AiProvider.OLLAMA] = OpenAICompatibleBackend(
            AiProvider.OLLAMA,
            api_key="ollama",
            base_url=settings.ollama_base_url,
            default_model=settings.ollama_model,
            timeout_seconds=settings.backend_timeout_seconds,
            supports_tools=settings.ollama_tools_enabled,
            compaction_enabled=settings.ollama_compaction_enabled,
        )

    if settings.gigachat_auth_key:
        backends[AiProvider.GIGACHAT] = GigaChatBackend(
            auth_key=settings.gigachat_auth_key,
            auth_url=settings.gigachat_auth_url,
            base_url=settings.gigachat_base_url,
            scope=settings.gigachat_scope,
            default_model=settings.gigachat_model,
            timeout_seconds=settings.backend_timeout_seconds,
            max_tokens=settings.gigachat_max_tokens,
            verify_ssl=settings.gigachat_verify_ssl,
        )

    if not backends:
        logger.warning("No AI providers configured; every chat request will fail")
    else:
        logger.info(
            "Configured AI providers: %s",
            ", ".join(p.display_name for p in backends),
        )
    return backends


__all__ = [
    "AiBackend",
    "AiProvider",
    "GigaChatBackend",
    "OpenAICompatibleBackend",
    "build_backends",
    "build_payload_messages",
    "message_to_payload",
    "tool_to_schema",
]
