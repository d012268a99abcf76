import asyncio
import logging
import time
import uuid

import httpx
from openai import AsyncOpenAI

from ..errors import BackendError
from .base import AiProvider
from .openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)

# refresh slightly before the server-side expiry
_TOKEN_SKEW_MS = 60_000


class GigaChatBackend(OpenAICompatibleBackend):
    """GigaChat chat-completions behind an OAuth access token."""

    language = "ru"

    def __init__(
        self,
        *,
        auth_key: str,
        auth_url: str,
        base_url: str,
        scope: str,
        default_model: str,
        timeout_seconds: float,
        max_tokens: int | None = None,
        verify_ssl: bool = True,
        http_client: httpx.AsyncClient | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(
            AiProvider.GIGACHAT,
            api_key="pending",
            base_url=base_url,
            default_model=default_model,
            timeout_seconds=timeout_seconds,
            max_tokens=max_tokens,
            supports_tools=False,
            client=client,
            # chat calls share the token endpoint's trust settings
            http_client=None
            if client is not None
            else httpx.AsyncClient(timeout=timeout_seconds, verify=verify_ssl),
        )
        self._auth_key = auth_key
        self._auth_url = auth_url
        self._scope = scope
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds, verify=verify_ssl)
        self._token: str | None = None
        self._token_expires_at_ms = 0
        self._token_lock = asyncio.Lock()

    async def _access_token(self) -> str:
        async with self._token_lock:
            now_ms = int(time.time() * 1000)
            if self._token is not None and now_ms < self._token_expires_at_ms - _TOKEN_SKEW_MS:
                return self._token

            logger.info("Obtaining new access token from GigaChat")
            try:
                response = await self._http.post(
                    self._auth_url,
                    headers={
                        "Authorization": f"Basic {self._auth_key}",
                        "RqUID": str(uuid.uuid4()),
                        "Accept": "application/json",
                    },
                    data={"scope": self._scope},
                )
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(
                    "Failed to obtain GigaChat access token: %s - %s",
                    e.response.status_code,
                    e.response.text,
                )
                raise BackendError(
                    "GigaChat",
                    f"token request failed: {e.response.status_code}",
                    e.response.status_code,
                ) from e
            except (httpx.HTTPError, ValueError) as e:
                raise BackendError("GigaChat", f"token request failed: {e}") from e

            try:
                self._token = payload["access_token"]
                self._token_expires_at_ms = int(payload["expires_at"])
            except (KeyError, TypeError, ValueError) as e:
                raise BackendError("GigaChat", f"malformed token response: {e}") from e
            return self._token

    async def _client_for_request(self) -> AsyncOpenAI:
        token = await self._access_token()
        return self._client.with_options(api_key=token)

    async def aclose(self) -> None:
        await super().aclose()
        await self._http.aclose()
