import logging
from typing import List, Sequence

import httpx

logger = logging.getLogger(__name__)


class RagClient:
    """Client for the retrieval service; never raises to the caller."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def search(self, query: str, limit: int = 5) -> List[str] | None:
        """Return passages similar to query, or None when the service is unavailable."""
        logger.info("Searching RAG service for: '%s' (limit: %d)", query[:100], limit)
        try:
            response = await self._http.post(
                f"{self._base_url}/api/rag/search",
                json={"query": query, "limit": limit},
            )
            response.raise_for_status()
            results = response.json().get("results", [])
        except httpx.HTTPStatusError as e:
            logger.error("RAG service returned error: %s", e.response.status_code)
            return None
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error("Failed to call RAG service: %s", e)
            return None

        passages = [str(r) for r in results if r]
        logger.info("RAG service returned %d results", len(passages))
        return passages

    async def aclose(self) -> None:
        await self._http.aclose()


def format_context(user_text: str, passages: Sequence[str]) -> str:
    """Prepend retrieved passages to the user's question."""
    numbered = "\n\n".join(f"{i}. {p.strip()}" for i, p in enumerate(passages, 1))
    return (
        "Use the following context to answer the question if it is relevant.\n\n"
        f"Context:\n{numbered}\n\n"
        f"Question: {user_text}"
    )
