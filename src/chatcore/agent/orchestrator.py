import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Dict, List, Sequence, Tuple

from ..errors import BackendError, EnrichmentError
from ..models import (
    ChatResult,
    ConversationMessage,
    Err,
    ErrorKind,
    Ok,
    ResponseStatus,
    Result,
    Role,
    SessionState,
    TokenUsage,
)
from ..providers import AiBackend, AiProvider, build_backends
from ..services.message_store import MessageRecord, MessageStore, load_history
from ..services.rag import RagClient, format_context
from ..settings import Settings
from .compaction import CompactionEngine
from .coordinator import ToolCallingCoordinator
from .tools import build_tool_registry

logger = logging.getLogger(__name__)

SessionKey = Tuple[str, str]
DEFAULT_SESSION_ID = "default"


class SessionStore:
    """Keyed session states, each guarded by its own lock.

    Holding a key's lock for a whole turn serializes turns of one conversation
    while other conversations proceed in parallel. A lock lives only while some
    task holds or waits for it, so idle session ids do not accumulate locks.
    """

    def __init__(self) -> None:
        self._sessions: Dict[SessionKey, SessionState] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}
        self._lock_users: Dict[SessionKey, int] = {}

    @asynccontextmanager
    async def locked(self, key: SessionKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def get(self, key: SessionKey) -> SessionState | None:
        return self._sessions.get(key)

    def put(self, key: SessionKey, state: SessionState) -> None:
        self._sessions[key] = state

    def remove(self, key: SessionKey) -> None:
        self._sessions.pop(key, None)

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass(frozen=True)
class _TurnOutput:
    text: str
    messages: Sequence[ConversationMessage]
    usage_total: TokenUsage | None
    usage_last: TokenUsage | None
    generate_calls: int


class SessionOrchestrator:
    """Single entry point for chat turns across all providers and sessions."""

    def __init__(
        self,
        backends: Dict[AiProvider, AiBackend],
        store: MessageStore,
        compaction: CompactionEngine | None = None,
        coordinator: ToolCallingCoordinator | None = None,
        rag: RagClient | None = None,
        rag_limit: int = 5,
        rag_timeout_seconds: float = 10.0,
        default_system_prompt: str = "",
    ) -> None:
        self._backends = dict(backends)
        self._store = store
        self._compaction = compaction or CompactionEngine()
        self._coordinator = coordinator
        self._rag = rag
        self._rag_limit = rag_limit
        self._rag_timeout = rag_timeout_seconds
        self._default_system_prompt = default_system_prompt
        self._sessions = SessionStore()

    @property
    def store(self) -> MessageStore:
        return self._store

    def available_providers(self) -> List[AiProvider]:
        return list(self._backends)

    def session(
        self, provider: AiProvider | str, session_id: str = DEFAULT_SESSION_ID
    ) -> SessionState | None:
        """Current in-memory state of a session, if it has been created."""
        return self._sessions.get(self._key(provider, session_id))

    @staticmethod
    def _key(provider: AiProvider | str, session_id: str) -> SessionKey:
        if not isinstance(provider, AiProvider):
            provider = AiProvider.from_string(provider)
        return (provider.value, session_id or DEFAULT_SESSION_ID)

    @staticmethod
    def _store_key(key: SessionKey) -> str:
        return f"{key[0]}:{key[1]}"

    async def handle(
        self,
        user_text: str,
        system_prompt: str = "",
        temperature: float = 0.7,
        provider: AiProvider | str = AiProvider.GIGACHAT,
        model: str | None = None,
        tools_enabled: bool = True,
        session_id: str = DEFAULT_SESSION_ID,
        use_rag: bool = False,
    ) -> ChatResult:
        """Process one user turn; failures are returned as status=ERROR, never raised."""
        started = time.monotonic()
        if not isinstance(provider, AiProvider):
            provider = AiProvider.from_string(provider)

        backend = self._backends.get(provider)
        if backend is None:
            logger.error("Provider %s is not configured", provider.display_name)
            return ChatResult(
                text=f"Provider {provider.display_name} is not configured",
                status=ResponseStatus.ERROR,
            )

        key = self._key(provider, session_id)
        async with self._sessions.locked(key):
            try:
                return await self._run_turn(
                    key,
                    backend,
                    user_text,
                    system_prompt or self._default_system_prompt,
                    temperature,
                    model,
                    tools_enabled,
                    use_rag,
                    started,
                )
            except BackendError as e:
                logger.error("%s turn failed: %s", provider.display_name, e)
                message = f"Error getting response: {e}"
            except Exception as e:
                logger.exception("Unexpected error processing %s message", provider.display_name)
                message = f"Error getting response: {e}"

        state = self._sessions.get(key)
        return ChatResult(
            text=message,
            status=ResponseStatus.ERROR,
            token_usage_cumulative=state.usage_total if state else None,
            elapsed_ms=_elapsed_ms(started),
        )

    async def _run_turn(
        self,
        key: SessionKey,
        backend: AiBackend,
        user_text: str,
        system_prompt: str,
        temperature: float,
        model: str | None,
        tools_enabled: bool,
        use_rag: bool,
        started: float,
    ) -> ChatResult:
        name = backend.provider.display_name
        logger.info("Processing %s message: %s", name, user_text[:200])
        state = await self._session_for(key)

        if model and backend.provider.tracks_model:
            if state.model is not None and state.model != model:
                logger.info(
                    "%s model changed from %s to %s; resetting session %s",
                    name,
                    state.model,
                    model,
                    key[1],
                )
                state.reset()
                await self._persist(self._store.clear(self._store_key(key)), "clear history")
            state.model = model
        effective_model = model or state.model

        text = user_text
        if use_rag:
            enriched = await self._enrich(user_text)
            if isinstance(enriched, Ok):
                text = enriched.value
            else:
                logger.info("Continuing without retrieved context: %s", enriched.message)

        if (
            backend.compaction_enabled
            and len(state.history) > 0
            and self._compaction.should_compact(state.message_count + 1)
        ):
            await self._compact(key, state, backend, effective_model)

        user_message = ConversationMessage.user(text)
        if tools_enabled and backend.supports_tools and self._coordinator is not None:
            output = await self._with_tools(
                self._coordinator,
                backend,
                state,
                user_message,
                system_prompt,
                temperature,
                effective_model,
            )
        else:
            output = await self._direct(
                backend, state, user_message, system_prompt, temperature, effective_model
            )

        state.history.extend(list(output.messages))
        state.add_usage(output.usage_total)
        logger.info(
            "%s session %s: history size %d, message count %d",
            name,
            key[1],
            len(state.history),
            state.message_count,
        )

        store_key = self._store_key(key)
        await self._persist(
            self._store.append(store_key, Role.USER.value, user_text), "save user message"
        )
        await self._persist(
            self._store.append(store_key, Role.ASSISTANT.value, output.text),
            "save assistant message",
        )

        return ChatResult(
            text=output.text,
            status=ResponseStatus.SUCCESS,
            token_usage_cumulative=state.usage_total,
            token_usage_last=output.usage_last,
            elapsed_ms=_elapsed_ms(started),
            model=effective_model or backend.default_model,
            iterations=output.generate_calls,
        )

    async def _direct(
        self,
        backend: AiBackend,
        state: SessionState,
        user_message: ConversationMessage,
        system_prompt: str,
        temperature: float,
        model: str | None,
    ) -> _TurnOutput:
        history = list(state.history.snapshot()) + [user_message]
        result = await backend.generate(
            history, system_prompt=system_prompt, temperature=temperature, model=model
        )
        return _TurnOutput(
            text=result.text,
            messages=[user_message, ConversationMessage.assistant(result.text)],
            usage_total=result.usage,
            usage_last=result.usage,
            generate_calls=1,
        )

    async def _with_tools(
        self,
        coordinator: ToolCallingCoordinator,
        backend: AiBackend,
        state: SessionState,
        user_message: ConversationMessage,
        system_prompt: str,
        temperature: float,
        model: str | None,
    ) -> _TurnOutput:
        outcome = await coordinator.run(
            backend,
            state.history.snapshot(),
            user_message,
            system_prompt=system_prompt,
            temperature=temperature,
            model=model,
        )
        return _TurnOutput(
            text=outcome.text,
            messages=outcome.messages,
            usage_total=outcome.usage_total,
            usage_last=outcome.usage_last,
            generate_calls=outcome.generate_calls,
        )

    async def _session_for(self, key: SessionKey) -> SessionState:
        state = self._sessions.get(key)
        if state is not None:
            return state

        state = SessionState(provider=key[0], session_id=key[1])
        for message in await load_history(self._store, self._store_key(key)):
            state.history.add(message)
        if len(state.history):
            logger.info("Loaded %d messages from store for session %s", len(state.history), key)
        self._sessions.put(key, state)
        return state

    async def _compact(
        self,
        key: SessionKey,
        state: SessionState,
        backend: AiBackend,
        model: str | None,
    ) -> None:
        name = backend.provider.display_name
        logger.info(
            "%s message threshold reached (%d messages). Triggering summarization...",
            name,
            state.message_count + 1,
        )
        outcome = await self._compaction.summarize(state.history.snapshot(), backend, model)
        if isinstance(outcome, Err):
            logger.error(
                "%s summarization failed, continuing with full history: %s", name, outcome.message
            )
            return

        summary = outcome.value
        state.history.replace_with_summary(summary)
        logger.info(
            "Successfully summarized %s history. New history size: %d", name, len(state.history)
        )
        await self._persist(
            self._store.replace_with_summary(
                self._store_key(key), summary.content, summary.role.value
            ),
            "update store with summary",
        )

    async def _enrich(self, user_text: str) -> Result[str]:
        try:
            passages = await self._retrieve(user_text)
        except EnrichmentError as e:
            return Err(ErrorKind.ENRICHMENT, str(e))
        return Ok(format_context(user_text, passages))

    async def _retrieve(self, user_text: str) -> List[str]:
        if self._rag is None:
            raise EnrichmentError("RAG service is not configured")
        try:
            passages = await asyncio.wait_for(
                self._rag.search(user_text, self._rag_limit), timeout=self._rag_timeout
            )
        except asyncio.TimeoutError as e:
            raise EnrichmentError(f"RAG search timed out after {self._rag_timeout}s") from e
        if not passages:
            raise EnrichmentError("no context found")
        return passages

    @staticmethod
    async def _persist(operation: Awaitable[bool], description: str) -> None:
        if not await operation:
            logger.error("Failed to %s in message store", description)

    async def clear(self, provider: AiProvider | str, session_id: str = DEFAULT_SESSION_ID) -> None:
        """Forget a session in memory and in the persistent store."""
        key = self._key(provider, session_id)
        async with self._sessions.locked(key):
            logger.info("Clearing %s message history for session %s", key[0], key[1])
            self._sessions.remove(key)
            await self._persist(self._store.clear(self._store_key(key)), "clear history")

    async def history(
        self, provider: AiProvider | str, session_id: str = DEFAULT_SESSION_ID
    ) -> List[MessageRecord]:
        return await self._store.load_records(self._store_key(self._key(provider, session_id)))

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()
        if self._rag is not None:
            await self._rag.aclose()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def create_orchestrator(settings: Settings, store: MessageStore) -> SessionOrchestrator:
    """Wire backends, tools, compaction and retrieval from settings."""
    registry = build_tool_registry(settings.mcp_servers, settings.tool_timeout_seconds)
    rag = (
        RagClient(settings.rag_url, timeout_seconds=settings.rag_timeout_seconds)
        if settings.rag_url
        else None
    )
    return SessionOrchestrator(
        backends=build_backends(settings),
        store=store,
        compaction=CompactionEngine(
            threshold=settings.compaction_threshold,
            temperature=settings.summary_temperature,
        ),
        coordinator=ToolCallingCoordinator(registry, max_iterations=settings.max_tool_iterations),
        rag=rag,
        rag_limit=settings.rag_limit,
        rag_timeout_seconds=settings.rag_timeout_seconds,
        default_system_prompt=settings.default_system_prompt,
    )
