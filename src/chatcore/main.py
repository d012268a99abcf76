import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .agent import SessionOrchestrator, create_orchestrator
from .providers import AiProvider
from .services.message_store import RedisMessageStore, create_message_store
from .settings import get_settings


def setup_server_logging() -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("chatcore")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = setup_server_logging()
settings = get_settings()


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    system_prompt: str = Field(default="", alias="systemPrompt")
    temperature: float = 0.7
    provider: str = "gigachat"
    model: str | None = None
    enable_tools: bool = Field(default=True, alias="enableTools")
    use_rag: bool = Field(default=False, alias="useRag")
    session_id: str = Field(default="default", alias="sessionId")


class ClearHistoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str = "gigachat"
    session_id: str = Field(default="default", alias="sessionId")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator (and its message store) at startup; release clients on shutdown."""
    store = await create_message_store()
    orchestrator = create_orchestrator(settings, store)
    app.state.orchestrator = orchestrator
    LOGGER.info(
        "Chat backend ready with providers: %s",
        ", ".join(p.value for p in orchestrator.available_providers()) or "none",
    )

    yield

    LOGGER.info("Shutting down...")
    await orchestrator.aclose()
    if isinstance(store, RedisMessageStore):
        await store.close()


app = FastAPI(
    title="Chat Orchestration Backend",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/api/send-message")
async def send_message(body: SendMessageRequest, request: Request) -> dict[str, Any]:
    """Run one chat turn and return the reply with usage and timing metadata.

    Backend failures are reported in the body with status ERROR, not as HTTP errors.
    """
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Message text cannot be empty")

    LOGGER.info("send-message provider=%s session_id=%s", body.provider, body.session_id)
    result = await _orchestrator(request).handle(
        body.text,
        system_prompt=body.system_prompt,
        temperature=body.temperature,
        provider=body.provider,
        model=body.model,
        tools_enabled=body.enable_tools,
        session_id=body.session_id,
        use_rag=body.use_rag,
    )
    return result.to_dict()


@app.post("/api/clear-history")
async def clear_history(body: ClearHistoryRequest, request: Request) -> dict[str, str]:
    await _orchestrator(request).clear(body.provider, body.session_id)
    return {"message": "History cleared"}


@app.get("/api/history")
async def history(
    request: Request, provider: str = "gigachat", sessionId: str = "default"
) -> list[dict[str, str]]:
    """Persisted messages of a session in display form."""
    if not AiProvider.is_known(provider):
        raise HTTPException(
            status_code=400,
            detail="Invalid provider. Must be 'gigachat', 'openrouter', or 'ollama'",
        )
    records = await _orchestrator(request).history(provider, sessionId)
    return [
        {"text": r.content, "sender": "USER" if r.role == "user" else "BOT"}
        for r in records
    ]


@app.get("/api/providers")
async def providers(request: Request) -> dict[str, Any]:
    available = _orchestrator(request).available_providers()
    return {
        "providers": [{"id": p.value, "name": p.display_name} for p in available],
        "count": len(available),
    }


def run() -> None:
    """Serve the app with uvicorn using HOST / PORT from settings."""
    import uvicorn

    uvicorn.run("chatcore.main:app", host=settings.host, port=settings.port)
