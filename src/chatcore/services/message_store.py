import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import ConversationMessage, Role
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "history:"


@dataclass(frozen=True)
class MessageRecord:
    role: str
    content: str
    is_summary: bool = False

    def to_message(self) -> ConversationMessage:
        try:
            role = Role(self.role)
        except ValueError:
            role = Role.USER
        return ConversationMessage(role=role, content=self.content)


def _record_to_json(record: MessageRecord) -> str:
    return json.dumps(
        {"role": record.role, "content": record.content, "is_summary": record.is_summary},
        ensure_ascii=False,
    )


def _json_to_record(raw: str) -> MessageRecord:
    data: Dict[str, Any] = json.loads(raw)
    return MessageRecord(
        role=str(data["role"]),
        content=str(data.get("content", "")),
        is_summary=bool(data.get("is_summary", False)),
    )


class MessageStore(Protocol):
    """Persistent record of the user-visible conversation, keyed by session."""

    async def append(self, session_id: str, role: str, content: str) -> bool:
        ...

    async def load_records(self, session_id: str) -> List[MessageRecord]:
        ...

    async def clear(self, session_id: str) -> bool:
        ...

    async def replace_with_summary(self, session_id: str, content: str, role: str) -> bool:
        ...


async def load_history(store: MessageStore, session_id: str) -> List[ConversationMessage]:
    return [record.to_message() for record in await store.load_records(session_id)]


class InMemoryMessageStore:
    """Process-local store, used when Redis is not configured."""

    def __init__(self) -> None:
        self._records: Dict[str, List[MessageRecord]] = {}

    async def append(self, session_id: str, role: str, content: str) -> bool:
        self._records.setdefault(session_id, []).append(MessageRecord(role, content))
        return True

    async def load_records(self, session_id: str) -> List[MessageRecord]:
        return list(self._records.get(session_id, []))

    async def clear(self, session_id: str) -> bool:
        self._records.pop(session_id, None)
        return True

    async def replace_with_summary(self, session_id: str, content: str, role: str) -> bool:
        self._records[session_id] = [MessageRecord(role, content, is_summary=True)]
        return True


class RedisMessageStore:
    """Stores each session as a Redis list of JSON records with a TTL."""

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{HISTORY_KEY_PREFIX}{session_id}"

    async def append(self, session_id: str, role: str, content: str) -> bool:
        payload = _record_to_json(MessageRecord(role, content))
        return await self._redis.append(self._key(session_id), payload, ttl_seconds=self._ttl)

    async def load_records(self, session_id: str) -> List[MessageRecord]:
        records: List[MessageRecord] = []
        for raw in await self._redis.get_list(self._key(session_id)):
            try:
                records.append(_json_to_record(raw))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning("Invalid history record for %s: %s", session_id, e)
        return records

    async def clear(self, session_id: str) -> bool:
        return await self._redis.delete(self._key(session_id))

    async def replace_with_summary(self, session_id: str, content: str, role: str) -> bool:
        payload = _record_to_json(MessageRecord(role, content, is_summary=True))
        return await self._redis.replace_list(
            self._key(session_id), [payload], ttl_seconds=self._ttl
        )

    async def close(self) -> None:
        await self._redis.close()


async def create_message_store() -> MessageStore:
    """Use Redis when it is configured and reachable, else an in-memory store."""
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        logger.info("REDIS_URL not set; conversation history kept in memory")
        return InMemoryMessageStore()
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Message store unavailable (Redis), falling back to memory: %s", e)
        return InMemoryMessageStore()
    return RedisMessageStore(redis_crud, ttl_seconds=get_settings().context_ttl_seconds)
