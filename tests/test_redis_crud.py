from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatcore.services.redis import RedisCrudService, get_redis_crud_service


@pytest.fixture
def mock_pipeline() -> MagicMock:
    """Mock transactional pipeline; commands are queued synchronously."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1, True])
    return pipe


@pytest.fixture
def mock_redis(mock_pipeline: MagicMock) -> MagicMock:
    """Mock Redis client with async methods."""
    m = MagicMock()
    m.delete = AsyncMock(return_value=1)
    m.rpush = AsyncMock(return_value=1)
    m.expire = AsyncMock(return_value=True)
    m.lrange = AsyncMock(return_value=[])
    m.ping = AsyncMock(return_value=True)
    m.aclose = AsyncMock(return_value=None)
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=mock_pipeline)
    cm.__aexit__ = AsyncMock(return_value=False)
    m.pipeline = MagicMock(return_value=cm)
    return m


@pytest.fixture
def svc(mock_redis: MagicMock) -> RedisCrudService:
    service = RedisCrudService("redis://localhost:6379/0")
    service._client = mock_redis
    return service


@pytest.mark.asyncio
async def test_connect_pings_and_is_idempotent(mock_redis: MagicMock) -> None:
    with patch("chatcore.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        service = RedisCrudService("redis://localhost:6379/0")
        await service.connect()
        await service.connect()
        assert service.client is mock_redis
        redis_cls.from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
        mock_redis.ping.assert_awaited_once()


@pytest.mark.asyncio
async def test_connect_failure_resets_client(mock_redis: MagicMock) -> None:
    mock_redis.ping.side_effect = RedisConnectionError("refused")
    with patch("chatcore.services.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = mock_redis
        service = RedisCrudService("redis://localhost:6379/0")
        with pytest.raises(RedisConnectionError):
            await service.connect()
        assert service.client is None
        mock_redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_append_pushes_and_refreshes_ttl(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """append with ttl_seconds calls rpush() then expire()."""
    ok = await svc.append("history:s1", '{"role": "user"}', ttl_seconds=60)
    assert ok is True
    mock_redis.rpush.assert_called_once_with("history:s1", '{"role": "user"}')
    mock_redis.expire.assert_called_once_with("history:s1", 60)


@pytest.mark.asyncio
async def test_append_without_ttl(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    ok = await svc.append("k", "v")
    assert ok is True
    mock_redis.expire.assert_not_called()


@pytest.mark.asyncio
async def test_append_connection_error_returns_false(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    mock_redis.rpush.side_effect = RedisConnectionError("gone")
    assert await svc.append("k", "v", ttl_seconds=60) is False


@pytest.mark.asyncio
async def test_get_list(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """get_list returns the whole list."""
    mock_redis.lrange.return_value = ["a", "b"]
    assert await svc.get_list("k") == ["a", "b"]
    mock_redis.lrange.assert_called_once_with("k", 0, -1)


@pytest.mark.asyncio
async def test_replace_list_runs_in_transaction(
    svc: RedisCrudService, mock_redis: MagicMock, mock_pipeline: MagicMock
) -> None:
    ok = await svc.replace_list("history:s1", ["summary"], ttl_seconds=120)
    assert ok is True
    mock_redis.pipeline.assert_called_once_with(transaction=True)
    mock_pipeline.delete.assert_called_once_with("history:s1")
    mock_pipeline.rpush.assert_called_once_with("history:s1", "summary")
    mock_pipeline.expire.assert_called_once_with("history:s1", 120)
    mock_pipeline.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_replace_list_with_no_values_only_deletes(
    svc: RedisCrudService, mock_pipeline: MagicMock
) -> None:
    assert await svc.replace_list("k", []) is True
    mock_pipeline.delete.assert_called_once_with("k")
    mock_pipeline.rpush.assert_not_called()


@pytest.mark.asyncio
async def test_delete(svc: RedisCrudService, mock_redis: MagicMock) -> None:
    """delete calls Redis delete."""
    ok = await svc.delete("key")
    assert ok is True
    mock_redis.delete.assert_called_once_with("key")


@pytest.mark.asyncio
async def test_operations_when_not_connected() -> None:
    """Every operation is a no-op failure when client is None."""
    service = RedisCrudService("redis://localhost:6379/0")
    assert service.client is None
    assert await service.append("k", "v") is False
    assert await service.get_list("k") == []
    assert await service.replace_list("k", ["v"]) is False
    assert await service.delete("k") is False


def test_get_redis_crud_service_returns_none_when_no_url() -> None:
    """get_redis_crud_service returns None when redis_url is not set."""
    with patch("chatcore.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url=None)
        assert get_redis_crud_service() is None
        get_settings.return_value = MagicMock(redis_url="  ")
        assert get_redis_crud_service() is None


def test_get_redis_crud_service_returns_instance_when_url_set() -> None:
    """get_redis_crud_service returns RedisCrudService when redis_url is set."""
    with patch("chatcore.services.redis.get_settings") as get_settings:
        get_settings.return_value = MagicMock(redis_url="redis://localhost:6379/0")
        svc = get_redis_crud_service()
        assert isinstance(svc, RedisCrudService)
