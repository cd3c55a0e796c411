from redis import Redis

from calendar_connector.core.config import settings


def get_redis_client() -> Redis:
    return Redis.from_url(
        settings.cache_redis_url,
        decode_responses=True,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )
