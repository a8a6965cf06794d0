from app.utils.redis_client import get_redis_client, redis_key

__all__ = [
    "get_redis_client",
    "redis_key",
]
