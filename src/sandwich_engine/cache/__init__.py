"""Cache package for Redis integration."""
from .redis_client import close_redis, get_redis, health_check

__all__ = [
    "get_redis",
    "close_redis",
    "health_check",
]
