import redis
from .config import settings

def get_redis(url: str = "") -> redis.Redis:
    return redis.Redis.from_url(url or settings.redis_url, decode_responses=True)
