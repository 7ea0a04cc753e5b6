import redis


def create_redis_client(url: str) -> redis.Redis:
    """
    Redis connection for the optional lockout backend.
    """
    return redis.Redis.from_url(
        url,
        decode_responses=True,
    )
