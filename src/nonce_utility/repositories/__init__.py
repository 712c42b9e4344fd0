"""Storage backends for nonce records."""

from .base import NonceRepository
from .redis_repo import RedisNonceRepository
from .sql_repo import SqlNonceRepository

__all__ = ["NonceRepository", "RedisNonceRepository", "SqlNonceRepository"]
