"""Redis-backed nonce repository.

Each record is stored as a JSON document under
``nonce:{namespace}:{scope}:{nonce}``, where ``scope`` is ``u`` for
unassociated nonces and ``o.{owner}`` for owned ones. Every segment is
percent-encoded, so no namespace, owner or token can produce a ``:`` and
reach into another scope. Consumption is recorded under the parallel
``nonce-consumed:`` keyspace with ``SET NX``, so at most one caller can ever
mark a given nonce consumed. Keys carry no TTL.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import redis

from nonce_utility.core.errors import DuplicateNonceError, NonceStorageError
from nonce_utility.core.settings import settings
from nonce_utility.models.nonce import Nonce, NonceOwner, owner_key

__all__ = ["RedisNonceRepository"]

logger = logging.getLogger(__name__)

_ID_SEQUENCE_KEY = "nonce:id"
_UNASSOCIATED_SCOPE = "u"
_OWNER_SCOPE = "o."


def _dump_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _segment(value: str) -> str:
    return quote(value, safe="")


def _decode(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    return json.loads(raw)


class RedisNonceRepository:
    """Nonce storage on a single Redis instance."""

    def __init__(self, client: Any, *, prefix: str = "nonce") -> None:
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str | None = None, **kwargs: Any) -> RedisNonceRepository:
        """Build a repository connected to ``url`` (defaults to ``NONCE_REDIS_URL``)."""
        client = redis.from_url(url or settings.redis_url, decode_responses=True)
        return cls(client, **kwargs)

    def _scoped(self, owner: str | None, nonce: str, namespace: str) -> str:
        scope = _UNASSOCIATED_SCOPE if owner is None else _OWNER_SCOPE + _segment(owner)
        return f"{_segment(namespace)}:{scope}:{_segment(nonce)}"

    def _key(self, owner: str | None, nonce: str, namespace: str) -> str:
        return f"{self._prefix}:{self._scoped(owner, nonce, namespace)}"

    def _consumed_key(self, owner: str | None, nonce: str, namespace: str) -> str:
        return f"{self._prefix}-consumed:{self._scoped(owner, nonce, namespace)}"

    def _record_key(self, record: Nonce) -> str:
        return self._key(record.owner_id, record.nonce, record.namespace)

    def has(self, owner: NonceOwner | None, nonce: str, namespace: str) -> bool:
        """Return True if a record exists for the scope."""
        key = self._key(owner_key(owner), nonce, namespace)
        try:
            return bool(self._redis.exists(key))
        except redis.RedisError as err:
            raise NonceStorageError(nonce=nonce, namespace=namespace) from err

    def get(self, owner: NonceOwner | None, nonce: str, namespace: str) -> Nonce | None:
        """Return the record for the scope, if any."""
        owner_id = owner_key(owner)
        key = self._key(owner_id, nonce, namespace)
        consumed_key = self._consumed_key(owner_id, nonce, namespace)
        try:
            raw_record, raw_consumed = self._redis.mget(key, consumed_key)
        except redis.RedisError as err:
            raise NonceStorageError(nonce=nonce, namespace=namespace) from err

        data = _decode(raw_record)
        if data is None:
            return None
        record = Nonce(
            id=data["id"],
            owner_id=data["owner_id"],
            nonce=data["nonce"],
            namespace=data["namespace"],
            created_at=_load_time(data["created_at"]),
            expires_at=_load_time(data.get("expires_at")),
        )
        consumption = _decode(raw_consumed)
        if consumption is not None:
            record.consumed_at = _load_time(consumption["consumed_at"])
            record.http_user_agent = consumption.get("http_user_agent")
            record.ip_address = consumption.get("ip_address")
        return record

    def has_unassociated(self, nonce: str, namespace: str) -> bool:
        """Return True if an unassociated record exists for the scope."""
        return self.has(None, nonce, namespace)

    def get_unassociated(self, nonce: str, namespace: str) -> Nonce | None:
        """Return the unassociated record for the scope, if any."""
        return self.get(None, nonce, namespace)

    def add(self, record: Nonce) -> Nonce:
        """Store a new record, refusing to overwrite an existing one."""
        key = self._record_key(record)
        try:
            record_id = int(self._redis.incr(_ID_SEQUENCE_KEY))
            payload = json.dumps(
                {
                    "id": record_id,
                    "owner_id": record.owner_id,
                    "nonce": record.nonce,
                    "namespace": record.namespace,
                    "created_at": _dump_time(record.created_at),
                    "expires_at": _dump_time(record.expires_at),
                }
            )
            created = self._redis.set(key, payload, nx=True)
        except redis.RedisError as err:
            logger.error("Failed to persist nonce in namespace %s", record.namespace)
            raise NonceStorageError(nonce=record.nonce, namespace=record.namespace) from err
        if not created:
            raise DuplicateNonceError(nonce=record.nonce, namespace=record.namespace)
        record.id = record_id
        return record

    def mark_consumed(
        self,
        record: Nonce,
        consumed_at: datetime,
        http_user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Record the consumption unless one is already stored."""
        payload = json.dumps(
            {
                "consumed_at": _dump_time(consumed_at),
                "http_user_agent": http_user_agent,
                "ip_address": ip_address,
            }
        )
        key = self._consumed_key(record.owner_id, record.nonce, record.namespace)
        try:
            changed = self._redis.set(key, payload, nx=True)
        except redis.RedisError as err:
            logger.error("Failed to mark nonce %s consumed", record.id)
            raise NonceStorageError(nonce=record.nonce, namespace=record.namespace) from err
        if not changed:
            return False
        record.consumed_at = consumed_at
        record.http_user_agent = http_user_agent
        record.ip_address = ip_address
        return True
