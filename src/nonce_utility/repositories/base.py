"""Contract between the nonce service and its storage backend."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from nonce_utility.models.nonce import Nonce, NonceOwner

__all__ = ["NonceRepository"]


class NonceRepository(Protocol):
    """Point lookups and atomic writes over nonce records.

    ``owner=None`` addresses unassociated nonces, which are scoped by
    ``(nonce, namespace)`` only. Implementations translate backend failures
    into :class:`~nonce_utility.core.errors.NonceStorageError`.
    """

    def has(self, owner: NonceOwner | None, nonce: str, namespace: str) -> bool:
        """Return True if a record exists for the scope."""
        ...

    def get(self, owner: NonceOwner | None, nonce: str, namespace: str) -> Nonce | None:
        """Return the record for the scope, if any."""
        ...

    def add(self, record: Nonce) -> Nonce:
        """Persist a new record and assign its ``id``.

        Raises:
            DuplicateNonceError: If the nonce already exists in its scope
        """
        ...

    def mark_consumed(
        self,
        record: Nonce,
        consumed_at: datetime,
        http_user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Mark the record consumed if, and only if, it is still unconsumed.

        Returns False without touching ``record`` when another caller got
        there first.
        """
        ...
