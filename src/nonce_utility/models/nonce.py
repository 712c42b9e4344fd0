"""Persisted single-use nonce records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import BigInteger, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from nonce_utility.db.session import Base
from nonce_utility.db.time import UTCDateTime, as_utc

DEFAULT_NAMESPACE = "default"


@runtime_checkable
class NonceOwner(Protocol):
    """Principal that nonces can be issued to."""

    @property
    def id(self) -> Any: ...


def owner_key(owner: NonceOwner | None) -> str | None:
    """Return the storage key for an owner, or ``None`` for unassociated nonces."""
    if owner is None:
        return None
    identity = owner.id
    if identity is None:
        raise ValueError("Nonce owner has no identity")
    if isinstance(identity, bytes):
        return identity.hex()
    return str(identity)


class Nonce(Base):
    """A single-use token scoped to an optional owner and a namespace."""

    __tablename__ = "nonce"
    __table_args__ = (
        # NULL owners never conflict in a plain composite unique constraint,
        # so the owned and unassociated scopes get one partial index each.
        Index(
            "uq_nonce_owner_scope",
            "owner_id",
            "nonce",
            "namespace",
            unique=True,
            sqlite_where=text("owner_id IS NOT NULL"),
            postgresql_where=text("owner_id IS NOT NULL"),
        ),
        Index(
            "uq_nonce_unassociated_scope",
            "nonce",
            "namespace",
            unique=True,
            sqlite_where=text("owner_id IS NULL"),
            postgresql_where=text("owner_id IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    owner_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    nonce: Mapped[str] = mapped_column(Text, nullable=False)
    namespace: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default=DEFAULT_NAMESPACE,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    http_user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    @property
    def is_associated(self) -> bool:
        """Return True if the nonce belongs to an owner."""
        return self.owner_id is not None

    @property
    def is_consumed(self) -> bool:
        """Return True once the nonce has been used."""
        return self.consumed_at is not None

    def is_expired(self, now: datetime) -> bool:
        """Return True if the nonce expired strictly before ``now``."""
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) < as_utc(now)

    def __repr__(self) -> str:
        return (
            f"Nonce(id={self.id!r}, owner_id={self.owner_id!r}, "
            f"namespace={self.namespace!r}, consumed={self.is_consumed})"
        )
