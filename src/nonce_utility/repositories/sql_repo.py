"""SQLAlchemy-backed nonce repository."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from nonce_utility.core.errors import DuplicateNonceError, NonceStorageError
from nonce_utility.models.nonce import Nonce, NonceOwner, owner_key

__all__ = ["SqlNonceRepository"]

logger = logging.getLogger(__name__)


class SqlNonceRepository:
    """Thin wrapper around database access for nonce records."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a SQLAlchemy session."""
        self.session = session

    @staticmethod
    def _scope(owner: NonceOwner | None, nonce: str, namespace: str):
        key = owner_key(owner)
        owner_clause = Nonce.owner_id.is_(None) if key is None else Nonce.owner_id == key
        return (owner_clause, Nonce.nonce == nonce, Nonce.namespace == namespace)

    def has(self, owner: NonceOwner | None, nonce: str, namespace: str) -> bool:
        """Return True if a record exists for the scope."""
        stmt = select(Nonce.id).where(*self._scope(owner, nonce, namespace)).limit(1)
        try:
            return self.session.execute(stmt).first() is not None
        except SQLAlchemyError as err:
            raise NonceStorageError(nonce=nonce, namespace=namespace) from err

    def get(self, owner: NonceOwner | None, nonce: str, namespace: str) -> Nonce | None:
        """Return the record for the scope, if any."""
        stmt = select(Nonce).where(*self._scope(owner, nonce, namespace))
        try:
            return self.session.execute(stmt).scalars().first()
        except SQLAlchemyError as err:
            raise NonceStorageError(nonce=nonce, namespace=namespace) from err

    def has_unassociated(self, nonce: str, namespace: str) -> bool:
        """Return True if an unassociated record exists for the scope."""
        return self.has(None, nonce, namespace)

    def get_unassociated(self, nonce: str, namespace: str) -> Nonce | None:
        """Return the unassociated record for the scope, if any."""
        return self.get(None, nonce, namespace)

    def add(self, record: Nonce) -> Nonce:
        """Insert a new record and return the persisted ORM instance."""
        nonce, namespace = record.nonce, record.namespace
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as err:
            self.session.rollback()
            raise DuplicateNonceError(nonce=nonce, namespace=namespace) from err
        except SQLAlchemyError as err:
            self.session.rollback()
            logger.error("Failed to persist nonce in namespace %s", namespace)
            raise NonceStorageError(nonce=nonce, namespace=namespace) from err
        return record

    def mark_consumed(
        self,
        record: Nonce,
        consumed_at: datetime,
        http_user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Set ``consumed_at`` only if the stored row is still unconsumed."""
        record_id, nonce, namespace = record.id, record.nonce, record.namespace
        stmt = (
            update(Nonce)
            .where(Nonce.id == record_id, Nonce.consumed_at.is_(None))
            .values(
                consumed_at=consumed_at,
                http_user_agent=http_user_agent,
                ip_address=ip_address,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            if result.rowcount != 1:
                self.session.rollback()
                return False
            self.session.commit()
        except SQLAlchemyError as err:
            self.session.rollback()
            logger.error("Failed to mark nonce %s consumed", record_id)
            raise NonceStorageError(nonce=nonce, namespace=namespace) from err

        # The row changed underneath the ORM; mirror it without flagging the instance dirty.
        set_committed_value(record, "consumed_at", consumed_at)
        set_committed_value(record, "http_user_agent", http_user_agent)
        set_committed_value(record, "ip_address", ip_address)
        return True
