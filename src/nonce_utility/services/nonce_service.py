"""Issue and consume single-use nonces.

Issuance draws candidates from a :class:`TokenGenerator` until one is free in
the requested scope, then persists it. Consumption validates the stored
record and marks it consumed through the repository's conditional update, so
a nonce can be successfully consumed at most once even under concurrent
callers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from nonce_utility.core.errors import (
    DuplicateNonceError,
    NonceAlreadyConsumedError,
    NonceExpiredError,
    NonceGenerationExhaustedError,
    NonceNotFoundError,
)
from nonce_utility.core.settings import settings
from nonce_utility.core.tokens import TokenGenerator
from nonce_utility.db.time import utcnow
from nonce_utility.models.nonce import Nonce, NonceOwner, owner_key
from nonce_utility.repositories.base import NonceRepository
from nonce_utility.services.request_context import RequestContext

__all__ = ["NonceService"]

logger = logging.getLogger(__name__)

USER_AGENT_HEADER = "User-Agent"


class NonceService:
    """Lifecycle of owner-scoped and unassociated nonces."""

    def __init__(
        self,
        repository: NonceRepository,
        generator: TokenGenerator | None = None,
        *,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the service.

        Args:
            repository: Storage backend for nonce records
            generator: Token source (a cryptographically random one by default)
            max_attempts: Cap on generation attempts per issuance
                (``NONCE_MAX_GENERATION_ATTEMPTS`` by default)
            clock: Returns the current aware UTC time
        """
        self.repository = repository
        self.generator = generator or TokenGenerator()
        if max_attempts is None:
            max_attempts = settings.max_generation_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.clock = clock

    # --- Issuance -------------------------------------------------------------------
    def create(
        self,
        owner: NonceOwner,
        namespace: str | None = None,
        expires_in: timedelta | None = None,
        length: int | None = None,
    ) -> Nonce:
        """Issue a nonce bound to ``owner`` in ``namespace``.

        Args:
            owner: Principal the nonce belongs to
            namespace: Partition the nonce is unique within
                (``NONCE_DEFAULT_NAMESPACE`` by default)
            expires_in: Validity window; ``None`` means it never expires
            length: Number of characters in the token
                (``NONCE_DEFAULT_LENGTH`` by default)

        Returns:
            The persisted record

        Raises:
            NonceGenerationExhaustedError: If no free token was found in time
            NonceStorageError: If the repository fails
        """
        if owner is None:
            raise ValueError("Owner is required; use create_unassociated() instead")
        return self._issue(owner, namespace, expires_in, length)

    def create_unassociated(
        self,
        namespace: str | None = None,
        expires_in: timedelta | None = None,
        length: int | None = None,
    ) -> Nonce:
        """Issue a nonce that belongs to no owner."""
        return self._issue(None, namespace, expires_in, length)

    def _issue(
        self,
        owner: NonceOwner | None,
        namespace: str | None,
        expires_in: timedelta | None,
        length: int | None,
    ) -> Nonce:
        namespace = settings.default_namespace if namespace is None else namespace
        length = settings.default_length if length is None else length
        if expires_in is not None and expires_in < timedelta(0):
            raise ValueError("Expiry interval must not be negative")

        for attempt in range(1, self.max_attempts + 1):
            candidate = self.generator.generate(length)
            if self.repository.has(owner, candidate, namespace):
                logger.debug("Nonce collision in namespace %s (attempt %d)", namespace, attempt)
                continue

            now = self.clock()
            record = Nonce(
                owner_id=owner_key(owner),
                nonce=candidate,
                namespace=namespace,
                created_at=now,
                expires_at=now + expires_in if expires_in is not None else None,
            )
            try:
                self.repository.add(record)
            except DuplicateNonceError:
                # Another writer took the token between the check and the insert.
                logger.debug("Nonce insert collided in namespace %s (attempt %d)", namespace, attempt)
                continue

            logger.debug(
                "Issued %s nonce in namespace %s",
                "owned" if record.is_associated else "unassociated",
                namespace,
            )
            return record

        logger.warning(
            "Gave up generating a nonce in namespace %s after %d attempts",
            namespace,
            self.max_attempts,
        )
        raise NonceGenerationExhaustedError(attempts=self.max_attempts, namespace=namespace)

    # --- Consumption ----------------------------------------------------------------
    def consume(
        self,
        owner: NonceOwner,
        nonce: str,
        namespace: str | None = None,
        request: RequestContext | None = None,
    ) -> Nonce:
        """Consume a nonce issued to ``owner``.

        Args:
            owner: Principal the nonce was issued to
            nonce: Token presented by the caller
            namespace: Partition the token was issued in
            request: Request metadata to store alongside the consumption

        Returns:
            The record, now carrying ``consumed_at``

        Raises:
            NonceNotFoundError: If no such nonce exists
            NonceAlreadyConsumedError: If it was already used
            NonceExpiredError: If its validity window has passed
            NonceStorageError: If the repository fails
        """
        if owner is None:
            raise ValueError("Owner is required; use consume_unassociated() instead")
        return self._consume(owner, nonce, namespace, request)

    def consume_unassociated(
        self,
        nonce: str,
        namespace: str | None = None,
        request: RequestContext | None = None,
    ) -> Nonce:
        """Consume a nonce that belongs to no owner."""
        return self._consume(None, nonce, namespace, request)

    def _consume(
        self,
        owner: NonceOwner | None,
        nonce: str,
        namespace: str | None,
        request: RequestContext | None,
    ) -> Nonce:
        namespace = settings.default_namespace if namespace is None else namespace
        record = self.repository.get(owner, nonce, namespace)
        if record is None:
            logger.info("Rejected unknown nonce in namespace %s", namespace)
            raise NonceNotFoundError(nonce=nonce, namespace=namespace)

        # Consumed wins over expired: a token used in time stays "already used".
        if record.is_consumed:
            logger.info("Rejected reused nonce %s in namespace %s", record.id, namespace)
            raise NonceAlreadyConsumedError(nonce=nonce, namespace=namespace)

        now = self.clock()
        if record.is_expired(now):
            logger.info("Rejected expired nonce %s in namespace %s", record.id, namespace)
            raise NonceExpiredError(nonce=nonce, namespace=namespace)

        user_agent = ip_address = None
        if request is not None:
            user_agent = request.get_header(USER_AGENT_HEADER)
            ip_address = request.remote_address()

        if not self.repository.mark_consumed(record, now, user_agent, ip_address):
            logger.info("Lost consumption race for nonce in namespace %s", namespace)
            raise NonceAlreadyConsumedError(nonce=nonce, namespace=namespace)
        return record
