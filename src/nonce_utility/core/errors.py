"""Exceptions raised by nonce issuance and consumption.

Hierarchy::

    NonceError
    +-- NonceNotFoundError
    +-- NonceAlreadyConsumedError
    +-- NonceExpiredError
    +-- NonceGenerationExhaustedError
    +-- DuplicateNonceError
    +-- NonceStorageError

Catch :class:`NonceError` to handle every outcome at once, or the concrete
subclasses to map each one to its own user-facing message.
"""

from __future__ import annotations


class NonceError(RuntimeError):
    """Base exception for nonce failures."""

    default_message = "Nonce operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        nonce: str | None = None,
        namespace: str | None = None,
    ) -> None:
        super().__init__(message or self.default_message)
        self.nonce = nonce
        self.namespace = namespace


class NonceNotFoundError(NonceError):
    """Raised when no record matches the owner, nonce and namespace."""

    default_message = "Nonce is invalid"


class NonceAlreadyConsumedError(NonceError):
    """Raised when the record exists but was already consumed."""

    default_message = "Nonce has already been used"


class NonceExpiredError(NonceError):
    """Raised when the record is unconsumed but past its expiry time."""

    default_message = "Nonce has expired"


class NonceGenerationExhaustedError(NonceError):
    """Raised when no collision-free token was found within the attempt cap."""

    default_message = "Could not generate a unique nonce"

    def __init__(
        self,
        message: str | None = None,
        *,
        attempts: int = 0,
        namespace: str | None = None,
    ) -> None:
        super().__init__(message, namespace=namespace)
        self.attempts = attempts


class DuplicateNonceError(NonceError):
    """Raised by a repository when an insert violates nonce uniqueness."""

    default_message = "Nonce already exists in this scope"


class NonceStorageError(NonceError):
    """Raised when the backing store fails.

    The original backend exception is available as ``__cause__``.
    """

    default_message = "Nonce storage failure"
