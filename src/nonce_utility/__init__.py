"""Single-use, namespaced nonces with replay and expiry protection."""

from nonce_utility.core.errors import (
    DuplicateNonceError,
    NonceAlreadyConsumedError,
    NonceError,
    NonceExpiredError,
    NonceGenerationExhaustedError,
    NonceNotFoundError,
    NonceStorageError,
)
from nonce_utility.core.tokens import TokenGenerator
from nonce_utility.models import Nonce
from nonce_utility.services.nonce_service import NonceService

__version__ = "0.1.0"

__all__ = [
    "DuplicateNonceError",
    "Nonce",
    "NonceAlreadyConsumedError",
    "NonceError",
    "NonceExpiredError",
    "NonceGenerationExhaustedError",
    "NonceNotFoundError",
    "NonceService",
    "NonceStorageError",
    "TokenGenerator",
]
