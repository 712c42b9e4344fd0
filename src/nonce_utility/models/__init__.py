"""SQLAlchemy models for the nonce utility."""

from .nonce import Nonce, NonceOwner, owner_key

__all__ = ["Nonce", "NonceOwner", "owner_key"]
