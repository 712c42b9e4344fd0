"""Service layer for issuing and consuming nonces."""
