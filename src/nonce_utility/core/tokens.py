"""Random URL-safe token generation."""

from __future__ import annotations

import base64
import secrets
from collections.abc import Callable

RandomBytes = Callable[[int], bytes]


class TokenGenerator:
    """Produce random tokens drawn from the URL-safe base64 alphabet.

    The random source is injected so tests can pass a seeded generator, e.g.
    ``TokenGenerator(random.Random(7).randbytes)``.
    """

    def __init__(self, random_bytes: RandomBytes = secrets.token_bytes) -> None:
        self._random_bytes = random_bytes

    def generate(self, length: int) -> str:
        """Return a random token of exactly ``length`` characters.

        Args:
            length: Number of characters in the token (at least 1)

        Returns:
            Token using ``A-Z a-z 0-9 - _`` only

        Raises:
            ValueError: If ``length`` is smaller than 1
        """
        if length < 1:
            raise ValueError("Token length must be at least 1")
        # Every 3 bytes yield 4 characters.
        byte_count = -(-length * 3 // 4)
        raw = self._random_bytes(byte_count)
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")[:length]
