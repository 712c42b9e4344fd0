"""Request metadata captured when a nonce is consumed.

The nonce service only needs two things from a request: a header lookup and
the caller's address. :class:`RequestContext` is that capability; the
adapters below provide it for Starlette/FastAPI requests and for callers
that have no HTTP request at all.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from starlette.requests import Request

from nonce_utility.core.settings import settings

__all__ = [
    "RemoteAddressResolver",
    "RequestContext",
    "StarletteRequestContext",
    "StaticRequestContext",
]


@runtime_checkable
class RequestContext(Protocol):
    """Minimal view of an incoming request."""

    def get_header(self, name: str) -> str | None: ...

    def remote_address(self) -> str | None: ...


class RemoteAddressResolver:
    """Resolve the client address, optionally looking through reverse proxies.

    Proxy headers are only honoured when ``use_proxy`` is enabled and the
    direct peer is one of ``trusted_proxies``. The header value is split on
    commas, trusted proxies are discarded, and the right-most remaining entry
    is taken as the client address.
    """

    def __init__(
        self,
        use_proxy: bool = False,
        trusted_proxies: Iterable[str] = (),
        proxy_header: str = "X-Forwarded-For",
    ) -> None:
        self.use_proxy = use_proxy
        self.trusted_proxies = frozenset(trusted_proxies)
        self.proxy_header = proxy_header

    @classmethod
    def from_settings(cls) -> RemoteAddressResolver:
        """Build a resolver from the ``NONCE_*PROXY*`` settings."""
        return cls(
            use_proxy=settings.trust_proxy,
            trusted_proxies=settings.trusted_proxies,
            proxy_header=settings.proxy_header,
        )

    def resolve(self, peer_address: str | None, header_value: str | None) -> str | None:
        """Return the client address for a peer and its proxy header value."""
        if not self.use_proxy or peer_address not in self.trusted_proxies:
            return peer_address
        if not header_value:
            return peer_address

        hops = [hop.strip() for hop in header_value.split(",") if hop.strip()]
        untrusted = [hop for hop in hops if hop not in self.trusted_proxies]
        if not untrusted:
            return peer_address
        return untrusted[-1]


class StarletteRequestContext:
    """Adapt a Starlette (or FastAPI) request to :class:`RequestContext`."""

    def __init__(self, request: Request, resolver: RemoteAddressResolver | None = None) -> None:
        self.request = request
        self.resolver = resolver or RemoteAddressResolver()

    def get_header(self, name: str) -> str | None:
        return self.request.headers.get(name)

    def remote_address(self) -> str | None:
        peer = self.request.client.host if self.request.client else None
        return self.resolver.resolve(peer, self.get_header(self.resolver.proxy_header))


@dataclass(frozen=True)
class StaticRequestContext:
    """Fixed request metadata for callers without an HTTP request."""

    user_agent: str | None = None
    ip_address: str | None = None

    def get_header(self, name: str) -> str | None:
        if name.lower() == "user-agent":
            return self.user_agent
        return None

    def remote_address(self) -> str | None:
        return self.ip_address
