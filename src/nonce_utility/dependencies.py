"""FastAPI dependency providers for nonce handling."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from nonce_utility.db.session import get_db
from nonce_utility.repositories.sql_repo import SqlNonceRepository
from nonce_utility.services.nonce_service import NonceService
from nonce_utility.services.request_context import (
    RemoteAddressResolver,
    StarletteRequestContext,
)

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_nonce_service(db: SessionDep) -> NonceService:
    """Return a nonce service bound to the request's database session."""
    return NonceService(SqlNonceRepository(db))


def get_request_context(request: Request) -> StarletteRequestContext:
    """Wrap the incoming request for consumption metadata."""
    return StarletteRequestContext(request, RemoteAddressResolver.from_settings())


NonceServiceDep = Annotated[NonceService, Depends(get_nonce_service)]
RequestContextDep = Annotated[StarletteRequestContext, Depends(get_request_context)]
