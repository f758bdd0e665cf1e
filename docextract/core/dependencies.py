"""
FastAPI dependencies. Injected into route handlers.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .auth import AuthenticatedUser, get_current_user
from .database import get_session_factory
from .exceptions import Unauthorized
from .storage import StorageBackend, get_storage as _get_storage
from ..services.analysis import get_analysis_client
from ..services.extraction import ExtractionService
from ..services.gateway import ExtractionGateway


async def get_user(
    authorization: str = Header(default=""),
) -> AuthenticatedUser:
    """
    Resolve authenticated user from Authorization header.
    Returns dev user if FF_USE_AUTH0=false.
    """
    try:
        return await get_current_user(authorization)
    except Unauthorized as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_tenant(
    user: AuthenticatedUser = Depends(get_user),
) -> AuthenticatedUser:
    """Same as get_user, but enforces tenant_id is present."""
    if not user.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tenant_id associated with this user",
        )
    return user


def get_gateway() -> ExtractionGateway:
    """Persistence gateway bound to the shared session factory."""
    return ExtractionGateway(get_session_factory())


# One service per process so the per-document locks are shared across requests
_extraction_service: Optional[ExtractionService] = None


def get_extraction_service() -> ExtractionService:
    global _extraction_service
    if _extraction_service is None:
        _extraction_service = ExtractionService(get_gateway(), get_analysis_client())
    return _extraction_service


def get_storage_dep() -> StorageBackend:
    """Returns the active storage backend (S3 or local)."""
    return _get_storage()
