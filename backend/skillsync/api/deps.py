import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from skillsync.core.config import settings
from skillsync.core.security import tokens_match
from skillsync.schemas.integration import Provider
from skillsync.services.container import ServiceContainer

logger = logging.getLogger("skillsync.deps")


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return container


async def require_internal_token(
    x_internal_token: Optional[str] = Header(default=None, alias="X-Internal-Token"),
) -> None:
    """
    Guard for admin endpoints (manual sync, disconnect, health, sweeps).

    Outside production an unset INTERNAL_API_TOKEN leaves the guard open so
    local development works without extra setup.
    """
    expected = settings.INTERNAL_API_TOKEN
    if not expected and not settings.IS_PRODUCTION:
        return
    if not tokens_match(x_internal_token, expected):
        logger.warning("Rejected admin request with missing or invalid X-Internal-Token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token",
        )


def parse_provider(provider: str) -> Provider:
    """Path parameter -> Provider, 404 for anything unknown."""
    try:
        return Provider(provider.lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider '{provider}'",
        )
