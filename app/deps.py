"""FastAPI dependencies."""

import hmac
import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.container import Container
from app.database import get_db

logger = logging.getLogger(__name__)


def get_container(request: Request) -> Container:
    """The container built at startup."""
    return request.app.state.container


async def get_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Extract the calling user's ID from header."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header is required",
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid user ID format",
        )


async def verify_cron_secret(
    container: Annotated[Container, Depends(get_container)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``."""
    secret = container.settings.cron_secret
    expected = f"Bearer {secret}"
    if not secret or not authorization or not hmac.compare_digest(
        authorization.encode(), expected.encode()
    ):
        logger.warning("Rejected cron request with bad credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


# Type aliases for dependency injection
AppContainer = Annotated[Container, Depends(get_container)]
UserId = Annotated[UUID, Depends(get_user_id)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
CronAuth = Depends(verify_cron_secret)
