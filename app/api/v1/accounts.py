"""Connected mailbox endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from app.core.errors import (
    AccountNotFound,
    CredentialError,
    IllegalTransition,
    ProviderRequestError,
    TransientProviderError,
)
from app.deps import AppContainer, DbSession, UserId
from app.models.mail import EmailAccount
from app.schemas.mail import (
    AccountRead,
    AuthorizationUrlRequest,
    AuthorizationUrlResponse,
    ConnectRequest,
    PauseRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[AccountRead])
async def list_accounts(user_id: UserId, db: DbSession):
    """List the caller's connected accounts, primary first."""
    result = await db.execute(
        select(EmailAccount)
        .where(EmailAccount.user_id == user_id, EmailAccount.archived_at.is_(None))
        .order_by(EmailAccount.is_primary.desc(), EmailAccount.created_at)
    )
    return list(result.scalars().all())


@router.post("/authorize", response_model=AuthorizationUrlResponse)
async def authorization_url(
    req: AuthorizationUrlRequest, user_id: UserId, container: AppContainer
):
    """Provider consent URL for the PKCE code flow."""
    url = container.accounts.authorization_url(
        req.provider, req.redirect_uri, req.state, req.code_challenge
    )
    return AuthorizationUrlResponse(url=url)


@router.post("/connect", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
async def connect_account(req: ConnectRequest, user_id: UserId, container: AppContainer):
    """Exchange the authorization code and start the first sync."""
    try:
        return await container.accounts.connect(
            user_id, req.provider, req.code, req.redirect_uri, req.code_verifier
        )
    except CredentialError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except ProviderRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except TransientProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/{account_id}/pause", response_model=AccountRead)
async def pause_account(
    account_id: UUID, req: PauseRequest, user_id: UserId, container: AppContainer
):
    """Pause or resume automatic syncing."""
    try:
        return await container.accounts.set_paused(user_id, account_id, req.paused)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email account not found")
    except IllegalTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_account(account_id: UUID, user_id: UserId, container: AppContainer):
    try:
        await container.accounts.disconnect(user_id, account_id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email account not found")
