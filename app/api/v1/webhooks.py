"""Provider push notification endpoints.

These only verify and dispatch; they never wait for a sync to finish.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from app.core.errors import VerificationError
from app.deps import AppContainer
from app.services.webhooks import validate_microsoft_endpoint

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Microsoft Graph ──


@router.get("/microsoft")
async def microsoft_validation(request: Request):
    """Subscription validation handshake: echo ``validationToken``."""
    token = validate_microsoft_endpoint(request.query_params.get("validationToken"))
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing validationToken",
        )
    return PlainTextResponse(token)


@router.post("/microsoft")
async def microsoft_webhook(request: Request, container: AppContainer):
    """Change notifications; always acknowledged with 202."""
    # Graph also validates new subscriptions with a POST
    token = validate_microsoft_endpoint(request.query_params.get("validationToken"))
    if token is not None:
        return PlainTextResponse(token)

    payload = await request.json()
    account_ids = await container.webhooks.handle_microsoft(payload)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"dispatched": len(account_ids)},
    )


# ── Gmail (Pub/Sub push) ──


@router.post("/google")
async def google_webhook(request: Request, container: AppContainer):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Google webhook payload",
        )

    try:
        account_id = await container.webhooks.handle_google(payload)
    except VerificationError as e:
        logger.warning("Rejected Google webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    if account_id is None:
        return {"success": True, "message": "Account not found"}
    return {"success": True, "account_id": str(account_id)}
