"""Vacation responder settings."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.core.errors import AccountNotFound
from app.deps import AppContainer, UserId
from app.schemas.mail import VacationConfigRead, VacationConfigRequest

router = APIRouter()


@router.post("", response_model=VacationConfigRead)
async def set_vacation(req: VacationConfigRequest, user_id: UserId, container: AppContainer):
    """Create or update the responder of an account."""
    try:
        return await container.vacation.set_config(
            user_id,
            req.account_id,
            req.enabled,
            req.start_date,
            req.end_date,
            req.message,
        )
    except AccountNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found or unauthorized",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=VacationConfigRead | None)
async def get_vacation(
    user_id: UserId,
    container: AppContainer,
    account_id: UUID = Query(...),
):
    return await container.vacation.get_config(user_id, account_id)
