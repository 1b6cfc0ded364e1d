"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import accounts, cron, mail, vacation, webhooks

api_router = APIRouter()

api_router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
api_router.include_router(mail.router, prefix="/mail", tags=["mail"])
api_router.include_router(vacation.router, prefix="/vacation", tags=["vacation"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(cron.router, prefix="/cron", tags=["cron"])
