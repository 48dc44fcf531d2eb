import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from core.credentials import run_token_refresh
from core.errors import StoreUnavailableError
from core.services import Services, get_services

logger = logging.getLogger(__name__)

async def verify_cron_token(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Checks the bearer token of external cron calls. Open when CRON_SECRET is unset."""
    secret = services.settings.CRON_SECRET
    if not secret:
        return
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization Header")

    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or param != secret:
        raise HTTPException(status_code=401, detail="Invalid Token")

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_token)])

async def _run(name: str, job, services: Services):
    """Runs one job invocation; a store outage becomes a single 500 result."""
    try:
        return await job()
    except StoreUnavailableError as e:
        logger.exception(f"{name} aborted: store unavailable")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Store unavailable",
                "message": str(e),
                "checked": services.clock().isoformat(),
            },
        )

@router.api_route("/reminders", methods=["GET", "POST"])
async def send_reminders(services: Services = Depends(get_services)):
    """Push one notification per due, not yet notified deadline."""
    return await _run("Reminder check", services.reminder_job().run, services)

@router.api_route("/overdue", methods=["GET", "POST"])
async def send_overdue_reminders(services: Services = Depends(get_services)):
    return await _run("Overdue reminder check", services.overdue_job().run, services)

@router.api_route("/water", methods=["GET", "POST"])
async def send_water_reminders(services: Services = Depends(get_services)):
    return await _run("Water reminder check", services.water_job().run, services)

@router.api_route("/generate-tasks", methods=["GET", "POST"])
async def generate_tasks(services: Services = Depends(get_services)):
    """Top up instances of common tasks and create tomorrow's daily tasks."""
    return await _run("Task generation", services.generation_job().run, services)

@router.api_route("/token-refresh", methods=["GET", "POST"])
async def refresh_tokens(services: Services = Depends(get_services)):
    refresher = services.refresher()
    return await _run("Token refresh", lambda: run_token_refresh(services.store, refresher), services)
