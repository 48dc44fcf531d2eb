from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from core.credentials import get_valid_credential
from core.errors import PermanentAuthError, TransientIOError
from core.services import Services, get_services

router = APIRouter(prefix="/calendar", tags=["Calendar"])

@router.get("/{user_id}/token")
async def get_calendar_token(user_id: str, services: Services = Depends(get_services)):
    """
    Returns a calendar access token that stays valid for at least the refresh buffer.
    Refreshes (with retries) first when the stored token is close to expiry.
    """
    try:
        credential = await get_valid_credential(services.store, services.refresher(), user_id)
    except PermanentAuthError as e:
        return JSONResponse(status_code=401, content={"error": str(e), "action": e.action})
    except TransientIOError as e:
        return JSONResponse(status_code=503, content={"error": str(e), "action": "retry"})

    if credential is None:
        raise HTTPException(status_code=404, detail="Calendar not connected")

    return {
        "user_id": credential.user_id,
        "calendar_id": credential.calendar_id,
        "access_token": credential.access_token,
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
    }
