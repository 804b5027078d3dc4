"""
Google Calendar Integration Routes
Handles OAuth connection, sync, auto-sync channels and Google push notifications
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import FRONTEND_URL
from ..database import get_db
from ..dependencies import get_google_client_factory
from ..models import User
from ..schemas import (
    AutoSyncRequest,
    AutoSyncResponse,
    CalendarSelectionRequest,
    CalendarSelectionResponse,
    ConnectResponse,
    GoogleCalendarListResponse,
    SyncRequest,
    SyncResponse,
    SyncStatusResponse,
)
from ..services.calendar_sync import sync_calendar
from ..services.google_calendar_integration import (
    build_connect_url,
    complete_oauth_connection,
    disable_auto_sync,
    disconnect_google_calendar,
    enable_auto_sync,
    get_sync_status,
    handle_webhook_notification,
    list_google_calendars,
    resolve_oauth_state,
    select_google_calendar,
)
from ..services.google_calendar_service import (
    GoogleCalendarAPIError,
    GoogleCalendarChannelNotFoundError,
    GoogleCalendarError,
    GoogleCalendarNotConfiguredError,
    GoogleCalendarNotConnectedError,
    ensure_google_configured,
)
from ..webhook_security import WebhookSignatureError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/google-calendar", tags=["google-calendar"])


def _error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": message, "code": code})


def _require_configured() -> None:
    try:
        ensure_google_configured()
    except GoogleCalendarNotConfiguredError as e:
        raise _error(503, str(e), "GOOGLE_NOT_CONFIGURED") from e


def _integration_error(e: Exception) -> HTTPException:
    """Map Google integration failures onto HTTP errors the frontend can tell apart"""
    if isinstance(e, GoogleCalendarNotConfiguredError):
        return _error(503, str(e), "GOOGLE_NOT_CONFIGURED")
    if isinstance(e, GoogleCalendarNotConnectedError):
        return _error(401, str(e), "GOOGLE_NOT_CONNECTED")
    logger.error(f"❌ Google Calendar request failed: {e}")
    return _error(502, f"Google Calendar request failed: {e}", "GOOGLE_API_ERROR")


@router.get("/status", response_model=SyncStatusResponse)
async def get_google_calendar_status(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Get Google Calendar connection status"""
    _require_configured()
    return get_sync_status(db, current_user)


@router.get("/connect", response_model=ConnectResponse)
async def initiate_google_calendar_oauth(current_user: User = Depends(get_current_user)):
    """Initiate Google Calendar OAuth flow"""
    _require_configured()
    logger.info(f"Google Calendar OAuth initiated for user: {current_user.email}")
    return {"authorization_url": build_connect_url(current_user)}


@router.get("/callback")
async def handle_google_calendar_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Handle the OAuth redirect from Google and send the browser back to the calendar page"""

    def redirect(**params) -> RedirectResponse:
        return RedirectResponse(url=f"{FRONTEND_URL}/calendar?{urlencode(params)}")

    if error:
        return redirect(error="access_denied")
    if not code or not state:
        return redirect(error="invalid_request")

    user_id = resolve_oauth_state(state)
    if user_id is None:
        return redirect(error="invalid_request")

    try:
        await complete_oauth_connection(db, user_id, code)
    except GoogleCalendarNotConfiguredError:
        return redirect(error="not_configured")
    except GoogleCalendarNotConnectedError:
        return redirect(error="token_error")
    except (GoogleCalendarAPIError, httpx.HTTPError) as e:
        logger.error(f"❌ Google Calendar callback error: {str(e)}")
        db.rollback()
        return redirect(error="auth_failed")

    return redirect(google="connected")


@router.post("/sync", response_model=SyncResponse)
async def sync_google_calendar(
    payload: SyncRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client_factory=Depends(get_google_client_factory),
):
    """Run a push, pull or full sync between the ERP calendar and Google Calendar"""
    _require_configured()
    try:
        results = await sync_calendar(db, current_user, payload.action, client_factory)
    except (GoogleCalendarError, httpx.HTTPError) as e:
        raise _integration_error(e) from e

    return {"success": True, "results": results.to_dict()}


@router.put("/auto-sync", response_model=AutoSyncResponse)
async def toggle_auto_sync(
    payload: AutoSyncRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client_factory=Depends(get_google_client_factory),
):
    """Enable or disable Google push notifications for the user's calendar"""
    _require_configured()
    try:
        if payload.enabled:
            channel = await enable_auto_sync(db, current_user, client_factory)
            return {
                "success": True,
                "message": "Auto-sync enabled",
                "expiration": channel.expiration.isoformat() if channel.expiration else None,
            }

        await disable_auto_sync(db, current_user, client_factory)
        return {"success": True, "message": "Auto-sync disabled"}
    except (GoogleCalendarError, httpx.HTTPError) as e:
        db.rollback()
        raise _integration_error(e) from e


@router.delete("/disconnect")
async def disconnect_google(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client_factory=Depends(get_google_client_factory),
):
    """Disconnect Google Calendar integration"""
    await disconnect_google_calendar(db, current_user, client_factory)
    return {"success": True}


@router.get("/calendars", response_model=GoogleCalendarListResponse)
async def get_google_calendars(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client_factory=Depends(get_google_client_factory),
):
    """List the calendars of the connected Google account"""
    _require_configured()
    try:
        return await list_google_calendars(db, current_user, client_factory)
    except (GoogleCalendarError, httpx.HTTPError) as e:
        raise _integration_error(e) from e


@router.patch("/calendars", response_model=CalendarSelectionResponse)
async def update_selected_calendar(
    payload: CalendarSelectionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Choose which Google calendar the ERP syncs with"""
    calendar_id = select_google_calendar(db, current_user, payload.calendarId)
    return {"success": True, "calendarId": calendar_id}


@router.post("/webhook")
async def receive_google_calendar_webhook(
    x_goog_channel_id: Optional[str] = Header(None),
    x_goog_resource_state: Optional[str] = Header(None),
    x_goog_channel_token: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    client_factory=Depends(get_google_client_factory),
):
    """Receive push notifications from Google Calendar"""
    logger.info(
        f"Google Calendar webhook received: channel={x_goog_channel_id} state={x_goog_resource_state}"
    )
    if not x_goog_channel_id:
        raise HTTPException(status_code=400, detail="Invalid webhook")

    try:
        results = await handle_webhook_notification(
            db, x_goog_channel_id, x_goog_resource_state, x_goog_channel_token, client_factory
        )
    except GoogleCalendarChannelNotFoundError as e:
        raise HTTPException(status_code=404, detail="Unknown channel") from e
    except WebhookSignatureError as e:
        raise HTTPException(status_code=403, detail="Invalid channel token") from e
    except GoogleCalendarNotConnectedError:
        logger.warning(f"Webhook for channel {x_goog_channel_id} ignored: owner not connected")
        return {"received": True, "synced": False}
    except (GoogleCalendarError, httpx.HTTPError) as e:
        raise _integration_error(e) from e

    if results is None:
        return {"received": True}
    return {"success": True, "results": results.to_dict()}


@router.get("/webhook")
async def google_calendar_webhook_probe():
    """Verification endpoint for Google"""
    return {"status": "Webhook endpoint active"}
