"""Emergency contact and self-report endpoints."""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from chat_router.auth import AuthenticatedUser, authenticate
from chat_router.models import FLAG_SELF_REPORT, SEVERITY_CRITICAL
from chat_router.risk import CRISIS_TEXT_LINE

logger = logging.getLogger(__name__)

emergency_router = APIRouter(prefix="/emergency", tags=["emergency"])

IMMEDIATE_DANGER_NOTICE = (
    "If you are in immediate danger, please call 911 or your local emergency services."
)


def _contacts(request: Request) -> Dict[str, str]:
    config = request.app.state.config
    return {
        "hotline": config.emergency_hotline,
        "crisisTextLine": CRISIS_TEXT_LINE,
        "institutionEmail": config.institution_email,
        "institutionPhone": config.institution_phone,
    }


@emergency_router.get("/contacts")
async def get_contacts(
    request: Request, _: AuthenticatedUser = Depends(authenticate)
) -> Dict[str, object]:
    return {"contacts": _contacts(request), "message": IMMEDIATE_DANGER_NOTICE}


@emergency_router.post("/report")
async def report_emergency(
    request: Request, user: AuthenticatedUser = Depends(authenticate)
) -> Dict[str, object]:
    """Record a self-reported emergency for counselor follow-up.

    Body: {"context": "optional free text"}
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    context = body.get("context") if isinstance(body, dict) else None
    if not isinstance(context, str) or not context.strip():
        context = "User self-reported emergency"

    try:
        await request.app.state.store.record_risk_flag(
            user.id, context, flag_type=FLAG_SELF_REPORT, severity=SEVERITY_CRITICAL
        )
    except Exception:
        logger.exception("Emergency report failed for user %s", user.id)
        raise HTTPException(status_code=500, detail="Failed to submit emergency report")

    return {
        "message": "Your report has been received. Help is available.",
        "contacts": _contacts(request),
    }
