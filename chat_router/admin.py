"""Admin endpoints for key pool and risk flag management."""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from chat_router.auth import AuthenticatedUser, require_admin

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/status")
async def get_all_status(
    request: Request, _: AuthenticatedUser = Depends(require_admin)
) -> Dict[str, object]:
    """Get status of all API keys in the pool."""
    orchestrator = request.app.state.orchestrator
    status = orchestrator.key_pool.get_status()
    status["router"] = orchestrator.get_status()
    return status


@admin_router.get("/status/{key_id}")
async def get_key_status(
    request: Request, key_id: str, _: AuthenticatedUser = Depends(require_admin)
) -> Dict[str, object]:
    """Get status of a specific API key."""
    orchestrator = request.app.state.orchestrator
    status = orchestrator.key_pool.get_key_status(key_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Key {key_id} not found")
    return status


@admin_router.post("/reset")
async def reset_router(
    request: Request, _: AuthenticatedUser = Depends(require_admin)
) -> Dict[str, str]:
    """Clear key and model cool-downs and drop cached replies."""
    request.app.state.orchestrator.reset()
    return {"message": "Router state reset successfully"}


@admin_router.get("/risk-flags")
async def list_risk_flags(
    request: Request,
    resolved: Optional[bool] = None,
    _: AuthenticatedUser = Depends(require_admin),
) -> Dict[str, List[Dict[str, object]]]:
    store = request.app.state.store
    flags = await store.list_risk_flags(resolved=resolved)
    return {"flags": [flag.to_dict() for flag in flags]}


@admin_router.post("/risk-flags/{flag_id}/resolve")
async def resolve_risk_flag(
    request: Request, flag_id: int, _: AuthenticatedUser = Depends(require_admin)
) -> Dict[str, object]:
    store = request.app.state.store
    flag = await store.resolve_risk_flag(flag_id)
    if flag is None:
        raise HTTPException(status_code=404, detail=f"Risk flag {flag_id} not found")
    return flag.to_dict()
