"""API routes for rental automation."""

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from rental_automation.config import settings
from rental_automation.core.manager import AutomationManager
from rental_automation.db.models import ManualVisit

router = APIRouter()

# Dependency to get the manager instance
_manager: Optional[AutomationManager] = None


def get_manager() -> AutomationManager:
    if _manager is None:
        raise HTTPException(status_code=500, detail="Manager not initialized")
    return _manager


def set_manager(manager: Optional[AutomationManager]) -> None:
    global _manager
    _manager = manager


# Request/Response models


class LateCheckoutRequest(BaseModel):
    checkout_at: datetime


# Health and status endpoints


@router.get("/health")
async def health_check(manager: AutomationManager = Depends(get_manager)):
    """Check the health of all components."""
    return await manager.health_check()


@router.get("/timezone")
async def get_timezone():
    """Get the configured timezone."""
    return {"timezone": settings.timezone}


# Reservation endpoints


@router.get("/reservations")
async def get_reservations(manager: AutomationManager = Depends(get_manager)):
    """Get the reservations currently scheduled."""
    return manager.list_reservations()


@router.post("/reservations/reconcile")
async def reconcile_reservations(manager: AutomationManager = Depends(get_manager)):
    """Fetch the calendars and reconcile now."""
    summary = await manager.reconcile_now()
    if summary is None:
        return {"reconciled": False}
    return {"reconciled": True, **asdict(summary)}


@router.put("/reservations/{reservation_number}/late-checkout")
async def set_late_checkout(
    reservation_number: str,
    request: LateCheckoutRequest,
    manager: AutomationManager = Depends(get_manager),
):
    """Move a reservation's check-out later."""
    try:
        return await manager.set_late_checkout(reservation_number, request.checkout_at)
    except KeyError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# Manual visit endpoints


@router.get("/visits")
async def get_visits(manager: AutomationManager = Depends(get_manager)):
    """Get all scheduled visits."""
    return [visit.model_dump(mode="json") for visit in manager.list_visits()]


@router.post("/visits")
async def add_visit(
    visit: ManualVisit,
    manager: AutomationManager = Depends(get_manager),
):
    """Add a scheduled visit."""
    try:
        stored = await manager.add_visit(visit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return stored.model_dump(mode="json")


@router.delete("/visits/{visit_id}")
async def delete_visit(
    visit_id: str,
    manager: AutomationManager = Depends(get_manager),
):
    """Delete a scheduled visit."""
    try:
        await manager.delete_visit(visit_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Visit not found")
    return {"success": True}
