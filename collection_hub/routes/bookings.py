"""
ITAD Collection Hub - Bookings Router

Booking submission, approval, driver assignment and explicit status changes.
"""

from fastapi import APIRouter, HTTPException
from typing import Optional, List
from pydantic import BaseModel
import logging

from collection_hub.services.workflow_errors import WorkflowError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])

# Services - set by main app
store = None
collection_service = None
orchestrator = None

def set_dependencies(workflow_store, service, workflow_orchestrator):
    global store, collection_service, orchestrator
    store = workflow_store
    collection_service = service
    orchestrator = workflow_orchestrator


# ==================== MODELS ====================

class BookingItem(BaseModel):
    category: str
    quantity: int


class BookingCreate(BaseModel):
    client_id: str
    created_by: str
    items: List[BookingItem]
    scheduled_date: Optional[str] = None
    reseller_id: Optional[str] = None
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    actor: str
    job_reference: str
    notes: Optional[str] = None


class AssignDriverRequest(BaseModel):
    actor: str
    driver_id: str
    driver_name: str


class StatusChangeRequest(BaseModel):
    actor: str
    status: str
    notes: Optional[str] = None


# ==================== ENDPOINTS ====================

@router.post("")
async def create_booking(request: BookingCreate):
    """Submit a booking request. It starts at pending."""
    try:
        return await collection_service.create_booking(
            client_id=request.client_id,
            created_by=request.created_by,
            items=[item.model_dump() for item in request.items],
            scheduled_date=request.scheduled_date,
            reseller_id=request.reseller_id,
            notes=request.notes,
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/{booking_id}")
async def get_booking(booking_id: str):
    """Get a booking with its status history."""
    booking = await store.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.post("/{booking_id}/approve")
async def approve_booking(booking_id: str, request: ApproveRequest):
    """Approve a pending booking and create its job."""
    try:
        return await collection_service.approve_booking(
            booking_id, request.actor, request.job_reference, notes=request.notes
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{booking_id}/assign-driver")
async def assign_driver(booking_id: str, request: AssignDriverRequest):
    """Assign a driver. Booking moves to scheduled, job to routed."""
    try:
        return await collection_service.assign_driver(
            booking_id, request.driver_id, request.driver_name, request.actor
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{booking_id}/status")
async def change_booking_status(booking_id: str, request: StatusChangeRequest):
    """
    Move a booking to a new status.

    The linked job follows through the status mapper. Rejected transitions
    return 409 naming the current and requested status.
    """
    try:
        return await orchestrator.apply_status_change(
            "booking", booking_id, request.status, request.actor, notes=request.notes
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
