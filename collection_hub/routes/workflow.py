"""
ITAD Collection Hub - Workflow Router

Transition tables, configuration, notifications and the status repair pass.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional
from pydantic import BaseModel
import logging

from collection_hub.services.workflow_config import get_workflow_config_status
from collection_hub.services.workflow_engine import WorkflowEngine, EntityKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["workflow"])

# Services - set by main app
store = None
collection_service = None
milestone_bus = None

def set_dependencies(workflow_store, service, bus):
    global store, collection_service, milestone_bus
    store = workflow_store
    collection_service = service
    milestone_bus = bus


class ResyncRequest(BaseModel):
    actor: Optional[str] = None


@router.get("/config")
async def get_config():
    """Active workflow flags and limits."""
    config = get_workflow_config_status()
    config["milestone_subscribers"] = milestone_bus.subscriber_names if milestone_bus else []
    return config


@router.get("/transitions/{kind}")
async def get_transitions(kind: str):
    """Transition table for booking or job."""
    if kind not in (EntityKind.BOOKING.value, EntityKind.JOB.value):
        raise HTTPException(status_code=404, detail=f"Unknown entity kind '{kind}'")
    return {
        "kind": kind,
        "statuses": WorkflowEngine.get_all_statuses(kind),
        "transitions": {
            status: WorkflowEngine.get_next_statuses(kind, status)
            for status in WorkflowEngine.get_all_statuses(kind)
        },
        "terminal": WorkflowEngine.get_terminal_statuses(),
    }


@router.get("/notifications")
async def list_notifications(user_id: Optional[str] = Query(None)):
    """In-app notifications, optionally for one user."""
    notifications = await store.list_notifications(user_id)
    return {"notifications": notifications, "total": len(notifications)}


@router.post("/resync")
async def resync_statuses(request: Optional[ResyncRequest] = None):
    """Bring every booking up to its job's mapped status."""
    actor = request.actor if request else None
    return await collection_service.resync_statuses(actor)
