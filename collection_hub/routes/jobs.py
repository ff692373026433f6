"""
ITAD Collection Hub - Jobs Router

Job status, driver evidence uploads, per-asset sanitisation and grading,
and custody documents.
"""

from fastapi import APIRouter, HTTPException
from typing import Optional, List
from pydantic import BaseModel
import logging

from collection_hub.services.workflow_errors import WorkflowError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])

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

class StatusChangeRequest(BaseModel):
    actor: str
    status: str
    notes: Optional[str] = None


class EvidenceSubmission(BaseModel):
    actor: str
    status: str
    photos: List[str] = []
    signature: Optional[str] = None
    seal_numbers: List[str] = []
    notes: Optional[str] = None


class SanitiseRequest(BaseModel):
    actor: str
    method: str
    method_details: Optional[str] = None


class GradeRequest(BaseModel):
    actor: str
    grade: str


class CompleteStageRequest(BaseModel):
    actor: str
    notes: Optional[str] = None


# ==================== JOB STATUS ====================

@router.get("/{job_id}")
async def get_job(job_id: str):
    """Get a job with its line items and status history."""
    job = await store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/status")
async def change_job_status(job_id: str, request: StatusChangeRequest):
    """Move a job to a new status; the linked booking follows."""
    try:
        return await orchestrator.apply_status_change(
            "job", job_id, request.status, request.actor, notes=request.notes
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ==================== EVIDENCE ====================

@router.post("/{job_id}/evidence")
async def submit_evidence(job_id: str, submission: EvidenceSubmission):
    """
    Upload evidence for a job status.

    Evidence is immutable: a second submission for the same status is
    rejected with 409. The job advances to the status when that is its
    next legal step.
    """
    try:
        result = await collection_service.submit_evidence(
            job_id,
            submission.status,
            submission.actor,
            {
                "photos": submission.photos,
                "signature": submission.signature,
                "seal_numbers": submission.seal_numbers,
                "notes": submission.notes,
            }
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {
        "evidence": result["evidence"].to_dict(),
        "job": result["job"],
        "advanced": result["advanced"],
    }


@router.get("/{job_id}/evidence")
async def list_evidence(job_id: str):
    """All evidence for a job, oldest first."""
    try:
        records = await collection_service.list_evidence(job_id)
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {"evidence": [r.to_dict() for r in records], "total": len(records)}


# ==================== SANITISATION & GRADING ====================

@router.post("/{job_id}/line-items/{line_item_id}/sanitise")
async def sanitise_line_item(job_id: str, line_item_id: str, request: SanitiseRequest):
    try:
        return await collection_service.sanitise_line_item(
            job_id, line_item_id, request.method, request.actor, method_details=request.method_details
        )
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{job_id}/sanitisation/complete")
async def complete_sanitisation(job_id: str, request: CompleteStageRequest):
    try:
        return await collection_service.complete_sanitisation(job_id, request.actor, notes=request.notes)
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{job_id}/line-items/{line_item_id}/grade")
async def grade_line_item(job_id: str, line_item_id: str, request: GradeRequest):
    try:
        return await collection_service.grade_line_item(job_id, line_item_id, request.grade, request.actor)
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{job_id}/grading/complete")
async def complete_grading(job_id: str, request: CompleteStageRequest):
    try:
        return await collection_service.complete_grading(job_id, request.actor, notes=request.notes)
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ==================== DOCUMENTS ====================

@router.get("/{job_id}/documents")
async def list_documents(job_id: str):
    """Custody documents generated for a job."""
    job = await store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    documents = await store.list_documents(job_id)
    return {"documents": documents, "total": len(documents)}
