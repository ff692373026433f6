"""
ITAD Collection Hub - Workflow Exceptions

Validation errors raised synchronously to the caller of a workflow operation.
Side-effect failures (notifications, documents) never surface through these;
they are logged where they happen.
"""

from typing import Dict, Optional


class WorkflowError(Exception):
    """Base exception for workflow errors."""
    status_code = 400

    def __init__(self, message: str, status_code: int = None, details: Dict = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class EntityNotFound(WorkflowError):
    """Raised when a Booking, Job or line item id is unknown."""
    status_code = 404

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(
            f'{kind.capitalize()} with ID "{entity_id}" not found',
            details={"kind": kind, "id": entity_id},
        )


class InvalidTransition(WorkflowError):
    """
    Raised when the requested status is not reachable from the current one.
    The message names both statuses so the actor can see why it was blocked.
    """
    status_code = 409

    def __init__(self, kind: str, entity_id: str, current_status: Optional[str], requested_status: str):
        self.kind = kind
        self.entity_id = entity_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Invalid {kind} status transition: cannot move from {current_status} to {requested_status}",
            details={
                "kind": kind,
                "id": entity_id,
                "current_status": current_status,
                "requested_status": requested_status,
            },
        )


class ConcurrentUpdate(WorkflowError):
    """Raised when the conditional status write kept losing to concurrent writers."""
    status_code = 409

    def __init__(self, kind: str, entity_id: str, attempts: int):
        self.kind = kind
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"{kind.capitalize()} {entity_id} was modified concurrently; gave up after {attempts} attempts",
            details={"kind": kind, "id": entity_id, "attempts": attempts},
        )


class DuplicateEvidence(WorkflowError):
    """Raised when evidence for (job, status) already exists. Evidence is immutable."""
    status_code = 409

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(
            f'Evidence has already been submitted for status "{status}" and cannot be modified',
            details={"job_id": job_id, "status": status},
        )


class EmptyEvidence(WorkflowError):
    """Raised when evidence carries neither a photo nor a signature."""
    status_code = 400

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(
            "Evidence must include at least one photo or a customer signature",
            details={"job_id": job_id, "status": status},
        )


class EmptyDocument(WorkflowError):
    """Raised when the renderer produced a zero-byte artifact. Nothing is persisted."""
    status_code = 502

    def __init__(self, job_id: str, document_type: str):
        self.job_id = job_id
        self.document_type = document_type
        super().__init__(
            f"Generated {document_type} document for job {job_id} is empty. Generation aborted.",
            details={"job_id": job_id, "document_type": document_type},
        )


class WorkflowValidationError(WorkflowError):
    """Raised when a collection flow precondition is not met."""
    pass


class AlreadySanitised(WorkflowValidationError):
    """Raised on a second sanitisation attempt for a line item."""

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__("Asset has already been sanitised", details={"line_item_id": line_item_id})


class AlreadyGraded(WorkflowValidationError):
    """Raised on a second grading attempt for a line item."""

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__("Asset has already been graded", details={"line_item_id": line_item_id})
