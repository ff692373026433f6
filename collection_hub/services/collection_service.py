"""
ITAD Collection Hub - Collection Service

The call sites that drive the workflow: booking submission and approval,
driver assignment, evidence upload, per-asset sanitisation and grading, and
the status repair pass.

Every status change goes through the WorkflowOrchestrator. This module owns
the preconditions and record creation around those changes (job reference
uniqueness, lazy Job creation, set-once line item updates).
"""

import random
import uuid
import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Optional, Dict, Any, List, Callable, Mapping

from collection_hub.services.evidence_ledger import EvidenceLedger, EvidenceRecord
from collection_hub.services.milestones import MilestoneBus, MilestoneEvent, ChangeOrigin, TRIGGER_DRIVER_ASSIGNMENT
from collection_hub.services.stores import WorkflowStore, DuplicateRecordError
from collection_hub.services.workflow_config import SYSTEM_ACTOR
from collection_hub.services.workflow_engine import WorkflowEngine, EntityKind, BookingStatus, JobStatus
from collection_hub.services.workflow_errors import (
    EntityNotFound,
    InvalidTransition,
    WorkflowValidationError,
    AlreadySanitised,
    AlreadyGraded,
)
from collection_hub.services.workflow_orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)

BOOKING = EntityKind.BOOKING.value
JOB = EntityKind.JOB.value


# =============================================================================
# RESALE VALUATION
# =============================================================================

GRADES = ("A", "B", "C", "D", "Recycled")

GRADE_CONDITION_FACTORS: Mapping[str, float] = MappingProxyType({
    "A": 1.05,
    "B": 1.0,
    "C": 0.70,
    "D": 0.25,
    "Recycled": 0.0,
})

BASE_RESALE_VALUES: Mapping[str, float] = MappingProxyType({
    "Laptop": 150,
    "Desktop": 80,
    "Server": 300,
    "Smart Phones": 30,
    "Tablets": 50,
    "Networking": 45,
    "Storage": 100,
})

# (minimum quantity, factor), highest threshold first
VOLUME_FACTORS = ((200, 1.10), (50, 1.06), (10, 1.03))

WIPE_METHODS = ("blancco", "physical-destruction", "degaussing", "shredding", "other")


class ResaleValueCalculator:
    """
    Per-unit resale value for a graded asset.

    value = base(category) * condition(grade) * volume(quantity)
    """

    def __init__(self, base_values: Mapping[str, float] = None):
        self.base_values = dict(base_values or BASE_RESALE_VALUES)

    def base_value(self, category: str) -> float:
        name = (category or "").strip().lower()
        for key, value in self.base_values.items():
            if key.lower() == name:
                return value
        for key, value in self.base_values.items():
            if name and (name in key.lower() or key.lower() in name):
                return value
        logger.warning("No base resale value for category '%s'", category)
        return 0.0

    @staticmethod
    def volume_factor(quantity: int) -> float:
        for threshold, factor in VOLUME_FACTORS:
            if quantity >= threshold:
                return factor
        return 1.0

    def __call__(self, category: str, grade: str, quantity: int) -> float:
        value = (
            self.base_value(category)
            * GRADE_CONDITION_FACTORS.get(grade, 0.0)
            * self.volume_factor(quantity)
        )
        return round(value, 2)


def _record_id(prefix: str, now: datetime) -> str:
    # Unique even for records issued within the same millisecond
    return f"{prefix}-{now.year}-{uuid.uuid4().hex[:8].upper()}"


# =============================================================================
# COLLECTION SERVICE
# =============================================================================

class CollectionService:
    """
    Booking and Job flows on top of the orchestrator.

    Usage:
        service = CollectionService(store, orchestrator, ledger)
        booking = await service.approve_booking(booking_id, admin_id, "JOB-1001")
    """

    def __init__(
        self,
        store: WorkflowStore,
        orchestrator: WorkflowOrchestrator,
        ledger: EvidenceLedger,
        bus: Optional[MilestoneBus] = None,
        resale_calculator: Callable[[str, str, int], float] = None,
        clock: Callable[[], datetime] = None
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.bus = bus or orchestrator.bus
        self.resale_calculator = resale_calculator or ResaleValueCalculator()
        self.clock = clock or orchestrator.clock

    def _now(self) -> str:
        return self.clock().isoformat()

    async def _get(self, kind: str, entity_id: str) -> Dict[str, Any]:
        entity = await self.store.get_entity(kind, entity_id)
        if entity is None:
            raise EntityNotFound(kind, entity_id)
        return entity

    # =========================================================================
    # BOOKINGS
    # =========================================================================

    async def create_booking(
        self,
        client_id: str,
        created_by: str,
        items: List[Dict[str, Any]],
        scheduled_date: Optional[str] = None,
        reseller_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Submit a booking request. It waits at pending for admin approval."""
        clean_items = []
        for item in items or []:
            category = str(item.get("category") or "").strip()
            quantity = int(item.get("quantity") or 0)
            if not category or quantity <= 0:
                raise WorkflowValidationError(
                    "Each booking item needs a category and a positive quantity",
                    details={"item": item}
                )
            clean_items.append({"category": category, "quantity": quantity})
        if not clean_items:
            raise WorkflowValidationError("A booking needs at least one item")

        now = self._now()
        booking = {
            "id": str(uuid.uuid4()),
            "booking_number": f"BK-{self.clock().year}-{random.randint(0, 99999):05d}",
            "status": BookingStatus.PENDING.value,
            "scheduled_date": scheduled_date,
            "client_id": client_id,
            "reseller_id": reseller_id,
            "created_by": created_by,
            "driver_id": None,
            "driver_name": None,
            "job_id": None,
            "job_reference": None,
            "items": clean_items,
            "scheduled_at": None,
            "collected_at": None,
            "sanitised_at": None,
            "graded_at": None,
            "completed_at": None,
            "status_history": [{
                "status": BookingStatus.PENDING.value,
                "actor": created_by,
                "notes": notes or "Booking submitted",
                "timestamp": now,
                "origin": ChangeOrigin.REQUEST,
            }],
            "created_at": now,
            "updated_at": now,
        }
        await self.store.insert_entity(BOOKING, booking)
        logger.info("Booking created: %s (%s) by %s", booking["booking_number"], booking["id"], created_by)

        await self.bus.publish(MilestoneEvent(
            kind=BOOKING,
            entity_id=booking["id"],
            old_status=None,
            new_status=BookingStatus.PENDING.value,
            actor=created_by,
            timestamp=now,
            booking_id=booking["id"],
        ))
        return booking

    async def approve_booking(
        self,
        booking_id: str,
        actor: str,
        job_reference: str,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Approve a pending booking: issue its job reference, move it to
        created and create the Job at booked.
        """
        booking = await self._get(BOOKING, booking_id)
        if booking["status"] != BookingStatus.PENDING.value:
            raise WorkflowValidationError(
                f'Cannot approve booking in "{booking["status"]}" status. Only "pending" bookings can be approved.',
                details={"booking_id": booking_id, "status": booking["status"]}
            )

        reference = (job_reference or "").strip()
        if not reference:
            raise WorkflowValidationError("A job reference is required to approve a booking")
        if await self.store.job_reference_exists(reference, exclude_booking_id=booking_id):
            raise WorkflowValidationError(
                f'Job ID "{reference}" already exists. Please enter a unique Job ID.',
                details={"job_reference": reference}
            )

        # The Job insert claims the reference under the unique index before
        # the booking leaves pending; a losing approval leaves nothing behind.
        await self._ensure_job(
            booking_id, actor, "Job created when booking was approved", job_reference=reference
        )
        await self.orchestrator.apply_status_change(
            BOOKING, booking_id, BookingStatus.CREATED.value, actor,
            notes=notes or "Booking approved by admin"
        )
        return await self._get(BOOKING, booking_id)

    async def assign_driver(
        self,
        booking_id: str,
        driver_id: str,
        driver_name: str,
        actor: str
    ) -> Dict[str, Any]:
        """
        Assign a driver to an approved booking. The booking moves to
        scheduled and its Job echoes to routed.
        """
        booking = await self._get(BOOKING, booking_id)
        if booking["status"] != BookingStatus.CREATED.value:
            raise WorkflowValidationError(
                f'Cannot assign driver to booking in "{booking["status"]}" status. '
                f'Only bookings in "created" status can have drivers assigned.',
                details={"booking_id": booking_id, "status": booking["status"]}
            )

        await self.store.update_fields(BOOKING, booking_id, {
            "driver_id": driver_id,
            "driver_name": driver_name,
        })
        job = await self._ensure_job(booking_id, actor, "Job created when driver was assigned")
        await self.store.update_fields(JOB, job["id"], {"driver_id": driver_id})

        return await self.orchestrator.apply_status_change(
            BOOKING, booking_id, BookingStatus.SCHEDULED.value, actor,
            notes=f"Driver {driver_name} assigned",
            context={"trigger": TRIGGER_DRIVER_ASSIGNMENT, "driver_name": driver_name}
        )

    async def _ensure_job(
        self,
        booking_id: str,
        actor: str,
        notes: str,
        job_reference: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create the booking's Job at booked unless it already exists, and link it."""
        job = await self.store.find_job_by_booking(booking_id)
        if job is not None and job_reference and job["job_reference"] != job_reference:
            # Left over from an approval whose status change failed
            job = await self.store.update_fields(JOB, job["id"], {"job_reference": job_reference})
        if job is None:
            booking = await self._get(BOOKING, booking_id)
            now = self._now()
            job_reference = (
                job_reference or booking.get("job_reference") or f"JOB-{booking['booking_number']}"
            )
            job = {
                "id": str(uuid.uuid4()),
                "job_reference": job_reference,
                "booking_id": booking_id,
                "driver_id": booking.get("driver_id"),
                "status": JobStatus.BOOKED.value,
                "scheduled_date": booking.get("scheduled_date"),
                "line_items": [
                    {
                        "id": str(uuid.uuid4()),
                        "category": item["category"],
                        "quantity": item["quantity"],
                        "sanitised": False,
                        "wipe_method": None,
                        "sanitisation_record_id": None,
                        "grade": None,
                        "grading_record_id": None,
                        "resale_value": None,
                    }
                    for item in booking.get("items", [])
                ],
                "completed_at": None,
                "status_history": [{
                    "status": JobStatus.BOOKED.value,
                    "actor": actor,
                    "notes": notes,
                    "timestamp": now,
                    "origin": ChangeOrigin.REQUEST,
                }],
                "created_at": now,
                "updated_at": now,
            }
            try:
                await self.store.insert_entity(JOB, job)
                logger.info("Job %s created for booking %s", job["job_reference"], booking_id)
            except DuplicateRecordError as e:
                job = await self.store.find_job_by_booking(booking_id)
                if job is None:
                    raise WorkflowValidationError(
                        f'Job ID "{job_reference}" already exists. Please enter a unique Job ID.',
                        details={"job_reference": job_reference, "conflict": e.key}
                    )
                logger.info("Job for booking %s was created concurrently, reusing %s", booking_id, job["id"])

        await self.store.update_fields(BOOKING, booking_id, {
            "job_id": job["id"],
            "job_reference": job["job_reference"],
        })
        return job

    # =========================================================================
    # EVIDENCE
    # =========================================================================

    async def submit_evidence(
        self,
        job_id: str,
        status: str,
        actor: str,
        evidence: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Record evidence for a job status and advance the job to that status
        when it is the legal next step.

        Returns:
            {"evidence": EvidenceRecord, "job": dict, "advanced": bool}
        """
        await self._get(JOB, job_id)
        record = await self.ledger.submit(
            job_id,
            status,
            actor,
            photos=evidence.get("photos"),
            signature=evidence.get("signature"),
            seal_numbers=evidence.get("seal_numbers"),
            notes=evidence.get("notes"),
        )

        job = await self._get(JOB, job_id)
        advanced = False
        if WorkflowEngine.is_valid_transition(JOB, job["status"], record.status):
            try:
                job = await self.orchestrator.apply_status_change(
                    JOB, job_id, record.status, actor,
                    notes=record.notes or f"Evidence submitted for {record.status}"
                )
                advanced = True
            except InvalidTransition as e:
                # Another caller moved the job first; the evidence stands
                logger.info("Evidence for job %s recorded without advancing: %s", job_id, e.message)
                job = await self._get(JOB, job_id)
        return {"evidence": record, "job": job, "advanced": advanced}

    async def list_evidence(self, job_id: str) -> List[EvidenceRecord]:
        await self._get(JOB, job_id)
        return await self.ledger.get(job_id)

    # =========================================================================
    # SANITISATION & GRADING
    # =========================================================================

    def _find_line_item(self, job: Dict[str, Any], line_item_id: str) -> Dict[str, Any]:
        for item in job.get("line_items", []):
            if item.get("id") == line_item_id:
                return item
        raise EntityNotFound("line item", line_item_id)

    def _require_job_status(self, job: Dict[str, Any], status: str, action: str):
        if job["status"] != status:
            raise WorkflowValidationError(
                f'Cannot {action} while job is "{job["status"]}"; job must be "{status}"',
                details={"job_id": job["id"], "status": job["status"], "required_status": status}
            )

    async def sanitise_line_item(
        self,
        job_id: str,
        line_item_id: str,
        method: str,
        actor: str,
        method_details: Optional[str] = None
    ) -> Dict[str, Any]:
        """Mark one line item sanitised. Each item is sanitised at most once."""
        if method not in WIPE_METHODS:
            raise WorkflowValidationError(
                f"Unknown wipe method '{method}'", details={"allowed": list(WIPE_METHODS)}
            )
        job = await self._get(JOB, job_id)
        item = self._find_line_item(job, line_item_id)
        if item.get("sanitised"):
            raise AlreadySanitised(line_item_id)
        self._require_job_status(job, JobStatus.WAREHOUSE.value, "sanitise assets")

        fields = {
            "sanitised": True,
            "wipe_method": (method_details or "").strip() or method,
            "sanitisation_record_id": _record_id("CERT-SANIT", self.clock()),
        }
        if not await self.store.update_line_item_once(job_id, line_item_id, "sanitised", False, fields):
            raise AlreadySanitised(line_item_id)

        logger.info("Line item %s on job %s sanitised (%s) by %s", line_item_id, job_id, fields["wipe_method"], actor)
        return {**item, **fields}

    async def complete_sanitisation(self, job_id: str, actor: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Move the job to sanitised once every line item is sanitised."""
        job = await self._get(JOB, job_id)
        pending = [i["id"] for i in job.get("line_items", []) if not i.get("sanitised")]
        if pending:
            raise WorkflowValidationError(
                f"{len(pending)} asset(s) still need sanitisation",
                details={"job_id": job_id, "pending_line_items": pending}
            )
        return await self.orchestrator.apply_status_change(
            JOB, job_id, JobStatus.SANITISED.value, actor,
            notes=notes or "Sanitisation complete"
        )

    async def grade_line_item(
        self,
        job_id: str,
        line_item_id: str,
        grade: str,
        actor: str
    ) -> Dict[str, Any]:
        """Grade one line item and price it. Each item is graded at most once."""
        if grade not in GRADES:
            raise WorkflowValidationError(f"Unknown grade '{grade}'", details={"allowed": list(GRADES)})
        job = await self._get(JOB, job_id)
        item = self._find_line_item(job, line_item_id)
        if item.get("grade"):
            raise AlreadyGraded(line_item_id)
        self._require_job_status(job, JobStatus.SANITISED.value, "grade assets")

        fields = {
            "grade": grade,
            "grading_record_id": _record_id("GRADE", self.clock()),
            "resale_value": self.resale_calculator(item["category"], grade, item.get("quantity", 0)),
        }
        if not await self.store.update_line_item_once(job_id, line_item_id, "grade", None, fields):
            raise AlreadyGraded(line_item_id)

        logger.info("Line item %s on job %s graded %s by %s", line_item_id, job_id, grade, actor)
        return {**item, **fields}

    async def complete_grading(self, job_id: str, actor: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Move the job to graded once every line item is graded."""
        job = await self._get(JOB, job_id)
        pending = [i["id"] for i in job.get("line_items", []) if not i.get("grade")]
        if pending:
            raise WorkflowValidationError(
                f"{len(pending)} asset(s) still need grading",
                details={"job_id": job_id, "pending_line_items": pending}
            )
        return await self.orchestrator.apply_status_change(
            JOB, job_id, JobStatus.GRADED.value, actor,
            notes=notes or "Grading complete"
        )

    # =========================================================================
    # REPAIR
    # =========================================================================

    async def resync_statuses(self, actor: str = None) -> Dict[str, Any]:
        """
        Walk every linked Booking/Job pair and bring lagging bookings up to
        their job's mapped status.
        """
        actor = actor or SYSTEM_ACTOR
        checked = 0
        updated = 0
        for job in await self.store.list_linked_jobs():
            checked += 1
            outcomes = await self.orchestrator.resync_pair(job["id"], actor)
            if any(o.applied for o in outcomes):
                updated += 1
        logger.info("Status resync complete: checked=%d, updated=%d", checked, updated)
        return {"checked": checked, "updated": updated}
