"""
ITAD Collection Hub - Workflow Orchestrator

The single entry point for Booking and Job status mutation.

For each call:
1. Load the entity and validate the transition against its table
2. Write status + history entry with a conditional update on the status
   that was read; stage timestamps are only set when still unset
3. Synchronize the paired entity through the Status Mapper as a SYNC call.
   A SYNC call never synchronizes back, so recursion stops at depth 1
4. Publish one milestone event per status actually changed, after all
   writes of the call have committed
5. Return the refreshed primary entity

A duplicate REQUEST is rejected with InvalidTransition. A SYNC call whose
target is already reached is a benign "already applied" no-op. A SYNC write
that keeps losing the conditional update is reported as "concurrent_update"
and left for resync_pair; the committed primary write still stands.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable

from collection_hub.services.milestones import MilestoneBus, MilestoneEvent, ChangeOrigin
from collection_hub.services.stores import WorkflowStore
from collection_hub.services.workflow_config import STATUS_WRITE_MAX_ATTEMPTS
from collection_hub.services.workflow_engine import (
    WorkflowEngine,
    EntityKind,
    CANCELLED,
    enum_value,
    map_job_status_to_booking,
    paired_kind,
)
from collection_hub.services.workflow_errors import (
    EntityNotFound,
    InvalidTransition,
    ConcurrentUpdate,
)

logger = logging.getLogger(__name__)

REASON_ALREADY_APPLIED = "already_applied"
REASON_NOT_FORWARD = "not_a_forward_step"
REASON_CONCURRENT_UPDATE = "concurrent_update"


@dataclass
class StatusChangeOutcome:
    """Result of one status write attempt on one entity."""
    kind: str
    entity_id: str
    applied: bool
    old_status: Optional[str]
    new_status: str
    entity: Optional[Dict[str, Any]] = None
    origin: str = ChangeOrigin.REQUEST
    reason: Optional[str] = None
    synced: Optional["StatusChangeOutcome"] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "entity_id": self.entity_id,
            "applied": self.applied,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "origin": self.origin,
            "reason": self.reason,
            "synced": self.synced.to_dict() if self.synced else None,
        }


class WorkflowOrchestrator:
    """
    Drives the Booking/Job state machines and keeps the pair in sync.

    Usage:
        orchestrator = WorkflowOrchestrator(store, bus)
        booking = await orchestrator.apply_status_change("booking", booking_id, "scheduled", admin_id)
    """

    def __init__(
        self,
        store: WorkflowStore,
        bus: Optional[MilestoneBus] = None,
        clock: Callable[[], datetime] = None,
        max_attempts: int = None
    ):
        self.store = store
        self.bus = bus or MilestoneBus()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_attempts = max_attempts or STATUS_WRITE_MAX_ATTEMPTS

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def apply_status_change(
        self,
        kind: str,
        entity_id: str,
        requested_status: str,
        actor: str,
        notes: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Apply an externally requested status change.

        Returns:
            The refreshed primary entity

        Raises:
            EntityNotFound, InvalidTransition, ConcurrentUpdate
        """
        outcome = await self.change_status(
            kind, entity_id, requested_status, actor,
            notes=notes, context=context, origin=ChangeOrigin.REQUEST
        )
        return outcome.entity

    async def change_status(
        self,
        kind: str,
        entity_id: str,
        requested_status: str,
        actor: str,
        notes: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        origin: str = ChangeOrigin.REQUEST
    ) -> StatusChangeOutcome:
        """
        Apply a status change and report what happened on both entities.

        With origin=SYNC the call is treated as a synchronization echo: an
        unreachable target is reported as not applied instead of raising,
        and the paired entity is left alone.
        """
        kind = enum_value(kind)
        requested_status = enum_value(requested_status)
        context = dict(context or {})
        events: List[MilestoneEvent] = []

        outcome = await self._write_status(
            kind, entity_id, requested_status, actor, notes, context, origin, events
        )

        try:
            if outcome.applied and origin == ChangeOrigin.REQUEST:
                outcome.synced = await self._sync_pair(kind, outcome.entity, actor, context, events)
        finally:
            # Side effects only for writes that have committed
            await self.bus.publish_all(events)
        return outcome

    # =========================================================================
    # STATUS WRITE
    # =========================================================================

    async def _write_status(
        self,
        kind: str,
        entity_id: str,
        requested_status: str,
        actor: str,
        notes: Optional[str],
        context: Dict[str, Any],
        origin: str,
        events: List[MilestoneEvent]
    ) -> StatusChangeOutcome:
        for attempt in range(1, self.max_attempts + 1):
            entity = await self.store.get_entity(kind, entity_id)
            if entity is None:
                raise EntityNotFound(kind, entity_id)

            current_status = entity.get("status")
            if not WorkflowEngine.is_valid_transition(kind, current_status, requested_status):
                if origin == ChangeOrigin.SYNC:
                    reached = WorkflowEngine.has_reached(kind, current_status, requested_status)
                    reason = REASON_ALREADY_APPLIED if reached else REASON_NOT_FORWARD
                    logger.debug(
                        "Sync echo skipped: kind=%s, id=%s, current=%s, target=%s (%s)",
                        kind, entity_id, current_status, requested_status, reason
                    )
                    return StatusChangeOutcome(
                        kind=kind, entity_id=entity_id, applied=False,
                        old_status=current_status, new_status=current_status,
                        entity=entity, origin=origin, reason=reason
                    )
                logger.warning(
                    "Workflow transition blocked: kind=%s, id=%s, %s -> %s (actor=%s)",
                    kind, entity_id, current_status, requested_status, actor
                )
                raise InvalidTransition(kind, entity_id, current_status, requested_status)

            timestamp = self.clock().isoformat()
            history_entry = {
                "status": requested_status,
                "actor": actor,
                "notes": notes,
                "timestamp": timestamp,
                "origin": origin,
            }
            extra_fields = {"updated_at": timestamp}
            stage_field = WorkflowEngine.get_stage_timestamp_field(kind, requested_status)
            if stage_field and not entity.get(stage_field):
                extra_fields[stage_field] = timestamp

            updated = await self.store.compare_and_set_status(
                kind, entity_id, current_status, requested_status, history_entry, extra_fields
            )
            if updated is None:
                logger.info(
                    "Concurrent status change on %s %s (attempt %d/%d), reloading",
                    kind, entity_id, attempt, self.max_attempts
                )
                continue

            logger.info(
                "Workflow transition: kind=%s, id=%s, %s -> %s (actor=%s, origin=%s)",
                kind, entity_id, current_status, requested_status, actor, origin
            )
            events.append(self._build_event(kind, updated, current_status, actor, timestamp, origin, context))
            return StatusChangeOutcome(
                kind=kind, entity_id=entity_id, applied=True,
                old_status=current_status, new_status=requested_status,
                entity=updated, origin=origin
            )

        raise ConcurrentUpdate(kind, entity_id, self.max_attempts)

    def _build_event(self, kind, entity, old_status, actor, timestamp, origin, context) -> MilestoneEvent:
        if kind == EntityKind.BOOKING.value:
            booking_id, job_id = entity["id"], entity.get("job_id")
        else:
            booking_id, job_id = entity.get("booking_id"), entity["id"]
        return MilestoneEvent(
            kind=kind,
            entity_id=entity["id"],
            old_status=old_status,
            new_status=entity["status"],
            actor=actor,
            timestamp=timestamp,
            origin=origin,
            booking_id=booking_id,
            job_id=job_id,
            context=dict(context),
        )

    # =========================================================================
    # SYNCHRONIZATION
    # =========================================================================

    async def _load_pair(self, kind: str, entity: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if kind == EntityKind.BOOKING.value:
            return await self.store.find_job_by_booking(entity["id"])
        booking_id = entity.get("booking_id")
        if not booking_id:
            return None
        booking = await self.store.get_booking(booking_id)
        if booking is None:
            logger.warning("Job %s references missing booking %s", entity["id"], booking_id)
        return booking

    async def _sync_pair(
        self,
        kind: str,
        entity: Dict[str, Any],
        actor: str,
        context: Dict[str, Any],
        events: List[MilestoneEvent]
    ) -> Optional[StatusChangeOutcome]:
        """Echo a committed status onto the paired entity, one level deep."""
        pair = await self._load_pair(kind, entity)
        if pair is None:
            return None

        target = WorkflowEngine.map_to_paired_status(kind, entity["status"], pair.get("status"))
        if target is None:
            logger.debug(
                "No paired status for %s %s at %s", kind, entity["id"], entity["status"]
            )
            return None

        notes = f"Synchronized from {kind} {entity['id']} reaching {entity['status']}"
        try:
            return await self._write_status(
                paired_kind(kind), pair["id"], target, actor, notes, context, ChangeOrigin.SYNC, events
            )
        except ConcurrentUpdate:
            logger.warning(
                "Sync of %s %s to %s lost to concurrent writers, left for repair",
                paired_kind(kind), pair["id"], target
            )
            return StatusChangeOutcome(
                kind=paired_kind(kind), entity_id=pair["id"], applied=False,
                old_status=pair.get("status"), new_status=pair.get("status"),
                entity=pair, origin=ChangeOrigin.SYNC, reason=REASON_CONCURRENT_UPDATE
            )

    # =========================================================================
    # REPAIR
    # =========================================================================

    async def resync_pair(self, job_id: str, actor: str) -> List[StatusChangeOutcome]:
        """
        Walk a lagging Booking forward until it matches its Job.

        The Job is the operational ground truth. Each step is a single legal
        Booking transition written as a SYNC call, so nothing echoes back to
        the Job. A Booking already at or past the mapped status is left alone.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise EntityNotFound(EntityKind.JOB.value, job_id)

        booking_id = job.get("booking_id")
        target = map_job_status_to_booking(job["status"])
        if not booking_id or target is None:
            return []

        booking_kind = EntityKind.BOOKING.value
        notes = f"Resynchronized from job {job_id} at {job['status']}"
        outcomes: List[StatusChangeOutcome] = []
        events: List[MilestoneEvent] = []

        while True:
            booking = await self.store.get_booking(booking_id)
            if booking is None:
                logger.warning("Job %s references missing booking %s", job_id, booking_id)
                break
            if WorkflowEngine.has_reached(booking_kind, booking["status"], target):
                break

            if target == CANCELLED:
                step = CANCELLED
            else:
                step = [
                    s for s in WorkflowEngine.get_next_statuses(booking_kind, booking["status"])
                    if s != CANCELLED
                ][0]

            outcome = await self._write_status(
                booking_kind, booking_id, step, actor, notes, {}, ChangeOrigin.SYNC, events
            )
            outcomes.append(outcome)
            if not outcome.applied:
                break

        await self.bus.publish_all(events)
        return outcomes
