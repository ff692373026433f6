"""
ITAD Collection Hub - Workflow Engine

Deterministic state machines for the two coupled records of a collection:

- Booking: the customer-facing view of the request
- Job: the operations-facing record of the physical work

This module is pure business logic with no direct HTTP or DB calls. It holds
the transition tables for both entities and the Status Mapper that translates
a status on one entity into the target status of its pair. Everything here is
covered by unit tests.
"""

from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, List, Tuple, Mapping, FrozenSet
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# ENTITY KINDS & STATUSES
# =============================================================================

class EntityKind(str, Enum):
    """The two workflow entities kept in sync by the orchestrator."""
    BOOKING = "booking"
    JOB = "job"


class BookingStatus(str, Enum):
    """Booking status values, in lifecycle order."""
    PENDING = "pending"          # Submitted, awaiting admin approval
    CREATED = "created"          # Approved, job reference issued
    SCHEDULED = "scheduled"      # Driver assigned
    COLLECTED = "collected"      # Assets collected from site
    SANITISED = "sanitised"      # Data sanitisation complete
    GRADED = "graded"            # Grading complete, awaiting final approval
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    """Job status values, in lifecycle order."""
    BOOKED = "booked"            # Job exists, no driver yet
    ROUTED = "routed"            # Driver assigned
    EN_ROUTE = "en_route"        # Driver travelling to site
    ARRIVED = "arrived"          # Driver on site
    COLLECTED = "collected"      # Assets loaded
    WAREHOUSE = "warehouse"      # Goods received at intake point
    SANITISED = "sanitised"
    GRADED = "graded"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# =============================================================================
# TRANSITION TABLES
# =============================================================================

# Forward lifecycle order; cancelled sits outside the sequence
BOOKING_LIFECYCLE: Tuple[str, ...] = (
    BookingStatus.PENDING.value,
    BookingStatus.CREATED.value,
    BookingStatus.SCHEDULED.value,
    BookingStatus.COLLECTED.value,
    BookingStatus.SANITISED.value,
    BookingStatus.GRADED.value,
    BookingStatus.COMPLETED.value,
)

JOB_LIFECYCLE: Tuple[str, ...] = (
    JobStatus.BOOKED.value,
    JobStatus.ROUTED.value,
    JobStatus.EN_ROUTE.value,
    JobStatus.ARRIVED.value,
    JobStatus.COLLECTED.value,
    JobStatus.WAREHOUSE.value,
    JobStatus.SANITISED.value,
    JobStatus.GRADED.value,
    JobStatus.COMPLETED.value,
)

CANCELLED = "cancelled"
COMPLETED = "completed"
TERMINAL_STATUSES: FrozenSet[str] = frozenset({COMPLETED, CANCELLED})


def _build_transitions(lifecycle: Tuple[str, ...]) -> Mapping[str, FrozenSet[str]]:
    """
    Build {current_status: allowed_next_statuses} from a linear lifecycle.

    Each non-terminal status may advance to its immediate successor or be
    cancelled. Terminal statuses have no way out.
    """
    table: Dict[str, FrozenSet[str]] = {}
    for index, status in enumerate(lifecycle):
        if status in TERMINAL_STATUSES:
            table[status] = frozenset()
            continue
        table[status] = frozenset({lifecycle[index + 1], CANCELLED})
    table[CANCELLED] = frozenset()
    return MappingProxyType(table)


BOOKING_TRANSITIONS: Mapping[str, FrozenSet[str]] = _build_transitions(BOOKING_LIFECYCLE)
JOB_TRANSITIONS: Mapping[str, FrozenSet[str]] = _build_transitions(JOB_LIFECYCLE)

WORKFLOW_DEFINITIONS: Mapping[str, Mapping[str, FrozenSet[str]]] = MappingProxyType({
    EntityKind.BOOKING.value: BOOKING_TRANSITIONS,
    EntityKind.JOB.value: JOB_TRANSITIONS,
})

_LIFECYCLES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    EntityKind.BOOKING.value: BOOKING_LIFECYCLE,
    EntityKind.JOB.value: JOB_LIFECYCLE,
})

# Stage timestamp field set the first time a booking reaches the status
BOOKING_STAGE_TIMESTAMPS: Mapping[str, str] = MappingProxyType({
    BookingStatus.SCHEDULED.value: "scheduled_at",
    BookingStatus.COLLECTED.value: "collected_at",
    BookingStatus.SANITISED.value: "sanitised_at",
    BookingStatus.GRADED.value: "graded_at",
    BookingStatus.COMPLETED.value: "completed_at",
})

JOB_STAGE_TIMESTAMPS: Mapping[str, str] = MappingProxyType({
    JobStatus.COMPLETED.value: "completed_at",
})

STAGE_TIMESTAMPS: Mapping[str, Mapping[str, str]] = MappingProxyType({
    EntityKind.BOOKING.value: BOOKING_STAGE_TIMESTAMPS,
    EntityKind.JOB.value: JOB_STAGE_TIMESTAMPS,
})

# Job statuses at which the goods are already past the collection point
JOB_PAST_COLLECTION: FrozenSet[str] = frozenset({
    JobStatus.WAREHOUSE.value,
    JobStatus.SANITISED.value,
    JobStatus.GRADED.value,
    JobStatus.COMPLETED.value,
})


# =============================================================================
# STATUS MAPPER
# =============================================================================

JOB_TO_BOOKING_STATUS: Mapping[str, str] = MappingProxyType({
    JobStatus.ROUTED.value: BookingStatus.SCHEDULED.value,
    JobStatus.COLLECTED.value: BookingStatus.COLLECTED.value,
    JobStatus.WAREHOUSE.value: BookingStatus.COLLECTED.value,
    JobStatus.SANITISED.value: BookingStatus.SANITISED.value,
    JobStatus.GRADED.value: BookingStatus.GRADED.value,
    JobStatus.COMPLETED.value: BookingStatus.COMPLETED.value,
    JobStatus.CANCELLED.value: BookingStatus.CANCELLED.value,
})

BOOKING_TO_JOB_STATUS: Mapping[str, str] = MappingProxyType({
    BookingStatus.CREATED.value: JobStatus.BOOKED.value,
    BookingStatus.SCHEDULED.value: JobStatus.ROUTED.value,
    BookingStatus.COLLECTED.value: JobStatus.COLLECTED.value,
    BookingStatus.SANITISED.value: JobStatus.SANITISED.value,
    BookingStatus.GRADED.value: JobStatus.GRADED.value,
    BookingStatus.COMPLETED.value: JobStatus.COMPLETED.value,
    BookingStatus.CANCELLED.value: JobStatus.CANCELLED.value,
})


def enum_value(value) -> Optional[str]:
    """Accept enum members or raw strings."""
    if isinstance(value, Enum):
        return value.value
    return value


def map_job_status_to_booking(job_status: str) -> Optional[str]:
    """
    Booking status implied by a job status, or None.

    Job collected and warehouse collapse onto booking collected. booked,
    en_route and arrived have no booking counterpart.
    """
    return JOB_TO_BOOKING_STATUS.get(enum_value(job_status))


def map_booking_status_to_job(booking_status: str, current_job_status: Optional[str] = None) -> Optional[str]:
    """
    Job status implied by a booking status, or None.

    Booking collected never pulls a job back: if the job is already at
    warehouse or beyond, there is no mapping.
    """
    booking_key = enum_value(booking_status)
    if booking_key == BookingStatus.COLLECTED.value and enum_value(current_job_status) in JOB_PAST_COLLECTION:
        return None
    return BOOKING_TO_JOB_STATUS.get(booking_key)


def paired_kind(kind: str) -> str:
    """The entity kind on the other side of the sync."""
    if enum_value(kind) == EntityKind.JOB.value:
        return EntityKind.BOOKING.value
    return EntityKind.JOB.value


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class WorkflowEngine:
    """
    Booking/Job transition rules.

    Stateless helpers over the module-level tables. The orchestrator uses
    these to validate every write, including synchronization writes.
    """

    @staticmethod
    def get_workflow_definition(kind: str) -> Mapping[str, FrozenSet[str]]:
        """Get the transition table for an entity kind."""
        kind_key = enum_value(kind)
        if kind_key not in WORKFLOW_DEFINITIONS:
            raise ValueError(f"Unknown entity kind '{kind}'")
        return WORKFLOW_DEFINITIONS[kind_key]

    @staticmethod
    def is_known_status(kind: str, status: str) -> bool:
        return enum_value(status) in WorkflowEngine.get_workflow_definition(kind)

    @staticmethod
    def is_valid_transition(kind: str, current_status: Optional[str], requested_status: str) -> bool:
        """
        Pure lookup: can an entity of this kind move from current to requested?

        Self transitions, backward moves and skips are all rejected.
        """
        allowed = WorkflowEngine.get_workflow_definition(kind).get(enum_value(current_status))
        if allowed is None:
            return False
        return enum_value(requested_status) in allowed

    @staticmethod
    def can_transition(kind: str, current_status: Optional[str], requested_status: str) -> Tuple[bool, str]:
        """
        Check a transition and explain a refusal.

        Returns:
            (can_transition, reason)
        """
        current_key = enum_value(current_status)
        requested_key = enum_value(requested_status)
        workflow_def = WorkflowEngine.get_workflow_definition(kind)

        if requested_key not in workflow_def:
            return (False, f"Unknown {enum_value(kind)} status '{requested_key}'")
        if current_key not in workflow_def:
            return (False, f"No transitions defined for status '{current_key}' in {enum_value(kind)} workflow")
        if WorkflowEngine.is_valid_transition(kind, current_key, requested_key):
            return (True, "Transition allowed")
        return (False, f"cannot move from {current_key} to {requested_key}")

    @staticmethod
    def get_next_statuses(kind: str, current_status: str) -> List[str]:
        """Statuses reachable in one step, in lifecycle order."""
        allowed = WorkflowEngine.get_workflow_definition(kind).get(enum_value(current_status), frozenset())
        lifecycle = _LIFECYCLES[enum_value(kind)] + (CANCELLED,)
        return [s for s in lifecycle if s in allowed]

    @staticmethod
    def is_terminal(status: str) -> bool:
        return enum_value(status) in TERMINAL_STATUSES

    @staticmethod
    def get_terminal_statuses() -> List[str]:
        return [COMPLETED, CANCELLED]

    @staticmethod
    def get_all_statuses(kind: str) -> List[str]:
        return list(_LIFECYCLES[enum_value(kind)]) + [CANCELLED]

    @staticmethod
    def has_reached(kind: str, current_status: Optional[str], target_status: str) -> bool:
        """
        True when current is the target or already past it.

        A terminal current status counts as having reached everything, since
        nothing can move it any more.
        """
        current_key = enum_value(current_status)
        target_key = enum_value(target_status)
        if current_key == target_key:
            return True
        if current_key in TERMINAL_STATUSES:
            return True
        if target_key == CANCELLED:
            return False
        lifecycle = _LIFECYCLES[enum_value(kind)]
        if current_key not in lifecycle or target_key not in lifecycle:
            return False
        return lifecycle.index(current_key) >= lifecycle.index(target_key)

    @staticmethod
    def get_stage_timestamp_field(kind: str, status: str) -> Optional[str]:
        """Name of the first-write-wins timestamp set on reaching a status."""
        return STAGE_TIMESTAMPS[enum_value(kind)].get(enum_value(status))

    @staticmethod
    def map_to_paired_status(kind: str, status: str, paired_current_status: Optional[str] = None) -> Optional[str]:
        """Run the Status Mapper in the direction implied by the entity kind."""
        if enum_value(kind) == EntityKind.JOB.value:
            return map_job_status_to_booking(status)
        return map_booking_status_to_job(status, paired_current_status)
