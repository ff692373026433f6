"""
ITAD Collection Hub - Notification Dispatcher

Fans milestone events out to the people involved in a collection: client,
reseller, driver and admins.

Who hears about what is a fixed table keyed by (kind, status, trigger).
Special notification types (driver en route, goods received, ...) replace
the generic status-changed notice for the same transition; they are never
sent alongside it.

Delivery is exactly-once per (booking, milestone, role, recipient): the key
is claimed in the notification log before delivery and released again if
delivery fails, so a failed notice can be replayed.
"""

import asyncio
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, Any, List, Mapping, Tuple, Callable, Awaitable

from collection_hub.services.milestones import MilestoneEvent, TRIGGER_DRIVER_ASSIGNMENT
from collection_hub.services.stores import WorkflowStore
from collection_hub.services.workflow_config import (
    NOTIFICATIONS_ENABLED,
    SIDE_EFFECT_TIMEOUT_SECONDS,
    ADMIN_USER_IDS,
)
from collection_hub.services.workflow_engine import BookingStatus, JobStatus, EntityKind

logger = logging.getLogger(__name__)


# =============================================================================
# ROLES & TYPES
# =============================================================================

class Role(str, Enum):
    CLIENT = "client"
    RESELLER = "reseller"
    DRIVER = "driver"
    ADMIN = "admin"


class NotificationType(str, Enum):
    STATUS_CHANGED = "status_changed"            # Generic booking status notice
    JOB_STATUS_CHANGED = "job_status_changed"    # Generic job status notice
    PENDING_APPROVAL = "pending_approval"
    DRIVER_ASSIGNED = "driver_assigned"
    JOB_ASSIGNED = "job_assigned"
    DRIVER_EN_ROUTE = "driver_en_route"
    DRIVER_ARRIVED = "driver_arrived"
    GOODS_RECEIVED = "goods_received"
    GRADED_FOR_APPROVAL = "graded_for_approval"


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"


@dataclass(frozen=True)
class Recipient:
    role: Role
    user_id: str


# =============================================================================
# ROUTING TABLE
# =============================================================================

_B = EntityKind.BOOKING.value
_J = EntityKind.JOB.value

RouteKey = Tuple[str, str, Optional[str]]


def _route(entries: Dict[Role, NotificationType]) -> Mapping[Role, NotificationType]:
    return MappingProxyType(dict(entries))


# (kind, status, trigger) -> {role: notification type}. A missing key means
# nobody is notified. Trigger-specific rows replace the trigger-less row.
NOTIFICATION_ROUTES: Mapping[RouteKey, Mapping[Role, NotificationType]] = MappingProxyType({
    (_B, BookingStatus.PENDING.value, None): _route({
        Role.ADMIN: NotificationType.PENDING_APPROVAL,
    }),
    (_B, BookingStatus.CREATED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
        Role.RESELLER: NotificationType.STATUS_CHANGED,
    }),
    (_B, BookingStatus.SCHEDULED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
    }),
    (_B, BookingStatus.SCHEDULED.value, TRIGGER_DRIVER_ASSIGNMENT): _route({
        Role.CLIENT: NotificationType.DRIVER_ASSIGNED,
        Role.RESELLER: NotificationType.DRIVER_ASSIGNED,
    }),
    (_B, BookingStatus.COLLECTED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
    }),
    (_B, BookingStatus.SANITISED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
    }),
    (_B, BookingStatus.GRADED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
        Role.RESELLER: NotificationType.STATUS_CHANGED,
        Role.ADMIN: NotificationType.GRADED_FOR_APPROVAL,
    }),
    (_B, BookingStatus.COMPLETED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
        Role.RESELLER: NotificationType.STATUS_CHANGED,
    }),
    (_B, BookingStatus.CANCELLED.value, None): _route({
        Role.CLIENT: NotificationType.STATUS_CHANGED,
        Role.RESELLER: NotificationType.STATUS_CHANGED,
    }),
    (_J, JobStatus.ROUTED.value, None): _route({
        Role.DRIVER: NotificationType.JOB_ASSIGNED,
    }),
    (_J, JobStatus.EN_ROUTE.value, None): _route({
        Role.CLIENT: NotificationType.DRIVER_EN_ROUTE,
    }),
    (_J, JobStatus.ARRIVED.value, None): _route({
        Role.CLIENT: NotificationType.DRIVER_ARRIVED,
    }),
    (_J, JobStatus.WAREHOUSE.value, None): _route({
        Role.CLIENT: NotificationType.GOODS_RECEIVED,
        Role.RESELLER: NotificationType.GOODS_RECEIVED,
        Role.DRIVER: NotificationType.JOB_STATUS_CHANGED,
        Role.ADMIN: NotificationType.JOB_STATUS_CHANGED,
    }),
    (_J, JobStatus.SANITISED.value, None): _route({
        Role.ADMIN: NotificationType.JOB_STATUS_CHANGED,
    }),
    (_J, JobStatus.COMPLETED.value, None): _route({
        Role.ADMIN: NotificationType.JOB_STATUS_CHANGED,
    }),
})

_NO_ROUTE: Mapping[Role, NotificationType] = MappingProxyType({})


def resolve_route(kind: str, status: str, trigger: Optional[str] = None) -> Mapping[Role, NotificationType]:
    """{role: notification type} for a milestone."""
    if trigger is not None and (kind, status, trigger) in NOTIFICATION_ROUTES:
        return NOTIFICATION_ROUTES[(kind, status, trigger)]
    return NOTIFICATION_ROUTES.get((kind, status, None), _NO_ROUTE)


# =============================================================================
# MESSAGE TEMPLATES
# =============================================================================

BOOKING_STATUS_MESSAGES: Mapping[str, Tuple[NotificationLevel, str, str]] = MappingProxyType({
    "created": (NotificationLevel.SUCCESS, "Booking approved", "Booking {booking_number} has been approved and is now active"),
    "scheduled": (NotificationLevel.INFO, "Booking scheduled", "Booking {booking_number} has been scheduled"),
    "collected": (NotificationLevel.SUCCESS, "Booking collected", "Booking {booking_number} has been collected"),
    "sanitised": (NotificationLevel.INFO, "Booking sanitised", "Booking {booking_number} has been sanitised"),
    "graded": (NotificationLevel.INFO, "Booking graded", "Booking {booking_number} has been graded"),
    "completed": (NotificationLevel.SUCCESS, "Booking completed", "Booking {booking_number} has been completed"),
    "cancelled": (NotificationLevel.WARNING, "Booking cancelled", "Booking {booking_number} has been cancelled"),
})

JOB_STATUS_MESSAGES: Mapping[str, Tuple[NotificationLevel, str, str]] = MappingProxyType({
    "routed": (NotificationLevel.INFO, "Job assigned", "Job {job_reference} has been assigned"),
    "en_route": (NotificationLevel.INFO, "Job in progress", "Job {job_reference} is now en route"),
    "arrived": (NotificationLevel.INFO, "Arrived at site", "Job {job_reference} has arrived at the collection site"),
    "collected": (NotificationLevel.SUCCESS, "Job collected", "Job {job_reference} has been collected"),
    "warehouse": (NotificationLevel.SUCCESS, "Job delivered", "Job {job_reference} has been delivered to warehouse"),
    "sanitised": (NotificationLevel.INFO, "Job sanitised", "Job {job_reference} has been sanitised"),
    "graded": (NotificationLevel.INFO, "Job graded", "Job {job_reference} has been graded"),
    "completed": (NotificationLevel.SUCCESS, "Job completed", "Job {job_reference} has been completed"),
    "cancelled": (NotificationLevel.WARNING, "Job cancelled", "Job {job_reference} has been cancelled"),
})

SPECIAL_MESSAGES: Mapping[NotificationType, Tuple[NotificationLevel, str, str]] = MappingProxyType({
    NotificationType.PENDING_APPROVAL: (
        NotificationLevel.WARNING, "Pending approval",
        "Booking {booking_number} requires your approval"),
    NotificationType.DRIVER_ASSIGNED: (
        NotificationLevel.INFO, "Driver assigned",
        "Driver {driver_name} has been assigned to your booking {booking_number}"),
    NotificationType.JOB_ASSIGNED: (
        NotificationLevel.INFO, "New job assigned",
        "A new collection job {job_reference} has been assigned to you"),
    NotificationType.DRIVER_EN_ROUTE: (
        NotificationLevel.INFO, "Driver en route",
        "The driver for booking {booking_number} is now en route to your location"),
    NotificationType.DRIVER_ARRIVED: (
        NotificationLevel.INFO, "Driver arrived",
        "The driver for booking {booking_number} has arrived at your location"),
    NotificationType.GOODS_RECEIVED: (
        NotificationLevel.SUCCESS, "Assets delivered to warehouse",
        "Assets from booking {booking_number} have been delivered to the warehouse"),
    NotificationType.GRADED_FOR_APPROVAL: (
        NotificationLevel.INFO, "Ready for approval",
        "Booking {booking_number} has been graded and is ready for final approval"),
})


@dataclass
class RenderedNotification:
    level: str
    title: str
    message: str
    link: Optional[str]
    related_id: Optional[str]
    related_type: str


def render_notification(
    notification_type: NotificationType,
    event: MilestoneEvent,
    recipient: Recipient,
    booking: Optional[Dict[str, Any]] = None,
    job: Optional[Dict[str, Any]] = None
) -> RenderedNotification:
    """Build title, message and link for one recipient."""
    booking = booking or {}
    job = job or {}
    booking_id = event.booking_id or booking.get("id")
    job_id = event.job_id or job.get("id")
    values = {
        "booking_number": booking.get("booking_number") or booking_id,
        "job_reference": job.get("job_reference") or booking.get("job_reference") or job_id,
        "driver_name": event.context.get("driver_name") or booking.get("driver_name") or "",
    }

    if notification_type == NotificationType.STATUS_CHANGED:
        level, title, template = BOOKING_STATUS_MESSAGES[event.new_status]
    elif notification_type == NotificationType.JOB_STATUS_CHANGED:
        level, title, template = JOB_STATUS_MESSAGES[event.new_status]
    else:
        level, title, template = SPECIAL_MESSAGES[notification_type]

    if notification_type == NotificationType.PENDING_APPROVAL:
        link, related_id, related_type = f"/admin/booking-approval/{booking_id}", booking_id, "booking"
    elif notification_type == NotificationType.GRADED_FOR_APPROVAL:
        link, related_id, related_type = f"/admin/approval/{booking_id}", booking_id, "booking"
    elif recipient.role == Role.DRIVER:
        link, related_id, related_type = f"/driver/jobs/{job_id}", job_id, "job"
    elif notification_type == NotificationType.JOB_STATUS_CHANGED:
        link, related_id, related_type = f"/jobs/{job_id}", job_id, "job"
    else:
        link, related_id, related_type = f"/bookings/{booking_id}", booking_id, "booking"

    return RenderedNotification(
        level=level.value,
        title=title,
        message=template.format(**values),
        link=link,
        related_id=related_id,
        related_type=related_type,
    )


# =============================================================================
# DELIVERY
# =============================================================================

DeliverFn = Callable[..., Awaitable[Any]]


class InAppNotificationDelivery:
    """
    Default delivery: write an in-app notification record.

    Called as deliver(recipient_id, title, message, link, **extra).
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def __call__(self, recipient_id: str, title: str, message: str, link: Optional[str], **extra):
        notification = {
            "id": str(uuid.uuid4()),
            "user_id": recipient_id,
            "type": extra.get("level", NotificationLevel.INFO.value),
            "title": title,
            "message": message,
            "url": link,
            "related_id": extra.get("related_id"),
            "related_type": extra.get("related_type"),
            "read": False,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.store.insert_notification(notification)
        return notification


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Milestone subscriber that delivers notifications exactly once.

    Usage:
        dispatcher = NotificationDispatcher(store)
        bus.subscribe(dispatcher.handle_milestone, name="notifications")
    """

    def __init__(
        self,
        store: WorkflowStore,
        deliver: Optional[DeliverFn] = None,
        timeout_seconds: float = None,
        enabled: bool = None,
        fallback_admin_ids: Optional[List[str]] = None
    ):
        self.store = store
        self.deliver = deliver or InAppNotificationDelivery(store)
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else SIDE_EFFECT_TIMEOUT_SECONDS
        self.enabled = NOTIFICATIONS_ENABLED if enabled is None else enabled
        self.fallback_admin_ids = list(ADMIN_USER_IDS if fallback_admin_ids is None else fallback_admin_ids)

    @staticmethod
    def dedup_key(booking_id: str, milestone: str, role: Role, recipient_id: str) -> str:
        return f"{booking_id}:{milestone}:{role.value}:{recipient_id}"

    async def handle_milestone(self, event: MilestoneEvent) -> int:
        """Bus handler: resolve recipients from the stored records, then notify."""
        if not self.enabled:
            return 0
        route = resolve_route(event.kind, event.new_status, event.trigger)
        if not route:
            return 0
        booking, job = await self._load_records(event)
        recipients = await self.resolve_recipients(route, booking, job)
        return await self.notify(event, recipients, booking=booking, job=job)

    async def _load_records(self, event: MilestoneEvent):
        booking = await self.store.get_booking(event.booking_id) if event.booking_id else None
        job = await self.store.get_job(event.job_id) if event.job_id else None
        if job is None and event.booking_id:
            job = await self.store.find_job_by_booking(event.booking_id)
        return booking, job

    async def resolve_recipients(
        self,
        route: Mapping[Role, NotificationType],
        booking: Optional[Dict[str, Any]],
        job: Optional[Dict[str, Any]]
    ) -> List[Recipient]:
        """Map each routed role to user ids. Roles without a user are skipped."""
        booking = booking or {}
        job = job or {}
        recipients: List[Recipient] = []
        client_id = booking.get("client_id")
        reseller_id = booking.get("reseller_id")
        if Role.CLIENT in route and client_id:
            recipients.append(Recipient(Role.CLIENT, client_id))
        # A client booking on its own behalf is notified once, as the client
        if Role.RESELLER in route and reseller_id and not (Role.CLIENT in route and reseller_id == client_id):
            recipients.append(Recipient(Role.RESELLER, reseller_id))
        driver_id = job.get("driver_id") or booking.get("driver_id")
        if Role.DRIVER in route and driver_id:
            recipients.append(Recipient(Role.DRIVER, driver_id))
        if Role.ADMIN in route:
            admin_ids = await self.store.list_active_admin_ids() or self.fallback_admin_ids
            recipients.extend(Recipient(Role.ADMIN, admin_id) for admin_id in admin_ids)
        return recipients

    async def notify(
        self,
        event: MilestoneEvent,
        recipients: List[Recipient],
        booking: Optional[Dict[str, Any]] = None,
        job: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Deliver the routed notification to each recipient at most once.

        Returns:
            Number of notifications delivered by this call
        """
        if not self.enabled:
            return 0

        route = resolve_route(event.kind, event.new_status, event.trigger)
        anchor_id = event.booking_id or event.entity_id
        delivered = 0

        for recipient in recipients:
            notification_type = route.get(recipient.role)
            if notification_type is None:
                continue

            key = self.dedup_key(anchor_id, event.milestone, recipient.role, recipient.user_id)
            claimed = await self.store.claim_notification(key, {
                "booking_id": event.booking_id,
                "job_id": event.job_id,
                "milestone": event.milestone,
                "role": recipient.role.value,
                "recipient_id": recipient.user_id,
                "type": notification_type.value,
                "created_at": event.timestamp,
            })
            if not claimed:
                logger.debug("Notification already sent: %s", key)
                continue

            rendered = render_notification(notification_type, event, recipient, booking, job)
            try:
                await asyncio.wait_for(
                    self.deliver(
                        recipient.user_id, rendered.title, rendered.message, rendered.link,
                        level=rendered.level,
                        related_id=rendered.related_id,
                        related_type=rendered.related_type,
                        notification_type=notification_type.value,
                    ),
                    timeout=self.timeout_seconds
                )
            except Exception as e:
                logger.error(
                    "Notification delivery failed: id=%s, milestone=%s, recipient=%s (%s), error=%s",
                    event.entity_id, event.milestone, recipient.user_id, recipient.role.value, repr(e)
                )
                await self.store.release_notification(key)
                continue

            delivered += 1
            logger.info(
                "Notification sent: %s to %s %s (milestone=%s)",
                notification_type.value, recipient.role.value, recipient.user_id, event.milestone
            )

        return delivered
