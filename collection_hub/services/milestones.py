"""
ITAD Collection Hub - Milestone Events

A milestone is a status actually reached by a Booking or Job. The orchestrator
publishes one MilestoneEvent per committed status change, after every write
of the call has landed. Subscribers (notification dispatcher, document
trigger, anything else) register on the MilestoneBus without the
orchestrator knowing about them.

Subscriber failures and timeouts are logged and swallowed: the persisted
status is the source of truth, not its side effects.
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Callable, Awaitable

from collection_hub.services.workflow_config import SIDE_EFFECT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class ChangeOrigin:
    """Who asked for a status change."""
    REQUEST = "request"   # Externally initiated (user, flow, API)
    SYNC = "sync"         # Synchronization echo from the paired entity


# Context key set by the driver assignment flow
TRIGGER_DRIVER_ASSIGNMENT = "driver_assignment"


@dataclass
class MilestoneEvent:
    """A committed status change on a Booking or Job."""
    kind: str
    entity_id: str
    old_status: Optional[str]
    new_status: str
    actor: str
    timestamp: str
    origin: str = ChangeOrigin.REQUEST
    booking_id: Optional[str] = None
    job_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def milestone(self) -> str:
        """Logical milestone name, e.g. 'job:warehouse'."""
        return f"{self.kind}:{self.new_status}"

    @property
    def trigger(self) -> Optional[str]:
        return self.context.get("trigger")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


MilestoneHandler = Callable[[MilestoneEvent], Awaitable[Any]]


class MilestoneBus:
    """
    In-process publish/subscribe for milestone events.

    Handlers run one after another in subscription order, each under its own
    timeout. A failing handler never stops the others.
    """

    def __init__(self, timeout_seconds: float = None):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else SIDE_EFFECT_TIMEOUT_SECONDS
        self._handlers: List[tuple] = []

    def subscribe(self, handler: MilestoneHandler, name: Optional[str] = None):
        """Register a coroutine handler. Returns the handler for decorator use."""
        self._handlers.append((name or getattr(handler, "__qualname__", repr(handler)), handler))
        return handler

    @property
    def subscriber_names(self) -> List[str]:
        return [name for name, _ in self._handlers]

    async def publish(self, event: MilestoneEvent) -> int:
        """
        Deliver an event to every subscriber.

        Returns:
            Number of handlers that completed without error
        """
        succeeded = 0
        for name, handler in self._handlers:
            try:
                await asyncio.wait_for(handler(event), timeout=self.timeout_seconds)
                succeeded += 1
            except asyncio.TimeoutError:
                logger.error(
                    "Milestone handler %s timed out after %ss: milestone=%s, id=%s",
                    name, self.timeout_seconds, event.milestone, event.entity_id
                )
            except Exception as e:
                logger.error(
                    "Milestone handler %s failed: milestone=%s, id=%s, error=%s",
                    name, event.milestone, event.entity_id, e,
                    exc_info=True
                )
        return succeeded

    async def publish_all(self, events: List[MilestoneEvent]) -> None:
        for event in events:
            await self.publish(event)
