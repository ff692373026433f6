"""
Shared fixtures for the workflow tests.

Everything runs against the in-memory store, a ticking clock and a
recording notification delivery, wired exactly as the server wires them.
"""
import pytest
from datetime import datetime, timezone, timedelta

from collection_hub.server import build_services
from collection_hub.services.document_trigger import LocalArtifactStorage
from collection_hub.services.stores import InMemoryWorkflowStore
from collection_hub.services.workflow_engine import JOB_LIFECYCLE


class TickingClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.current = self.current + timedelta(seconds=1)
        return self.current


class RecordingDelivery:
    """Notification delivery that keeps every call."""

    def __init__(self):
        self.sent = []

    async def __call__(self, recipient_id, title, message, link, **extra):
        self.sent.append({
            "recipient_id": recipient_id,
            "title": title,
            "message": message,
            "link": link,
            **extra,
        })

    def of_type(self, notification_type):
        return [n for n in self.sent if n.get("notification_type") == notification_type]

    def to(self, recipient_id):
        return [n for n in self.sent if n["recipient_id"] == recipient_id]


class CollectionScenario:
    """Drives a booking and its job to a given point through the real flows."""

    CLIENT = "client-1"
    RESELLER = "reseller-1"
    ADMIN = "admin-1"
    DRIVER = "driver-1"

    def __init__(self, services):
        self.services = services
        self.store = services["store"]
        self.service = services["collection_service"]
        self.orchestrator = services["orchestrator"]

    async def new_booking(self, items=None, reseller_id=RESELLER):
        return await self.service.create_booking(
            client_id=self.CLIENT,
            created_by=self.CLIENT,
            items=items or [{"category": "Laptop", "quantity": 12}, {"category": "Server", "quantity": 2}],
            scheduled_date="2026-02-01",
            reseller_id=reseller_id,
        )

    async def approved(self, job_reference="JOB-1001", **kwargs):
        booking = await self.new_booking(**kwargs)
        return await self.service.approve_booking(booking["id"], self.ADMIN, job_reference)

    async def scheduled(self, job_reference="JOB-1001", **kwargs):
        booking = await self.approved(job_reference, **kwargs)
        booking = await self.service.assign_driver(booking["id"], self.DRIVER, "Sam Driver", self.ADMIN)
        job = await self.store.find_job_by_booking(booking["id"])
        return booking, job

    async def job_at(self, status, job_reference="JOB-1001", **kwargs):
        """Booking scheduled, then the job walked forward one status at a time."""
        booking, job = await self.scheduled(job_reference, **kwargs)
        for step in JOB_LIFECYCLE[JOB_LIFECYCLE.index(job["status"]) + 1:JOB_LIFECYCLE.index(status) + 1]:
            job = await self.orchestrator.apply_status_change("job", job["id"], step, self.DRIVER)
        booking = await self.store.get_booking(booking["id"])
        return booking, job


@pytest.fixture
def store():
    return InMemoryWorkflowStore(admin_ids=[CollectionScenario.ADMIN])


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def services(store, delivery, clock, tmp_path):
    return build_services(
        store,
        deliver=delivery,
        storage=LocalArtifactStorage(str(tmp_path / "documents")),
        clock=clock,
    )


@pytest.fixture
def scenario(services):
    return CollectionScenario(services)
