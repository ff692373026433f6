"""
Tests for the Workflow Orchestrator.

Covers validation, history and stage timestamps, Booking <-> Job
synchronization, echo handling, milestone publication and conditional
status writes under concurrent modification.
"""
import asyncio
import logging
import pytest

from collection_hub.server import build_services
from collection_hub.services.milestones import ChangeOrigin, MilestoneBus
from collection_hub.services.stores import InMemoryWorkflowStore
from collection_hub.services.workflow_engine import JOB_LIFECYCLE, map_job_status_to_booking
from collection_hub.services.workflow_errors import EntityNotFound, InvalidTransition, ConcurrentUpdate
from collection_hub.services.workflow_orchestrator import WorkflowOrchestrator


def _recorder(bus):
    events = []

    async def record(event):
        events.append(event)

    bus.subscribe(record, name="recorder")
    return events


class TestApplyStatusChange:
    """Single-entity validation and persistence."""

    @pytest.mark.asyncio
    async def test_created_to_scheduled_without_job(self, scenario, services, store):
        """Scheduling a booking directly never creates a job."""
        orchestrator = services["orchestrator"]
        booking = await scenario.new_booking()
        await orchestrator.apply_status_change("booking", booking["id"], "created", "admin-1")

        updated = await orchestrator.apply_status_change("booking", booking["id"], "scheduled", "admin-1")

        assert updated["status"] == "scheduled"
        assert updated["scheduled_at"] is not None
        assert store.jobs == {}

    @pytest.mark.asyncio
    async def test_history_entry_appended(self, scenario, services):
        orchestrator = services["orchestrator"]
        booking = await scenario.new_booking()

        updated = await orchestrator.apply_status_change(
            "booking", booking["id"], "created", "admin-1", notes="Looks good"
        )

        entry = updated["status_history"][-1]
        assert len(updated["status_history"]) == 2
        assert entry["status"] == "created"
        assert entry["actor"] == "admin-1"
        assert entry["notes"] == "Looks good"
        assert entry["origin"] == ChangeOrigin.REQUEST
        assert entry["timestamp"]

    @pytest.mark.asyncio
    async def test_rejection_names_both_statuses(self, scenario, services, store):
        booking = await scenario.new_booking()
        store.bookings[booking["id"]]["status"] = "graded"

        with pytest.raises(InvalidTransition) as exc_info:
            await services["orchestrator"].apply_status_change("booking", booking["id"], "scheduled", "admin-1")

        assert exc_info.value.current_status == "graded"
        assert exc_info.value.requested_status == "scheduled"
        assert "cannot move from graded to scheduled" in exc_info.value.message
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_entity(self, services):
        with pytest.raises(EntityNotFound) as exc_info:
            await services["orchestrator"].apply_status_change("job", "missing", "routed", "admin-1")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicate_request_rejected(self, scenario, services):
        """A second identical user request fails and applies nothing."""
        orchestrator = services["orchestrator"]
        booking, job = await scenario.scheduled()
        await orchestrator.apply_status_change("job", job["id"], "en_route", "driver-1")

        with pytest.raises(InvalidTransition):
            await orchestrator.apply_status_change("job", job["id"], "en_route", "driver-1")

        stored = await services["store"].get_job(job["id"])
        assert [h["status"] for h in stored["status_history"]].count("en_route") == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_apply_once(self, scenario, services):
        orchestrator = services["orchestrator"]
        booking, job = await scenario.scheduled()

        results = await asyncio.gather(
            orchestrator.apply_status_change("job", job["id"], "en_route", "driver-1"),
            orchestrator.apply_status_change("job", job["id"], "en_route", "admin-1"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, InvalidTransition)]
        assert len(failures) == 1
        stored = await services["store"].get_job(job["id"])
        assert [h["status"] for h in stored["status_history"]].count("en_route") == 1

    @pytest.mark.asyncio
    async def test_stage_timestamp_first_write_wins(self, scenario, services, store):
        booking, job = await scenario.scheduled()
        store.bookings[booking["id"]]["collected_at"] = "2025-12-31T00:00:00+00:00"

        updated = await services["orchestrator"].apply_status_change(
            "booking", booking["id"], "collected", "admin-1"
        )

        assert updated["status"] == "collected"
        assert updated["collected_at"] == "2025-12-31T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_job_completion_sets_completed_at(self, scenario):
        booking, job = await scenario.job_at("completed")
        assert job["completed_at"] is not None
        assert booking["completed_at"] is not None


class TestSynchronization:
    """Booking and Job stay consistent through the Status Mapper."""

    @pytest.mark.asyncio
    async def test_booking_follows_every_mapped_job_status(self, scenario, services):
        orchestrator = services["orchestrator"]
        booking, job = await scenario.scheduled()

        for step in JOB_LIFECYCLE[JOB_LIFECYCLE.index("routed") + 1:]:
            before = await services["store"].get_booking(booking["id"])
            await orchestrator.apply_status_change("job", job["id"], step, "driver-1")
            after = await services["store"].get_booking(booking["id"])
            mapped = map_job_status_to_booking(step)
            if mapped:
                assert after["status"] == mapped, f"job {step}"
            else:
                assert after["status"] == before["status"], f"job {step}"

    @pytest.mark.asyncio
    async def test_job_cancellation_cancels_booking(self, scenario, services):
        booking, job = await scenario.job_at("arrived")

        await services["orchestrator"].apply_status_change("job", job["id"], "cancelled", "admin-1")

        assert (await services["store"].get_booking(booking["id"]))["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_booking_collected_moves_job(self, scenario, services):
        booking, job = await scenario.job_at("arrived")

        await services["orchestrator"].apply_status_change("booking", booking["id"], "collected", "admin-1")

        assert (await services["store"].get_job(job["id"]))["status"] == "collected"

    @pytest.mark.asyncio
    async def test_booking_collected_never_pulls_job_back(self, scenario, services, store):
        booking, job = await scenario.scheduled()
        store.jobs[job["id"]]["status"] = "warehouse"

        await services["orchestrator"].apply_status_change("booking", booking["id"], "collected", "admin-1")

        stored = await store.get_job(job["id"])
        assert stored["status"] == "warehouse"
        assert stored["status_history"][-1]["status"] == "routed"

    @pytest.mark.asyncio
    async def test_warehouse_leaves_collected_booking_alone(self, scenario, services, delivery, store):
        """Goods received: one notice per recipient, one document, booking untouched."""
        booking, job = await scenario.job_at("collected")
        history_length = len(booking["status_history"])
        delivery.sent.clear()

        updated = await services["orchestrator"].apply_status_change("job", job["id"], "warehouse", "driver-1")

        stored_booking = await store.get_booking(booking["id"])
        assert updated["status"] == "warehouse"
        assert stored_booking["status"] == "collected"
        assert len(stored_booking["status_history"]) == history_length
        goods_received = delivery.of_type("goods_received")
        assert [n["recipient_id"] for n in goods_received].count("client-1") == 1
        assert len(store.documents) == 1

    @pytest.mark.asyncio
    async def test_sync_entry_tagged(self, scenario, store):
        booking, job = await scenario.scheduled()

        entry = job["status_history"][-1]
        assert entry["status"] == "routed"
        assert entry["origin"] == ChangeOrigin.SYNC
        assert "Synchronized from booking" in entry["notes"]

    @pytest.mark.asyncio
    async def test_sync_echo_is_benign(self, scenario, services):
        booking, job = await scenario.scheduled()

        outcome = await services["orchestrator"].change_status(
            "job", job["id"], "routed", "driver-1", origin=ChangeOrigin.SYNC
        )

        assert outcome.applied is False
        assert outcome.reason == "already_applied"
        stored = await services["store"].get_job(job["id"])
        assert len(stored["status_history"]) == len(job["status_history"])

    @pytest.mark.asyncio
    async def test_sync_non_forward_target_is_benign(self, scenario, services):
        booking, job = await scenario.scheduled()

        outcome = await services["orchestrator"].change_status(
            "job", job["id"], "collected", "driver-1", origin=ChangeOrigin.SYNC
        )

        assert outcome.applied is False
        assert outcome.reason == "not_a_forward_step"

    @pytest.mark.asyncio
    async def test_sync_call_does_not_echo_back(self, scenario, services):
        booking, job = await scenario.job_at("arrived")

        outcome = await services["orchestrator"].change_status(
            "job", job["id"], "collected", "driver-1", origin=ChangeOrigin.SYNC
        )

        assert outcome.applied is True
        assert outcome.synced is None
        assert (await services["store"].get_booking(booking["id"]))["status"] == "scheduled"

    @pytest.mark.asyncio
    async def test_outcome_reports_both_entities(self, scenario, services):
        booking, job = await scenario.job_at("arrived")

        outcome = await services["orchestrator"].change_status("job", job["id"], "collected", "driver-1")

        assert outcome.applied is True
        assert outcome.synced.kind == "booking"
        assert outcome.synced.applied is True
        assert outcome.synced.new_status == "collected"
        assert outcome.to_dict()["synced"]["origin"] == ChangeOrigin.SYNC


class TestMilestones:
    """Milestone events are published once per committed change, after commit."""

    @pytest.mark.asyncio
    async def test_one_event_per_status_changed(self, scenario, services):
        booking = await scenario.approved()
        events = _recorder(services["bus"])

        await services["collection_service"].assign_driver(booking["id"], "driver-1", "Sam Driver", "admin-1")

        assert [(e.kind, e.new_status) for e in events] == [("booking", "scheduled"), ("job", "routed")]
        assert events[0].old_status == "created"
        assert events[1].origin == ChangeOrigin.SYNC
        assert events[0].booking_id == events[1].booking_id == booking["id"]

    @pytest.mark.asyncio
    async def test_echo_publishes_nothing(self, scenario, services):
        booking, job = await scenario.job_at("collected")
        events = _recorder(services["bus"])

        await services["orchestrator"].apply_status_change("job", job["id"], "warehouse", "driver-1")

        assert [(e.kind, e.new_status) for e in events] == [("job", "warehouse")]

    @pytest.mark.asyncio
    async def test_events_published_after_all_writes(self, scenario, services, store):
        booking = await scenario.approved()
        seen = []

        async def snapshot(event):
            job = await store.find_job_by_booking(booking["id"])
            seen.append((event.kind, job["status"]))

        services["bus"].subscribe(snapshot)
        await services["collection_service"].assign_driver(booking["id"], "driver-1", "Sam Driver", "admin-1")

        assert seen == [("booking", "routed"), ("job", "routed")]

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self, scenario, services, caplog):
        booking, job = await scenario.scheduled()

        async def boom(event):
            raise RuntimeError("mail server down")

        services["bus"].subscribe(boom, name="boom")
        events = _recorder(services["bus"])

        with caplog.at_level(logging.ERROR):
            updated = await services["orchestrator"].apply_status_change("job", job["id"], "en_route", "driver-1")

        assert updated["status"] == "en_route"
        assert len(events) == 1
        assert "Milestone handler boom failed" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_subscriber_times_out(self, scenario, services):
        booking, job = await scenario.scheduled()
        services["bus"].timeout_seconds = 0.05

        async def slow(event):
            await asyncio.sleep(5)

        services["bus"].subscribe(slow, name="slow")
        events = _recorder(services["bus"])

        updated = await services["orchestrator"].apply_status_change("job", job["id"], "en_route", "driver-1")

        assert updated["status"] == "en_route"
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_event_to_dict(self, scenario, services):
        events = _recorder(services["bus"])
        booking = await scenario.approved()

        data = events[-1].to_dict()
        assert data["kind"] == "booking"
        assert data["new_status"] == "created"
        assert data["entity_id"] == booking["id"]


class ConcurrentWriterStore(InMemoryWorkflowStore):
    """Runs another writer between the orchestrator's read and its conditional write."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.interleave = None
        self.cas_calls = 0

    async def compare_and_set_status(self, *args, **kwargs):
        self.cas_calls += 1
        if self.interleave is not None:
            interleave, self.interleave = self.interleave, None
            await interleave()
        return await super().compare_and_set_status(*args, **kwargs)

    async def other_writer(self, kind, entity_id, expected, new_status, actor):
        entry = {"status": new_status, "actor": actor, "notes": None,
                 "timestamp": "2026-01-05T10:00:00+00:00", "origin": ChangeOrigin.REQUEST}
        return await InMemoryWorkflowStore.compare_and_set_status(
            self, kind, entity_id, expected, new_status, entry
        )


class AlwaysConflictingStore(InMemoryWorkflowStore):
    """Every conditional write loses."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.cas_calls = 0

    async def compare_and_set_status(self, *args, **kwargs):
        self.cas_calls += 1
        return None


class TestConcurrentWrites:
    """Conditional status writes reload and re-validate on conflict."""

    @pytest.fixture
    def store(self):
        return ConcurrentWriterStore(admin_ids=["admin-1"])

    @pytest.mark.asyncio
    async def test_retry_applies_on_fresh_status(self, scenario, services, store):
        """Driver collects while admin cancels: cancel re-validates against collected."""
        booking, job = await scenario.job_at("arrived")
        store.interleave = lambda: store.other_writer("job", job["id"], "arrived", "collected", "driver-1")

        updated = await services["orchestrator"].apply_status_change("job", job["id"], "cancelled", "admin-1")

        assert updated["status"] == "cancelled"
        assert [h["status"] for h in updated["status_history"]][-2:] == ["collected", "cancelled"]
        assert (await store.get_booking(booking["id"]))["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_lost_race_for_same_status_rejected(self, scenario, services, store):
        booking, job = await scenario.job_at("arrived")
        store.interleave = lambda: store.other_writer("job", job["id"], "arrived", "collected", "admin-1")

        with pytest.raises(InvalidTransition) as exc_info:
            await services["orchestrator"].apply_status_change("job", job["id"], "collected", "driver-1")

        assert exc_info.value.current_status == "collected"
        stored = await store.get_job(job["id"])
        assert [h["status"] for h in stored["status_history"]].count("collected") == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        store = AlwaysConflictingStore()
        store.bookings["b-1"] = {"id": "b-1", "status": "pending", "status_history": []}
        orchestrator = WorkflowOrchestrator(store, MilestoneBus(), max_attempts=3)

        with pytest.raises(ConcurrentUpdate) as exc_info:
            await orchestrator.apply_status_change("booking", "b-1", "created", "admin-1")

        assert store.cas_calls == 3
        assert exc_info.value.attempts == 3


class ContendedBookingStore(InMemoryWorkflowStore):
    """Booking conditional writes lose while contended is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.contended = False

    async def compare_and_set_status(self, kind, *args, **kwargs):
        if self.contended and kind == "booking":
            return None
        return await super().compare_and_set_status(kind, *args, **kwargs)


class TestSyncUnderContention:
    """A committed primary write survives a sync echo that cannot land."""

    @pytest.fixture
    def store(self):
        return ContendedBookingStore(admin_ids=["admin-1"])

    @pytest.mark.asyncio
    async def test_primary_write_reported_and_published(self, scenario, services, store):
        booking, job = await scenario.job_at("arrived")
        events = _recorder(services["bus"])
        store.contended = True

        outcome = await services["orchestrator"].change_status("job", job["id"], "collected", "driver-1")

        assert outcome.applied
        assert outcome.new_status == "collected"
        assert not outcome.synced.applied
        assert outcome.synced.reason == "concurrent_update"
        assert (await store.get_job(job["id"]))["status"] == "collected"
        assert (await store.get_booking(booking["id"]))["status"] == "scheduled"
        assert [(e.kind, e.new_status) for e in events] == [("job", "collected")]

    @pytest.mark.asyncio
    async def test_lagging_booking_repaired(self, scenario, services, store):
        booking, job = await scenario.job_at("arrived")
        store.contended = True
        await services["orchestrator"].apply_status_change("job", job["id"], "collected", "driver-1")
        store.contended = False

        outcomes = await services["orchestrator"].resync_pair(job["id"], "system")

        assert outcomes[-1].new_status == "collected"
        assert (await store.get_booking(booking["id"]))["status"] == "collected"


class TestResyncPair:
    """Repair pass walks a lagging booking forward."""

    @pytest.mark.asyncio
    async def test_walks_booking_to_job_status(self, scenario, services, store):
        booking, job = await scenario.job_at("graded")
        store.bookings[booking["id"]]["status"] = "collected"
        job_history = len(job["status_history"])

        outcomes = await services["orchestrator"].resync_pair(job["id"], "system")

        assert [o.new_status for o in outcomes] == ["sanitised", "graded"]
        assert all(o.applied for o in outcomes)
        stored = await store.get_booking(booking["id"])
        assert stored["status"] == "graded"
        assert stored["status_history"][-1]["origin"] == ChangeOrigin.SYNC
        assert len((await store.get_job(job["id"]))["status_history"]) == job_history

    @pytest.mark.asyncio
    async def test_in_sync_pair_untouched(self, scenario, services):
        booking, job = await scenario.job_at("warehouse")
        assert await services["orchestrator"].resync_pair(job["id"], "system") == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, services):
        with pytest.raises(EntityNotFound):
            await services["orchestrator"].resync_pair("missing", "system")


class TestServiceWiring:
    """build_services subscribes the side effects in order."""

    def test_subscribers(self):
        services = build_services(InMemoryWorkflowStore())
        assert services["bus"].subscriber_names == ["notifications", "custody_documents"]
