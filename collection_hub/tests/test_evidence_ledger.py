"""
Tests for the Evidence Ledger.

Evidence is write-once per (job, status), needs a photo or a signature,
and is cleaned of blank entries before it is stored.
"""
import dataclasses
import pytest
from unittest.mock import AsyncMock

from collection_hub.services.evidence_ledger import EvidenceLedger, EvidenceRecord
from collection_hub.services.stores import InMemoryWorkflowStore
from collection_hub.services.workflow_errors import DuplicateEvidence, EmptyEvidence, WorkflowValidationError


@pytest.fixture
def ledger(store, clock):
    return EvidenceLedger(store, clock=clock)


class TestSubmit:
    """Validation and storage of evidence records."""

    @pytest.mark.asyncio
    async def test_single_photo_succeeds(self, ledger, store):
        record = await ledger.submit("job-1", "collected", "driver-1", photos=["photo-1.jpg"])

        assert isinstance(record, EvidenceRecord)
        assert record.photos == ["photo-1.jpg"]
        assert record.signature is None
        assert record.uploaded_by == "driver-1"
        assert store.evidence[("job-1", "collected")]["id"] == record.id

    @pytest.mark.asyncio
    async def test_signature_only_succeeds(self, ledger):
        record = await ledger.submit("job-1", "collected", "driver-1", signature="sig.png")
        assert record.photos == []
        assert record.signature == "sig.png"

    @pytest.mark.asyncio
    async def test_empty_evidence_rejected(self, ledger, store):
        with pytest.raises(EmptyEvidence) as exc_info:
            await ledger.submit("job-1", "collected", "driver-1", photos=[], signature=None)

        assert exc_info.value.status_code == 400
        assert "at least one photo or a customer signature" in exc_info.value.message
        assert store.evidence == {}

    @pytest.mark.asyncio
    async def test_blank_entries_count_as_empty(self, ledger):
        with pytest.raises(EmptyEvidence):
            await ledger.submit("job-1", "collected", "driver-1", photos=["  ", ""], signature="   ")

    @pytest.mark.asyncio
    async def test_fields_trimmed_and_filtered(self, ledger):
        record = await ledger.submit(
            "job-1", "arrived", "driver-1",
            photos=[" a.jpg ", "", "  ", "b.jpg"],
            signature="  sig.png ",
            seal_numbers=[" S-1 ", "", "S-2"],
            notes="  gate code 1234  ",
        )

        assert record.photos == ["a.jpg", "b.jpg"]
        assert record.signature == "sig.png"
        assert record.seal_numbers == ["S-1", "S-2"]
        assert record.notes == "gate code 1234"

    @pytest.mark.asyncio
    async def test_blank_notes_stored_as_none(self, ledger):
        record = await ledger.submit("job-1", "arrived", "driver-1", photos=["a.jpg"], notes="   ")
        assert record.notes is None

    @pytest.mark.asyncio
    async def test_second_record_for_same_status_rejected(self, ledger, store):
        first = await ledger.submit("job-1", "collected", "driver-1", photos=["a.jpg"])

        with pytest.raises(DuplicateEvidence) as exc_info:
            await ledger.submit("job-1", "collected", "admin-1", photos=["b.jpg"])

        assert exc_info.value.status_code == 409
        assert store.evidence[("job-1", "collected")]["id"] == first.id
        assert store.evidence[("job-1", "collected")]["photos"] == ["a.jpg"]

    @pytest.mark.asyncio
    async def test_other_status_allowed(self, ledger):
        await ledger.submit("job-1", "arrived", "driver-1", photos=["a.jpg"])
        record = await ledger.submit("job-1", "collected", "driver-1", photos=["b.jpg"])
        assert record.status == "collected"

    @pytest.mark.asyncio
    async def test_uniqueness_enforced_at_insert(self, ledger, store):
        """A racing writer that slipped past the lookup still loses at insertion."""
        await ledger.submit("job-1", "collected", "driver-1", photos=["a.jpg"])
        store.find_evidence = AsyncMock(return_value=None)

        with pytest.raises(DuplicateEvidence):
            await ledger.submit("job-1", "collected", "admin-1", photos=["b.jpg"])

        assert len(store.evidence) == 1

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, ledger):
        with pytest.raises(WorkflowValidationError):
            await ledger.submit("job-1", "teleported", "driver-1", photos=["a.jpg"])


class TestLookup:
    """Ordered listing and keyed lookup."""

    @pytest.mark.asyncio
    async def test_get_ordered_by_creation(self, ledger):
        await ledger.submit("job-1", "arrived", "driver-1", photos=["a.jpg"])
        await ledger.submit("job-1", "collected", "driver-1", photos=["b.jpg"])
        await ledger.submit("job-2", "collected", "driver-2", photos=["c.jpg"])

        records = await ledger.get("job-1")

        assert [r.status for r in records] == ["arrived", "collected"]

    @pytest.mark.asyncio
    async def test_find(self, ledger):
        await ledger.submit("job-1", "arrived", "driver-1", photos=["a.jpg"])

        assert (await ledger.find("job-1", "arrived")).photos == ["a.jpg"]
        assert await ledger.find("job-1", "collected") is None

    @pytest.mark.asyncio
    async def test_get_empty(self, ledger):
        assert await ledger.get("job-unknown") == []


class TestImmutability:
    """No way to change a stored record."""

    def test_record_is_frozen(self):
        record = EvidenceRecord(id="e-1", job_id="job-1", status="collected", photos=["a.jpg"])
        with pytest.raises(dataclasses.FrozenInstanceError):
            record.photos = []

    def test_no_update_or_delete_operations(self):
        ledger = EvidenceLedger(InMemoryWorkflowStore())
        assert not hasattr(ledger, "update")
        assert not hasattr(ledger, "delete")

    def test_round_trip_through_store_shape(self):
        record = EvidenceRecord(id="e-1", job_id="job-1", status="collected", signature="sig.png")
        assert EvidenceRecord.from_dict(record.to_dict()) == record
