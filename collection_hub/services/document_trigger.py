"""
ITAD Collection Hub - Document Trigger

Generates the chain-of-custody record when a Job reaches the warehouse
(goods received at the intake point). At most one custody document exists
per Job:

- an existing stored document is returned unchanged
- the document record is inserted under a (job_id, type) unique index, and
  the loser of an insert race returns the winner's handle

Rendering is an injected collaborator (payload -> bytes). A zero-byte
render is discarded and reported as EmptyDocument so generation can be
retried later.
"""

import asyncio
import json
import uuid
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Awaitable

from collection_hub.services.evidence_ledger import EvidenceLedger
from collection_hub.services.milestones import MilestoneEvent
from collection_hub.services.stores import WorkflowStore, DuplicateRecordError
from collection_hub.services.workflow_config import (
    CUSTODY_DOCUMENTS_ENABLED,
    DOCUMENTS_DIR,
    SIDE_EFFECT_TIMEOUT_SECONDS,
)
from collection_hub.services.workflow_engine import EntityKind, JobStatus
from collection_hub.services.workflow_errors import EntityNotFound, EmptyDocument

logger = logging.getLogger(__name__)

CHAIN_OF_CUSTODY = "chain-of-custody"


@dataclass(frozen=True)
class DocumentHandle:
    """Reference to a stored custody document."""
    id: str
    job_id: str
    type: str
    name: str
    file_path: str
    file_size: int
    mime_type: str

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "DocumentHandle":
        return cls(
            id=record["id"],
            job_id=record["job_id"],
            type=record["type"],
            name=record.get("name", ""),
            file_path=record.get("file_path", ""),
            file_size=record.get("file_size", 0),
            mime_type=record.get("mime_type", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# RENDERING & STORAGE
# =============================================================================

class JsonManifestRenderer:
    """
    Renders the custody payload as an indented JSON manifest.

    Stands in for a PDF layout; anything with the same call signature can
    be injected instead.
    """
    mime_type = "application/json"
    extension = "json"

    async def __call__(self, payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, indent=2, default=str).encode("utf-8")


class LocalArtifactStorage:
    """Writes rendered artifacts under a base directory."""

    def __init__(self, base_dir: str = None):
        self.base_dir = Path(base_dir or DOCUMENTS_DIR)

    async def save(self, file_name: str, content: bytes) -> str:
        # Blocking file IO stays off the event loop
        return await asyncio.to_thread(self._write, file_name, content)

    async def delete(self, file_path: str) -> None:
        await asyncio.to_thread(self._unlink, file_path)

    def _write(self, file_name: str, content: bytes) -> str:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.base_dir / file_name
        with open(file_path, 'wb') as f:
            f.write(content)
        return str(file_path)

    @staticmethod
    def _unlink(file_path: str) -> None:
        path = Path(file_path)
        if path.exists():
            path.unlink()


# =============================================================================
# TRIGGER
# =============================================================================

Renderer = Callable[[Dict[str, Any]], Awaitable[bytes]]


class DocumentTrigger:
    """
    Milestone subscriber that produces the chain-of-custody document.

    Usage:
        trigger = DocumentTrigger(store, ledger)
        bus.subscribe(trigger.handle_milestone, name="custody_documents")
    """

    def __init__(
        self,
        store: WorkflowStore,
        ledger: EvidenceLedger,
        renderer: Optional[Renderer] = None,
        storage: Optional[LocalArtifactStorage] = None,
        timeout_seconds: float = None,
        enabled: bool = None,
        clock: Callable[[], datetime] = None
    ):
        self.store = store
        self.ledger = ledger
        self.renderer = renderer or JsonManifestRenderer()
        self.storage = storage or LocalArtifactStorage()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else SIDE_EFFECT_TIMEOUT_SECONDS
        self.enabled = CUSTODY_DOCUMENTS_ENABLED if enabled is None else enabled
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle_milestone(self, event: MilestoneEvent) -> Optional[DocumentHandle]:
        """Bus handler: react to Job warehouse milestones only."""
        if not self.enabled:
            return None
        if event.kind != EntityKind.JOB.value or event.new_status != JobStatus.WAREHOUSE.value:
            return None
        return await self.on_reached_intake(event.job_id, event.actor)

    async def on_reached_intake(self, job_id: str, actor: str) -> DocumentHandle:
        """
        Return the Job's custody document, generating it if none exists.

        Raises:
            EntityNotFound: unknown job
            EmptyDocument: the renderer produced no bytes
        """
        existing = await self.store.find_document(job_id, CHAIN_OF_CUSTODY)
        if existing:
            logger.debug("Chain of custody already exists for job %s, skipping generation", job_id)
            return DocumentHandle.from_record(existing)

        job = await self.store.get_job(job_id)
        if job is None:
            raise EntityNotFound(EntityKind.JOB.value, job_id)
        booking = await self.store.get_booking(job["booking_id"]) if job.get("booking_id") else None

        payload = await self.build_payload(job, booking)
        content = await asyncio.wait_for(self.renderer(payload), timeout=self.timeout_seconds)
        if not content:
            logger.error("Chain of custody render for job %s was empty, aborting", job_id)
            raise EmptyDocument(job_id, CHAIN_OF_CUSTODY)

        reference = job.get("job_reference") or job_id
        extension = getattr(self.renderer, "extension", "pdf")
        mime_type = getattr(self.renderer, "mime_type", "application/pdf")
        file_name = f"{CHAIN_OF_CUSTODY}-{reference}-{int(self.clock().timestamp() * 1000)}.{extension}"
        file_path = await asyncio.wait_for(self.storage.save(file_name, content), timeout=self.timeout_seconds)

        record = {
            "id": str(uuid.uuid4()),
            "job_id": job_id,
            "booking_id": job.get("booking_id"),
            "type": CHAIN_OF_CUSTODY,
            "name": f"Chain of Custody - {reference}",
            "file_path": file_path,
            "file_size": len(content),
            "mime_type": mime_type,
            "uploaded_by": actor,
            "metadata": {
                "job_reference": job.get("job_reference"),
                "booking_number": (booking or {}).get("booking_number"),
                "collection_date": payload["collection_date"],
                "driver_name": payload["driver_name"],
            },
            "created_at": self.clock().isoformat(),
        }

        try:
            await self.store.insert_document(record)
        except DuplicateRecordError:
            await self.storage.delete(file_path)
            winner = await self.store.find_document(job_id, CHAIN_OF_CUSTODY)
            logger.info("Chain of custody for job %s was generated concurrently, using %s", job_id, winner["id"])
            return DocumentHandle.from_record(winner)

        logger.info("Chain of custody generated: job=%s, document=%s, bytes=%d", job_id, record["id"], len(content))
        return DocumentHandle.from_record(record)

    async def build_payload(self, job: Dict[str, Any], booking: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Everything the custody record shows: job, booking, assets and evidence."""
        booking = booking or {}
        evidence = await self.ledger.get(job["id"])

        collection_date = None
        for entry in job.get("status_history", []):
            if entry.get("status") == JobStatus.COLLECTED.value:
                collection_date = entry.get("timestamp")
                break
        if collection_date is None:
            collection_date = booking.get("collected_at") or self.clock().isoformat()

        return {
            "document_type": CHAIN_OF_CUSTODY,
            "job_id": job["id"],
            "job_reference": job.get("job_reference"),
            "booking_id": booking.get("id"),
            "booking_number": booking.get("booking_number"),
            "client_id": booking.get("client_id"),
            "scheduled_date": booking.get("scheduled_date"),
            "collection_date": collection_date,
            "driver_id": job.get("driver_id"),
            "driver_name": booking.get("driver_name") or "",
            "line_items": [
                {"category": item.get("category"), "quantity": item.get("quantity", 0)}
                for item in job.get("line_items", [])
            ],
            "total_assets": sum(item.get("quantity", 0) for item in job.get("line_items", [])),
            "evidence": [record.to_dict() for record in evidence],
            "status_history": job.get("status_history", []),
            "generated_at": self.clock().isoformat(),
        }
