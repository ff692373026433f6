"""
ITAD Collection Hub - Evidence Ledger

Append-only proof records (photos, signature, seal numbers, notes) attached
to one Job status. At most one record exists per (job_id, status); records
are never updated or deleted.

The uniqueness rule is enforced by the store at insertion time. The lookup
before the insert only produces a friendlier error in the common case.
"""

import uuid
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable

from collection_hub.services.stores import WorkflowStore, DuplicateRecordError
from collection_hub.services.workflow_engine import WorkflowEngine, EntityKind
from collection_hub.services.workflow_errors import (
    DuplicateEvidence,
    EmptyEvidence,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvidenceRecord:
    """Immutable proof of work at a Job status."""
    id: str
    job_id: str
    status: str
    photos: List[str] = field(default_factory=list)
    signature: Optional[str] = None
    seal_numbers: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidenceRecord":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            status=data["status"],
            photos=list(data.get("photos") or []),
            signature=data.get("signature"),
            seal_numbers=list(data.get("seal_numbers") or []),
            notes=data.get("notes"),
            uploaded_by=data.get("uploaded_by"),
            created_at=data.get("created_at", ""),
        )


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _clean_list(values: Optional[List[str]]) -> List[str]:
    return [v.strip() for v in (values or []) if v is not None and str(v).strip()]


class EvidenceLedger:
    """
    Evidence submission and lookup.

    Usage:
        ledger = EvidenceLedger(store)
        record = await ledger.submit(job_id, "collected", driver_id, photos=["p1.jpg"])
    """

    def __init__(self, store: WorkflowStore, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def submit(
        self,
        job_id: str,
        status: str,
        actor: str,
        photos: Optional[List[str]] = None,
        signature: Optional[str] = None,
        seal_numbers: Optional[List[str]] = None,
        notes: Optional[str] = None
    ) -> EvidenceRecord:
        """
        Record evidence for a Job status.

        Raises:
            EmptyEvidence: no photo and no signature after trimming
            DuplicateEvidence: a record already exists for (job_id, status)
        """
        status_key = getattr(status, "value", status)
        if not WorkflowEngine.is_known_status(EntityKind.JOB, status_key):
            raise WorkflowValidationError(
                f"Unknown job status '{status_key}' for evidence",
                details={"job_id": job_id, "status": status_key}
            )

        clean_photos = _clean_list(photos)
        clean_signature = _clean_text(signature)
        if not clean_photos and not clean_signature:
            raise EmptyEvidence(job_id, status_key)

        if await self.store.find_evidence(job_id, status_key):
            raise DuplicateEvidence(job_id, status_key)

        record = EvidenceRecord(
            id=str(uuid.uuid4()),
            job_id=job_id,
            status=status_key,
            photos=clean_photos,
            signature=clean_signature,
            seal_numbers=_clean_list(seal_numbers),
            notes=_clean_text(notes),
            uploaded_by=actor,
            created_at=self.clock().isoformat(),
        )

        try:
            await self.store.insert_evidence(record.to_dict())
        except DuplicateRecordError:
            logger.warning("Evidence insert lost a race: job=%s, status=%s", job_id, status_key)
            raise DuplicateEvidence(job_id, status_key)

        logger.info(
            "Evidence recorded: job=%s, status=%s, photos=%d, signature=%s, by=%s",
            job_id, status_key, len(clean_photos), bool(clean_signature), actor
        )
        return record

    async def get(self, job_id: str) -> List[EvidenceRecord]:
        """All evidence for a Job, oldest first."""
        return [EvidenceRecord.from_dict(r) for r in await self.store.list_evidence(job_id)]

    async def find(self, job_id: str, status: str) -> Optional[EvidenceRecord]:
        """Keyed lookup for (job_id, status)."""
        record = await self.store.find_evidence(job_id, getattr(status, "value", status))
        return EvidenceRecord.from_dict(record) if record else None
