"""
ITAD Collection Hub - Workflow Stores

Persistence boundary for bookings, jobs, evidence, custody documents and
notifications. The orchestrator only talks to the WorkflowStore interface.

Implementations:
- MongoWorkflowStore: MongoDB via motor, uniqueness enforced by indexes
- InMemoryWorkflowStore: dict-backed store for tests and local development

Every status write is a conditional update on the status that was read
(optimistic concurrency), with the history entry pushed in the same write.
Check-then-insert sequences (evidence, custody documents, job per booking,
notification claims) rely on unique constraints at insertion time.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

BOOKINGS = "bookings"
JOBS = "jobs"

_COLLECTIONS = {
    "booking": BOOKINGS,
    "job": JOBS,
}


class DuplicateRecordError(Exception):
    """Raised when an insert violates a uniqueness constraint."""
    def __init__(self, collection: str, key: Dict[str, Any]):
        self.collection = collection
        self.key = key
        super().__init__(f"Duplicate record in {collection}: {key}")


class WorkflowStore(ABC):
    """Abstract persistence interface used by the workflow services."""

    # ---- bookings & jobs ----

    @abstractmethod
    async def get_entity(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Load a booking or job by id."""
        pass

    async def get_booking(self, booking_id: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity("booking", booking_id)

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.get_entity("job", job_id)

    @abstractmethod
    async def find_job_by_booking(self, booking_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_entity(self, kind: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a booking or job. Raises DuplicateRecordError on unique keys."""
        pass

    @abstractmethod
    async def update_fields(self, kind: str, entity_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Set non-status fields. Returns the updated document."""
        pass

    @abstractmethod
    async def set_field_once(self, kind: str, entity_id: str, field_name: str, value: Any) -> bool:
        """Set a field only if it is currently unset. Returns True if written."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        kind: str,
        entity_id: str,
        expected_status: str,
        new_status: str,
        history_entry: Dict[str, Any],
        extra_fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically move status from expected to new and append history.

        Returns the updated document, or None if the stored status was no
        longer the expected one.
        """
        pass

    @abstractmethod
    async def update_line_item_once(
        self,
        job_id: str,
        line_item_id: str,
        guard_field: str,
        guard_value: Any,
        fields: Dict[str, Any]
    ) -> bool:
        """Update a line item only while guard_field still equals guard_value."""
        pass

    @abstractmethod
    async def job_reference_exists(self, job_reference: str, exclude_booking_id: Optional[str] = None) -> bool:
        """True if another booking or its job already holds the reference."""
        pass

    @abstractmethod
    async def list_linked_jobs(self) -> List[Dict[str, Any]]:
        """All jobs that have a booking_id."""
        pass

    # ---- evidence ----

    @abstractmethod
    async def insert_evidence(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert evidence. Raises DuplicateRecordError for an existing (job_id, status)."""
        pass

    @abstractmethod
    async def find_evidence(self, job_id: str, status: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_evidence(self, job_id: str) -> List[Dict[str, Any]]:
        pass

    # ---- documents ----

    @abstractmethod
    async def find_document(self, job_id: str, document_type: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_documents(self, job_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document record. Raises DuplicateRecordError for an existing (job_id, type)."""
        pass

    # ---- notifications ----

    @abstractmethod
    async def claim_notification(self, dedup_key: str, record: Dict[str, Any]) -> bool:
        """Claim a dedup key. Returns False if it was already claimed."""
        pass

    @abstractmethod
    async def release_notification(self, dedup_key: str) -> None:
        pass

    @abstractmethod
    async def insert_notification(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_notifications(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_active_admin_ids(self) -> List[str]:
        pass


# =============================================================================
# MONGODB STORE
# =============================================================================

class MongoWorkflowStore(WorkflowStore):
    """
    MongoDB-backed store.

    Usage:
        store = MongoWorkflowStore(db)
        await store.create_indexes()
    """

    def __init__(self, db):
        self.db = db

    def _collection(self, kind: str):
        return self.db[_COLLECTIONS[kind]]

    async def create_indexes(self):
        """Create the indexes that enforce the workflow's uniqueness rules."""
        await self.db.bookings.create_index("id", unique=True)
        await self.db.bookings.create_index("booking_number", unique=True)
        await self.db.bookings.create_index("status")
        await self.db.jobs.create_index("id", unique=True)
        await self.db.jobs.create_index("booking_id", unique=True, sparse=True)
        await self.db.jobs.create_index("job_reference", unique=True)
        await self.db.jobs.create_index("status")
        await self.db.evidence.create_index([("job_id", 1), ("status", 1)], unique=True)
        await self.db.documents.create_index([("job_id", 1), ("type", 1)], unique=True)
        await self.db.notification_log.create_index("dedup_key", unique=True)
        await self.db.notifications.create_index("user_id")
        await self.db.notifications.create_index("created_at")
        logger.info("Workflow indexes created")

    async def get_entity(self, kind, entity_id):
        return await self._collection(kind).find_one({"id": entity_id}, {"_id": 0})

    async def find_job_by_booking(self, booking_id):
        return await self.db.jobs.find_one({"booking_id": booking_id}, {"_id": 0})

    async def insert_entity(self, kind, document):
        try:
            await self._collection(kind).insert_one(dict(document))
        except DuplicateKeyError as e:
            raise DuplicateRecordError(_COLLECTIONS[kind], e.details.get("keyValue", {}) if e.details else {})
        return document

    async def update_fields(self, kind, entity_id, fields):
        return await self._collection(kind).find_one_and_update(
            {"id": entity_id},
            {"$set": fields},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

    async def set_field_once(self, kind, entity_id, field_name, value):
        result = await self._collection(kind).update_one(
            {"id": entity_id, field_name: None},
            {"$set": {field_name: value}}
        )
        return result.modified_count == 1

    async def compare_and_set_status(self, kind, entity_id, expected_status, new_status, history_entry, extra_fields=None):
        update_set = {"status": new_status}
        if extra_fields:
            update_set.update(extra_fields)
        return await self._collection(kind).find_one_and_update(
            {"id": entity_id, "status": expected_status},
            {"$set": update_set, "$push": {"status_history": history_entry}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

    async def update_line_item_once(self, job_id, line_item_id, guard_field, guard_value, fields):
        update_set = {f"line_items.$.{k}": v for k, v in fields.items()}
        result = await self.db.jobs.update_one(
            {"id": job_id, "line_items": {"$elemMatch": {"id": line_item_id, guard_field: guard_value}}},
            {"$set": update_set}
        )
        return result.modified_count == 1

    async def job_reference_exists(self, job_reference, exclude_booking_id=None):
        job_query = {"job_reference": job_reference}
        booking_query = {"job_reference": job_reference}
        if exclude_booking_id:
            job_query["booking_id"] = {"$ne": exclude_booking_id}
            booking_query["id"] = {"$ne": exclude_booking_id}
        if await self.db.jobs.find_one(job_query, {"_id": 0, "id": 1}):
            return True
        return await self.db.bookings.find_one(booking_query, {"_id": 0, "id": 1}) is not None

    async def list_linked_jobs(self):
        return await self.db.jobs.find({"booking_id": {"$ne": None}}, {"_id": 0}).to_list(None)

    async def insert_evidence(self, record):
        try:
            await self.db.evidence.insert_one(dict(record))
        except DuplicateKeyError:
            raise DuplicateRecordError("evidence", {"job_id": record["job_id"], "status": record["status"]})
        return record

    async def find_evidence(self, job_id, status):
        return await self.db.evidence.find_one({"job_id": job_id, "status": status}, {"_id": 0})

    async def list_evidence(self, job_id):
        return await self.db.evidence.find({"job_id": job_id}, {"_id": 0}).sort("created_at", 1).to_list(None)

    async def find_document(self, job_id, document_type):
        return await self.db.documents.find_one({"job_id": job_id, "type": document_type}, {"_id": 0})

    async def list_documents(self, job_id):
        return await self.db.documents.find({"job_id": job_id}, {"_id": 0}).sort("created_at", 1).to_list(None)

    async def insert_document(self, document):
        try:
            await self.db.documents.insert_one(dict(document))
        except DuplicateKeyError:
            raise DuplicateRecordError("documents", {"job_id": document["job_id"], "type": document["type"]})
        return document

    async def claim_notification(self, dedup_key, record):
        try:
            await self.db.notification_log.insert_one({"dedup_key": dedup_key, **record})
        except DuplicateKeyError:
            return False
        return True

    async def release_notification(self, dedup_key):
        await self.db.notification_log.delete_one({"dedup_key": dedup_key})

    async def insert_notification(self, notification):
        await self.db.notifications.insert_one(dict(notification))
        return notification

    async def list_notifications(self, user_id=None):
        query = {"user_id": user_id} if user_id else {}
        return await self.db.notifications.find(query, {"_id": 0}).sort("created_at", 1).to_list(None)

    async def list_active_admin_ids(self):
        admins = await self.db.users.find(
            {"role": "admin", "status": "active"}, {"_id": 0, "id": 1}
        ).to_list(None)
        return [a["id"] for a in admins if a.get("id")]


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryWorkflowStore(WorkflowStore):
    """
    In-memory store for tests and development.

    Each method runs without yielding to the event loop, so every check and
    write inside a single call is atomic. Documents are deep-copied in and
    out so callers never hold live references.
    """

    def __init__(self, admin_ids: Optional[List[str]] = None):
        self.bookings: Dict[str, Dict[str, Any]] = {}
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.evidence: Dict[tuple, Dict[str, Any]] = {}
        self.documents: Dict[tuple, Dict[str, Any]] = {}
        self.notification_log: Dict[str, Dict[str, Any]] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.admin_ids: List[str] = list(admin_ids or [])

    def _table(self, kind: str) -> Dict[str, Dict[str, Any]]:
        return self.bookings if kind == "booking" else self.jobs

    async def get_entity(self, kind, entity_id):
        doc = self._table(kind).get(entity_id)
        return copy.deepcopy(doc) if doc else None

    async def find_job_by_booking(self, booking_id):
        for job in self.jobs.values():
            if job.get("booking_id") == booking_id:
                return copy.deepcopy(job)
        return None

    async def insert_entity(self, kind, document):
        table = self._table(kind)
        if document["id"] in table:
            raise DuplicateRecordError(_COLLECTIONS[kind], {"id": document["id"]})
        if kind == "job":
            for job in self.jobs.values():
                if document.get("booking_id") and job.get("booking_id") == document["booking_id"]:
                    raise DuplicateRecordError(JOBS, {"booking_id": document["booking_id"]})
                if job.get("job_reference") == document.get("job_reference"):
                    raise DuplicateRecordError(JOBS, {"job_reference": document["job_reference"]})
        table[document["id"]] = copy.deepcopy(document)
        return copy.deepcopy(document)

    async def update_fields(self, kind, entity_id, fields):
        doc = self._table(kind).get(entity_id)
        if doc is None:
            return None
        doc.update(copy.deepcopy(fields))
        return copy.deepcopy(doc)

    async def set_field_once(self, kind, entity_id, field_name, value):
        doc = self._table(kind).get(entity_id)
        if doc is None or doc.get(field_name) is not None:
            return False
        doc[field_name] = value
        return True

    async def compare_and_set_status(self, kind, entity_id, expected_status, new_status, history_entry, extra_fields=None):
        doc = self._table(kind).get(entity_id)
        if doc is None or doc.get("status") != expected_status:
            return None
        doc["status"] = new_status
        if extra_fields:
            doc.update(copy.deepcopy(extra_fields))
        doc.setdefault("status_history", []).append(copy.deepcopy(history_entry))
        return copy.deepcopy(doc)

    async def update_line_item_once(self, job_id, line_item_id, guard_field, guard_value, fields):
        job = self.jobs.get(job_id)
        if job is None:
            return False
        for item in job.get("line_items", []):
            if item.get("id") == line_item_id and item.get(guard_field) == guard_value:
                item.update(copy.deepcopy(fields))
                return True
        return False

    async def job_reference_exists(self, job_reference, exclude_booking_id=None):
        if any(
            j.get("job_reference") == job_reference and (
                exclude_booking_id is None or j.get("booking_id") != exclude_booking_id
            )
            for j in self.jobs.values()
        ):
            return True
        return any(
            b.get("job_reference") == job_reference and b["id"] != exclude_booking_id
            for b in self.bookings.values()
        )

    async def list_linked_jobs(self):
        return [copy.deepcopy(j) for j in self.jobs.values() if j.get("booking_id")]

    async def insert_evidence(self, record):
        key = (record["job_id"], record["status"])
        if key in self.evidence:
            raise DuplicateRecordError("evidence", {"job_id": key[0], "status": key[1]})
        self.evidence[key] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def find_evidence(self, job_id, status):
        record = self.evidence.get((job_id, status))
        return copy.deepcopy(record) if record else None

    async def list_evidence(self, job_id):
        records = [r for (j, _), r in self.evidence.items() if j == job_id]
        return copy.deepcopy(sorted(records, key=lambda r: r["created_at"]))

    async def find_document(self, job_id, document_type):
        document = self.documents.get((job_id, document_type))
        return copy.deepcopy(document) if document else None

    async def list_documents(self, job_id):
        return [copy.deepcopy(d) for (j, _), d in self.documents.items() if j == job_id]

    async def insert_document(self, document):
        key = (document["job_id"], document["type"])
        if key in self.documents:
            raise DuplicateRecordError("documents", {"job_id": key[0], "type": key[1]})
        self.documents[key] = copy.deepcopy(document)
        return copy.deepcopy(document)

    async def claim_notification(self, dedup_key, record):
        if dedup_key in self.notification_log:
            return False
        self.notification_log[dedup_key] = copy.deepcopy(record)
        return True

    async def release_notification(self, dedup_key):
        self.notification_log.pop(dedup_key, None)

    async def insert_notification(self, notification):
        self.notifications.append(copy.deepcopy(notification))
        return copy.deepcopy(notification)

    async def list_notifications(self, user_id=None):
        return [
            copy.deepcopy(n) for n in self.notifications
            if user_id is None or n.get("user_id") == user_id
        ]

    async def list_active_admin_ids(self):
        return list(self.admin_ids)
