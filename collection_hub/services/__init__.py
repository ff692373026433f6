"""
ITAD Collection Hub - Workflow Services

Components:
- WorkflowEngine: Booking and Job transition tables and the Status Mapper
- WorkflowOrchestrator: the single entry point for status changes
- EvidenceLedger: immutable per-status proof records
- MilestoneBus: milestone events published after each committed change
- NotificationDispatcher: routed, deduplicated milestone notifications
- DocumentTrigger: chain-of-custody generation at warehouse intake
- CollectionService: approval, driver, evidence and asset flows
- WorkflowStore: MongoDB and in-memory persistence
"""

from .workflow_engine import WorkflowEngine, EntityKind, BookingStatus, JobStatus
from .workflow_errors import (
    WorkflowError,
    EntityNotFound,
    InvalidTransition,
    ConcurrentUpdate,
    DuplicateEvidence,
    EmptyEvidence,
    EmptyDocument,
    WorkflowValidationError,
    AlreadySanitised,
    AlreadyGraded,
)
from .stores import WorkflowStore, MongoWorkflowStore, InMemoryWorkflowStore
from .milestones import MilestoneBus, MilestoneEvent, ChangeOrigin
from .evidence_ledger import EvidenceLedger, EvidenceRecord
from .workflow_orchestrator import WorkflowOrchestrator, StatusChangeOutcome
from .notification_dispatcher import NotificationDispatcher, NotificationType, Role, Recipient
from .document_trigger import DocumentTrigger, DocumentHandle
from .collection_service import CollectionService, ResaleValueCalculator

__all__ = [
    'WorkflowEngine', 'EntityKind', 'BookingStatus', 'JobStatus',
    'WorkflowError', 'EntityNotFound', 'InvalidTransition', 'ConcurrentUpdate',
    'DuplicateEvidence', 'EmptyEvidence', 'EmptyDocument',
    'WorkflowValidationError', 'AlreadySanitised', 'AlreadyGraded',
    'WorkflowStore', 'MongoWorkflowStore', 'InMemoryWorkflowStore',
    'MilestoneBus', 'MilestoneEvent', 'ChangeOrigin',
    'EvidenceLedger', 'EvidenceRecord',
    'WorkflowOrchestrator', 'StatusChangeOutcome',
    'NotificationDispatcher', 'NotificationType', 'Role', 'Recipient',
    'DocumentTrigger', 'DocumentHandle',
    'CollectionService', 'ResaleValueCalculator',
]
