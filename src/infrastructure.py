"""
infrastructure.py

In-memory implementation of the repository and collaborator interfaces.

This is a self-contained, zero-dependency backend that keeps everything in
plain Python dicts guarded by a lock.  It is suitable for local development,
demos and tests without needing a real database.

The workflow store is append-only per version: every successful save adds
a deep copy, so get(id, version=n) can return any historical snapshot and
readers never share objects with writers.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and hand them to WorkflowEngine.  Nothing in
service.py, application.py or api.py needs to change.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from application import (
    AbstractDocumentBlobStore,
    AbstractIdentityResolver,
    AbstractNotificationRepository,
    AbstractWorkflowRepository,
    AssignParticipantCommand,
    IdentityError,
    AttachDocumentCommand,
    ExecuteActionCommand,
    ReviewDocumentCommand,
    SubmitIntentCommand,
    WorkflowEngine,
    WorkflowFilter,
)
from model import (
    Actor,
    Currency,
    DocumentType,
    InstrumentType,
    Notification,
    ParticipantRole,
    ReviewDecision,
    Workflow,
    WorkflowAction,
)
from service import ConflictError
from settings import RuntimeSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryWorkflowRepository(AbstractWorkflowRepository):
    """Versioned store: self._versions[id][n - 1] is the snapshot at version n."""

    def __init__(self):
        self._versions: Dict[uuid.UUID, List[Workflow]] = {}
        self._lock = threading.Lock()

    def get(self, workflow_id, version=None):
        with self._lock:
            snapshots = self._versions.get(workflow_id)
            if not snapshots:
                return None
            if version is None:
                return copy.deepcopy(snapshots[-1])
            if 1 <= version <= len(snapshots):
                return copy.deepcopy(snapshots[version - 1])
            return None

    def save(self, workflow, expected_version):
        with self._lock:
            snapshots = self._versions.get(workflow.id, [])
            stored_version = len(snapshots)
            if stored_version != expected_version:
                raise ConflictError(
                    f"Workflow {workflow.id} is at version {stored_version}, "
                    f"expected {expected_version}; re-read and retry."
                )
            stored = copy.deepcopy(workflow)
            stored.version = expected_version + 1
            self._versions.setdefault(workflow.id, snapshots).append(stored)
            return stored.version

    def query(self, criteria: WorkflowFilter):
        with self._lock:
            latest = [snapshots[-1] for snapshots in self._versions.values()]
        return [copy.deepcopy(w) for w in latest if _matches(w, criteria)]


def _matches(workflow: Workflow, criteria: WorkflowFilter) -> bool:
    if criteria.status is not None and workflow.status != criteria.status:
        return False
    if criteria.updated_since is not None and not workflow.updated_at > criteria.updated_since:
        return False
    if criteria.participant_user_id is not None or criteria.role is not None:
        return any(
            p.is_active
            and (criteria.participant_user_id is None or p.user_id == criteria.participant_user_id)
            and (criteria.role is None or p.role == criteria.role)
            for p in workflow.participants
        )
    return True


class InMemoryNotificationRepository(AbstractNotificationRepository):
    def __init__(self):
        self._by_id: Dict[uuid.UUID, Notification] = {}
        self._by_key: Dict[str, uuid.UUID] = {}
        self._lock = threading.Lock()

    def add_if_absent(self, notification):
        with self._lock:
            if notification.dedupe_key in self._by_key:
                return False
            self._by_key[notification.dedupe_key] = notification.id
            self._by_id[notification.id] = copy.deepcopy(notification)
            return True

    def get(self, notification_id):
        with self._lock:
            found = self._by_id.get(notification_id)
            return copy.deepcopy(found) if found else None

    def save(self, notification):
        with self._lock:
            self._by_id[notification.id] = copy.deepcopy(notification)

    def list_for_role(self, role):
        with self._lock:
            return [copy.deepcopy(n) for n in self._by_id.values() if n.recipient_role == role]

    def list_for_workflow(self, workflow_id):
        with self._lock:
            return [copy.deepcopy(n) for n in self._by_id.values() if n.workflow_id == workflow_id]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class HeaderIdentityResolver(AbstractIdentityResolver):
    """
    Reads the acting identity from request headers.  Authentication happens
    upstream; this only maps already-trusted headers onto an Actor.
    """

    user_header = "x-user-id"
    role_header = "x-user-role"
    name_header = "x-user-name"

    def resolve(self, headers: Mapping[str, str]) -> Actor:
        lowered = {k.lower(): v for k, v in headers.items()}
        user_id = (lowered.get(self.user_header) or "").strip()
        raw_role = (lowered.get(self.role_header) or "").strip().lower()
        if not user_id or not raw_role:
            raise IdentityError("X-User-Id and X-User-Role headers are required.")
        try:
            role = ParticipantRole(raw_role)
        except ValueError as exc:
            raise IdentityError(f"Unknown role {raw_role!r}.") from exc
        return Actor(user_id=user_id, role=role, name=(lowered.get(self.name_header) or "").strip())


class InMemoryDocumentBlobStore(AbstractDocumentBlobStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, content):
        blob_ref = f"blob-{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[blob_ref] = bytes(content)
        return blob_ref

    def exists(self, blob_ref):
        with self._lock:
            return blob_ref in self._blobs


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_engine(
    settings: Optional[RuntimeSettings] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> WorkflowEngine:
    """A fresh engine over empty in-memory stores."""
    return WorkflowEngine(
        InMemoryWorkflowRepository(),
        InMemoryNotificationRepository(),
        settings=settings,
        clock=clock,
        blob_store=InMemoryDocumentBlobStore(),
    )


def seed_demo_workflows(engine: WorkflowEngine) -> List[uuid.UUID]:
    """
    Seed the two demo capital raises: TechCorp (equity, in due diligence)
    and AgriCorp (bond, waiting on the regulator).
    """
    techcorp_issuer = Actor("issuer-techcorp", ParticipantRole.ISSUER, "TechCorp Ltd")
    techcorp_ib = Actor("ib-advisor-123", ParticipantRole.IB_ADVISOR, "Rwanda Capital Partners")
    techcorp = engine.submit_intent(
        SubmitIntentCommand(techcorp_issuer, "TechCorp Ltd", InstrumentType.EQUITY, Currency.RWF, 2_500_000)
    )
    techcorp_id = uuid.UUID(techcorp.id)
    _advance(engine, techcorp_id, WorkflowAction.TRANSFER_TO_IB, techcorp_issuer)
    _advance(engine, techcorp_id, WorkflowAction.ASSIGN_IB, techcorp_ib,
             notes="IB advisor assigned to handle the capital raise")

    agricorp_issuer = Actor("issuer-agricorp", ParticipantRole.ISSUER, "AgriCorp Ltd")
    agricorp_ib = Actor("ib-advisor-456", ParticipantRole.IB_ADVISOR, "Kigali Investment Bank")
    agricorp = engine.submit_intent(
        SubmitIntentCommand(agricorp_issuer, "AgriCorp Ltd", InstrumentType.BOND, Currency.RWF, 1_800_000)
    )
    agricorp_id = uuid.UUID(agricorp.id)
    _advance(engine, agricorp_id, WorkflowAction.TRANSFER_TO_IB, agricorp_issuer)
    _advance(engine, agricorp_id, WorkflowAction.ASSIGN_IB, agricorp_ib)
    _approve_document(engine, agricorp_id, agricorp_ib, DocumentType.FINANCIAL_STATEMENTS)
    _advance(engine, agricorp_id, WorkflowAction.COMPLETE_DUE_DILIGENCE, agricorp_ib)
    _approve_document(engine, agricorp_id, agricorp_ib, DocumentType.PROSPECTUS)
    _advance(engine, agricorp_id, WorkflowAction.SUBMIT_FOR_REVIEW, agricorp_ib,
             notes="Bond prospectus submitted to CMA")
    engine.assign_participant(
        AssignParticipantCommand(agricorp_id, ParticipantRole.REGULATOR, "regulator-cma", "CMA Regulatory Officer")
    )

    logger.info("Seeded demo workflows %s and %s", techcorp_id, agricorp_id)
    return [techcorp_id, agricorp_id]


def _advance(engine: WorkflowEngine, workflow_id: uuid.UUID, action: WorkflowAction,
             actor: Actor, notes: Optional[str] = None) -> None:
    payload = {"notes": notes} if notes else {}
    engine.execute(ExecuteActionCommand(workflow_id, action, actor, payload))


def _approve_document(engine: WorkflowEngine, workflow_id: uuid.UUID, reviewer: Actor,
                      doc_type: DocumentType) -> None:
    document = engine.attach_document(AttachDocumentCommand(workflow_id, reviewer, doc_type))
    engine.review_document(
        ReviewDocumentCommand(workflow_id, uuid.UUID(document.id), ReviewDecision.APPROVED, reviewer)
    )
