"""
service.py

Service layer for the CapitalLab capital-raise workflow engine.

Responsibilities
----------------
Each service class encapsulates the business rules for one part of the
Workflow aggregate.  Services receive and return domain model instances
(from model.py) and mutate the aggregate they are handed.  No persistence
is handled here; the application layer loads a detached copy, lets the
services mutate it, and saves it under optimistic concurrency control.

Services
--------
- StageGraph            – Static stage table: owners, actions, successors,
                          document prerequisites and reviewers
- ParticipantDirectory  – Role → identity assignment with single occupancy
- DocumentLedger        – Document metadata, review decisions, prerequisites
- StageHistory          – Open/close stage entries and SLA checks
- IsinService           – Virtual ISIN generation and validation
- NotificationService   – Synthesises notifications for transitions

Errors
------
Every rule violation raises a WorkflowError subclass carrying a stable
`code`.  The taxonomy is closed:

    NotFoundError           not_found
    UnauthorizedError       unauthorized
    InvalidTransitionError  invalid_transition
    ValidationError         validation_error
    ConflictError           conflict
    TerminalError           terminal
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from model import (
    TERMINAL_STAGES,
    Document,
    DocumentStatus,
    DocumentType,
    InstrumentType,
    Notification,
    NotificationKind,
    Participant,
    ParticipantRole,
    ReviewDecision,
    Stage,
    StageHistoryEntry,
    Workflow,
    WorkflowAction,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class WorkflowError(Exception):
    """Base class for every typed failure the engine reports."""

    code = "workflow_error"


class NotFoundError(WorkflowError):
    """The workflow, document or notification does not exist."""

    code = "not_found"


class UnauthorizedError(WorkflowError):
    """The actor's role or identity does not own the requested operation."""

    code = "unauthorized"


class InvalidTransitionError(WorkflowError):
    """
    The action is illegal for the current stage or status, or it would
    mutate an immutable field such as virtual_isin.
    """

    code = "invalid_transition"


class ValidationError(WorkflowError):
    """Missing document approvals or a malformed payload."""

    code = "validation_error"


class ConflictError(WorkflowError):
    """
    The stored version moved since it was read, or a role is already
    occupied by a different identity.
    """

    code = "conflict"


class TerminalError(WorkflowError):
    """The workflow is completed or rejected and accepts no more changes."""

    code = "terminal"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# StageGraph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageDefinition:
    """One row of the stage table."""
    stage: Stage
    owner_role: ParticipantRole
    transitions: Mapping[WorkflowAction, Stage]
    document_reviewer: ParticipantRole
    required_documents: FrozenSet[DocumentType] = frozenset()
    binding_actions: FrozenSet[WorkflowAction] = frozenset()


_R = ParticipantRole
_A = WorkflowAction

DEFAULT_STAGE_DEFINITIONS: Tuple[StageDefinition, ...] = (
    StageDefinition(
        stage=Stage.CAPITAL_RAISE_INTENT,
        owner_role=_R.ISSUER,
        transitions={_A.TRANSFER_TO_IB: Stage.IB_ASSIGNMENT},
        document_reviewer=_R.ISSUER,
    ),
    StageDefinition(
        stage=Stage.IB_ASSIGNMENT,
        owner_role=_R.IB_ADVISOR,
        transitions={_A.ASSIGN_IB: Stage.DUE_DILIGENCE},
        document_reviewer=_R.IB_ADVISOR,
        binding_actions=frozenset({_A.ASSIGN_IB}),
    ),
    StageDefinition(
        stage=Stage.DUE_DILIGENCE,
        owner_role=_R.IB_ADVISOR,
        transitions={_A.COMPLETE_DUE_DILIGENCE: Stage.PROSPECTUS_BUILDING},
        document_reviewer=_R.IB_ADVISOR,
        required_documents=frozenset({DocumentType.FINANCIAL_STATEMENTS}),
    ),
    StageDefinition(
        stage=Stage.PROSPECTUS_BUILDING,
        owner_role=_R.IB_ADVISOR,
        transitions={_A.SUBMIT_FOR_REVIEW: Stage.REGULATORY_REVIEW},
        document_reviewer=_R.IB_ADVISOR,
        required_documents=frozenset({DocumentType.PROSPECTUS}),
    ),
    StageDefinition(
        stage=Stage.REGULATORY_REVIEW,
        owner_role=_R.REGULATOR,
        transitions={
            _A.APPROVE_FILING: Stage.LISTING_APPROVAL,
            _A.REJECT_FILING: Stage.REJECTED,
        },
        document_reviewer=_R.REGULATOR,
    ),
    StageDefinition(
        stage=Stage.LISTING_APPROVAL,
        owner_role=_R.LISTING_DESK,
        transitions={
            _A.APPROVE_LISTING: Stage.ISIN_ASSIGNMENT,
            _A.REJECT_FILING: Stage.REJECTED,
        },
        document_reviewer=_R.LISTING_DESK,
    ),
    StageDefinition(
        stage=Stage.ISIN_ASSIGNMENT,
        owner_role=_R.CSD_OPERATOR,
        transitions={_A.CREATE_ISIN: Stage.INVESTOR_ONBOARDING},
        document_reviewer=_R.CSD_OPERATOR,
    ),
    StageDefinition(
        stage=Stage.INVESTOR_ONBOARDING,
        owner_role=_R.BROKER,
        transitions={_A.ACTIVATE_INVESTOR: Stage.TRADING_ACTIVE},
        document_reviewer=_R.BROKER,
    ),
    StageDefinition(
        stage=Stage.TRADING_ACTIVE,
        owner_role=_R.BROKER,
        transitions={_A.EXECUTE_TRADE: Stage.SETTLEMENT},
        document_reviewer=_R.BROKER,
    ),
    StageDefinition(
        stage=Stage.SETTLEMENT,
        owner_role=_R.CSD_OPERATOR,
        transitions={_A.SETTLE_TRADE: Stage.COMPLETED},
        document_reviewer=_R.CSD_OPERATOR,
    ),
)

# Actions that leave a stage without completing it; prerequisites are not checked.
NON_COMPLETING_ACTIONS: FrozenSet[WorkflowAction] = frozenset({_A.REJECT_FILING})


class StageGraph:
    """
    Static, side-effect-free lookup table for the capital-raise pipeline.

    This is the single source of truth for "what may this role do at this
    stage".  Terminal stages have no definition: they own no role and allow
    no action.
    """

    def __init__(self, definitions: Tuple[StageDefinition, ...] = DEFAULT_STAGE_DEFINITIONS):
        self._definitions: Dict[Stage, StageDefinition] = {d.stage: d for d in definitions}
        self._order: List[Stage] = [d.stage for d in definitions]

    def definition(self, stage: Stage) -> StageDefinition:
        if stage not in self._definitions:
            raise InvalidTransitionError(f"Stage '{stage.value}' is terminal.")
        return self._definitions[stage]

    def definitions(self) -> List[StageDefinition]:
        return [self._definitions[s] for s in self._order]

    def is_terminal(self, stage: Stage) -> bool:
        return stage in TERMINAL_STAGES or stage not in self._definitions

    def owner_role(self, stage: Stage) -> Optional[ParticipantRole]:
        """The single role authorized to advance out of `stage`; None if terminal."""
        if self.is_terminal(stage):
            return None
        return self._definitions[stage].owner_role

    def allowed_actions(self, stage: Stage) -> FrozenSet[WorkflowAction]:
        if self.is_terminal(stage):
            return frozenset()
        return frozenset(self._definitions[stage].transitions)

    def next_stage(self, stage: Stage, action: WorkflowAction) -> Stage:
        """Deterministic successor of `stage` under `action`."""
        transitions = self.definition(stage).transitions
        if action not in transitions:
            raise InvalidTransitionError(
                f"Action '{action.value}' is not allowed in stage '{stage.value}'."
            )
        return transitions[action]

    def required_documents(self, stage: Stage) -> FrozenSet[DocumentType]:
        if self.is_terminal(stage):
            return frozenset()
        return self._definitions[stage].required_documents

    def document_reviewer(self, stage: Stage) -> Optional[ParticipantRole]:
        if self.is_terminal(stage):
            return None
        return self._definitions[stage].document_reviewer

    def is_completing(self, action: WorkflowAction) -> bool:
        return action not in NON_COMPLETING_ACTIONS

    def is_binding(self, stage: Stage, action: WorkflowAction) -> bool:
        """True if `action` binds the acting identity to the stage's owner role."""
        if self.is_terminal(stage):
            return False
        return action in self._definitions[stage].binding_actions

    def canonical_path(self) -> List[Stage]:
        """The linear happy path from intent to completion."""
        path = [self._order[0]]
        while not self.is_terminal(path[-1]):
            transitions = self._definitions[path[-1]].transitions
            completing = [a for a in transitions if self.is_completing(a)]
            path.append(transitions[completing[0]])
        return path


# ---------------------------------------------------------------------------
# ParticipantDirectory
# ---------------------------------------------------------------------------

class ParticipantDirectory:
    """
    Per-workflow role → identity assignments.

    One active participant per role.  Re-assigning the same identity is a
    no-op; a different identity needs an explicit replace.
    """

    def resolve(self, workflow: Workflow, role: ParticipantRole) -> Optional[Participant]:
        return next(
            (p for p in workflow.participants if p.role == role and p.is_active),
            None,
        )

    def matches(self, workflow: Workflow, role: ParticipantRole, user_id: str) -> bool:
        participant = self.resolve(workflow, role)
        return participant is not None and participant.user_id == user_id

    def assign(
        self,
        workflow: Workflow,
        role: ParticipantRole,
        user_id: str,
        name: str = "",
        replace: bool = False,
        now: Optional[datetime] = None,
    ) -> Participant:
        """Bind `user_id` to `role` and return the active participant."""
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("Participant user_id must not be empty.")
        now = now or _utcnow()
        current = self.resolve(workflow, role)
        if current is not None:
            if current.user_id == user_id:
                return current
            if not replace:
                raise ConflictError(
                    f"Role '{role.value}' is already held by {current.user_id}; "
                    f"use replace to reassign it."
                )
            current.is_active = False
            current.deactivated_at = now
        participant = Participant(
            role=role,
            user_id=user_id,
            name=name or user_id,
            is_active=True,
            assigned_at=now,
        )
        workflow.participants.append(participant)
        return participant

    def roles_for(self, workflow: Workflow, user_id: str) -> List[ParticipantRole]:
        return [p.role for p in workflow.participants if p.is_active and p.user_id == user_id]


# ---------------------------------------------------------------------------
# DocumentLedger
# ---------------------------------------------------------------------------

class DocumentLedger:
    """
    Append-only document metadata with per-document review status.

    Only the stage's designated reviewer role may decide a document, and a
    document is decided exactly once.
    """

    def __init__(self, graph: StageGraph):
        self._graph = graph

    def attach(
        self,
        workflow: Workflow,
        stage: Stage,
        doc_type: DocumentType,
        title: str,
        uploaded_by: str,
        blob_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Document:
        """Record a new pending document against `stage`."""
        if self._graph.is_terminal(stage):
            raise ValidationError(f"Documents cannot be attached to terminal stage '{stage.value}'.")
        if not uploaded_by or not uploaded_by.strip():
            raise ValidationError("Document uploaded_by must not be empty.")
        document = Document(
            stage=stage,
            type=doc_type,
            title=title.strip() or doc_type.value.replace("_", " ").title(),
            status=DocumentStatus.PENDING,
            uploaded_by=uploaded_by,
            uploaded_at=now or _utcnow(),
            blob_ref=blob_ref,
        )
        workflow.documents.append(document)
        return document

    def get(self, workflow: Workflow, document_id: uuid.UUID) -> Document:
        for document in workflow.documents:
            if document.id == document_id:
                return document
        raise NotFoundError(f"Document {document_id} not found on workflow {workflow.id}.")

    def review(
        self,
        workflow: Workflow,
        document_id: uuid.UUID,
        decision: ReviewDecision,
        reviewer_role: ParticipantRole,
        reviewer_id: str,
        now: Optional[datetime] = None,
    ) -> Document:
        """Move a pending document to approved or rejected."""
        document = self.get(workflow, document_id)
        expected_role = self._graph.document_reviewer(document.stage)
        if reviewer_role != expected_role:
            raise UnauthorizedError(
                f"Only the '{expected_role.value if expected_role else 'none'}' role may review "
                f"documents for stage '{document.stage.value}'."
            )
        if document.status != DocumentStatus.PENDING:
            raise InvalidTransitionError(
                f"Document {document_id} is already {document.status.value}."
            )
        document.status = DocumentStatus(decision.value)
        document.reviewed_by = reviewer_id
        document.reviewed_at = now or _utcnow()
        return document

    def missing_prerequisites(self, workflow: Workflow, stage: Stage) -> Set[DocumentType]:
        approved = {
            d.type
            for d in workflow.documents
            if d.stage == stage and d.status == DocumentStatus.APPROVED
        }
        return set(self._graph.required_documents(stage)) - approved

    def prerequisites_met(self, workflow: Workflow, stage: Stage) -> bool:
        return not self.missing_prerequisites(workflow, stage)


# ---------------------------------------------------------------------------
# StageHistory
# ---------------------------------------------------------------------------

class StageHistory:
    """
    Ordered, append-only stage log.  The open entry is the source of truth
    for the current stage.
    """

    def open_entry(self, workflow: Workflow) -> Optional[StageHistoryEntry]:
        open_entries = [e for e in workflow.stage_history if e.completed_at is None]
        return open_entries[-1] if open_entries else None

    def enter(self, workflow: Workflow, stage: Stage, now: Optional[datetime] = None) -> StageHistoryEntry:
        if self.open_entry(workflow) is not None:
            raise InvalidTransitionError(
                f"Workflow {workflow.id} already has an open stage entry."
            )
        entry = StageHistoryEntry(stage=stage, entered_at=now or _utcnow())
        workflow.stage_history.append(entry)
        return entry

    def close(
        self,
        workflow: Workflow,
        actor_id: str,
        action: Optional[WorkflowAction],
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StageHistoryEntry:
        entry = self.open_entry(workflow)
        if entry is None:
            raise InvalidTransitionError(f"Workflow {workflow.id} has no open stage entry.")
        entry.completed_at = now or _utcnow()
        entry.actor_id = actor_id
        entry.action = action
        entry.notes = notes
        return entry

    def is_consistent(self, workflow: Workflow) -> bool:
        """
        current_stage matches the unique open entry while the workflow is
        live, and no entry is open once it is terminal.
        """
        open_entries = [e for e in workflow.stage_history if e.completed_at is None]
        if workflow.current_stage in TERMINAL_STAGES:
            return not open_entries
        return len(open_entries) == 1 and open_entries[0].stage == workflow.current_stage

    def is_overdue(
        self,
        workflow: Workflow,
        now: datetime,
        stage_sla: Mapping[Stage, timedelta],
    ) -> bool:
        """now - entered_at > SLA for the open entry's stage.  Stages without an SLA never overdue."""
        entry = self.open_entry(workflow)
        if entry is None:
            return False
        sla = stage_sla.get(entry.stage)
        if sla is None:
            return False
        return now - entry.entered_at > sla


# ---------------------------------------------------------------------------
# IsinService
# ---------------------------------------------------------------------------

_INSTRUMENT_CODES = {
    InstrumentType.EQUITY: "EQ",
    InstrumentType.BOND: "BD",
    InstrumentType.NOTE: "NT",
}


class IsinService:
    """
    Generates and validates virtual ISINs (ISO 6166 shape: two-letter
    country prefix, nine alphanumerics, one check digit).

    Generated codes read RW + year + instrument code + 3-digit sequence.
    """

    country_code = "RW"

    def generate(self, workflow: Workflow, now: Optional[datetime] = None) -> str:
        now = now or _utcnow()
        sequence = workflow.id.int % 1000
        body = f"{self.country_code}{now.year:04d}{_INSTRUMENT_CODES[workflow.instrument_type]}{sequence:03d}"
        return f"{body}{self.check_digit(body)}"

    @staticmethod
    def check_digit(body: str) -> int:
        digits = "".join(str(int(ch, 36)) for ch in body.upper())
        total = 0
        for i, ch in enumerate(reversed(digits)):
            n = int(ch)
            if i % 2 == 0:
                n *= 2
                if n > 9:
                    n -= 9
            total += n
        return (10 - total % 10) % 10

    def is_valid(self, isin: str) -> bool:
        if len(isin) != 12 or not isin.isalnum() or isin != isin.upper():
            return False
        if not isin[:2].isalpha() or not isin[-1].isdigit():
            return False
        return self.check_digit(isin[:11]) == int(isin[-1])


# ---------------------------------------------------------------------------
# NotificationService
# ---------------------------------------------------------------------------

# Roles told when a listing goes live.
TRADING_AUDIENCE = (
    ParticipantRole.ISSUER,
    ParticipantRole.IB_ADVISOR,
    ParticipantRole.BROKER,
    ParticipantRole.INVESTOR,
)


def _label(stage: Stage) -> str:
    return stage.value.replace("_", " ")


class NotificationService:
    """
    Derives Notification entries (unsaved) from workflow events.

    Each notification carries a dedupe key built from the workflow id, the
    stage that was closed, the action that closed it, the kind and the
    recipient role, so synthesising the same transition twice yields the
    same keys.
    """

    def __init__(self, graph: StageGraph, directory: ParticipantDirectory):
        self._graph = graph
        self._directory = directory

    @staticmethod
    def transition_key(workflow_id: uuid.UUID, stage: Stage, action: WorkflowAction) -> str:
        return f"{workflow_id}:{stage.value}:{action.value}"

    def notify(
        self,
        workflow: Workflow,
        recipient_role: ParticipantRole,
        kind: NotificationKind,
        title: str,
        message: str,
        dedupe_key: str,
        recipient_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Create and return a notification (unsaved)."""
        return Notification(
            workflow_id=workflow.id,
            recipient_role=recipient_role,
            recipient_user_id=recipient_user_id,
            kind=kind,
            title=title,
            message=message,
            dedupe_key=dedupe_key,
            created_at=now or _utcnow(),
        )

    def for_intent(self, workflow: Workflow, now: Optional[datetime] = None) -> List[Notification]:
        issuer = self._directory.resolve(workflow, ParticipantRole.ISSUER)
        return [
            self.notify(
                workflow,
                recipient_role=ParticipantRole.ISSUER,
                kind=NotificationKind.STATUS_UPDATE,
                title="Capital raise intent submitted",
                message=(
                    f"{workflow.issuer_company} submitted a capital raise intent for "
                    f"{workflow.currency.value} {workflow.target_amount:,}."
                ),
                dedupe_key=f"{workflow.id}:intent:{NotificationKind.STATUS_UPDATE.value}:issuer",
                recipient_user_id=issuer.user_id if issuer else None,
                now=now,
            )
        ]

    def for_transition(
        self,
        workflow: Workflow,
        closed_entry: StageHistoryEntry,
        actor_role: ParticipantRole,
        now: Optional[datetime] = None,
    ) -> List[Notification]:
        """
        (a) action required for the owner of the new stage, unless terminal;
        (b) acknowledgement for the role that acted;
        (c) status update broadcast to the issuer;
        (d) when trading goes live, an announcement to every TRADING_AUDIENCE role.
        """
        if closed_entry.action is None:
            return []
        new_stage = self._graph.next_stage(closed_entry.stage, closed_entry.action)
        key = self.transition_key(workflow.id, closed_entry.stage, closed_entry.action)
        company = workflow.issuer_company
        notifications: List[Notification] = []

        owner = self._graph.owner_role(new_stage)
        if owner is not None:
            assigned = self._directory.resolve(workflow, owner)
            notifications.append(
                self.notify(
                    workflow,
                    recipient_role=owner,
                    kind=NotificationKind.ACTION_REQUIRED,
                    title=f"Action required: {_label(new_stage)}",
                    message=f"{company} is waiting on you at the {_label(new_stage)} stage.",
                    dedupe_key=f"{key}:{NotificationKind.ACTION_REQUIRED.value}:{owner.value}",
                    recipient_user_id=assigned.user_id if assigned else None,
                    now=now,
                )
            )

        notifications.append(
            self.notify(
                workflow,
                recipient_role=actor_role,
                kind=NotificationKind.STATUS_UPDATE,
                title="Action recorded",
                message=(
                    f"{closed_entry.action.value} on {company} moved it from "
                    f"{_label(closed_entry.stage)} to {_label(new_stage)}."
                ),
                dedupe_key=f"{key}:ack:{actor_role.value}",
                recipient_user_id=closed_entry.actor_id,
                now=now,
            )
        )

        message = f"{company} moved from {_label(closed_entry.stage)} to {_label(new_stage)}."
        if new_stage == Stage.REJECTED and closed_entry.notes:
            message = f"{message} Reason: {closed_entry.notes}"
        elif closed_entry.action == WorkflowAction.CREATE_ISIN and workflow.virtual_isin:
            message = f"{message} Assigned ISIN: {workflow.virtual_isin}."
        issuer = self._directory.resolve(workflow, ParticipantRole.ISSUER)
        notifications.append(
            self.notify(
                workflow,
                recipient_role=ParticipantRole.ISSUER,
                kind=NotificationKind.STATUS_UPDATE,
                title=f"Workflow update: {_label(new_stage)}",
                message=message,
                dedupe_key=f"{key}:broadcast:{ParticipantRole.ISSUER.value}",
                recipient_user_id=issuer.user_id if issuer else None,
                now=now,
            )
        )

        if new_stage == Stage.TRADING_ACTIVE:
            listing = f"{company} ({workflow.virtual_isin})" if workflow.virtual_isin else company
            for role in TRADING_AUDIENCE:
                holder = self._directory.resolve(workflow, role)
                notifications.append(
                    self.notify(
                        workflow,
                        recipient_role=role,
                        kind=NotificationKind.STATUS_UPDATE,
                        title="Trading now active",
                        message=f"{listing} is now actively trading.",
                        dedupe_key=f"{key}:trading_active:{role.value}",
                        recipient_user_id=holder.user_id if holder else None,
                        now=now,
                    )
                )
        return notifications

    def for_document(
        self, workflow: Workflow, document: Document, now: Optional[datetime] = None
    ) -> List[Notification]:
        """Tell every active participant except the uploader that a document arrived."""
        key = f"{workflow.id}:document:{document.id}:{NotificationKind.DOCUMENT_READY.value}"
        return [
            self.notify(
                workflow,
                recipient_role=p.role,
                kind=NotificationKind.DOCUMENT_READY,
                title="New document available",
                message=(
                    f"{document.title} has been uploaded to "
                    f"{workflow.issuer_company} at the {_label(document.stage)} stage."
                ),
                dedupe_key=f"{key}:{p.role.value}",
                recipient_user_id=p.user_id,
                now=now,
            )
            for p in workflow.participants
            if p.is_active and p.user_id != document.uploaded_by
        ]
