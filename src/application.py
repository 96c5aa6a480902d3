"""
application.py

Application layer for the CapitalLab capital-raise workflow engine.

Overview
--------
The application layer sits between the presentation layer (API / dashboards)
and the domain / service layer.  It is responsible for:

  1. Defining immutable output DTOs (frozen dataclasses) so no live domain
     object ever leaks to a caller; every returned workflow is a snapshot.
  2. Declaring the external interfaces the engine consumes
     (WorkflowRepository, NotificationRepository, IdentityResolver,
     DocumentBlobStore) so the engine stays storage- and transport-agnostic.
  3. Implementing the transactional core (ActionProcessor) and the
     notification side effects (NotificationDispatcher).
  4. Exposing the whole library surface through one explicitly constructed
     WorkflowEngine; there is no module-level engine instance.

Structure
---------
DTOs
    WorkflowDTO, ParticipantDTO, StageHistoryEntryDTO, DocumentDTO,
    TransitionDTO, NotificationDTO, StageDefinitionDTO

External interfaces
    AbstractWorkflowRepository
    AbstractNotificationRepository
    AbstractIdentityResolver
    AbstractDocumentBlobStore

Commands
    SubmitIntentCommand, ExecuteActionCommand, AssignParticipantCommand,
    AttachDocumentCommand, ReviewDocumentCommand, PauseWorkflowCommand,
    ResumeWorkflowCommand

Components
    NotificationDispatcher
    ActionProcessor
    WorkflowEngine

Design notes
------------
- Every mutation follows load → check → mutate a detached copy → save with
  expected_version.  Nothing is written when a check fails, and a lost
  race surfaces as ConflictError for the caller to retry on a fresh read.
- Errors are the typed WorkflowError subclasses from service.py.
- Notification dispatch runs after the commit and never rolls it back.
- All timestamps flowing out are ISO-8601 strings (UTC).
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from model import (
    Actor,
    Currency,
    Document,
    DocumentType,
    InstrumentType,
    Notification,
    Participant,
    ParticipantRole,
    ReviewDecision,
    Stage,
    StageHistoryEntry,
    TransitionRecord,
    Workflow,
    WorkflowAction,
    WorkflowStatus,
)
from service import (
    ConflictError,
    DocumentLedger,
    InvalidTransitionError,
    IsinService,
    NotFoundError,
    NotificationService,
    ParticipantDirectory,
    StageDefinition,
    StageGraph,
    StageHistory,
    TerminalError,
    UnauthorizedError,
    ValidationError,
    WorkflowError,
)
from settings import RuntimeSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    return _as_utc(dt).isoformat()


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass(frozen=True)
class ParticipantDTO:
    role: str
    user_id: str
    name: str
    is_active: bool
    assigned_at: str
    deactivated_at: Optional[str]


@dataclass(frozen=True)
class StageHistoryEntryDTO:
    stage: str
    entered_at: str
    completed_at: Optional[str]
    actor_id: Optional[str]
    action: Optional[str]
    notes: Optional[str]


@dataclass(frozen=True)
class DocumentDTO:
    id: str
    stage: str
    type: str
    title: str
    status: str
    uploaded_by: str
    uploaded_at: str
    blob_ref: Optional[str]
    reviewed_by: Optional[str]
    reviewed_at: Optional[str]


@dataclass(frozen=True)
class TransitionDTO:
    action: str
    actor_id: str
    actor_role: str
    from_stage: str
    to_stage: str
    resulting_version: int
    idempotency_key: Optional[str]
    occurred_at: str


@dataclass(frozen=True)
class WorkflowDTO:
    """Immutable snapshot of a workflow at one version."""
    id: str
    issuer_company: str
    instrument_type: str
    currency: str
    target_amount: str
    virtual_isin: Optional[str]
    status: str
    current_stage: str
    version: int
    participants: Tuple[ParticipantDTO, ...]
    documents: Tuple[DocumentDTO, ...]
    stage_history: Tuple[StageHistoryEntryDTO, ...]
    transitions: Tuple[TransitionDTO, ...]
    trading_active: bool
    listing_date: Optional[str]
    paused_at: Optional[str]
    paused_by: Optional[str]
    pause_reason: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class NotificationDTO:
    id: str
    workflow_id: str
    recipient_role: str
    recipient_user_id: Optional[str]
    kind: str
    title: str
    message: str
    dedupe_key: str
    created_at: str
    read_at: Optional[str]
    is_read: bool


@dataclass(frozen=True)
class StageDefinitionDTO:
    stage: str
    owner_role: str
    actions: Tuple[str, ...]
    transitions: Dict[str, str]
    required_documents: Tuple[str, ...]
    document_reviewer: str
    binding_actions: Tuple[str, ...]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def participant(p: Participant) -> ParticipantDTO:
        return ParticipantDTO(
            role=p.role.value,
            user_id=p.user_id,
            name=p.name,
            is_active=p.is_active,
            assigned_at=_fmt(p.assigned_at),
            deactivated_at=_fmt(p.deactivated_at),
        )

    @staticmethod
    def history_entry(e: StageHistoryEntry) -> StageHistoryEntryDTO:
        return StageHistoryEntryDTO(
            stage=e.stage.value,
            entered_at=_fmt(e.entered_at),
            completed_at=_fmt(e.completed_at),
            actor_id=e.actor_id,
            action=e.action.value if e.action else None,
            notes=e.notes,
        )

    @staticmethod
    def document(d: Document) -> DocumentDTO:
        return DocumentDTO(
            id=str(d.id),
            stage=d.stage.value,
            type=d.type.value,
            title=d.title,
            status=d.status.value,
            uploaded_by=d.uploaded_by,
            uploaded_at=_fmt(d.uploaded_at),
            blob_ref=d.blob_ref,
            reviewed_by=d.reviewed_by,
            reviewed_at=_fmt(d.reviewed_at),
        )

    @staticmethod
    def transition(t: TransitionRecord) -> TransitionDTO:
        return TransitionDTO(
            action=t.action.value,
            actor_id=t.actor_id,
            actor_role=t.actor_role.value,
            from_stage=t.from_stage.value,
            to_stage=t.to_stage.value,
            resulting_version=t.resulting_version,
            idempotency_key=t.idempotency_key,
            occurred_at=_fmt(t.occurred_at),
        )

    @staticmethod
    def workflow(w: Workflow) -> WorkflowDTO:
        return WorkflowDTO(
            id=str(w.id),
            issuer_company=w.issuer_company,
            instrument_type=w.instrument_type.value,
            currency=w.currency.value,
            target_amount=str(w.target_amount),
            virtual_isin=w.virtual_isin,
            status=w.status.value,
            current_stage=w.current_stage.value,
            version=w.version,
            participants=tuple(_Assembler.participant(p) for p in w.participants),
            documents=tuple(_Assembler.document(d) for d in w.documents),
            stage_history=tuple(_Assembler.history_entry(e) for e in w.stage_history),
            transitions=tuple(_Assembler.transition(t) for t in w.transitions),
            trading_active=w.trading_active,
            listing_date=_fmt(w.listing_date),
            paused_at=_fmt(w.paused_at),
            paused_by=w.paused_by,
            pause_reason=w.pause_reason,
            created_at=_fmt(w.created_at),
            updated_at=_fmt(w.updated_at),
        )

    @staticmethod
    def notification(n: Notification) -> NotificationDTO:
        return NotificationDTO(
            id=str(n.id),
            workflow_id=str(n.workflow_id),
            recipient_role=n.recipient_role.value,
            recipient_user_id=n.recipient_user_id,
            kind=n.kind.value,
            title=n.title,
            message=n.message,
            dedupe_key=n.dedupe_key,
            created_at=_fmt(n.created_at),
            read_at=_fmt(n.read_at),
            is_read=n.read_at is not None,
        )

    @staticmethod
    def stage_definition(d: StageDefinition) -> StageDefinitionDTO:
        return StageDefinitionDTO(
            stage=d.stage.value,
            owner_role=d.owner_role.value,
            actions=tuple(a.value for a in d.transitions),
            transitions={a.value: s.value for a, s in d.transitions.items()},
            required_documents=tuple(sorted(t.value for t in d.required_documents)),
            document_reviewer=d.document_reviewer.value,
            binding_actions=tuple(sorted(a.value for a in d.binding_actions)),
        )


# ===========================================================================
# EXTERNAL INTERFACES
# ===========================================================================

@dataclass(frozen=True)
class WorkflowFilter:
    """Criteria for AbstractWorkflowRepository.query; unset fields match everything."""
    participant_user_id: Optional[str] = None
    role: Optional[ParticipantRole] = None
    status: Optional[WorkflowStatus] = None
    updated_since: Optional[datetime] = None


class AbstractWorkflowRepository(abc.ABC):
    """
    Versioned persistence for the Workflow aggregate.

    get() returns a detached copy; mutating it has no effect until save().
    save() is a compare-and-set on `version`: it raises ConflictError when
    the stored version differs from expected_version (0 means the workflow
    must not exist yet) and returns the new stored version.
    """

    @abc.abstractmethod
    def get(self, workflow_id: uuid.UUID, version: Optional[int] = None) -> Optional[Workflow]: ...
    @abc.abstractmethod
    def save(self, workflow: Workflow, expected_version: int) -> int: ...
    @abc.abstractmethod
    def query(self, criteria: WorkflowFilter) -> List[Workflow]: ...


class AbstractNotificationRepository(abc.ABC):
    @abc.abstractmethod
    def add_if_absent(self, notification: Notification) -> bool:
        """Store the notification unless its dedupe_key exists; True if stored."""
    @abc.abstractmethod
    def get(self, notification_id: uuid.UUID) -> Optional[Notification]: ...
    @abc.abstractmethod
    def save(self, notification: Notification) -> None: ...
    @abc.abstractmethod
    def list_for_role(self, role: ParticipantRole) -> List[Notification]: ...
    @abc.abstractmethod
    def list_for_workflow(self, workflow_id: uuid.UUID) -> List[Notification]: ...


class IdentityError(UnauthorizedError):
    """No usable identity was presented with the request."""

    code = "unauthenticated"


class AbstractIdentityResolver(abc.ABC):
    """
    Supplies the acting identity for a request.  The engine trusts it.
    resolve() raises IdentityError when no identity can be established.
    """

    @abc.abstractmethod
    def resolve(self, headers: Mapping[str, str]) -> Actor: ...


class AbstractDocumentBlobStore(abc.ABC):
    """Holds document bytes; the engine only keeps references into it."""

    @abc.abstractmethod
    def put(self, content: bytes) -> str: ...
    @abc.abstractmethod
    def exists(self, blob_ref: str) -> bool: ...


# ===========================================================================
# COMMANDS
# ===========================================================================

@dataclass
class SubmitIntentCommand:
    actor: Actor
    company_name: str
    instrument_type: InstrumentType
    currency: Currency
    target_amount: Any


@dataclass
class ExecuteActionCommand:
    workflow_id: uuid.UUID
    action: WorkflowAction
    actor: Actor
    payload: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None


@dataclass
class AssignParticipantCommand:
    workflow_id: uuid.UUID
    role: ParticipantRole
    user_id: str
    name: str = ""
    replace: bool = False


@dataclass
class AttachDocumentCommand:
    workflow_id: uuid.UUID
    actor: Actor
    doc_type: DocumentType
    title: str = ""
    stage: Optional[Stage] = None       # defaults to the current stage
    blob_ref: Optional[str] = None


@dataclass
class ReviewDocumentCommand:
    workflow_id: uuid.UUID
    document_id: uuid.UUID
    decision: ReviewDecision
    actor: Actor


@dataclass
class PauseWorkflowCommand:
    workflow_id: uuid.UUID
    actor: Actor
    reason: str = ""


@dataclass
class ResumeWorkflowCommand:
    workflow_id: uuid.UUID
    actor: Actor


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_workflow_or_raise(
    repository: AbstractWorkflowRepository, workflow_id: uuid.UUID
) -> Workflow:
    workflow = repository.get(workflow_id)
    if workflow is None:
        raise NotFoundError(f"Workflow {workflow_id} not found.")
    return workflow


def _ensure_not_terminal(workflow: Workflow) -> None:
    if workflow.status in (WorkflowStatus.COMPLETED, WorkflowStatus.REJECTED):
        raise TerminalError(
            f"Workflow {workflow.id} is {workflow.status.value}; no further changes are accepted."
        )


def _commit(
    repository: AbstractWorkflowRepository, workflow: Workflow, expected_version: int
) -> Workflow:
    """Persist under optimistic concurrency and stamp the new version on `workflow`."""
    workflow.version = repository.save(workflow, expected_version=expected_version)
    return workflow


# ===========================================================================
# NOTIFICATION DISPATCHER
# ===========================================================================

class NotificationDispatcher:
    """
    Stores the notifications derived from committed transitions.

    Delivery is at-least-once and idempotent: every notification carries a
    dedupe key and the repository refuses a second copy, so any transition
    may be re-dispatched safely.
    """

    def __init__(
        self,
        repository: AbstractNotificationRepository,
        composer: NotificationService,
        graph: StageGraph,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self._composer = composer
        self._graph = graph
        self._clock = clock

    def _store(self, notifications: List[Notification]) -> int:
        return sum(1 for n in notifications if self._repository.add_if_absent(n))

    def on_intent(self, workflow: Workflow) -> int:
        return self._store(self._composer.for_intent(workflow, now=self._clock()))

    def on_transition(self, workflow: Workflow, closed_entry: StageHistoryEntry) -> int:
        """Synthesise and store the notifications for one closed stage entry."""
        actor_role = self._graph.owner_role(closed_entry.stage)
        if actor_role is None or closed_entry.action is None:
            return 0
        created = self._store(
            self._composer.for_transition(workflow, closed_entry, actor_role, now=self._clock())
        )
        logger.debug(
            "Dispatched %d notification(s) for workflow %s (%s/%s)",
            created, workflow.id, closed_entry.stage.value, closed_entry.action.value,
        )
        return created

    def on_document(self, workflow: Workflow, document: Document) -> int:
        return self._store(self._composer.for_document(workflow, document, now=self._clock()))

    def redeliver(self, workflow: Workflow) -> int:
        """Re-run synthesis for every recorded event; only missing notifications are created."""
        created = 0
        for entry in workflow.stage_history:
            if entry.completed_at is not None and entry.action is not None:
                created += self.on_transition(workflow, entry)
        for document in workflow.documents:
            created += self.on_document(workflow, document)
        return created

    def mark_read(self, notification_id: uuid.UUID) -> NotificationDTO:
        notification = self._repository.get(notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found.")
        if notification.read_at is None:
            notification.read_at = self._clock()
            self._repository.save(notification)
        return _Assembler.notification(notification)

    def list_for_workflow(self, workflow_id: uuid.UUID) -> List[NotificationDTO]:
        notifications = sorted(self._repository.list_for_workflow(workflow_id), key=lambda n: n.created_at)
        return [_Assembler.notification(n) for n in notifications]

    def list_for(self, user_id: str, role: ParticipantRole) -> List[NotificationDTO]:
        """The role's untargeted notifications plus those targeted at `user_id`, newest first."""
        visible = [
            n
            for n in self._repository.list_for_role(role)
            if n.recipient_user_id is None or n.recipient_user_id == user_id
        ]
        visible.sort(key=lambda n: n.created_at, reverse=True)
        return [_Assembler.notification(n) for n in visible]


# ===========================================================================
# ACTION PROCESSOR
# ===========================================================================

class ActionProcessor:
    """
    The transactional core: executes one action against one workflow.

    Checks run in a fixed order (not found, idempotent replay, terminal,
    paused, legality, authorization, prerequisites, payload) before any
    mutation.  The mutation is applied to a detached copy and committed
    with the version read at load time, so the whole step is all-or-nothing.
    """

    def __init__(
        self,
        repository: AbstractWorkflowRepository,
        dispatcher: NotificationDispatcher,
        graph: StageGraph,
        directory: ParticipantDirectory,
        ledger: DocumentLedger,
        history: StageHistory,
        isin: IsinService,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self._dispatcher = dispatcher
        self._graph = graph
        self._directory = directory
        self._ledger = ledger
        self._history = history
        self._isin = isin
        self._clock = clock

    def execute(self, cmd: ExecuteActionCommand) -> WorkflowDTO:
        try:
            return self._execute(cmd)
        except WorkflowError as exc:
            logger.warning(
                "Rejected %s on workflow %s by %s/%s: %s (%s)",
                cmd.action.value, cmd.workflow_id, cmd.actor.role.value,
                cmd.actor.user_id, exc, exc.code,
            )
            raise

    def _execute(self, cmd: ExecuteActionCommand) -> WorkflowDTO:
        workflow = _get_workflow_or_raise(self._repository, cmd.workflow_id)

        replay = self._replay(workflow, cmd)
        if replay is not None:
            return replay

        _ensure_not_terminal(workflow)
        if workflow.status == WorkflowStatus.PAUSED:
            raise InvalidTransitionError(f"Workflow {workflow.id} is paused.")

        stage = workflow.current_stage
        if cmd.action not in self._graph.allowed_actions(stage):
            raise InvalidTransitionError(
                f"Action '{cmd.action.value}' is not allowed in stage '{stage.value}'."
            )
        if cmd.action == WorkflowAction.CREATE_ISIN and workflow.virtual_isin is not None:
            raise InvalidTransitionError(
                f"Workflow {workflow.id} already has ISIN {workflow.virtual_isin}."
            )

        self._authorize(workflow, stage, cmd.action, cmd.actor)

        if self._graph.is_completing(cmd.action):
            missing = self._ledger.missing_prerequisites(workflow, stage)
            if missing:
                raise ValidationError(
                    f"Stage '{stage.value}' requires approved documents: "
                    f"{sorted(t.value for t in missing)}."
                )

        payload = self._validated_payload(workflow, cmd)

        expected_version = workflow.version
        now = self._clock()
        closed = self._apply(workflow, stage, cmd, payload, expected_version + 1, now)
        _commit(self._repository, workflow, expected_version)

        logger.info(
            "Workflow %s: %s moved %s -> %s (v%d) by %s",
            workflow.id, cmd.action.value, stage.value,
            workflow.current_stage.value, workflow.version, cmd.actor.user_id,
        )

        try:
            self._dispatcher.on_transition(workflow, closed)
        except Exception:
            logger.exception("Notification dispatch failed for workflow %s", workflow.id)

        return _Assembler.workflow(workflow)

    def _replay(self, workflow: Workflow, cmd: ExecuteActionCommand) -> Optional[WorkflowDTO]:
        """
        Serve the recorded snapshot for a known key.  Only the identity that
        made the original call may replay it, and only for the same action.
        """
        idempotency_key = cmd.idempotency_key
        if not idempotency_key or idempotency_key not in workflow.idempotency_keys:
            return None
        recorded = next(
            (t for t in workflow.transitions if t.idempotency_key == idempotency_key), None
        )
        if recorded is None:
            raise NotFoundError(f"No transition recorded for idempotency key {idempotency_key!r}.")
        if recorded.actor_id != cmd.actor.user_id or recorded.actor_role != cmd.actor.role:
            raise UnauthorizedError(
                f"Idempotency key {idempotency_key!r} belongs to another caller."
            )
        if recorded.action != cmd.action:
            raise ValidationError(
                f"Idempotency key {idempotency_key!r} was used for '{recorded.action.value}', "
                f"not '{cmd.action.value}'."
            )
        version = workflow.idempotency_keys[idempotency_key]
        prior = self._repository.get(workflow.id, version=version)
        if prior is None:
            raise NotFoundError(f"Workflow {workflow.id} has no stored version {version}.")
        logger.info(
            "Workflow %s: replayed idempotency key %r (v%d)", workflow.id, idempotency_key, version
        )
        return _Assembler.workflow(prior)

    def _authorize(
        self, workflow: Workflow, stage: Stage, action: WorkflowAction, actor: Actor
    ) -> None:
        owner = self._graph.owner_role(stage)
        if actor.role != owner:
            raise UnauthorizedError(
                f"Stage '{stage.value}' is owned by '{owner.value}', not '{actor.role.value}'."
            )
        assigned = self._directory.resolve(workflow, owner)
        if self._graph.is_binding(stage, action):
            if assigned is not None and assigned.user_id != actor.user_id:
                raise UnauthorizedError(
                    f"Role '{owner.value}' is already held by another participant."
                )
            return
        if assigned is None or assigned.user_id != actor.user_id:
            raise UnauthorizedError(
                f"{actor.user_id} is not the assigned '{owner.value}' for workflow {workflow.id}."
            )

    def _validated_payload(self, workflow: Workflow, cmd: ExecuteActionCommand) -> Dict[str, Any]:
        """Check the action-specific payload and return the values _apply needs."""
        payload = cmd.payload if cmd.payload is not None else {}
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object.")

        notes = payload.get("notes")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("payload.notes must be a string.")
        result: Dict[str, Any] = {"notes": notes}

        if cmd.action == WorkflowAction.REJECT_FILING:
            reason = payload.get("reason")
            if not isinstance(reason, str) or not reason.strip():
                raise ValidationError("reject_filing requires a non-empty payload.reason.")
            result["notes"] = reason.strip()

        elif cmd.action == WorkflowAction.CREATE_ISIN:
            isin = payload.get("isin")
            if isin is None:
                isin = self._isin.generate(workflow, now=self._clock())
            elif not isinstance(isin, str) or not self._isin.is_valid(isin):
                raise ValidationError(f"payload.isin {isin!r} is not a valid ISIN.")
            result["isin"] = isin

        elif cmd.action == WorkflowAction.ACTIVATE_INVESTOR:
            investor = payload.get("investor")
            if investor is not None:
                if not isinstance(investor, dict):
                    raise ValidationError("payload.investor must be an object.")
                user_id = str(investor.get("user_id", "")).strip()
                if not user_id:
                    raise ValidationError("payload.investor requires a user_id.")
                name = investor.get("name", "")
                if name is not None and not isinstance(name, str):
                    raise ValidationError("payload.investor.name must be a string.")
                current = self._directory.resolve(workflow, ParticipantRole.INVESTOR)
                if current is not None and current.user_id != user_id:
                    raise ConflictError(
                        f"Role 'investor' is already held by {current.user_id}."
                    )
                result["investor"] = {"user_id": user_id, "name": name or ""}

        elif cmd.action == WorkflowAction.ASSIGN_IB:
            name = payload.get("name", cmd.actor.name)
            if name is not None and not isinstance(name, str):
                raise ValidationError("payload.name must be a string.")
            result["name"] = name or ""

        return result

    def _apply(
        self,
        workflow: Workflow,
        stage: Stage,
        cmd: ExecuteActionCommand,
        payload: Dict[str, Any],
        resulting_version: int,
        now: datetime,
    ) -> StageHistoryEntry:
        if self._graph.is_binding(stage, cmd.action):
            self._directory.assign(
                workflow, self._graph.owner_role(stage), cmd.actor.user_id,
                name=payload.get("name", ""), now=now,
            )
        if "isin" in payload:
            workflow.virtual_isin = payload["isin"]
        if "investor" in payload:
            investor = payload["investor"]
            self._directory.assign(
                workflow, ParticipantRole.INVESTOR, investor["user_id"],
                name=investor["name"], now=now,
            )

        closed = self._history.close(workflow, cmd.actor.user_id, cmd.action, payload["notes"], now=now)
        next_stage = self._graph.next_stage(stage, cmd.action)
        workflow.current_stage = next_stage
        if next_stage == Stage.COMPLETED:
            workflow.status = WorkflowStatus.COMPLETED
        elif next_stage == Stage.REJECTED:
            workflow.status = WorkflowStatus.REJECTED
        else:
            self._history.enter(workflow, next_stage, now=now)
        if next_stage == Stage.TRADING_ACTIVE:
            workflow.trading_active = True
            workflow.listing_date = now

        workflow.transitions.append(
            TransitionRecord(
                action=cmd.action,
                actor_id=cmd.actor.user_id,
                actor_role=cmd.actor.role,
                from_stage=stage,
                to_stage=next_stage,
                resulting_version=resulting_version,
                idempotency_key=cmd.idempotency_key,
                occurred_at=now,
            )
        )
        if cmd.idempotency_key:
            workflow.idempotency_keys[cmd.idempotency_key] = resulting_version
        workflow.updated_at = now
        return closed


# ===========================================================================
# WORKFLOW ENGINE
# ===========================================================================

class WorkflowEngine:
    """
    Library surface consumed by the presentation layers.

    Construct one per deployment (or per test) with the repositories it
    should use; instances share nothing with each other.
    """

    def __init__(
        self,
        workflows: AbstractWorkflowRepository,
        notifications: AbstractNotificationRepository,
        settings: Optional[RuntimeSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        blob_store: Optional[AbstractDocumentBlobStore] = None,
        graph: Optional[StageGraph] = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.graph = graph or StageGraph()
        self._workflows = workflows
        self._clock = clock or _utcnow
        self.blob_store = blob_store
        self._directory = ParticipantDirectory()
        self._ledger = DocumentLedger(self.graph)
        self._history = StageHistory()
        self._stage_sla = self.settings.stage_sla()
        self._suspension_roles = self.settings.suspension_role_set()
        self.dispatcher = NotificationDispatcher(
            notifications,
            NotificationService(self.graph, self._directory),
            self.graph,
            clock=self._clock,
        )
        self.processor = ActionProcessor(
            workflows,
            self.dispatcher,
            self.graph,
            self._directory,
            self._ledger,
            self._history,
            IsinService(),
            clock=self._clock,
        )

    # -- Workflow lifecycle -------------------------------------------------

    def submit_intent(self, cmd: SubmitIntentCommand) -> WorkflowDTO:
        """Create a workflow at capital_raise_intent with the actor as issuer."""
        if cmd.actor.role != ParticipantRole.ISSUER:
            raise UnauthorizedError("Only an issuer may submit a capital raise intent.")
        company = (cmd.company_name or "").strip()
        if not company:
            raise ValidationError("company_name must not be empty.")
        try:
            amount = Decimal(str(cmd.target_amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"target_amount {cmd.target_amount!r} is not a number.") from exc
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("target_amount must be greater than zero.")
        try:
            instrument_type = InstrumentType(cmd.instrument_type)
            currency = Currency(cmd.currency)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        now = self._clock()
        workflow = Workflow(
            issuer_company=company,
            instrument_type=instrument_type,
            currency=currency,
            target_amount=amount,
            status=WorkflowStatus.ACTIVE,
            current_stage=Stage.CAPITAL_RAISE_INTENT,
            created_at=now,
            updated_at=now,
        )
        self._directory.assign(
            workflow, ParticipantRole.ISSUER, cmd.actor.user_id,
            name=cmd.actor.name or company, now=now,
        )
        self._history.enter(workflow, Stage.CAPITAL_RAISE_INTENT, now=now)
        _commit(self._workflows, workflow, expected_version=0)
        logger.info(
            "Workflow %s created for %s (%s %s)",
            workflow.id, company, currency.value, amount,
        )
        try:
            self.dispatcher.on_intent(workflow)
        except Exception:
            logger.exception("Notification dispatch failed for workflow %s", workflow.id)
        return _Assembler.workflow(workflow)

    def execute(self, cmd: ExecuteActionCommand) -> WorkflowDTO:
        return self.processor.execute(cmd)

    def pause(self, cmd: PauseWorkflowCommand) -> WorkflowDTO:
        """Soft-suspend the workflow; the open stage entry is kept as is."""
        workflow = _get_workflow_or_raise(self._workflows, cmd.workflow_id)
        _ensure_not_terminal(workflow)
        if workflow.status == WorkflowStatus.PAUSED:
            raise InvalidTransitionError(f"Workflow {workflow.id} is already paused.")
        self._authorize_suspension(workflow, cmd.actor)

        expected_version = workflow.version
        now = self._clock()
        workflow.status = WorkflowStatus.PAUSED
        workflow.paused_at = now
        workflow.paused_by = cmd.actor.user_id
        workflow.pause_reason = cmd.reason.strip() or None
        workflow.updated_at = now
        _commit(self._workflows, workflow, expected_version)
        logger.info("Workflow %s paused by %s", workflow.id, cmd.actor.user_id)
        return _Assembler.workflow(workflow)

    def resume(self, cmd: ResumeWorkflowCommand) -> WorkflowDTO:
        """
        Re-enable actions on the paused stage.  By default the existing open
        entry is reused; with resume_creates_entry the paused visit is
        closed and a fresh entry for the same stage is opened.
        """
        workflow = _get_workflow_or_raise(self._workflows, cmd.workflow_id)
        _ensure_not_terminal(workflow)
        if workflow.status != WorkflowStatus.PAUSED:
            raise InvalidTransitionError(f"Workflow {workflow.id} is not paused.")
        self._authorize_suspension(workflow, cmd.actor)

        expected_version = workflow.version
        now = self._clock()
        if self.settings.resume_creates_entry:
            self._history.close(workflow, cmd.actor.user_id, None, "Paused; resumed in a new entry", now=now)
            self._history.enter(workflow, workflow.current_stage, now=now)
        workflow.status = WorkflowStatus.ACTIVE
        workflow.paused_at = None
        workflow.paused_by = None
        workflow.pause_reason = None
        workflow.updated_at = now
        _commit(self._workflows, workflow, expected_version)
        logger.info("Workflow %s resumed by %s", workflow.id, cmd.actor.user_id)
        return _Assembler.workflow(workflow)

    def _authorize_suspension(self, workflow: Workflow, actor: Actor) -> None:
        if actor.role not in self._suspension_roles:
            raise UnauthorizedError(f"Role '{actor.role.value}' may not pause or resume workflows.")
        if not self._directory.matches(workflow, actor.role, actor.user_id):
            raise UnauthorizedError(
                f"{actor.user_id} is not the assigned '{actor.role.value}' for workflow {workflow.id}."
            )

    # -- Participants -------------------------------------------------------

    def assign_participant(self, cmd: AssignParticipantCommand) -> ParticipantDTO:
        """
        Directory administration.  No acting identity is checked here; the
        caller is trusted to be the operator staffing the workflow.  Inside
        the flow a role is claimed through its binding action (assign_ib).
        """
        workflow = _get_workflow_or_raise(self._workflows, cmd.workflow_id)
        _ensure_not_terminal(workflow)
        expected_version = workflow.version
        before = self._directory.resolve(workflow, cmd.role)
        participant = self._directory.assign(
            workflow, cmd.role, cmd.user_id, name=cmd.name,
            replace=cmd.replace, now=self._clock(),
        )
        if participant is not before:
            workflow.updated_at = self._clock()
            _commit(self._workflows, workflow, expected_version)
            logger.info(
                "Workflow %s: %s assigned to role %s", workflow.id, cmd.user_id, cmd.role.value
            )
        return _Assembler.participant(participant)

    def resolve_participant(self, workflow_id: uuid.UUID, role: ParticipantRole) -> Optional[ParticipantDTO]:
        workflow = _get_workflow_or_raise(self._workflows, workflow_id)
        participant = self._directory.resolve(workflow, role)
        return _Assembler.participant(participant) if participant else None

    # -- Documents ----------------------------------------------------------

    def attach_document(self, cmd: AttachDocumentCommand) -> DocumentDTO:
        workflow = _get_workflow_or_raise(self._workflows, cmd.workflow_id)
        _ensure_not_terminal(workflow)
        if not self._directory.matches(workflow, cmd.actor.role, cmd.actor.user_id):
            raise UnauthorizedError(
                f"{cmd.actor.user_id} is not a participant of workflow {workflow.id}."
            )
        if cmd.blob_ref and self.blob_store is not None and not self.blob_store.exists(cmd.blob_ref):
            raise ValidationError(f"Unknown blob reference {cmd.blob_ref!r}.")

        expected_version = workflow.version
        now = self._clock()
        document = self._ledger.attach(
            workflow,
            cmd.stage or workflow.current_stage,
            cmd.doc_type,
            cmd.title,
            uploaded_by=cmd.actor.user_id,
            blob_ref=cmd.blob_ref,
            now=now,
        )
        workflow.updated_at = now
        _commit(self._workflows, workflow, expected_version)
        logger.info(
            "Workflow %s: document %s (%s) attached to %s",
            workflow.id, document.id, document.type.value, document.stage.value,
        )
        try:
            self.dispatcher.on_document(workflow, document)
        except Exception:
            logger.exception("Notification dispatch failed for workflow %s", workflow.id)
        return _Assembler.document(document)

    def review_document(self, cmd: ReviewDocumentCommand) -> DocumentDTO:
        workflow = _get_workflow_or_raise(self._workflows, cmd.workflow_id)
        _ensure_not_terminal(workflow)
        self._ledger.get(workflow, cmd.document_id)
        assigned = self._directory.resolve(workflow, cmd.actor.role)
        if assigned is not None and assigned.user_id != cmd.actor.user_id:
            raise UnauthorizedError(
                f"{cmd.actor.user_id} is not the assigned '{cmd.actor.role.value}' "
                f"for workflow {workflow.id}."
            )

        expected_version = workflow.version
        now = self._clock()
        document = self._ledger.review(
            workflow, cmd.document_id, cmd.decision,
            reviewer_role=cmd.actor.role, reviewer_id=cmd.actor.user_id, now=now,
        )
        workflow.updated_at = now
        _commit(self._workflows, workflow, expected_version)
        logger.info(
            "Workflow %s: document %s %s by %s",
            workflow.id, document.id, document.status.value, cmd.actor.user_id,
        )
        return _Assembler.document(document)

    def prerequisites_met(self, workflow_id: uuid.UUID, stage: Stage) -> bool:
        workflow = _get_workflow_or_raise(self._workflows, workflow_id)
        return self._ledger.prerequisites_met(workflow, stage)

    # -- Queries ------------------------------------------------------------

    def get(self, workflow_id: uuid.UUID) -> WorkflowDTO:
        return _Assembler.workflow(_get_workflow_or_raise(self._workflows, workflow_id))

    def list_for_participant(self, user_id: str, role: ParticipantRole) -> List[WorkflowDTO]:
        workflows = self._workflows.query(WorkflowFilter(participant_user_id=user_id, role=role))
        return [_Assembler.workflow(w) for w in sorted(workflows, key=lambda w: w.created_at)]

    def list_changed_since(self, since: datetime) -> List[WorkflowDTO]:
        workflows = self._workflows.query(WorkflowFilter(updated_since=_as_utc(since)))
        return [_Assembler.workflow(w) for w in sorted(workflows, key=lambda w: w.updated_at)]

    def history(self, workflow_id: uuid.UUID) -> List[StageHistoryEntryDTO]:
        workflow = _get_workflow_or_raise(self._workflows, workflow_id)
        return [_Assembler.history_entry(e) for e in workflow.stage_history]

    def available_actions(self, workflow_id: uuid.UUID, actor: Actor) -> List[str]:
        """Actions `actor` could execute right now; empty when it is not their turn."""
        workflow = _get_workflow_or_raise(self._workflows, workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            return []
        stage = workflow.current_stage
        if actor.role != self.graph.owner_role(stage):
            return []
        actions = []
        for action in self.graph.allowed_actions(stage):
            assigned = self._directory.resolve(workflow, actor.role)
            if assigned is None and not self.graph.is_binding(stage, action):
                continue
            if assigned is not None and assigned.user_id != actor.user_id:
                continue
            actions.append(action.value)
        return sorted(actions)

    def is_overdue(self, workflow_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """SLA breach query for an external scheduler; never transitions anything."""
        workflow = _get_workflow_or_raise(self._workflows, workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            return False
        return self._history.is_overdue(workflow, _as_utc(now or self._clock()), self._stage_sla)

    def stage_graph(self) -> List[StageDefinitionDTO]:
        return [_Assembler.stage_definition(d) for d in self.graph.definitions()]

    # -- Notifications ------------------------------------------------------

    def list_notifications(self, user_id: str, role: ParticipantRole) -> List[NotificationDTO]:
        return self.dispatcher.list_for(user_id, role)

    def mark_read(self, notification_id: uuid.UUID) -> NotificationDTO:
        return self.dispatcher.mark_read(notification_id)

    def list_workflow_notifications(self, workflow_id: uuid.UUID) -> List[NotificationDTO]:
        """Every notification raised for one workflow, oldest first."""
        _get_workflow_or_raise(self._workflows, workflow_id)
        return self.dispatcher.list_for_workflow(workflow_id)

    def redeliver_notifications(self, workflow_id: uuid.UUID) -> int:
        workflow = _get_workflow_or_raise(self._workflows, workflow_id)
        created = self.dispatcher.on_intent(workflow) + self.dispatcher.redeliver(workflow)
        logger.info("Workflow %s: redelivered %d notification(s)", workflow.id, created)
        return created
