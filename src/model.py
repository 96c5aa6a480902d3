"""
model.py

Domain models for the CapitalLab capital-raise workflow engine.

Entities
--------
- Workflow
- StageHistoryEntry
- TransitionRecord
- Participant
- Document
- Notification

Value objects
-------------
- Actor

All models use Python dataclasses for clean, framework-agnostic definitions.
Workflow, Document and Notification ids are UUIDs; participant identities
(user ids) are opaque strings supplied by the external identity provider.
Timestamps are always stored in UTC.

The Workflow is the only aggregate: its participants, documents, stage
history and transition log are persisted and versioned together.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    """
    Discrete phases of the capital-raise pipeline, in canonical order.

    COMPLETED and REJECTED are terminal.  REJECTED is a pseudo-stage reached
    only through the reject_filing side exit; it never appears in the
    canonical path.
    """
    CAPITAL_RAISE_INTENT = "capital_raise_intent"
    IB_ASSIGNMENT = "ib_assignment"
    DUE_DILIGENCE = "due_diligence"
    PROSPECTUS_BUILDING = "prospectus_building"
    REGULATORY_REVIEW = "regulatory_review"
    LISTING_APPROVAL = "listing_approval"
    ISIN_ASSIGNMENT = "isin_assignment"
    INVESTOR_ONBOARDING = "investor_onboarding"
    TRADING_ACTIVE = "trading_active"
    SETTLEMENT = "settlement"
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.REJECTED})


class WorkflowAction(str, Enum):
    """Actions a participant may request against a workflow's current stage."""
    TRANSFER_TO_IB = "transfer_to_ib"
    ASSIGN_IB = "assign_ib"
    COMPLETE_DUE_DILIGENCE = "complete_due_diligence"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE_FILING = "approve_filing"
    REJECT_FILING = "reject_filing"
    APPROVE_LISTING = "approve_listing"
    CREATE_ISIN = "create_isin"
    ACTIVATE_INVESTOR = "activate_investor"
    EXECUTE_TRADE = "execute_trade"
    SETTLE_TRADE = "settle_trade"


class ParticipantRole(str, Enum):
    """
    Institutional roles taking part in a capital raise.

    ISSUER        – The private company raising capital.
    IB_ADVISOR    – Investment-bank advisor running due diligence and the prospectus.
    REGULATOR     – Capital markets authority reviewing the filing.
    LISTING_DESK  – Exchange listing desk approving the listing.
    CSD_OPERATOR  – Central securities depository; registers the ISIN and settles.
    BROKER        – Onboards investors and executes trades.
    INVESTOR      – Buys the instrument once trading is active.
    """
    ISSUER = "issuer"
    IB_ADVISOR = "ib_advisor"
    REGULATOR = "regulator"
    LISTING_DESK = "listing_desk"
    CSD_OPERATOR = "csd_operator"
    BROKER = "broker"
    INVESTOR = "investor"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a capital-raise workflow."""
    ACTIVE = "active"
    PAUSED = "paused"
    REJECTED = "rejected"
    COMPLETED = "completed"


class InstrumentType(str, Enum):
    EQUITY = "equity"
    BOND = "bond"
    NOTE = "note"


class Currency(str, Enum):
    RWF = "RWF"
    USD = "USD"


class DocumentType(str, Enum):
    """Kinds of document that may be attached to a workflow."""
    CAPITAL_RAISE_INTENT = "capital_raise_intent"
    FINANCIAL_STATEMENTS = "financial_statements"
    DUE_DILIGENCE_RESPONSE = "due_diligence_response"
    PROSPECTUS = "prospectus"
    REGULATORY_FILING = "regulatory_filing"
    ISIN_CERTIFICATE = "isin_certificate"
    CONTRACT_NOTE = "contract_note"


class DocumentStatus(str, Enum):
    """Review status of an attached document."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    """Outcome a reviewer may record against a pending document."""
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationKind(str, Enum):
    """Category of a participant notification."""
    ACTION_REQUIRED = "action_required"
    STATUS_UPDATE = "status_update"
    DOCUMENT_READY = "document_ready"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """
    The identity acting on a request, as resolved by the identity provider.
    The engine trusts this value; it never authenticates it.
    """
    user_id: str
    role: ParticipantRole
    name: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Aggregate members
# ---------------------------------------------------------------------------


@dataclass
class Participant:
    """
    The identity occupying a role on a specific workflow.

    At most one participant per role is active at a time.  Replaced
    participants are kept with is_active=False as directory history.
    """
    role: ParticipantRole = ParticipantRole.ISSUER
    user_id: str = ""
    name: str = ""
    is_active: bool = True
    assigned_at: datetime = field(default_factory=_utcnow)
    deactivated_at: Optional[datetime] = None


@dataclass
class StageHistoryEntry:
    """
    One visit to a stage.  Append-only: once completed_at is set the entry
    is never edited again.  The single open entry (completed_at is None)
    identifies the current stage of an active or paused workflow.
    """
    stage: Stage = Stage.CAPITAL_RAISE_INTENT
    entered_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    actor_id: Optional[str] = None              # who closed the entry
    action: Optional[WorkflowAction] = None     # action that closed the entry
    notes: Optional[str] = None


@dataclass
class TransitionRecord:
    """Immutable log row for every successfully applied action."""
    action: WorkflowAction = WorkflowAction.TRANSFER_TO_IB
    actor_id: str = ""
    actor_role: ParticipantRole = ParticipantRole.ISSUER
    from_stage: Stage = Stage.CAPITAL_RAISE_INTENT
    to_stage: Stage = Stage.IB_ASSIGNMENT
    resulting_version: int = 0
    idempotency_key: Optional[str] = None
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass
class Document:
    """
    Metadata for a document attached to a workflow.

    The bytes live in an external blob store; blob_ref is an opaque
    reference into it.  Status moves pending → approved | rejected exactly once.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    stage: Stage = Stage.DUE_DILIGENCE
    type: DocumentType = DocumentType.FINANCIAL_STATEMENTS
    title: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    uploaded_by: str = ""
    uploaded_at: datetime = field(default_factory=_utcnow)
    blob_ref: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Aggregate root
# ---------------------------------------------------------------------------


@dataclass
class Workflow:
    """
    One capital-raise case, from the issuer's intent to settlement.

    Mutated exclusively through the action processor and persisted with
    optimistic concurrency: `version` increments on every successful save.
    Workflows are never deleted; terminal status archives them.

    `virtual_isin` is None until create_isin binds it, then immutable.
    `idempotency_keys` maps a caller-supplied key to the version its
    successful action produced.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    issuer_company: str = ""
    instrument_type: InstrumentType = InstrumentType.EQUITY
    currency: Currency = Currency.RWF
    target_amount: Decimal = Decimal("0")

    virtual_isin: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    current_stage: Stage = Stage.CAPITAL_RAISE_INTENT
    version: int = 0

    participants: List[Participant] = field(default_factory=list)
    documents: List[Document] = field(default_factory=list)
    stage_history: List[StageHistoryEntry] = field(default_factory=list)
    transitions: List[TransitionRecord] = field(default_factory=list)
    idempotency_keys: Dict[str, int] = field(default_factory=dict)

    # Set on entry to trading_active
    trading_active: bool = False
    listing_date: Optional[datetime] = None

    # Soft suspension; the open stage entry is preserved while paused
    paused_at: Optional[datetime] = None
    paused_by: Optional[str] = None
    pause_reason: Optional[str] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass
class Notification:
    """
    A message derived from a workflow transition.

    `dedupe_key` is unique across the notification store, so re-delivering
    the same transition never creates a second copy.  recipient_user_id is
    None for role-wide notifications.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    workflow_id: uuid.UUID = field(default_factory=uuid.uuid4)
    recipient_role: ParticipantRole = ParticipantRole.ISSUER
    recipient_user_id: Optional[str] = None
    kind: NotificationKind = NotificationKind.STATUS_UPDATE
    title: str = ""
    message: str = ""
    dedupe_key: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    read_at: Optional[datetime] = None
