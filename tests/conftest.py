"""
Shared pytest fixtures for the CapitalLab workflow engine tests.

Provides fixtures for:
- A controllable clock
- A fresh in-memory engine per test
- One actor per participant role
- Submitted and fully staffed workflows
- A driver that walks a workflow along the canonical path
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest

from application import (
    AssignParticipantCommand,
    AttachDocumentCommand,
    ExecuteActionCommand,
    ReviewDocumentCommand,
    SubmitIntentCommand,
    WorkflowDTO,
    WorkflowEngine,
)
from infrastructure import build_engine
from model import (
    Actor,
    Currency,
    DocumentType,
    InstrumentType,
    ParticipantRole,
    ReviewDecision,
    Stage,
    WorkflowAction,
)
from settings import RuntimeSettings


START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

ACTORS: Dict[ParticipantRole, Actor] = {
    ParticipantRole.ISSUER: Actor("issuer-1", ParticipantRole.ISSUER, "Green Energy Rwanda Ltd"),
    ParticipantRole.IB_ADVISOR: Actor("ib-1", ParticipantRole.IB_ADVISOR, "Rwanda Capital Partners"),
    ParticipantRole.REGULATOR: Actor("regulator-1", ParticipantRole.REGULATOR, "CMA Officer"),
    ParticipantRole.LISTING_DESK: Actor("listing-1", ParticipantRole.LISTING_DESK, "RSE Listing Desk"),
    ParticipantRole.CSD_OPERATOR: Actor("csd-1", ParticipantRole.CSD_OPERATOR, "CSD Operator"),
    ParticipantRole.BROKER: Actor("broker-1", ParticipantRole.BROKER, "Kigali Brokers"),
    ParticipantRole.INVESTOR: Actor("investor-1", ParticipantRole.INVESTOR, "Jane Investor"),
}


class FixedClock:
    """A clock that only moves when a test advances it."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class WorkflowDriver:
    """Executes actions on one workflow with the right actor for each stage."""

    def __init__(self, engine: WorkflowEngine, workflow_id: uuid.UUID):
        self.engine = engine
        self.workflow_id = workflow_id

    def current(self) -> WorkflowDTO:
        return self.engine.get(self.workflow_id)

    def act(
        self,
        action: WorkflowAction,
        actor: Optional[Actor] = None,
        idempotency_key: Optional[str] = None,
        **payload,
    ) -> WorkflowDTO:
        if actor is None:
            owner = self.engine.graph.owner_role(Stage(self.current().current_stage))
            actor = ACTORS[owner]
        return self.engine.execute(
            ExecuteActionCommand(self.workflow_id, action, actor, payload, idempotency_key)
        )

    def attach(self, doc_type: DocumentType, actor: Actor, **kwargs):
        return self.engine.attach_document(
            AttachDocumentCommand(self.workflow_id, actor, doc_type, **kwargs)
        )

    def approve(self, doc_type: DocumentType, reviewer: Actor):
        document = self.attach(doc_type, reviewer)
        return self.engine.review_document(
            ReviewDocumentCommand(self.workflow_id, uuid.UUID(document.id), ReviewDecision.APPROVED, reviewer)
        )

    def advance_to(self, target: Stage) -> WorkflowDTO:
        """Walk the canonical path, satisfying document prerequisites on the way."""
        graph = self.engine.graph
        while Stage(self.current().current_stage) != target:
            definition = graph.definition(Stage(self.current().current_stage))
            for doc_type in sorted(definition.required_documents, key=lambda t: t.value):
                self.approve(doc_type, ACTORS[definition.document_reviewer])
            action = next(a for a in definition.transitions if graph.is_completing(a))
            self.act(action, ACTORS[definition.owner_role])
        return self.current()


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to 2025-03-01 09:00 UTC."""
    return FixedClock()


@pytest.fixture
def settings() -> RuntimeSettings:
    """Default runtime settings."""
    return RuntimeSettings()


@pytest.fixture
def engine(settings: RuntimeSettings, clock: FixedClock) -> WorkflowEngine:
    """Fresh engine over empty in-memory stores."""
    return build_engine(settings, clock=clock)


@pytest.fixture
def actors() -> Dict[ParticipantRole, Actor]:
    """One actor per participant role."""
    return ACTORS


def submit(engine: WorkflowEngine) -> WorkflowDTO:
    return engine.submit_intent(
        SubmitIntentCommand(
            actor=ACTORS[ParticipantRole.ISSUER],
            company_name="Green Energy Rwanda Ltd",
            instrument_type=InstrumentType.EQUITY,
            currency=Currency.RWF,
            target_amount=500_000_000,
        )
    )


def staff(engine: WorkflowEngine, wf_id: uuid.UUID) -> uuid.UUID:
    """Assign every role except ib_advisor and investor."""
    for role in (
        ParticipantRole.REGULATOR,
        ParticipantRole.LISTING_DESK,
        ParticipantRole.CSD_OPERATOR,
        ParticipantRole.BROKER,
    ):
        actor = ACTORS[role]
        engine.assign_participant(AssignParticipantCommand(wf_id, role, actor.user_id, actor.name))
    return wf_id


def submit_and_staff(engine: WorkflowEngine) -> uuid.UUID:
    return staff(engine, uuid.UUID(submit(engine).id))


@pytest.fixture
def submitted(engine: WorkflowEngine) -> WorkflowDTO:
    """A workflow just submitted by the issuer."""
    return submit(engine)


@pytest.fixture
def workflow_id(engine: WorkflowEngine, submitted: WorkflowDTO) -> uuid.UUID:
    """Submitted workflow with every role except ib_advisor and investor staffed."""
    return staff(engine, uuid.UUID(submitted.id))


@pytest.fixture
def driver(engine: WorkflowEngine, workflow_id: uuid.UUID) -> WorkflowDriver:
    """Driver for the fully staffed workflow."""
    return WorkflowDriver(engine, workflow_id)
