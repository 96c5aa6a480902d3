"""
api.py

REST API layer for the CapitalLab capital-raise workflow engine.

Framework : FastAPI
Identity  : Trusted headers.  X-User-Id, X-User-Role (and optionally
            X-User-Name) are mapped onto an Actor by the injected
            IdentityResolver; authentication happens upstream.
Engine    : The WorkflowEngine is supplied by the get_engine dependency,
            which main.py (or a test) overrides with a configured instance.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /workflows                         — submit intent, list my workflows
  │   ├── /changes                       — changed-since poll
  │   └── /{workflow_id}
  │       ├── /actions                   — execute a stage action
  │       ├── /available-actions         — what can I do right now
  │       ├── /history                   — stage history (audit trail)
  │       ├── /overdue                   — SLA breach query
  │       ├── /pause, /resume            — soft suspension
  │       ├── /participants              — role → identity directory
  │       ├── /documents                 — document metadata & review
  │       ├── /notifications             — notifications raised for the workflow
  │       └── /notifications/redeliver   — re-run notification synthesis
  ├── /stage-graph                       — static stage table
  ├── /me/notifications                  — current-user inbox
  └── /notifications/{id}/read           — mark a notification read

Error handling
--------------
  NotFoundError           → 404
  IdentityError           → 401
  UnauthorizedError       → 403
  ValidationError         → 400
  ConflictError           → 409
  TerminalError           → 410
  InvalidTransitionError  → 422
  Request body validation → 422 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>", "code": "<error code>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Path, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ConflictError,
    IdentityError,
    InvalidTransitionError,
    NotFoundError,
    TerminalError,
    UnauthorizedError,
    ValidationError,
    WorkflowError,
    # Collaborators
    AbstractIdentityResolver,
    # Use-case commands
    AssignParticipantCommand,
    AttachDocumentCommand,
    ExecuteActionCommand,
    PauseWorkflowCommand,
    ResumeWorkflowCommand,
    ReviewDocumentCommand,
    SubmitIntentCommand,
    # Facade
    WorkflowEngine,
)
from infrastructure import HeaderIdentityResolver
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


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CapitalLab — Capital Raise Workflow API",
    version="1.0.0",
    description=(
        "Orchestrates a simulated capital raise from the issuer's intent to "
        "settlement: role-gated stage actions, document prerequisites, "
        "stage history, virtual ISIN assignment and participant notifications."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

def _error(status_code: int, exc: WorkflowError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(IdentityError)
async def identity_handler(request, exc: IdentityError):
    return _error(401, exc)


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request, exc: UnauthorizedError):
    return _error(403, exc)


@app.exception_handler(ValidationError)
async def validation_handler(request, exc: ValidationError):
    return _error(400, exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return _error(409, exc)


@app.exception_handler(TerminalError)
async def terminal_handler(request, exc: TerminalError):
    return _error(410, exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request, exc: InvalidTransitionError):
    return _error(422, exc)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_engine() -> WorkflowEngine:
    """Overridden by main.py / tests via app.dependency_overrides."""
    raise RuntimeError("No WorkflowEngine configured; override api.get_engine.")


def get_identity_resolver() -> AbstractIdentityResolver:
    return HeaderIdentityResolver()


def get_actor(
    request: Request,
    resolver: AbstractIdentityResolver = Depends(get_identity_resolver),
) -> Actor:
    return resolver.resolve(request.headers)


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Workflow schemas
# ---------------------------------------------------------------------------

class SubmitIntentRequest(BaseModel):
    company_name: str = Field(..., min_length=1, max_length=200)
    instrument_type: str = Field(..., description="One of: equity, bond, note")
    currency: str = Field(default=Currency.RWF.value, description="One of: RWF, USD")
    target_amount: Decimal = Field(..., gt=0)

    @field_validator("instrument_type")
    @classmethod
    def validate_instrument_type(cls, v: str) -> str:
        valid = {t.value for t in InstrumentType}
        if v not in valid:
            raise ValueError(f"instrument_type must be one of: {sorted(valid)}")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        valid = {c.value for c in Currency}
        if v not in valid:
            raise ValueError(f"currency must be one of: {sorted(valid)}")
        return v


class ExecuteActionRequest(BaseModel):
    action: str = Field(..., description="A stage action, e.g. transfer_to_ib or approve_filing")
    payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        valid = {a.value for a in WorkflowAction}
        if v not in valid:
            raise ValueError(f"action must be one of: {sorted(valid)}")
        return v


class PauseRequest(BaseModel):
    reason: str = Field(default="", max_length=2000)


# ---------------------------------------------------------------------------
# Participant schemas
# ---------------------------------------------------------------------------

class AssignParticipantRequest(BaseModel):
    role: str
    user_id: str = Field(..., min_length=1, max_length=200)
    name: str = Field(default="", max_length=200)
    replace: bool = False

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        valid = {r.value for r in ParticipantRole}
        if v not in valid:
            raise ValueError(f"role must be one of: {sorted(valid)}")
        return v


# ---------------------------------------------------------------------------
# Document schemas
# ---------------------------------------------------------------------------

class AttachDocumentRequest(BaseModel):
    type: str
    title: str = Field(default="", max_length=300)
    stage: Optional[str] = Field(default=None, description="Defaults to the current stage.")
    blob_ref: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        valid = {t.value for t in DocumentType}
        if v not in valid:
            raise ValueError(f"type must be one of: {sorted(valid)}")
        return v

    @field_validator("stage")
    @classmethod
    def validate_stage(cls, v: Optional[str]) -> Optional[str]:
        valid = {s.value for s in Stage}
        if v is not None and v not in valid:
            raise ValueError(f"stage must be one of: {sorted(valid)}")
        return v


class ReviewDocumentRequest(BaseModel):
    decision: str = Field(..., description="One of: approved, rejected")

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: str) -> str:
        valid = {d.value for d in ReviewDecision}
        if v not in valid:
            raise ValueError(f"decision must be one of: {sorted(valid)}")
        return v


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

workflow_router = APIRouter(prefix="/workflows", tags=["Workflows"])


@workflow_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Submit a capital raise intent",
    response_description="The new workflow at capital_raise_intent.",
)
def submit_intent(
    body: SubmitIntentRequest,
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    """
    Opens a new workflow with the caller bound as its issuer.  Only the
    issuer role may submit.
    """
    cmd = SubmitIntentCommand(
        actor=actor,
        company_name=body.company_name,
        instrument_type=InstrumentType(body.instrument_type),
        currency=Currency(body.currency),
        target_amount=body.target_amount,
    )
    return _ok(engine.submit_intent(cmd))


@workflow_router.get(
    "",
    summary="List the workflows the caller participates in",
)
def list_my_workflows(
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.list_for_participant(actor.user_id, actor.role))


@workflow_router.get(
    "/changes",
    summary="List workflows updated strictly after a timestamp",
)
def list_changed_since(
    since: datetime = Query(..., description="ISO-8601 timestamp; timezone-aware"),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Polling counterpart of a change subscription."""
    return _ok(engine.list_changed_since(since))


@workflow_router.get(
    "/{workflow_id}",
    summary="Get a workflow snapshot",
)
def get_workflow(
    workflow_id: uuid.UUID = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.get(workflow_id))


@workflow_router.post(
    "/{workflow_id}/actions",
    summary="Execute a stage action",
)
def execute_action(
    body: ExecuteActionRequest,
    workflow_id: uuid.UUID = Path(...),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    """
    Advances the workflow out of its current stage.  Retrying with the same
    idempotency key (body field or Idempotency-Key header) returns the
    snapshot the first successful call produced.  A 409 means another actor
    won the race: re-read and retry.
    """
    cmd = ExecuteActionCommand(
        workflow_id=workflow_id,
        action=WorkflowAction(body.action),
        actor=actor,
        payload=body.payload,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return _ok(engine.execute(cmd))


@workflow_router.get(
    "/{workflow_id}/available-actions",
    summary="Actions the caller may execute right now",
)
def available_actions(
    workflow_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.available_actions(workflow_id, actor))


@workflow_router.get(
    "/{workflow_id}/history",
    summary="Stage history (audit trail)",
)
def get_history(
    workflow_id: uuid.UUID = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.history(workflow_id))


@workflow_router.get(
    "/{workflow_id}/overdue",
    summary="Whether the current stage has breached its SLA",
)
def is_overdue(
    workflow_id: uuid.UUID = Path(...),
    now: Optional[datetime] = Query(default=None, description="Defaults to the server clock"),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok({"workflow_id": str(workflow_id), "overdue": engine.is_overdue(workflow_id, now)})


@workflow_router.post(
    "/{workflow_id}/pause",
    summary="Pause a workflow",
)
def pause_workflow(
    body: PauseRequest,
    workflow_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.pause(PauseWorkflowCommand(workflow_id=workflow_id, actor=actor, reason=body.reason)))


@workflow_router.post(
    "/{workflow_id}/resume",
    summary="Resume a paused workflow",
)
def resume_workflow(
    workflow_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.resume(ResumeWorkflowCommand(workflow_id=workflow_id, actor=actor)))


@workflow_router.get(
    "/{workflow_id}/notifications",
    summary="Every notification raised for a workflow",
)
def list_workflow_notifications(
    workflow_id: uuid.UUID = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.list_workflow_notifications(workflow_id))


@workflow_router.post(
    "/{workflow_id}/notifications/redeliver",
    summary="Re-run notification synthesis for every recorded transition and document",
)
def redeliver_notifications(
    workflow_id: uuid.UUID = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok({"created": engine.redeliver_notifications(workflow_id)})


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

participant_router = APIRouter(
    prefix="/workflows/{workflow_id}/participants",
    tags=["Participants"],
)


@participant_router.post(
    "",
    summary="Assign an identity to a role",
)
def assign_participant(
    body: AssignParticipantRequest,
    workflow_id: uuid.UUID = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    """
    Directory administration surface: no X-User-* identity is required or
    checked, so deployments must restrict this route to operators upstream.
    Participants claim a role inside the flow through its binding action.

    Re-assigning the same identity is a no-op.  Assigning a different
    identity to an occupied role needs replace=true; the previous
    participant is kept as inactive history.
    """
    cmd = AssignParticipantCommand(
        workflow_id=workflow_id,
        role=ParticipantRole(body.role),
        user_id=body.user_id,
        name=body.name,
        replace=body.replace,
    )
    return _ok(engine.assign_participant(cmd))


@participant_router.get(
    "/{role}",
    summary="Resolve the active participant for a role",
)
def resolve_participant(
    workflow_id: uuid.UUID = Path(...),
    role: ParticipantRole = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    participant = engine.resolve_participant(workflow_id, role)
    if participant is None:
        raise NotFoundError(f"No active '{role.value}' on workflow {workflow_id}.")
    return _ok(participant)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

document_router = APIRouter(
    prefix="/workflows/{workflow_id}/documents",
    tags=["Documents"],
)


@document_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Attach document metadata to a stage",
)
def attach_document(
    body: AttachDocumentRequest,
    workflow_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    cmd = AttachDocumentCommand(
        workflow_id=workflow_id,
        actor=actor,
        doc_type=DocumentType(body.type),
        title=body.title,
        stage=Stage(body.stage) if body.stage else None,
        blob_ref=body.blob_ref,
    )
    return _ok(engine.attach_document(cmd))


@document_router.post(
    "/{document_id}/review",
    summary="Approve or reject a pending document",
)
def review_document(
    body: ReviewDocumentRequest,
    workflow_id: uuid.UUID = Path(...),
    document_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Only the stage's document-reviewer role may decide, and only once."""
    cmd = ReviewDocumentCommand(
        workflow_id=workflow_id,
        document_id=document_id,
        decision=ReviewDecision(body.decision),
        actor=actor,
    )
    return _ok(engine.review_document(cmd))


# ---------------------------------------------------------------------------
# Stage graph
# ---------------------------------------------------------------------------

stage_graph_router = APIRouter(prefix="/stage-graph", tags=["Stage Graph"])


@stage_graph_router.get(
    "",
    summary="The static stage table",
)
def get_stage_graph(engine: WorkflowEngine = Depends(get_engine)):
    return _ok(engine.stage_graph())


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

me_router = APIRouter(prefix="/me", tags=["My Notifications"])


@me_router.get(
    "/notifications",
    summary="Get the notification inbox for the calling identity",
)
def get_my_notifications(
    actor: Actor = Depends(get_actor),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Role-wide notifications plus those targeted at the caller, newest first."""
    return _ok(engine.list_notifications(actor.user_id, actor.role))


notification_router = APIRouter(prefix="/notifications", tags=["My Notifications"])


@notification_router.post(
    "/{notification_id}/read",
    summary="Mark a notification as read",
)
def mark_notification_read(
    notification_id: uuid.UUID = Path(...),
    engine: WorkflowEngine = Depends(get_engine),
):
    return _ok(engine.mark_read(notification_id))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(workflow_router)
api_v1.include_router(participant_router)
api_v1.include_router(document_router)
api_v1.include_router(stage_graph_router)
api_v1.include_router(me_router)
api_v1.include_router(notification_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount_http()


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Workflows",
        "description": (
            "Capital-raise workflows.  Each one moves through a fixed sequence of "
            "regulated stages; only the stage's owner role, and only its assigned "
            "participant, may execute the stage's actions."
        ),
    },
    {
        "name": "Participants",
        "description": (
            "Per-workflow role directory.  One active participant per role; "
            "replacing one keeps the previous holder as history."
        ),
    },
    {
        "name": "Documents",
        "description": (
            "Document metadata and review decisions.  Some stages require "
            "approved documents before their completing action succeeds."
        ),
    },
    {
        "name": "Stage Graph",
        "description": "Owners, actions, successors and document prerequisites per stage.",
    },
    {
        "name": "My Notifications",
        "description": "Current-identity notification inbox across all workflows.",
    },
]

app.openapi_tags = tags_metadata
