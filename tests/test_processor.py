"""Tests for the action processor: checks, transitions and invariants."""

import uuid

import pytest

from application import AssignParticipantCommand, ExecuteActionCommand, SubmitIntentCommand
from conftest import WorkflowDriver
from model import (
    Actor,
    Currency,
    DocumentType,
    InstrumentType,
    ParticipantRole,
    Stage,
    WorkflowAction,
    WorkflowStatus,
)
from service import (
    InvalidTransitionError,
    IsinService,
    NotFoundError,
    TerminalError,
    UnauthorizedError,
    ValidationError,
)


def assert_history_consistent(workflow):
    """current_stage equals the unique open entry while live; none once terminal."""
    open_entries = [e for e in workflow.stage_history if e.completed_at is None]
    if workflow.status in (WorkflowStatus.COMPLETED.value, WorkflowStatus.REJECTED.value):
        assert open_entries == []
    else:
        assert len(open_entries) == 1
        assert open_entries[0].stage == workflow.current_stage


# -------------------------
# Submitting an intent
# -------------------------


class TestSubmitIntent:
    def test_new_workflow_starts_at_intent(self, submitted, actors):
        """Issuer's intent opens an active workflow with one open entry."""
        assert submitted.issuer_company == "Green Energy Rwanda Ltd"
        assert submitted.target_amount == "500000000"
        assert submitted.currency == "RWF"
        assert submitted.current_stage == Stage.CAPITAL_RAISE_INTENT.value
        assert submitted.status == WorkflowStatus.ACTIVE.value
        assert submitted.version == 1
        assert submitted.virtual_isin is None
        assert len(submitted.stage_history) == 1
        assert submitted.stage_history[0].completed_at is None
        issuer = [p for p in submitted.participants if p.role == ParticipantRole.ISSUER.value]
        assert issuer[0].user_id == actors[ParticipantRole.ISSUER].user_id

    def test_only_issuer_may_submit(self, engine, actors):
        with pytest.raises(UnauthorizedError):
            engine.submit_intent(
                SubmitIntentCommand(actors[ParticipantRole.BROKER], "Acme Ltd", InstrumentType.EQUITY, Currency.RWF, 1000)
            )

    @pytest.mark.parametrize(
        "company, amount, currency",
        [
            ("   ", 1000, Currency.RWF),
            ("Acme Ltd", 0, Currency.RWF),
            ("Acme Ltd", -5, Currency.RWF),
            ("Acme Ltd", "lots", Currency.RWF),
            ("Acme Ltd", 1000, "EUR"),
        ],
    )
    def test_invalid_intent_is_rejected(self, engine, actors, company, amount, currency):
        with pytest.raises(ValidationError):
            engine.submit_intent(
                SubmitIntentCommand(actors[ParticipantRole.ISSUER], company, InstrumentType.BOND, currency, amount)
            )

    def test_unknown_workflow(self, engine, actors):
        with pytest.raises(NotFoundError):
            engine.execute(
                ExecuteActionCommand(uuid.uuid4(), WorkflowAction.TRANSFER_TO_IB, actors[ParticipantRole.ISSUER])
            )


# -------------------------
# Legality and authorization
# -------------------------


class TestChecks:
    def test_action_not_allowed_in_stage(self, driver, actors):
        version = driver.current().version

        with pytest.raises(InvalidTransitionError):
            driver.act(WorkflowAction.APPROVE_FILING, actors[ParticipantRole.ISSUER])
        assert driver.current().version == version

    def test_wrong_role_is_unauthorized_and_version_unchanged(self, driver, actors):
        version = driver.current().version

        with pytest.raises(UnauthorizedError):
            driver.act(WorkflowAction.TRANSFER_TO_IB, actors[ParticipantRole.BROKER])

        workflow = driver.current()
        assert workflow.version == version
        assert workflow.current_stage == Stage.CAPITAL_RAISE_INTENT.value

    def test_right_role_wrong_identity_is_unauthorized(self, driver):
        driver.advance_to(Stage.REGULATORY_REVIEW)
        version = driver.current().version

        with pytest.raises(UnauthorizedError):
            driver.act(WorkflowAction.APPROVE_FILING, Actor("regulator-2", ParticipantRole.REGULATOR))
        assert driver.current().version == version

    def test_unassigned_owner_role_is_unauthorized(self, engine, submitted, actors):
        """Non-binding actions need an assigned participant for the owner role."""
        driver = WorkflowDriver(engine, uuid.UUID(submitted.id))
        driver.advance_to(Stage.REGULATORY_REVIEW)

        with pytest.raises(UnauthorizedError):
            driver.act(WorkflowAction.APPROVE_FILING, actors[ParticipantRole.REGULATOR])

    def test_assign_ib_binds_the_acting_advisor(self, driver, actors):
        driver.act(WorkflowAction.TRANSFER_TO_IB)

        workflow = driver.act(WorkflowAction.ASSIGN_IB, actors[ParticipantRole.IB_ADVISOR], name="Rwanda Capital Partners")

        advisors = [p for p in workflow.participants if p.role == ParticipantRole.IB_ADVISOR.value]
        assert [(p.user_id, p.name, p.is_active) for p in advisors] == [
            ("ib-1", "Rwanda Capital Partners", True)
        ]
        assert workflow.current_stage == Stage.DUE_DILIGENCE.value

    def test_assign_ib_cannot_steal_an_occupied_role(self, engine, driver):
        driver.act(WorkflowAction.TRANSFER_TO_IB)
        engine.assign_participant(AssignParticipantCommand(driver.workflow_id, ParticipantRole.IB_ADVISOR, "ib-1"))

        with pytest.raises(UnauthorizedError):
            driver.act(WorkflowAction.ASSIGN_IB, Actor("ib-2", ParticipantRole.IB_ADVISOR))

    def test_document_gating(self, driver, actors):
        """complete_due_diligence fails until financial statements are approved."""
        driver.advance_to(Stage.DUE_DILIGENCE)
        version = driver.current().version

        with pytest.raises(ValidationError):
            driver.act(WorkflowAction.COMPLETE_DUE_DILIGENCE)
        assert driver.current().version == version

        driver.approve(DocumentType.FINANCIAL_STATEMENTS, actors[ParticipantRole.IB_ADVISOR])
        workflow = driver.act(WorkflowAction.COMPLETE_DUE_DILIGENCE)
        assert workflow.current_stage == Stage.PROSPECTUS_BUILDING.value

    def test_payload_must_be_an_object(self, engine, driver, actors):
        with pytest.raises(ValidationError):
            engine.execute(
                ExecuteActionCommand(
                    driver.workflow_id, WorkflowAction.TRANSFER_TO_IB, actors[ParticipantRole.ISSUER], ["notes"]
                )
            )


# -------------------------
# Scenarios
# -------------------------


class TestScenarios:
    def test_rejection_at_regulatory_review(self, driver):
        """reject_filing closes the entry with the reason and makes the workflow terminal."""
        driver.advance_to(Stage.REGULATORY_REVIEW)

        workflow = driver.act(WorkflowAction.REJECT_FILING, reason="Prospectus omits material risks")

        assert workflow.status == WorkflowStatus.REJECTED.value
        assert workflow.current_stage == Stage.REJECTED.value
        last = workflow.stage_history[-1]
        assert last.stage == Stage.REGULATORY_REVIEW.value
        assert last.completed_at is not None
        assert last.action == WorkflowAction.REJECT_FILING.value
        assert last.notes == "Prospectus omits material risks"
        assert_history_consistent(workflow)

        with pytest.raises(TerminalError):
            driver.act(WorkflowAction.APPROVE_FILING, Actor("regulator-1", ParticipantRole.REGULATOR))

    def test_terminal_check_precedes_authorization(self, driver, actors):
        driver.advance_to(Stage.REGULATORY_REVIEW)
        driver.act(WorkflowAction.REJECT_FILING, reason="Incomplete")

        with pytest.raises(TerminalError):
            driver.act(WorkflowAction.TRANSFER_TO_IB, actors[ParticipantRole.ISSUER])

    def test_rejection_requires_a_reason(self, driver):
        driver.advance_to(Stage.REGULATORY_REVIEW)
        version = driver.current().version

        with pytest.raises(ValidationError):
            driver.act(WorkflowAction.REJECT_FILING, reason="   ")
        assert driver.current().version == version

    def test_listing_desk_may_reject(self, driver):
        driver.advance_to(Stage.LISTING_APPROVAL)

        workflow = driver.act(WorkflowAction.REJECT_FILING, reason="Free float below listing rules")

        assert workflow.status == WorkflowStatus.REJECTED.value

    def test_full_path_to_completion(self, driver):
        """Every stage is visited once, in order, and nothing is left open."""
        workflow = driver.advance_to(Stage.COMPLETED)

        assert workflow.status == WorkflowStatus.COMPLETED.value
        assert workflow.current_stage == Stage.COMPLETED.value
        assert [e.stage for e in workflow.stage_history] == [
            s.value for s in driver.engine.graph.canonical_path()[:-1]
        ]
        assert all(e.completed_at is not None for e in workflow.stage_history)
        assert all(e.action is not None for e in workflow.stage_history)
        for previous, following in zip(workflow.stage_history, workflow.stage_history[1:]):
            assert previous.completed_at <= following.entered_at
        assert len(workflow.transitions) == 10
        assert [t.resulting_version for t in workflow.transitions] == sorted(
            t.resulting_version for t in workflow.transitions
        )
        assert workflow.trading_active
        assert workflow.listing_date is not None
        assert IsinService().is_valid(workflow.virtual_isin)
        assert_history_consistent(workflow)

    def test_history_is_consistent_after_every_step(self, driver):
        graph = driver.engine.graph
        for stage in graph.canonical_path()[1:]:
            assert_history_consistent(driver.advance_to(stage))


# -------------------------
# Stage-specific effects
# -------------------------


class TestIsinAssignment:
    def test_generated_isin(self, driver, clock):
        driver.advance_to(Stage.ISIN_ASSIGNMENT)

        workflow = driver.act(WorkflowAction.CREATE_ISIN)

        assert workflow.virtual_isin.startswith(f"RW{clock.now.year}EQ")
        assert len(workflow.virtual_isin) == 12
        assert IsinService().is_valid(workflow.virtual_isin)

    def test_isin_is_bound_once(self, driver):
        driver.advance_to(Stage.ISIN_ASSIGNMENT)
        isin = driver.act(WorkflowAction.CREATE_ISIN).virtual_isin
        version = driver.current().version

        with pytest.raises(InvalidTransitionError):
            driver.act(WorkflowAction.CREATE_ISIN, Actor("csd-1", ParticipantRole.CSD_OPERATOR))

        workflow = driver.current()
        assert workflow.virtual_isin == isin
        assert workflow.version == version

    def test_caller_supplied_isin(self, driver):
        driver.advance_to(Stage.ISIN_ASSIGNMENT)

        workflow = driver.act(WorkflowAction.CREATE_ISIN, isin="US0378331005")

        assert workflow.virtual_isin == "US0378331005"

    def test_malformed_isin_is_rejected(self, driver):
        driver.advance_to(Stage.ISIN_ASSIGNMENT)

        with pytest.raises(ValidationError):
            driver.act(WorkflowAction.CREATE_ISIN, isin="US0378331004")
        assert driver.current().virtual_isin is None


class TestIsinService:
    def test_check_digit(self):
        assert IsinService.check_digit("US037833100") == 5

    @pytest.mark.parametrize("isin", ["US0378331005", "GB0002634946"])
    def test_valid(self, isin):
        assert IsinService().is_valid(isin)

    @pytest.mark.parametrize("isin", ["US0378331004", "us0378331005", "US037833100", "1S0378331005"])
    def test_invalid(self, isin):
        assert not IsinService().is_valid(isin)


class TestInvestorActivation:
    def test_investor_is_bound(self, driver):
        driver.advance_to(Stage.INVESTOR_ONBOARDING)

        workflow = driver.act(WorkflowAction.ACTIVATE_INVESTOR, investor={"user_id": "investor-1", "name": "Jane"})

        investors = [p for p in workflow.participants if p.role == ParticipantRole.INVESTOR.value]
        assert [(p.user_id, p.name) for p in investors] == [("investor-1", "Jane")]
        assert workflow.current_stage == Stage.TRADING_ACTIVE.value
        assert workflow.trading_active

    def test_investor_requires_user_id(self, driver):
        driver.advance_to(Stage.INVESTOR_ONBOARDING)

        with pytest.raises(ValidationError):
            driver.act(WorkflowAction.ACTIVATE_INVESTOR, investor={"name": "Jane"})

    @pytest.mark.parametrize("investor", [{"user_id": "   "}, {"user_id": "investor-1", "name": 7}, "investor-1"])
    def test_malformed_investor(self, driver, investor):
        driver.advance_to(Stage.INVESTOR_ONBOARDING)

        with pytest.raises(ValidationError):
            driver.act(WorkflowAction.ACTIVATE_INVESTOR, investor=investor)

    def test_investor_id_is_normalised_before_binding(self, engine, driver):
        engine.assign_participant(AssignParticipantCommand(driver.workflow_id, ParticipantRole.INVESTOR, "investor-1"))
        driver.advance_to(Stage.INVESTOR_ONBOARDING)

        workflow = driver.act(WorkflowAction.ACTIVATE_INVESTOR, investor={"user_id": " investor-1 "})

        investors = [p for p in workflow.participants if p.role == ParticipantRole.INVESTOR.value]
        assert [(p.user_id, p.is_active) for p in investors] == [("investor-1", True)]

    def test_numeric_investor_id_is_stored_as_text(self, driver):
        driver.advance_to(Stage.INVESTOR_ONBOARDING)

        workflow = driver.act(WorkflowAction.ACTIVATE_INVESTOR, investor={"user_id": 42})

        investors = [p for p in workflow.participants if p.role == ParticipantRole.INVESTOR.value]
        assert [(p.user_id, p.name) for p in investors] == [("42", "42")]
