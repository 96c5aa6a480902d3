"""Tests for pause/resume, SLA checks and the read-side queries."""

from datetime import timedelta

import pytest

from application import PauseWorkflowCommand, ResumeWorkflowCommand
from conftest import ACTORS, START, WorkflowDriver, submit_and_staff
from infrastructure import build_engine
from model import Actor, ParticipantRole, Stage, WorkflowAction, WorkflowStatus
from service import InvalidTransitionError, TerminalError, UnauthorizedError
from settings import RuntimeSettings

REGULATOR = ACTORS[ParticipantRole.REGULATOR]


def pause(driver, actor=REGULATOR, reason="Awaiting court ruling"):
    return driver.engine.pause(PauseWorkflowCommand(driver.workflow_id, actor, reason))


def resume(driver, actor=REGULATOR):
    return driver.engine.resume(ResumeWorkflowCommand(driver.workflow_id, actor))


class TestPauseResume:
    def test_pause_blocks_actions(self, driver):
        paused = pause(driver)

        assert paused.status == WorkflowStatus.PAUSED.value
        assert paused.paused_by == REGULATOR.user_id
        assert paused.pause_reason == "Awaiting court ruling"
        with pytest.raises(InvalidTransitionError):
            driver.act(WorkflowAction.TRANSFER_TO_IB)
        assert driver.current().current_stage == Stage.CAPITAL_RAISE_INTENT.value

    def test_pause_keeps_the_open_entry(self, driver):
        before = driver.current().stage_history
        pause(driver)
        assert driver.current().stage_history == before

    def test_resume_reopens_the_same_entry(self, driver, clock):
        pause(driver)
        clock.advance(hours=2)
        resumed = resume(driver)

        assert resumed.status == WorkflowStatus.ACTIVE.value
        assert resumed.paused_at is None
        assert len(resumed.stage_history) == 1
        assert resumed.stage_history[0].completed_at is None

        workflow = driver.act(WorkflowAction.TRANSFER_TO_IB)
        assert workflow.current_stage == Stage.IB_ASSIGNMENT.value

    def test_resume_can_open_a_fresh_entry(self, clock):
        engine = build_engine(RuntimeSettings(resume_creates_entry=True), clock=clock)
        driver = WorkflowDriver(engine, submit_and_staff(engine))
        pause(driver)
        clock.advance(hours=2)
        resumed = resume(driver)

        history = resumed.stage_history
        assert [e.stage for e in history] == [Stage.CAPITAL_RAISE_INTENT.value] * 2
        assert history[0].completed_at is not None
        assert history[0].action is None
        assert history[1].completed_at is None
        assert history[1].entered_at == clock.now.isoformat()

    def test_only_suspension_roles_may_pause(self, driver):
        with pytest.raises(UnauthorizedError):
            pause(driver, ACTORS[ParticipantRole.ISSUER])

    def test_unassigned_regulator_may_not_pause(self, driver):
        with pytest.raises(UnauthorizedError):
            pause(driver, Actor("regulator-9", ParticipantRole.REGULATOR))

    def test_pausing_twice(self, driver):
        pause(driver)
        with pytest.raises(InvalidTransitionError):
            pause(driver)

    def test_resume_when_not_paused(self, driver):
        with pytest.raises(InvalidTransitionError):
            resume(driver)

    def test_terminal_workflow_cannot_be_paused(self, driver):
        driver.advance_to(Stage.REGULATORY_REVIEW)
        driver.act(WorkflowAction.REJECT_FILING, reason="Incomplete")

        with pytest.raises(TerminalError):
            pause(driver)


class TestOverdue:
    def test_within_sla(self, driver, engine, clock):
        clock.advance(hours=71)
        assert engine.is_overdue(driver.workflow_id) is False

    def test_past_sla(self, driver, engine, clock):
        clock.advance(hours=73)
        assert engine.is_overdue(driver.workflow_id) is True

    def test_explicit_now(self, driver, engine):
        assert engine.is_overdue(driver.workflow_id, now=START + timedelta(days=4)) is True

    def test_paused_is_never_overdue(self, driver, engine, clock):
        pause(driver)
        clock.advance(days=30)
        assert engine.is_overdue(driver.workflow_id) is False

    def test_sla_restarts_on_each_stage(self, driver, engine, clock):
        clock.advance(hours=71)
        driver.act(WorkflowAction.TRANSFER_TO_IB)
        clock.advance(hours=71)

        assert engine.is_overdue(driver.workflow_id) is False

    def test_configured_sla(self, clock):
        settings = RuntimeSettings(stage_sla_hours={Stage.CAPITAL_RAISE_INTENT.value: 1})
        engine = build_engine(settings, clock=clock)
        wf_id = submit_and_staff(engine)
        clock.advance(hours=2)

        assert engine.is_overdue(wf_id) is True

    def test_terminal_is_never_overdue(self, driver, engine, clock):
        driver.advance_to(Stage.COMPLETED)
        clock.advance(days=365)
        assert engine.is_overdue(driver.workflow_id) is False


class TestAvailableActions:
    def test_owner_sees_the_stage_actions(self, driver, engine):
        actions = engine.available_actions(driver.workflow_id, ACTORS[ParticipantRole.ISSUER])
        assert actions == [WorkflowAction.TRANSFER_TO_IB.value]

    def test_other_roles_see_nothing(self, driver, engine):
        assert engine.available_actions(driver.workflow_id, REGULATOR) == []

    def test_unassigned_advisor_may_claim(self, driver, engine):
        driver.act(WorkflowAction.TRANSFER_TO_IB)
        stranger = Actor("ib-9", ParticipantRole.IB_ADVISOR)

        assert engine.available_actions(driver.workflow_id, stranger) == [WorkflowAction.ASSIGN_IB.value]

    def test_claimed_role_excludes_other_advisors(self, driver, engine):
        driver.act(WorkflowAction.TRANSFER_TO_IB)
        driver.act(WorkflowAction.ASSIGN_IB, ACTORS[ParticipantRole.IB_ADVISOR])
        stranger = Actor("ib-9", ParticipantRole.IB_ADVISOR)

        assert engine.available_actions(driver.workflow_id, stranger) == []
        assert engine.available_actions(driver.workflow_id, ACTORS[ParticipantRole.IB_ADVISOR]) == [
            WorkflowAction.COMPLETE_DUE_DILIGENCE.value
        ]

    def test_regulator_may_approve_or_reject(self, driver, engine):
        driver.advance_to(Stage.REGULATORY_REVIEW)
        assert engine.available_actions(driver.workflow_id, REGULATOR) == [
            WorkflowAction.APPROVE_FILING.value,
            WorkflowAction.REJECT_FILING.value,
        ]

    def test_nothing_while_paused(self, driver, engine):
        pause(driver)
        assert engine.available_actions(driver.workflow_id, ACTORS[ParticipantRole.ISSUER]) == []


class TestChangedSince:
    def test_updated_since_is_strict(self, driver, engine, clock):
        clock.advance(hours=1)
        driver.act(WorkflowAction.TRANSFER_TO_IB)

        assert [w.id for w in engine.list_changed_since(START)] == [str(driver.workflow_id)]
        assert engine.list_changed_since(clock.now) == []

    def test_naive_timestamps_are_utc(self, driver, engine, clock):
        clock.advance(hours=1)
        driver.act(WorkflowAction.TRANSFER_TO_IB)

        assert len(engine.list_changed_since(START.replace(tzinfo=None))) == 1
