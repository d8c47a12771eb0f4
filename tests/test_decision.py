"""Tests for AI eligibility: enablement, priority modes, schedule, handoff."""
import pytest
from datetime import datetime, timezone

from deployments.decision import evaluate_deployment
from deployments.registry import build_deployment
from models.schemas import ConversationHandoff, DeploymentCreateRequest, HandoffState

MONDAY_10 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
MONDAY_20 = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)


def deployment(**overrides):
    data = {
        "channel": "whatsapp",
        "whatsapp_account_id": "wa_1",
        "is_enabled": True,
        "schedule_enabled": True,
        "schedule_start_time": "09:00",
        "schedule_end_time": "17:00",
        "schedule_days": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
    }
    data.update(overrides)
    return build_deployment("t1", DeploymentCreateRequest(**data))


HANDED_OFF = ConversationHandoff(conversation_id="c1", state=HandoffState.HANDED_OFF)


class TestPriorityModes:
    def test_disabled_resource_never_responds(self):
        result = evaluate_deployment(deployment(is_enabled=False, priority_mode="always_ai"), MONDAY_10)
        assert result.should_respond is False
        assert "disabled" in result.reason

    def test_always_human(self):
        assert evaluate_deployment(deployment(priority_mode="always_human"), MONDAY_10).should_respond is False

    def test_always_ai_ignores_schedule_and_handoff(self):
        result = evaluate_deployment(deployment(priority_mode="always_ai"), MONDAY_20, HANDED_OFF)
        assert result.should_respond is True

    def test_schedule_only_with_disabled_schedule(self):
        result = evaluate_deployment(deployment(priority_mode="schedule_only", schedule_enabled=False), MONDAY_10)
        assert result.should_respond is False
        assert result.reason == "Priority mode is schedule_only but schedule is disabled"

    def test_disabled_schedule_alone_is_on_duty(self):
        for moment in (MONDAY_10, MONDAY_20):
            result = evaluate_deployment(deployment(schedule_enabled=False), moment)
            assert result.should_respond is True

    def test_schedule_only_ignores_auto_respond(self):
        d = deployment(priority_mode="schedule_only", auto_respond=False)
        assert evaluate_deployment(d, MONDAY_10).should_respond is True
        assert evaluate_deployment(d, MONDAY_20).should_respond is False

    def test_normal_requires_auto_respond(self):
        result = evaluate_deployment(deployment(auto_respond=False), MONDAY_10)
        assert result.should_respond is False

    def test_normal_within_schedule(self):
        result = evaluate_deployment(deployment(), MONDAY_10)
        assert result.should_respond is True
        assert result.deployment is not None

    def test_normal_without_schedule_is_always_on(self):
        assert evaluate_deployment(deployment(schedule_enabled=False), MONDAY_20).should_respond is True


class TestOffDuty:
    def test_outside_window_with_away_message(self):
        result = evaluate_deployment(deployment(away_message="We're closed"), MONDAY_20)
        assert result.should_respond is False
        assert result.send_away_message is True
        assert "09:00-17:00 UTC" in result.reason

    def test_outside_window_without_away_message(self):
        result = evaluate_deployment(deployment(), MONDAY_20)
        assert result.send_away_message is False


class TestHandoffState:
    def test_handed_off_conversation_blocks_ai(self):
        result = evaluate_deployment(deployment(), MONDAY_10, HANDED_OFF)
        assert result.should_respond is False
        assert "handed off" in result.reason

    def test_active_conversation_allows_ai(self):
        active = ConversationHandoff(conversation_id="c1", ai_turns=4)
        assert evaluate_deployment(deployment(), MONDAY_10, active).should_respond is True
