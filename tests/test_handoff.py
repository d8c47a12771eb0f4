"""Tests for the handoff tracker state machine."""
import asyncio
import pytest

from deployments.registry import build_deployment
from models.schemas import DeploymentCreateRequest, HandoffState


def deployment(**overrides):
    data = {"channel": "whatsapp", "whatsapp_account_id": "wa_1", "is_enabled": True,
            "max_messages_before_handoff": 3}
    data.update(overrides)
    return build_deployment("t1", DeploymentCreateRequest(**data))


class TestHandoffTracker:
    @pytest.mark.asyncio
    async def test_threshold_triggers_handoff(self, handoff):
        d = deployment()
        for expected_state in (HandoffState.AI_ACTIVE, HandoffState.AI_ACTIVE, HandoffState.HANDED_OFF):
            state = await handoff.record_ai_turn("t1", "c1", d)
            assert state.state == expected_state
        assert state.ai_turns == 3
        assert state.handed_off_at is not None
        assert await handoff.is_handed_off("c1")

    @pytest.mark.asyncio
    async def test_handoff_disabled_keeps_ai_active(self, handoff):
        d = deployment(handoff_enabled=False)
        for _ in range(5):
            state = await handoff.record_ai_turn("t1", "c1", d)
        assert state.state == HandoffState.AI_ACTIVE
        assert state.ai_turns == 5

    @pytest.mark.asyncio
    async def test_always_ai_suppresses_counter(self, handoff):
        d = deployment(priority_mode="always_ai")
        for _ in range(4):
            state = await handoff.record_ai_turn("t1", "c1", d)
        assert state.state == HandoffState.AI_ACTIVE

    @pytest.mark.asyncio
    async def test_always_human_hands_off_immediately(self, handoff):
        d = deployment(priority_mode="always_human")
        state = await handoff.record_ai_turn("t1", "c1", d)
        assert state.is_handed_off
        assert await handoff.is_handed_off("other_conversation", d)

    @pytest.mark.asyncio
    async def test_only_explicit_reactivation_returns_to_ai(self, handoff):
        d = deployment(max_messages_before_handoff=1)
        await handoff.record_ai_turn("t1", "c1", d)
        await handoff.record_ai_turn("t1", "c1", d)
        assert (await handoff.get_state("c1")).is_handed_off

        state = await handoff.reactivate("c1")
        assert state.state == HandoffState.AI_ACTIVE
        assert state.ai_turns == 0
        assert not await handoff.is_handed_off("c1")

    @pytest.mark.asyncio
    async def test_manual_handoff(self, handoff):
        state = await handoff.handoff("c9", reason="customer asked for a person", tenant_id="t1")
        assert state.is_handed_off
        assert state.reason == "customer asked for a person"

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, handoff):
        assert await handoff.get_state("nobody") is None
        assert not await handoff.is_handed_off("nobody")

    @pytest.mark.asyncio
    async def test_turn_links_conversation_to_deployment(self, handoff, store):
        d = deployment()
        await handoff.record_ai_turn("t1", "c1", d)
        assert await store.count_handoffs_for_deployment(d.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_turns_all_count(self, handoff):
        d = deployment()
        await asyncio.gather(*(handoff.record_ai_turn("t1", "c1", d) for _ in range(5)))

        state = await handoff.get_state("c1")
        assert state.ai_turns == 5
        assert state.is_handed_off
        assert state.reason == "reached 3 AI messages"

    @pytest.mark.asyncio
    async def test_manual_handoff_keeps_turn_count(self, handoff):
        d = deployment()
        await handoff.record_ai_turn("t1", "c1", d)
        state = await handoff.handoff("c1", reason="agent took over")
        assert state.ai_turns == 1
        assert state.deployment_id == d.id
