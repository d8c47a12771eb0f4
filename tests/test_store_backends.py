"""
Tests for all deployment store backends.

Covers:
  - InMemoryDeploymentStore
  - SqlDeploymentStore (via SQLite for test portability)
  - Store factory
  - Session URL translation and model portability
"""
import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timezone

from core.errors import InvalidResourceBinding
from database.session import create_engine_for_url, create_session_factory, init_db
from database.store import SqlDeploymentStore
from database.store_memory import InMemoryDeploymentStore
from models.schemas import (
    ConversationHandoff, DelegatedAccess, DeploymentResource, HandoffState,
    InboundEmailRef, Schedule, WhatsAppAccountRef,
)


def _deployment(**overrides) -> DeploymentResource:
    data = {
        "tenant_id": "t1",
        "channel": "whatsapp",
        "resource": WhatsAppAccountRef(id="wa_1"),
        "display_name": "Support line",
        "is_enabled": True,
        "schedule": Schedule(enabled=True, start_time="09:00", end_time="17:00",
                             days=["Monday", "Friday"], timezone="Europe/Berlin"),
    }
    data.update(overrides)
    return DeploymentResource(**data)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryDeploymentStore()
        return
    engine = create_engine_for_url(f"sqlite:///{tmp_path}/deployments.db")
    await init_db(engine)
    yield SqlDeploymentStore(create_session_factory(engine))
    await engine.dispose()


# ──────────────────────────────────────────────────────────────
#  Deployment resources
# ──────────────────────────────────────────────────────────────

class TestDeployments:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        created = await store.insert_deployment(_deployment())
        found = await store.get_deployment(created.id)

        assert found.resource == WhatsAppAccountRef(id="wa_1")
        assert found.schedule.days == ["Monday", "Friday"]
        assert found.schedule.timezone == "Europe/Berlin"
        assert found.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_deployment("nope") is None

    @pytest.mark.asyncio
    async def test_find_by_reference(self, store):
        created = await store.insert_deployment(_deployment())
        found = await store.find_deployment("t1", "whatsapp", "whatsapp_account", "wa_1")
        assert found.id == created.id
        assert await store.find_deployment("t2", "whatsapp", "whatsapp_account", "wa_1") is None
        assert await store.find_deployment("t1", "email", "whatsapp_account", "wa_1") is None

    @pytest.mark.asyncio
    async def test_duplicate_reference_rejected(self, store):
        await store.insert_deployment(_deployment())
        with pytest.raises(InvalidResourceBinding):
            await store.insert_deployment(_deployment(display_name="Second"))

    @pytest.mark.asyncio
    async def test_list_with_channel_filter(self, store):
        await store.insert_deployment(_deployment())
        await store.insert_deployment(_deployment(channel="email", resource=InboundEmailRef(id="ie_1")))
        await store.insert_deployment(_deployment(tenant_id="t2"))

        assert len(await store.list_deployments("t1")) == 2
        [email] = await store.list_deployments("t1", "email")
        assert email.resource.kind == "inbound_email"

    @pytest.mark.asyncio
    async def test_save_updates(self, store):
        created = await store.insert_deployment(_deployment())
        created.is_enabled = False
        created.messages.away = "Closed for the day"
        await store.save_deployment(created)

        found = await store.get_deployment(created.id)
        assert found.is_enabled is False
        assert found.messages.away == "Closed for the day"

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store):
        created = await store.insert_deployment(_deployment())
        found = await store.get_deployment(created.id)
        found.is_enabled = False
        assert (await store.get_deployment(created.id)).is_enabled is True

    @pytest.mark.asyncio
    async def test_delete_removes_grants(self, store):
        created = await store.insert_deployment(_deployment())
        await store.upsert_access(DelegatedAccess(user_id="u1", resource_id=created.id))

        assert await store.delete_deployment(created.id) is True
        assert await store.get_deployment(created.id) is None
        assert await store.list_access_for_user("u1") == []
        assert await store.delete_deployment(created.id) is False

    @pytest.mark.asyncio
    async def test_reference_free_after_delete(self, store):
        created = await store.insert_deployment(_deployment())
        await store.delete_deployment(created.id)
        again = await store.insert_deployment(_deployment())
        assert again.id != created.id


# ──────────────────────────────────────────────────────────────
#  Delegated access
# ──────────────────────────────────────────────────────────────

class TestAccess:
    @pytest.mark.asyncio
    async def test_upsert_replaces(self, store):
        created = await store.insert_deployment(_deployment())
        await store.upsert_access(DelegatedAccess(user_id="u1", resource_id=created.id))
        await store.upsert_access(DelegatedAccess(user_id="u1", resource_id=created.id,
                                                  can_configure=True, granted_by="admin"))

        grant = await store.get_access("u1", created.id)
        assert grant.can_configure is True
        assert grant.granted_by == "admin"
        assert len(await store.list_access_for_user("u1")) == 1

    @pytest.mark.asyncio
    async def test_delete_access(self, store):
        created = await store.insert_deployment(_deployment())
        await store.upsert_access(DelegatedAccess(user_id="u1", resource_id=created.id))
        assert await store.delete_access("u1", created.id) is True
        assert await store.delete_access("u1", created.id) is False
        assert await store.get_access("u1", created.id) is None


# ──────────────────────────────────────────────────────────────
#  Handoff state
# ──────────────────────────────────────────────────────────────

class TestHandoffState:
    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        await store.save_handoff(ConversationHandoff(
            conversation_id="c1", tenant_id="t1", deployment_id="d1",
            ai_turns=3, state=HandoffState.HANDED_OFF, reason="reached 3 AI messages",
        ))
        state = await store.get_handoff("c1")
        assert state.ai_turns == 3
        assert state.is_handed_off
        assert state.updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, store):
        await store.save_handoff(ConversationHandoff(conversation_id="c1", ai_turns=1))
        await store.save_handoff(ConversationHandoff(conversation_id="c1", ai_turns=2))
        assert (await store.get_handoff("c1")).ai_turns == 2

    @pytest.mark.asyncio
    async def test_increment_creates_then_counts(self, store):
        first = await store.increment_ai_turns("c1", "t1", "d1")
        second = await store.increment_ai_turns("c1", "t1", "d2")

        assert first.ai_turns == 1
        assert first.state == HandoffState.AI_ACTIVE
        assert first.tenant_id == "t1"
        assert second.ai_turns == 2
        assert second.deployment_id == "d2"

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, store):
        results = await asyncio.gather(*(
            store.increment_ai_turns("c1", "t1", "d1") for _ in range(5)
        ))

        assert sorted(r.ai_turns for r in results) == [1, 2, 3, 4, 5]
        assert (await store.get_handoff("c1")).ai_turns == 5

    @pytest.mark.asyncio
    async def test_mark_handed_off_keeps_turns_and_first_timestamp(self, store):
        first_at = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        later_at = datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)
        await store.increment_ai_turns("c1", "t1", "d1")
        await store.increment_ai_turns("c1", "t1", "d1")

        state = await store.mark_handed_off("c1", "reached 2 AI messages", first_at)
        again = await store.mark_handed_off("c1", "manual takeover", later_at)

        assert state.is_handed_off
        assert state.ai_turns == 2
        assert state.deployment_id == "d1"
        assert again.handed_off_at == first_at
        assert again.reason == "manual takeover"

    @pytest.mark.asyncio
    async def test_mark_handed_off_unknown_conversation(self, store):
        at = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        state = await store.mark_handed_off("c9", "customer asked", at, tenant_id="t1")
        assert state.is_handed_off
        assert state.ai_turns == 0
        assert state.tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_count_by_deployment(self, store):
        await store.save_handoff(ConversationHandoff(conversation_id="c1", deployment_id="d1"))
        await store.save_handoff(ConversationHandoff(conversation_id="c2", deployment_id="d1"))
        await store.save_handoff(ConversationHandoff(conversation_id="c3", deployment_id="d2"))
        assert await store.count_handoffs_for_deployment("d1") == 2
        assert await store.count_handoffs_for_deployment("d3") == 0


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_memory_store(self):
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "memory"}), InMemoryDeploymentStore)

    def test_create_sql_store(self):
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "sql"}), SqlDeploymentStore)

    def test_default_is_memory(self):
        from database.store_factory import create_store
        assert isinstance(create_store({}), InMemoryDeploymentStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        assert get_store() is s1


# ──────────────────────────────────────────────────────────────
#  Database Session — URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("mysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("mysql+pymysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("sqlite:///./test.db", "sqlite+aiosqlite:///./test.db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ])
    def test_async_driver_url(self, url, expected):
        from database.session import _to_async_url
        assert _to_async_url(url) == expected


# ──────────────────────────────────────────────────────────────
#  Cross-DB Models Portability
# ──────────────────────────────────────────────────────────────

class TestModelsPortability:
    def test_schedule_days_is_json(self):
        from sqlalchemy import JSON
        from database.models import DeploymentRow
        assert isinstance(DeploymentRow.__table__.columns["schedule_days"].type, JSON)

    def test_no_jsonb_anywhere(self):
        from database.models import Base
        for table in Base.metadata.tables.values():
            for col in table.columns:
                assert type(col.type).__name__ != "JSONB", f"{table.name}.{col.name} uses JSONB"

    def test_all_tables_defined(self):
        from database.models import Base
        expected = {"deployment_resources", "deployment_access", "conversation_handoffs"}
        assert set(Base.metadata.tables.keys()) == expected
