# tests/unit/test_stores.py
import pytest
from datetime import datetime, timedelta, timezone

from dmfy.flows.errors import NotFoundError, ValidationError
from dmfy.models.flow import Channel
from dmfy.services.session_store import SessionStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# --- FlowStore ---

@pytest.mark.asyncio
async def test_publish_and_get(flow_store, scripted_flow_payload):
    published = await flow_store.publish("page-1", scripted_flow_payload)

    assert await flow_store.get("page-1") == published
    assert await flow_store.get("page-2") is None
    assert await flow_store.keys() == ["page-1"]


@pytest.mark.asyncio
async def test_publish_replaces_without_merging(flow_store, scripted_flow_payload):
    await flow_store.publish("default", scripted_flow_payload)
    replacement = {"name": "v2", "entryNodeId": "only", "nodes": [{"id": "only"}]}

    await flow_store.publish("default", replacement)

    flow = await flow_store.get("default")
    assert flow.name == "v2"
    assert [node.id for node in flow.nodes] == ["only"]
    assert flow.fallback_templates == []


@pytest.mark.asyncio
async def test_invalid_publish_keeps_previous_flow(flow_store, scripted_flow_payload):
    original = await flow_store.publish("default", scripted_flow_payload)

    with pytest.raises(ValidationError) as exc_info:
        await flow_store.publish("default", {"entryNodeId": "ghost", "nodes": [{"id": "a"}]})

    assert exc_info.value.field == "entryNodeId"
    assert await flow_store.get("default") is original


@pytest.mark.asyncio
async def test_require_raises_not_found(flow_store):
    with pytest.raises(NotFoundError) as exc_info:
        await flow_store.require("unknown")
    assert exc_info.value.tenant_key == "unknown"


# --- SessionStore ---

@pytest.mark.asyncio
async def test_get_or_create_starts_at_entry_node():
    store = SessionStore(ttl=timedelta(hours=24))

    session = await store.get_or_create("default", "psid-1", "messenger", "start")

    assert session.current_node_id == "start"
    assert session.channel == Channel.MESSENGER
    assert session.variables == {}
    assert len(store) == 1


@pytest.mark.asyncio
async def test_changes_are_visible_only_after_save():
    store = SessionStore(ttl=timedelta(hours=24))
    session = await store.get_or_create("default", "psid-1", Channel.INSTAGRAM, "start")

    session.current_node_id = "menu"
    session.variables["name"] = "Ana"
    unsaved = await store.get_or_create("default", "psid-1", Channel.INSTAGRAM, "start")
    assert unsaved.current_node_id == "start"

    await store.save(session)
    saved = await store.get_or_create("default", "psid-1", Channel.INSTAGRAM, "start")
    assert saved.current_node_id == "menu"
    assert saved.variables == {"name": "Ana"}


@pytest.mark.asyncio
async def test_sessions_are_keyed_by_tenant_sender_and_channel():
    store = SessionStore(ttl=timedelta(hours=24))
    session = await store.get_or_create("page-1", "psid-1", "messenger", "start")
    session.current_node_id = "menu"
    await store.save(session)

    other_channel = await store.get_or_create("page-1", "psid-1", "instagram", "start")
    other_tenant = await store.get_or_create("page-2", "psid-1", "messenger", "start")

    assert other_channel.current_node_id == "start"
    assert other_tenant.current_node_id == "start"
    assert len(store) == 3


@pytest.mark.asyncio
async def test_expired_session_is_recreated():
    clock = FakeClock()
    store = SessionStore(ttl=timedelta(hours=24), clock=clock)
    session = await store.get_or_create("default", "psid-1", "messenger", "start")
    session.current_node_id = "menu"
    session.variables["ticket"] = "997"
    session.last_activity_at = clock()
    await store.save(session)

    clock.advance(hours=23)
    assert (await store.get_or_create("default", "psid-1", "messenger", "start")).current_node_id == "menu"

    clock.advance(hours=2)
    fresh = await store.get_or_create("default", "psid-1", "messenger", "start")
    assert fresh.current_node_id == "start"
    assert fresh.variables == {}
    assert fresh.created_at == clock()


@pytest.mark.asyncio
async def test_get_does_not_create():
    store = SessionStore(ttl=timedelta(hours=1))

    assert await store.get("default", "psid-1", "messenger") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_save_sweeps_sessions_of_senders_who_never_return():
    clock = FakeClock()
    store = SessionStore(ttl=timedelta(hours=24), clock=clock, sweep_interval=timedelta(hours=1))
    for sender_id in ("psid-1", "psid-2"):
        await store.save(await store.get_or_create("default", sender_id, "messenger", "start"))
    assert len(store) == 2

    clock.advance(hours=25)
    await store.save(await store.get_or_create("default", "psid-3", "messenger", "start"))

    assert len(store) == 1
    assert await store.get("default", "psid-1", "messenger") is None
    assert await store.get("default", "psid-3", "messenger") is not None


@pytest.mark.asyncio
async def test_purge_expired_keeps_active_sessions():
    clock = FakeClock()
    store = SessionStore(ttl=timedelta(hours=24), clock=clock)
    await store.get_or_create("default", "psid-1", "messenger", "start")
    clock.advance(hours=12)
    await store.get_or_create("default", "psid-2", "messenger", "start")

    clock.advance(hours=13)

    assert store.purge_expired() == 1
    assert await store.get("default", "psid-2", "messenger") is not None
