# tests/unit/test_conversation_service.py
import asyncio
from datetime import timedelta

import pytest

from dmfy.flows.definitions import FALLBACK_REPLY
from dmfy.flows.errors import DeliveryError
from dmfy.services.conversation_service import FlowEngine
from dmfy.services.session_store import SessionStore
from dmfy.utils.locks import KeyedLock


NAME_FLOW = {
    "entryNodeId": "ask",
    "nodes": [
        {
            "id": "ask",
            "captures": "name",
            "matchRules": [{"regex": ".+"}],
            "replyTemplates": ["Prazer, {name}!"],
            "nextNodeId": "known",
            "fallbackTemplates": ["Qual é o seu nome?"],
        },
        {
            "id": "known",
            "matchRules": [{"regex": ".*"}],
            "replyTemplates": ["Já te conheço, {name}."],
        },
    ],
}


class YieldingSessionStore(SessionStore):
    """Gives other tasks a chance to run between read and write."""

    async def get_or_create(self, *args, **kwargs):
        session = await super().get_or_create(*args, **kwargs)
        await asyncio.sleep(0.01)
        return session


def texts(messages):
    return [m.text for m in messages]


@pytest.mark.asyncio
async def test_end_to_end_scenario(engine, flow_store, session_store, scripted_flow_payload):
    await flow_store.publish("default", scripted_flow_payload)

    assert texts(await engine.handle("default", "psid-1", "instagram", "oi")) == ["menu"]
    assert texts(await engine.handle("default", "psid-1", "instagram", "1")) == ["mentoria"]

    session = await session_store.get("default", "psid-1", "instagram")
    assert session.current_node_id == "ticket"


@pytest.mark.asyncio
async def test_unknown_tenant_gets_builtin_flow(engine):
    greeting = await engine.handle("page-without-flow", "psid-1", "messenger", "Olá")
    fallback = await engine.handle("page-without-flow", "psid-1", "messenger", "vendo cursos")

    assert len(greeting) == 1
    assert "Eu sou o DMFY" in greeting[0].text
    assert texts(fallback) == [FALLBACK_REPLY]


@pytest.mark.asyncio
async def test_builtin_flow_reads_ticket_before_menu_digits(engine):
    replies = await engine.handle("default", "psid-1", "messenger", "2000")

    assert len(replies) == 2
    assert replies[0].text.startswith("Perfeito.")


@pytest.mark.asyncio
async def test_tenant_without_flow_uses_default_published_flow(engine, flow_store, scripted_flow_payload):
    await flow_store.publish("default", scripted_flow_payload)

    assert texts(await engine.handle("page-9", "psid-1", "messenger", "oi")) == ["menu"]


@pytest.mark.asyncio
async def test_tenant_flow_takes_precedence(engine, flow_store, scripted_flow_payload):
    await flow_store.publish("default", scripted_flow_payload)
    await flow_store.publish("page-1", {
        "entryNodeId": "hi",
        "nodes": [{"id": "hi", "matchRules": [{"exact": ["oi"]}], "replyTemplates": ["page one"]}],
    })

    assert texts(await engine.handle("page-1", "psid-1", "messenger", "oi")) == ["page one"]


@pytest.mark.asyncio
async def test_republish_heals_sessions_on_removed_nodes(engine, flow_store, session_store, scripted_flow_payload):
    await flow_store.publish("default", scripted_flow_payload)
    await engine.handle("default", "psid-1", "messenger", "oi")
    await engine.handle("default", "psid-1", "messenger", "1")

    await flow_store.publish("default", {
        "entryNodeId": "novo",
        "nodes": [{"id": "novo", "matchRules": [{"contains": ["oi"]}], "replyTemplates": ["fluxo novo"]}],
    })
    replies = await engine.handle("default", "psid-1", "messenger", "oi")

    assert texts(replies) == ["fluxo novo"]
    assert (await session_store.get("default", "psid-1", "messenger")).current_node_id == "novo"


@pytest.mark.asyncio
async def test_process_delivers_replies_in_order(engine, dispatcher):
    report = await engine.process("default", "psid-1", "messenger", "sim")

    assert report.ok
    assert [text for _, text in dispatcher.sent] == [m.text for m in report.sent]
    assert dispatcher.sent[0] == ("psid-1", "Ótimo! Segue o passo: https://seu-checkout-ou-form.com")
    assert len(dispatcher.sent) == 2


@pytest.mark.asyncio
async def test_partial_delivery_failure_is_reported_and_session_kept(engine, dispatcher, flow_store, session_store):
    await flow_store.publish("default", {
        "entryNodeId": "a",
        "nodes": [
            {"id": "a", "matchRules": [{"exact": ["go"]}], "replyTemplates": ["one", "two", "three"], "nextNodeId": "b"},
            {"id": "b"},
        ],
    })
    dispatcher.fail_on = {"two"}

    with pytest.raises(DeliveryError) as exc_info:
        await engine.process("default", "psid-1", "messenger", "go")

    report = exc_info.value.report
    assert texts(report.sent) == ["one", "three"]
    assert [f.message.text for f in report.failed] == ["two"]
    assert (await session_store.get("default", "psid-1", "messenger")).current_node_id == "b"


@pytest.mark.asyncio
async def test_slow_send_times_out(flow_store, session_store, dispatcher):
    dispatcher.delay = 0.5
    engine = FlowEngine(flow_store, session_store, dispatcher=dispatcher, send_timeout=0.05)

    with pytest.raises(DeliveryError) as exc_info:
        await engine.process("default", "psid-1", "messenger", "oi")

    assert "Timed out" in exc_info.value.report.failed[0].error
    assert dispatcher.sent == []


@pytest.mark.asyncio
async def test_unexpected_send_error_does_not_stop_later_replies(engine, dispatcher, mocker):
    dispatcher.send = mocker.AsyncMock(side_effect=[RuntimeError("boom"), "mid.2"])

    with pytest.raises(DeliveryError) as exc_info:
        await engine.process("default", "psid-1", "messenger", "sim")

    report = exc_info.value.report
    assert dispatcher.send.await_count == 2
    assert len(report.sent) == 1
    assert len(report.failed) == 1
    assert "RuntimeError" in report.failed[0].error


@pytest.mark.asyncio
async def test_deliver_without_dispatcher_raises(flow_store, session_store):
    engine = FlowEngine(flow_store, session_store)

    with pytest.raises(DeliveryError):
        await engine.process("default", "psid-1", "messenger", "oi")


@pytest.mark.asyncio
async def test_concurrent_messages_for_same_sender_are_serialized(flow_store, dispatcher):
    store = YieldingSessionStore(ttl=timedelta(hours=24))
    engine = FlowEngine(flow_store, store, dispatcher=dispatcher)
    await flow_store.publish("default", NAME_FLOW)

    first, second = await asyncio.gather(
        engine.handle("default", "psid-1", "messenger", "Alice"),
        engine.handle("default", "psid-1", "messenger", "Bob"),
    )

    assert texts(first) == ["Prazer, Alice!"]
    assert texts(second) == ["Já te conheço, Alice."]
    session = await store.get("default", "psid-1", "messenger")
    assert session.variables == {"name": "Alice"}


@pytest.mark.asyncio
async def test_different_senders_do_not_block_each_other(flow_store, dispatcher):
    store = YieldingSessionStore(ttl=timedelta(hours=24))
    engine = FlowEngine(flow_store, store, dispatcher=dispatcher)
    await flow_store.publish("default", NAME_FLOW)

    alice, bob = await asyncio.gather(
        engine.handle("default", "psid-a", "messenger", "Alice"),
        engine.handle("default", "psid-b", "messenger", "Bob"),
    )

    assert texts(alice) == ["Prazer, Alice!"]
    assert texts(bob) == ["Prazer, Bob!"]


@pytest.mark.asyncio
async def test_keyed_lock_releases_and_forgets_keys():
    locks = KeyedLock()

    async with locks.acquire("a"):
        assert locks.locked("a")
        # another key is independent
        await asyncio.wait_for(_hold(locks, "b"), timeout=0.5)

    assert not locks.locked("a")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_released_on_error():
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        async with locks.acquire("a"):
            raise RuntimeError("boom")

    assert len(locks) == 0


async def _hold(locks, key):
    async with locks.acquire(key):
        return True
