import os
import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

# Settings are read at import time, so the environment must be prepared
# before any dmfy module is imported.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PAGE_ACCESS_TOKEN", "test-page-token")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")

from dmfy.main import app  # noqa: E402
from dmfy.flows.errors import DeliveryError  # noqa: E402
from dmfy.models.flow import FlowDefinition  # noqa: E402
from dmfy.services import conversation_service, flow_store as flow_store_module  # noqa: E402
from dmfy.services.conversation_service import FlowEngine  # noqa: E402
from dmfy.services.flow_store import FlowStore  # noqa: E402
from dmfy.services.messenger_service import MessageDispatcher  # noqa: E402
from dmfy.services.session_store import SessionStore  # noqa: E402


class RecordingDispatcher(MessageDispatcher):
    """Collects sent messages instead of calling the Graph API."""

    def __init__(self):
        self.sent = []
        self.fail_on = set()
        self.delay = 0.0

    async def send(self, recipient_id, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        if text in self.fail_on:
            raise DeliveryError("rejected by test", recipient_id=recipient_id, status_code=400)
        self.sent.append((recipient_id, text))
        return f"mid.{len(self.sent)}"


@pytest.fixture
def scripted_flow_payload():
    """start --(oi)--> menu --(1)--> ticket, where ticket captures the answer."""
    return {
        "id": "flow-1",
        "name": "Mentoria",
        "channel": "instagram",
        "version": 3,
        "entryNodeId": "start",
        "fallbackTemplates": ["Não entendi"],
        "nodes": [
            {
                "id": "start",
                "matchRules": [{"exact": ["start", "oi"]}],
                "replyTemplates": ["menu"],
                "nextNodeId": "menu",
            },
            {
                "id": "menu",
                "matchRules": [{"contains": ["1"]}],
                "replyTemplates": ["mentoria"],
                "nextNodeId": "ticket",
            },
            {
                "id": "ticket",
                "captures": "ticket",
                "matchRules": [{"regex": r"\d+"}],
                "replyTemplates": ["Ticket {ticket} anotado"],
                "fallbackTemplates": ["Qual o ticket?"],
            },
        ],
    }


@pytest.fixture
def scripted_flow(scripted_flow_payload):
    return FlowDefinition.model_validate(scripted_flow_payload)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def flow_store():
    return FlowStore()


@pytest.fixture
def session_store():
    return SessionStore(ttl=timedelta(hours=24))


@pytest.fixture
def engine(flow_store, session_store, dispatcher):
    return FlowEngine(flow_store, session_store, dispatcher=dispatcher, send_timeout=1.0)


@pytest.fixture(scope="function")
def test_client(mocker, engine):
    """
    Provides a TestClient whose routes use fresh in-memory stores and a
    recording dispatcher.
    """
    mocker.patch.object(conversation_service, "flow_engine", engine)
    mocker.patch.object(flow_store_module, "flow_store", engine.flow_store)

    with TestClient(app) as client:
        yield client
