# /dmfy/services/conversation_service.py

import asyncio
from typing import List, Optional, Sequence, Tuple, Union

import structlog

from dmfy.config.settings import settings
from dmfy.flows.definitions import DEFAULT_FLOW_KEY, builtin_default_flow
from dmfy.flows.engine import EngineResult, apply_message
from dmfy.flows.errors import DeliveryError
from dmfy.models.flow import (
    Channel,
    DeliveryReport,
    FailedDelivery,
    FlowDefinition,
    OutboundMessage,
    session_key,
)
from dmfy.services.flow_store import FlowStore, flow_store
from dmfy.services.messenger_service import MessageDispatcher, messenger_service
from dmfy.services.session_store import SessionStore, session_store
from dmfy.utils.locks import KeyedLock
from dmfy.utils.metrics import message_counter, outbound_message_counter, session_reset_counter

# Runs inbound messages through the tenant's flow. Reads the flow store,
# owns all session writes, and hands replies to the dispatcher in order.
# Work for one (tenant, sender, channel) is serialized; different senders
# run concurrently.

log = structlog.get_logger(__name__)


class FlowEngine:
    def __init__(
        self,
        flow_store: FlowStore,
        session_store: SessionStore,
        dispatcher: Optional[MessageDispatcher] = None,
        send_timeout: float = 5.0,
        default_tenant_key: str = "default",
        default_flow: Optional[FlowDefinition] = None,
    ):
        self.flow_store = flow_store
        self.session_store = session_store
        self.dispatcher = dispatcher
        self.send_timeout = send_timeout
        self.default_tenant_key = default_tenant_key
        self.default_flow = default_flow or builtin_default_flow()
        self._locks = KeyedLock()

    async def resolve_flow(self, tenant_key: str) -> Tuple[FlowDefinition, str]:
        """
        Pick the flow for a tenant: its own, then the one published under the
        default key, then the built-in script. Returns the flow and its source key.
        """
        flow = await self.flow_store.get(tenant_key)
        if flow is not None:
            return flow, tenant_key
        if tenant_key != self.default_tenant_key:
            flow = await self.flow_store.get(self.default_tenant_key)
            if flow is not None:
                return flow, self.default_tenant_key
        return self.default_flow, DEFAULT_FLOW_KEY

    async def _advance(
        self,
        tenant_key: str,
        sender_id: str,
        channel: Channel,
        raw_text: Optional[str],
    ) -> List[OutboundMessage]:
        flow, flow_source = await self.resolve_flow(tenant_key)
        session = await self.session_store.get_or_create(tenant_key, sender_id, channel, flow.entry_node_id)
        previous_node_id = session.current_node_id

        result: EngineResult = apply_message(flow, session, raw_text, now=self.session_store.now())

        if result["reset_reason"]:
            session_reset_counter.labels(reason=result["reset_reason"]).inc()
            log.warning(
                "session_reset_to_entry_node",
                reason=result["reset_reason"],
                tenant_key=tenant_key,
                sender_id=sender_id,
                previous_node_id=previous_node_id,
                entry_node_id=flow.entry_node_id,
            )

        await self.session_store.save(result["session"])

        message_counter.labels(channel=channel.value, outcome="matched" if result["matched"] else "fallback").inc()
        log.info(
            "message_handled",
            tenant_key=tenant_key,
            flow=flow_source,
            sender_id=sender_id,
            channel=channel.value,
            from_node=previous_node_id,
            to_node=result["session"].current_node_id,
            rule_index=result["rule_index"],
            replies=len(result["messages"]),
        )
        return result["messages"]

    async def handle(
        self,
        tenant_key: str,
        sender_id: str,
        channel: Union[Channel, str],
        raw_text: Optional[str],
    ) -> List[OutboundMessage]:
        """Advance the sender's session by one message and return the replies, undelivered."""
        channel = Channel(channel)
        async with self._locks.acquire(session_key(tenant_key, sender_id, channel)):
            return await self._advance(tenant_key, sender_id, channel, raw_text)

    async def process(
        self,
        tenant_key: str,
        sender_id: str,
        channel: Union[Channel, str],
        raw_text: Optional[str],
    ) -> DeliveryReport:
        """
        Advance the session and deliver the replies while still holding the
        session lock, so replies to one sender never interleave.

        Raises:
            DeliveryError: if any reply failed; `error.report` lists what was
                sent and what was not. The session update is kept.
        """
        channel = Channel(channel)
        async with self._locks.acquire(session_key(tenant_key, sender_id, channel)):
            messages = await self._advance(tenant_key, sender_id, channel, raw_text)
            report = await self.deliver(sender_id, messages)

        if not report.ok:
            raise DeliveryError(
                f"{len(report.failed)} of {len(messages)} messages to {sender_id} were not delivered",
                recipient_id=sender_id,
                report=report,
            )
        return report

    async def deliver(self, recipient_id: str, messages: Sequence[OutboundMessage]) -> DeliveryReport:
        """Send messages one at a time, in order. A failure does not stop later sends."""
        if self.dispatcher is None:
            raise DeliveryError("No message dispatcher configured", recipient_id=recipient_id)

        report = DeliveryReport(recipient_id=recipient_id)
        for message in messages:
            try:
                await asyncio.wait_for(self.dispatcher.send(recipient_id, message.text), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                error = f"Timed out after {self.send_timeout}s"
            except DeliveryError as e:
                error = str(e)
            except Exception as e:
                log.error("outbound_message_crashed", recipient_id=recipient_id, exc_info=True)
                error = f"Unexpected {type(e).__name__}: {e}"
            else:
                report.sent.append(message)
                outbound_message_counter.labels(status="sent").inc()
                continue

            outbound_message_counter.labels(status="failed").inc()
            log.error("outbound_message_failed", recipient_id=recipient_id, error=error)
            report.failed.append(FailedDelivery(message=message, error=error))
        return report


# Globally accessible instance
flow_engine = FlowEngine(
    flow_store,
    session_store,
    dispatcher=messenger_service,
    send_timeout=settings.send_timeout_seconds,
    default_tenant_key=settings.default_tenant_key,
)
