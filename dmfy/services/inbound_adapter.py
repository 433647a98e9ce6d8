# /dmfy/services/inbound_adapter.py

from typing import Any, Dict, Iterable, List, Optional

import structlog

from dmfy.config.settings import settings
from dmfy.models.flow import Channel, InboundMessage

# Normalizes Messenger and Instagram webhook bodies into InboundMessage
# records. Nothing past this module looks at platform payload shapes.

log = structlog.get_logger(__name__)

SUPPORTED_OBJECTS = {
    "page": Channel.MESSENGER,
    "instagram": Channel.INSTAGRAM,
}


def is_supported(body: Dict[str, Any]) -> bool:
    return isinstance(body, dict) and body.get("object") in SUPPORTED_OBJECTS


def _tenant_key(entry: Dict[str, Any]) -> str:
    entry_id = entry.get("id")
    return str(entry_id) if entry_id else settings.default_tenant_key


def _text_value(value: Any) -> str:
    # Instagram "changes" payloads send text either as a string or as {"body": ...}
    if isinstance(value, dict):
        value = value.get("body")
    return value if isinstance(value, str) else ""


def _from_messaging_event(event: Dict[str, Any], tenant_key: str, channel: Channel) -> Optional[InboundMessage]:
    message = event.get("message") or {}
    postback = event.get("postback") or {}
    sender_id = (event.get("sender") or {}).get("id")

    if not (message or postback) or not sender_id:
        return None
    if message.get("is_echo"):
        return None

    text = message.get("text") or postback.get("payload") or ""
    return InboundMessage(tenant_key=tenant_key, sender_id=str(sender_id), text=text, channel=channel)


def _from_change(change: Dict[str, Any], tenant_key: str) -> Optional[InboundMessage]:
    messages = (change.get("value") or {}).get("messages") or []
    if not messages:
        return None
    msg = messages[0]
    sender_id = msg.get("from")
    if isinstance(sender_id, dict):
        sender_id = sender_id.get("id")
    if not sender_id:
        return None
    return InboundMessage(
        tenant_key=tenant_key,
        sender_id=str(sender_id),
        text=_text_value(msg.get("text")),
        channel=Channel.INSTAGRAM,
    )


def _iter_entry(entry: Dict[str, Any], channel: Channel) -> Iterable[Optional[InboundMessage]]:
    tenant_key = _tenant_key(entry)
    for event in entry.get("messaging") or []:
        yield _from_messaging_event(event, tenant_key, channel)
    if channel == Channel.INSTAGRAM:
        for change in entry.get("changes") or []:
            yield _from_change(change, tenant_key)


def parse_webhook_payload(body: Dict[str, Any]) -> List[InboundMessage]:
    """
    Extract every text-bearing user message from a webhook body, in order.

    Unsupported objects and events without a sender (deliveries, reads,
    echoes of our own replies) produce no records.
    """
    if not is_supported(body):
        return []

    channel = SUPPORTED_OBJECTS[body["object"]]
    inbound = []
    for entry in body.get("entry") or []:
        for record in _iter_entry(entry, channel):
            if record is not None:
                inbound.append(record)

    log.debug("webhook_payload_parsed", object=body["object"], messages=len(inbound))
    return inbound
