# /dmfy/routes/webhooks.py

import json
import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from dmfy.config.settings import settings
from dmfy.flows.errors import DeliveryError
from dmfy.services import conversation_service
from dmfy.services.inbound_adapter import is_supported, parse_webhook_payload
from dmfy.utils.metrics import response_time_histogram
from dmfy.utils.rate_limiter import limiter

# Receives Messenger and Instagram message events. Each message is run
# through the flow engine and its replies are delivered before the next
# message is handled, so ordering per sender follows the payload.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


@router.post("/webhook")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_webhook(request: Request):
    """Webhook handler for Messenger pages and Instagram accounts."""
    with response_time_histogram.labels(endpoint="webhook").time():
        try:
            body = json.loads(await request.body() or b"{}")
        except json.JSONDecodeError:
            log.warning("Webhook body is not valid JSON.")
            return JSONResponse({"status": "invalid_json"}, status_code=400)

        if not is_supported(body):
            log.info("Ignoring webhook for unsupported object", object=body.get("object") if isinstance(body, dict) else None)
            return JSONResponse({"status": "not_found"}, status_code=404)

        for message in parse_webhook_payload(body):
            log.info(
                "Processing incoming message",
                tenant_key=message.tenant_key,
                sender_id=message.sender_id,
                channel=message.channel.value,
            )
            try:
                await conversation_service.flow_engine.process(
                    message.tenant_key, message.sender_id, message.channel, message.text
                )
            except DeliveryError as e:
                report = e.report
                log.error(
                    "Reply delivery failed",
                    sender_id=message.sender_id,
                    error=str(e),
                    sent=len(report.sent) if report else 0,
                    failed=len(report.failed) if report else 0,
                )

        return JSONResponse({"status": "success"})
