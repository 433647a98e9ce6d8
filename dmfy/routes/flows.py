# /dmfy/routes/flows.py

import json
import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from dmfy.config.settings import settings
from dmfy.flows.errors import NotFoundError, ValidationError
from dmfy.flows.validator import flow_to_payload
from dmfy.models.api import ErrorResponse, FlowResponse, PublishResponse
from dmfy.services import flow_store

# Flow-builder API used by the dashboard: publish a flow and read back the
# one currently active for a tenant.

router = APIRouter(
    prefix="/api/flows",
    tags=["Flows"]
)

log = structlog.get_logger(__name__)


@router.post("/publish", response_model=PublishResponse)
async def publish_flow(request: Request):
    """Publish (replace) the flow for the tenant named by pageId, or the default tenant."""
    try:
        payload = json.loads(await request.body() or b"null")
    except json.JSONDecodeError:
        return JSONResponse(
            ErrorResponse(error="Request body is not valid JSON", field="flow").model_dump(),
            status_code=400,
        )

    page_id = payload.get("pageId") if isinstance(payload, dict) else None
    tenant_key = str(page_id) if page_id else settings.default_tenant_key

    try:
        await flow_store.flow_store.publish(tenant_key, payload)
    except ValidationError as e:
        return JSONResponse(ErrorResponse(error=e.message, field=e.field).model_dump(), status_code=400)

    return PublishResponse(ok=True, tenant_key=tenant_key)


@router.get("/{key}", response_model=FlowResponse)
async def get_flow(key: str):
    """Return the flow currently published under a tenant key."""
    try:
        flow = await flow_store.flow_store.require(key)
    except NotFoundError:
        return JSONResponse(ErrorResponse(error="Flow not found").model_dump(), status_code=404)
    return FlowResponse(ok=True, flow=flow_to_payload(flow))
