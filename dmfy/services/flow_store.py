# /dmfy/services/flow_store.py

from typing import Any, Dict, List, Optional

import structlog

from dmfy.flows.errors import NotFoundError, ValidationError
from dmfy.flows.validator import find_dangling_references, parse_flow
from dmfy.models.flow import FlowDefinition
from dmfy.utils.metrics import flow_publish_counter

# In-memory registry of published flows, one per tenant key. The dashboard's
# publish call is the only writer. Contents live for the process lifetime;
# a durable backend must keep the same async interface.

log = structlog.get_logger(__name__)


class FlowStore:
    def __init__(self):
        self._flows: Dict[str, FlowDefinition] = {}

    async def publish(self, tenant_key: str, payload: Any) -> FlowDefinition:
        """
        Validate and install a flow for a tenant, replacing any previous one.

        The previous definition stays active if validation fails.

        Raises:
            ValidationError: if the payload is not a valid flow definition.
        """
        try:
            flow = parse_flow(payload)
        except ValidationError as e:
            flow_publish_counter.labels(status="invalid").inc()
            log.warning("flow_publish_rejected", tenant_key=tenant_key, field=e.field, error=e.message)
            raise

        dangling = find_dangling_references(flow)
        if dangling:
            log.warning("flow_has_dangling_references", tenant_key=tenant_key, fields=dangling)

        # Single assignment: readers see either the old or the new flow
        self._flows[tenant_key] = flow
        flow_publish_counter.labels(status="published").inc()
        log.info(
            "flow_published",
            tenant_key=tenant_key,
            name=flow.name,
            version=flow.version,
            nodes=len(flow.nodes),
        )
        return flow

    async def get(self, tenant_key: str) -> Optional[FlowDefinition]:
        return self._flows.get(tenant_key)

    async def require(self, tenant_key: str) -> FlowDefinition:
        flow = self._flows.get(tenant_key)
        if flow is None:
            raise NotFoundError(tenant_key)
        return flow

    async def keys(self) -> List[str]:
        return sorted(self._flows)


# Globally accessible instance
flow_store = FlowStore()
