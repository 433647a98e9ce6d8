# /dmfy/flows/errors.py

"""
Error taxonomy for flow publishing, execution and delivery.

All errors are per-call: none of them should ever take the process down.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from dmfy.models.flow import DeliveryReport


class FlowError(Exception):
    """Base class for every error raised by the flow layer."""


class ValidationError(FlowError):
    """A published flow definition is malformed. `field` names the offending path."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class NotFoundError(FlowError):
    """No flow definition is published under the requested tenant key."""

    def __init__(self, tenant_key: str):
        self.tenant_key = tenant_key
        super().__init__(f"No flow published for tenant '{tenant_key}'")


class StateCorruptionError(FlowError):
    """A session points at a node that is not part of the current flow."""

    def __init__(self, node_id: Optional[str]):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' does not exist in the current flow")


class DeliveryError(FlowError):
    """An outbound message could not be delivered (network, timeout or remote rejection)."""

    def __init__(
        self,
        message: str,
        recipient_id: Optional[str] = None,
        status_code: Optional[int] = None,
        report: Optional["DeliveryReport"] = None,
    ):
        self.recipient_id = recipient_id
        self.status_code = status_code
        self.report = report
        super().__init__(message)
