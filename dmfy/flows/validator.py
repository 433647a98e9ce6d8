# /dmfy/flows/validator.py

"""
Pure validation functions for published flow definitions.

Field-level checks (types, required keys, rule predicates, regex syntax)
live on the pydantic models; this module adds the graph-level checks and
turns every failure into a single ValidationError naming the bad field.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No logging
"""

from typing import Any, Dict, List, Optional, TypedDict

from pydantic import ValidationError as PydanticValidationError

from dmfy.flows.errors import ValidationError
from dmfy.models.flow import FlowDefinition


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    field: Optional[str]
    message: Optional[str]


def _valid() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "field": None, "message": None}


def validate_unique_node_ids(flow: FlowDefinition) -> ValidationResult:
    """Node ids must be unique so transitions are unambiguous."""
    seen = set()
    for index, node in enumerate(flow.nodes):
        if node.id in seen:
            return {
                "is_valid": False,
                "error_code": "DUPLICATE_NODE_ID",
                "field": f"nodes.{index}.id",
                "message": f"Node id '{node.id}' is used more than once",
            }
        seen.add(node.id)
    return _valid()


def validate_entry_node(flow: FlowDefinition) -> ValidationResult:
    """The entry node must be one of the flow's nodes."""
    if flow.get_node(flow.entry_node_id) is None:
        return {
            "is_valid": False,
            "error_code": "UNKNOWN_ENTRY_NODE",
            "field": "entryNodeId",
            "message": f"Entry node '{flow.entry_node_id}' is not defined in nodes",
        }
    return _valid()


def find_dangling_references(flow: FlowDefinition) -> List[str]:
    """
    Return the field paths of transitions that point at unknown nodes.

    These do not block a publish; the engine falls back to the entry node
    when a session would land on one of them.
    """
    node_ids = {node.id for node in flow.nodes}
    dangling = []
    for n_index, node in enumerate(flow.nodes):
        if node.next_node_id is not None and node.next_node_id not in node_ids:
            dangling.append(f"nodes.{n_index}.nextNodeId")
        for r_index, rule in enumerate(node.match_rules):
            if rule.next_node_id is not None and rule.next_node_id not in node_ids:
                dangling.append(f"nodes.{n_index}.matchRules.{r_index}.nextNodeId")
    return dangling


def _field_from_loc(loc) -> str:
    return ".".join(str(part) for part in loc) or "flow"


def parse_flow(payload: Any) -> FlowDefinition:
    """
    Parse and validate a flow payload.

    Raises:
        ValidationError: naming the first invalid or missing field.
    """
    if isinstance(payload, FlowDefinition):
        flow = payload
    else:
        if not isinstance(payload, dict):
            raise ValidationError("flow", "Flow definition must be a JSON object")
        try:
            flow = FlowDefinition.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(_field_from_loc(first["loc"]), first["msg"]) from e

    for check in (validate_unique_node_ids, validate_entry_node):
        result = check(flow)
        if not result["is_valid"]:
            raise ValidationError(result["field"], result["message"])

    return flow


def flow_to_payload(flow: FlowDefinition) -> Dict[str, Any]:
    """Serialize a flow back to the dashboard's camelCase wire format."""
    return flow.model_dump(mode="json", by_alias=True, exclude_none=True)
