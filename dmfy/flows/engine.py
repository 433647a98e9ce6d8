# /dmfy/flows/engine.py

"""
Pure flow execution engine.

Given a flow definition, a session and one inbound text, computes the next
session state and the replies to send:
- Normalizes the input (lowercase, trimmed)
- Evaluates the current node's match rules in declared order, first match wins
- Captures the raw input into a session variable when the node asks for it
- Renders reply templates with {variable} interpolation
- Self-heals sessions that point at nodes the flow no longer has

All functions are:
- Pure (the input session is never mutated; a new one is returned)
- Deterministic (same input = same output)
- No store access
- No message sending
- No logging
"""

import re
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, TypedDict

from dmfy.flows.errors import StateCorruptionError
from dmfy.models.flow import (
    MAX_HISTORY,
    FlowDefinition,
    FlowNode,
    MatchRule,
    OutboundMessage,
    Session,
    utcnow,
)

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

RESET_STALE_NODE = "stale_node"
RESET_DANGLING_EDGE = "dangling_edge"


class EngineResult(TypedDict):
    """Result of running one message through a flow."""
    session: Session
    messages: List[OutboundMessage]
    matched: bool
    rule_index: Optional[int]
    reset_reason: Optional[str]


def normalize_text(raw_text: Optional[str]) -> str:
    return (raw_text or "").strip().lower()


def rule_matches(rule: MatchRule, text: str) -> bool:
    """Evaluate a single rule against already-normalized text."""
    if rule.exact is not None:
        return text in rule.exact
    if rule.contains is not None:
        return any(term in text for term in rule.contains)
    return rule.pattern.search(text) is not None


def select_rule(rules: Sequence[MatchRule], text: str) -> Tuple[Optional[int], Optional[MatchRule]]:
    """Return the first rule (and its index) that matches, in declared order."""
    for index, rule in enumerate(rules):
        if rule_matches(rule, text):
            return index, rule
    return None, None


def render_template(template: str, variables: Dict[str, str]) -> str:
    """Replace {name} placeholders; unknown names are left as written."""
    return PLACEHOLDER_PATTERN.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


def _resolve_current_node(flow: FlowDefinition, session: Session) -> Tuple[FlowNode, Optional[str]]:
    try:
        return flow.require_node(session.current_node_id), None
    except StateCorruptionError:
        return flow.entry_node, RESET_STALE_NODE


def apply_message(
    flow: FlowDefinition,
    session: Session,
    raw_text: Optional[str],
    now: Optional[datetime] = None,
) -> EngineResult:
    """
    Advance a session by one inbound message.

    Args:
        flow: The flow governing the session's tenant
        session: The session as currently stored (left untouched)
        raw_text: The text exactly as the user sent it
        now: Timestamp recorded as the session's last activity

    Returns:
        EngineResult with the updated session and the ordered replies
    """
    text = normalize_text(raw_text)
    node, reset_reason = _resolve_current_node(flow, session)

    rule_index, rule = select_rule(node.match_rules, text)
    variables = dict(session.variables)
    if node.captures:
        variables[node.captures] = raw_text or ""

    if rule is None:
        target_id = node.id
        templates = node.fallback_templates or flow.fallback_templates
    else:
        target_id = rule.next_node_id or node.next_node_id or node.id
        templates = rule.replies if rule.replies is not None else node.reply_templates

    if flow.get_node(target_id) is None:
        target_id = flow.entry_node_id
        reset_reason = reset_reason or RESET_DANGLING_EDGE

    messages = [OutboundMessage(text=render_template(t, variables)) for t in templates]

    history = (session.history + [target_id])[-MAX_HISTORY:]
    updated_session = session.model_copy(
        update={
            "current_node_id": target_id,
            "variables": variables,
            "history": history,
            "last_activity_at": now or utcnow(),
        },
        deep=True,
    )

    return {
        "session": updated_session,
        "messages": messages,
        "matched": rule is not None,
        "rule_index": rule_index,
        "reset_reason": reset_reason,
    }
