# /dmfy/models/flow.py

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dmfy.flows.errors import StateCorruptionError

# Flow definitions arrive from the dashboard as camelCase JSON; sessions and
# delivery results are internal and keep plain snake_case field names.

MAX_HISTORY = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    MESSENGER = "messenger"
    INSTAGRAM = "instagram"


class FlowModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class MatchRule(FlowModel):
    """
    One keyword predicate. Exactly one of `exact`, `contains` or `regex` is set.

    Terms are stored trimmed and lowercased so they compare directly against
    normalized input.
    """
    exact: Optional[Tuple[str, ...]] = Field(default=None, description="Input must equal one of these terms")
    contains: Optional[Tuple[str, ...]] = Field(default=None, description="Input must contain one of these terms")
    regex: Optional[str] = Field(default=None, description="Case-insensitive pattern searched anywhere in the input")
    next_node_id: Optional[str] = Field(default=None, description="Transition target overriding the node's nextNodeId")
    replies: Optional[List[str]] = Field(default=None, description="Reply templates overriding the node's replyTemplates")

    @field_validator("exact", "contains")
    @classmethod
    def normalize_terms(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError("must contain at least one term")
        terms: List[str] = []
        for term in v:
            normalized = term.strip().lower()
            if normalized not in terms:
                terms.append(normalized)
        return tuple(terms)

    @field_validator("regex")
    @classmethod
    def regex_must_compile(cls, v):
        if v is None:
            return v
        try:
            re.compile(v, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"invalid regular expression: {e}")
        return v

    @model_validator(mode="after")
    def exactly_one_predicate(self):
        defined = [name for name in ("exact", "contains", "regex") if getattr(self, name) is not None]
        if len(defined) != 1:
            raise ValueError("match rule must define exactly one of exact, contains, regex")
        return self

    @property
    def kind(self) -> str:
        if self.exact is not None:
            return "exact"
        if self.contains is not None:
            return "contains"
        return "regex"

    @property
    def pattern(self) -> "re.Pattern[str]":
        # re keeps its own compile cache, so this is cheap on repeat calls
        return re.compile(self.regex or "", re.IGNORECASE)


class FlowNode(FlowModel):
    """One conversational turn: match the input, reply, optionally capture it, then transition."""
    id: str = Field(..., min_length=1)
    match_rules: List[MatchRule] = Field(default_factory=list)
    reply_templates: List[str] = Field(default_factory=list)
    next_node_id: Optional[str] = None
    captures: Optional[str] = Field(default=None, description="Session variable that receives the raw input")
    fallback_templates: List[str] = Field(default_factory=list)

    @field_validator("captures")
    @classmethod
    def captures_must_be_identifier(cls, v):
        if v is not None and not re.fullmatch(r"\w+", v):
            raise ValueError("must be a variable name made of letters, digits or underscores")
        return v


class FlowDefinition(FlowModel):
    """A published conversation flow. Replaced wholesale on every publish."""
    id: Optional[str] = None
    name: Optional[str] = None
    channel: Optional[str] = None
    version: Optional[Union[int, str]] = None
    page_id: Optional[str] = None
    nodes: List[FlowNode] = Field(..., min_length=1)
    entry_node_id: str = Field(..., min_length=1)
    fallback_templates: List[str] = Field(default_factory=list)

    @field_validator("id", "page_id", mode="before")
    @classmethod
    def coerce_numeric_ids(cls, v):
        # Page ids are often sent as JSON numbers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def require_node(self, node_id: Optional[str]) -> FlowNode:
        node = self.get_node(node_id)
        if node is None:
            raise StateCorruptionError(node_id)
        return node

    @property
    def entry_node(self) -> FlowNode:
        return self.require_node(self.entry_node_id)


class Session(BaseModel):
    """Conversation state for one (tenant, sender, channel)."""
    tenant_key: str
    sender_id: str
    channel: Channel
    current_node_id: str
    variables: Dict[str, str] = Field(default_factory=dict)
    history: List[str] = Field(default_factory=list, description=f"Last {MAX_HISTORY} visited node ids")
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str, str]:
        return session_key(self.tenant_key, self.sender_id, self.channel)


def session_key(tenant_key: str, sender_id: str, channel: Union[Channel, str]) -> Tuple[str, str, str]:
    return (tenant_key, sender_id, Channel(channel).value)


class InboundMessage(BaseModel):
    """A platform webhook event reduced to what the engine needs."""
    tenant_key: str
    sender_id: str
    text: str = ""
    channel: Channel


class OutboundMessage(BaseModel):
    text: str


class FailedDelivery(BaseModel):
    message: OutboundMessage
    error: str


class DeliveryReport(BaseModel):
    recipient_id: str
    sent: List[OutboundMessage] = Field(default_factory=list)
    failed: List[FailedDelivery] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed
