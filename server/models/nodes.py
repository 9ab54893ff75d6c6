"""Pydantic models for workflow graphs with a discriminated union of node data.

Every node type carries only its own strongly typed configuration. The
discriminator field 'type' is copied from the node into its data before
validation so a single TypeAdapter routes each node to the right model.
Validation happens when a workflow is activated, never mid-execution.
"""

from typing import Literal, Union, Annotated, Optional, Dict, Any, List
from pydantic import BaseModel, Field, PrivateAttr, TypeAdapter, field_validator, model_validator

from constants import WORKFLOW_TRIGGER_TYPES


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeData(BaseModel):
    """Base class for all node data."""
    label: Optional[str] = None

    # UI metadata travels with node data; unknown keys are dropped, not rejected
    model_config = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# CONTROL NODES
# =============================================================================

class TriggerNodeData(BaseNodeData):
    """Entry point. Passes the trigger payload into the execution context."""
    type: Literal["trigger"]


class DelayNodeData(BaseNodeData):
    """Suspends the branch for a fixed duration."""
    type: Literal["delay"]
    duration: Optional[float] = Field(default=None, gt=0)
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"
    delay_ms: Optional[int] = Field(default=None, alias="delayMs", gt=0)

    @model_validator(mode="after")
    def check_duration(self) -> "DelayNodeData":
        if self.duration is None and self.delay_ms is None:
            raise ValueError("delay requires 'duration' or 'delayMs'")
        return self

    @property
    def seconds(self) -> float:
        if self.duration is not None:
            return self.duration * _UNIT_SECONDS[self.unit]
        return self.delay_ms / 1000.0


_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class WaitForReplyNodeData(BaseNodeData):
    """Suspends the branch until the lead replies (or the optional timeout)."""
    type: Literal["wait_for_reply"]
    channel: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds", gt=0)


class ConditionNodeData(BaseNodeData):
    """Grouping node; branching itself is expressed on outgoing edges."""
    type: Literal["condition"]
    expression: Optional[str] = None


class SplitPathNodeData(BaseNodeData):
    """Explicit fan-out: every outgoing edge is taken regardless of condition."""
    type: Literal["split_path"]


class EndNodeData(BaseNodeData):
    type: Literal["end"]


# =============================================================================
# MESSAGING NODES
# =============================================================================

class SendMessageNodeData(BaseNodeData):
    """Enqueue a message on a channel through the message dispatcher."""
    type: Literal["send_message"]
    channel: Literal["whatsapp", "sms", "email", "voice", "telegram"] = "whatsapp"
    content: str = ""
    template_id: Optional[str] = Field(default=None, alias="templateId")

    @model_validator(mode="after")
    def check_body(self) -> "SendMessageNodeData":
        if not self.content and not self.template_id:
            raise ValueError("send_message requires 'content' or 'templateId'")
        return self


class SendEmailNodeData(BaseNodeData):
    """Enqueue an email through the message dispatcher."""
    type: Literal["send_email"]
    subject: str = ""
    content: str = ""
    template_id: Optional[str] = Field(default=None, alias="templateId")

    @model_validator(mode="after")
    def check_body(self) -> "SendEmailNodeData":
        if not self.content and not self.template_id:
            raise ValueError("send_email requires 'content' or 'templateId'")
        return self


# =============================================================================
# LEAD NODES
# =============================================================================

class AddTagNodeData(BaseNodeData):
    type: Literal["add_tag"]
    tag: str = Field(min_length=1)


class RemoveTagNodeData(BaseNodeData):
    type: Literal["remove_tag"]
    tag: str = Field(min_length=1)


class UpdateLeadNodeData(BaseNodeData):
    """Partial update applied to lead attributes."""
    type: Literal["update_lead"]
    updates: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("updates")
    @classmethod
    def check_updates(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("update_lead requires at least one field in 'updates'")
        return v


class CreateTaskNodeData(BaseNodeData):
    type: Literal["create_task"]
    title: str = Field(min_length=1)
    description: str = ""
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo")
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_in_hours: Optional[float] = Field(default=None, alias="dueInHours", gt=0)


# =============================================================================
# INTEGRATION NODES
# =============================================================================

class WebhookNodeData(BaseNodeData):
    """Fire-and-forget HTTP POST with the execution context as payload."""
    type: Literal["webhook"]
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    include_lead: bool = Field(default=True, alias="includeLead")

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://", "{{")):
            raise ValueError("webhook url must be http(s)")
        return v


class AIAgentNodeData(BaseNodeData):
    """Ask the AI conversation collaborator for the next message."""
    type: Literal["ai_agent"]
    instructions: str = ""
    channel: Optional[str] = None
    output_key: str = Field(default="ai", alias="outputKey", min_length=1)
    send_reply: bool = Field(default=False, alias="sendReply")


# =============================================================================
# DISCRIMINATED UNION - All Node Types
# =============================================================================

NodeData = Annotated[
    Union[
        # Control
        TriggerNodeData, DelayNodeData, WaitForReplyNodeData, ConditionNodeData,
        SplitPathNodeData, EndNodeData,
        # Messaging
        SendMessageNodeData, SendEmailNodeData,
        # Lead
        AddTagNodeData, RemoveTagNodeData, UpdateLeadNodeData, CreateTaskNodeData,
        # Integration
        WebhookNodeData, AIAgentNodeData,
    ],
    Field(discriminator="type")
]


# =============================================================================
# GRAPH MODELS
# =============================================================================

class WorkflowNode(BaseModel):
    """A typed node. Position is display-only and ignored by the engine."""
    id: str = Field(min_length=1)
    type: str
    data: NodeData
    position: Optional[Dict[str, float]] = None

    @model_validator(mode="before")
    @classmethod
    def inject_discriminator(cls, values: Any) -> Any:
        if isinstance(values, dict):
            data = dict(values.get("data") or {})
            data["type"] = values.get("type")
            values = {**values, "data": data}
        return values

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.model_dump(by_alias=True, exclude_none=True)
        data.pop("type", None)
        d = {"id": self.id, "type": self.type, "data": data}
        if self.position is not None:
            d["position"] = self.position
        return d


class WorkflowEdge(BaseModel):
    """Directed edge. A missing condition means the edge is always taken."""
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    condition: Optional[Union[str, Dict[str, Any]]] = None

    model_config = {"populate_by_name": True}

    @field_validator("condition")
    @classmethod
    def blank_is_unconditional(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        if isinstance(v, dict) and not v:
            return None
        return v

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkflowTrigger(BaseModel):
    """Trigger descriptor: event type plus a config predicate over the payload."""
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def check_type(cls, v: str) -> str:
        if v not in WORKFLOW_TRIGGER_TYPES:
            raise ValueError(f"unknown trigger type '{v}'")
        return v


class WorkflowGraph(BaseModel):
    """Validated graph snapshot an execution runs against."""
    trigger: WorkflowTrigger
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge] = Field(default_factory=list)

    _by_id: Dict[str, WorkflowNode] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._by_id = {n.id: n for n in self.nodes}

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        return self._by_id.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._by_id

    def trigger_node(self) -> Optional[WorkflowNode]:
        return next((n for n in self.nodes if n.type == "trigger"), None)

    def outgoing(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger.model_dump(),
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowGraph":
        return cls.model_validate(data)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

# Created once at module level
_node_data_adapter = TypeAdapter(NodeData)


def validate_node_data(node_type: str, data: Dict[str, Any]) -> BaseNodeData:
    """Validate one node's data against its variant.

    Raises:
        ValidationError: unknown node type or invalid fields
    """
    return _node_data_adapter.validate_python({**(data or {}), "type": node_type})
