"""Execution engine state models.

All models are JSON-serializable so an execution can be persisted as a
single row and reloaded by any worker process.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

from models.nodes import WorkflowGraph


class ExecutionStatus(str, Enum):
    """Execution states.

    State transitions:
        RUNNING -> SUSPENDED -> RUNNING (resume) -> COMPLETED
                                                 -> FAILED
        RUNNING | SUSPENDED -> CANCELLED (external only)
    """
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({
    ExecutionStatus.RUNNING,
    ExecutionStatus.SUSPENDED,
})


class NodeOutcome(str, Enum):
    """Outcome recorded in node_results for one node invocation."""
    SUCCESS = "success"        # Continue
    SUSPENDED = "suspended"    # Suspend (delay / wait_for_reply)
    DEFERRED = "deferred"      # Reputation gate said not now
    FAILED = "failed"          # Fail


class WaitKind(str, Enum):
    DELAY = "delay"
    CONDITION_POLL = "condition_poll"
    REPLY = "reply"
    EXTERNAL_EVENT = "external_event"
    THROTTLE = "throttle"


# Waits whose node runs again on resume instead of handing over to successors
RERUN_WAIT_KINDS = frozenset({WaitKind.THROTTLE, WaitKind.CONDITION_POLL})

# Waits satisfied by an inbound event; their timer, if any, is a timeout
EVENT_WAIT_KINDS = frozenset({WaitKind.REPLY, WaitKind.EXTERNAL_EVENT})


class ResumeOutcome(str, Enum):
    """What happened to a resume signal."""
    RESUMED = "resumed"
    DUPLICATE = "duplicate"    # WaitState already resumed
    BUSY = "busy"              # Another worker holds the execution
    NOT_READY = "not_ready"    # Timer fired before resume_at
    NOT_FOUND = "not_found"    # No such execution or no matching wait
    TERMINAL = "terminal"      # Execution already finished


@dataclass
class NodeResult:
    """One append-only entry in an execution's history."""
    node_id: str
    node_type: str
    outcome: NodeOutcome
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    executed_at: float = field(default_factory=time.time)
    pass_number: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "outcome": self.outcome.value,
            "output": self.output,
            "error": self.error,
            "executed_at": self.executed_at,
            "pass_number": self.pass_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeResult":
        return cls(
            node_id=data["node_id"],
            node_type=data["node_type"],
            outcome=NodeOutcome(data["outcome"]),
            output=data.get("output") or {},
            error=data.get("error"),
            executed_at=data.get("executed_at", time.time()),
            pass_number=data.get("pass_number", 1),
        )


@dataclass
class WaitState:
    """Durable record of a suspended node.

    A delay, throttle or condition-poll wait carries resume_at. A reply or
    external-event wait carries timeout_at when it can time out; a reply
    wait also carries the optional channel filter.
    Once resumed (or discarded because the execution ended) it is never
    reused; a later suspension of the same node creates a new WaitState.
    """
    node_id: str
    kind: WaitKind
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    resume_at: Optional[float] = None
    timeout_at: Optional[float] = None
    channel: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    resumed: bool = False
    resumed_at: Optional[float] = None
    discarded: bool = False

    @property
    def pending(self) -> bool:
        return not self.resumed and not self.discarded

    @property
    def fire_at(self) -> Optional[float]:
        """When a timer should fire for this wait, if ever."""
        if self.kind in EVENT_WAIT_KINDS:
            return self.timeout_at
        return self.resume_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "kind": self.kind.value,
            "resume_at": self.resume_at,
            "timeout_at": self.timeout_at,
            "channel": self.channel,
            "created_at": self.created_at,
            "resumed": self.resumed,
            "resumed_at": self.resumed_at,
            "discarded": self.discarded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WaitState":
        return cls(
            id=data["id"],
            node_id=data["node_id"],
            kind=WaitKind(data["kind"]),
            resume_at=data.get("resume_at"),
            timeout_at=data.get("timeout_at"),
            channel=data.get("channel"),
            created_at=data.get("created_at", time.time()),
            resumed=data.get("resumed", False),
            resumed_at=data.get("resumed_at"),
            discarded=data.get("discarded", False),
        )


@dataclass
class Execution:
    """One run of a workflow against a triggering event, optionally scoped to a lead.

    The graph is a snapshot taken at start; later edits to the workflow do
    not affect a run already in flight.
    """
    id: str
    workflow_id: str
    tenant_id: str
    graph: WorkflowGraph
    lead_id: Optional[str] = None
    workflow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.RUNNING
    context: Dict[str, Any] = field(default_factory=dict)
    node_results: List[NodeResult] = field(default_factory=list)
    frontier: List[str] = field(default_factory=list)
    wait_states: List[WaitState] = field(default_factory=list)
    error: Optional[str] = None
    pass_count: int = 0
    run_once_key: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, workflow_id: str, tenant_id: str, graph: WorkflowGraph,
               lead_id: Optional[str] = None, version: int = 1,
               trigger_data: Optional[Dict[str, Any]] = None,
               run_once: bool = False, now: Optional[float] = None) -> "Execution":
        """Factory for a fresh execution seeded from the trigger payload."""
        now = now if now is not None else time.time()
        trigger = graph.trigger_node()
        return cls(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            graph=graph,
            lead_id=lead_id,
            workflow_version=version,
            context={**dict(trigger_data or {}), "trigger": dict(trigger_data or {})},
            frontier=[trigger.id] if trigger else [],
            run_once_key=run_once_key(workflow_id, lead_id) if run_once else None,
            started_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def pending_waits(self) -> List[WaitState]:
        return [w for w in self.wait_states if w.pending]

    def find_wait(self, node_id: str, wait_id: Optional[str] = None) -> Optional[WaitState]:
        """Latest WaitState for a node (or the exact one when wait_id is given)."""
        for wait in reversed(self.wait_states):
            if wait.node_id != node_id:
                continue
            if wait_id is None or wait.id == wait_id:
                return wait
        return None

    def discard_waits(self) -> List[WaitState]:
        """Drop every pending wait (execution reached a terminal state)."""
        dropped = self.pending_waits()
        for wait in dropped:
            wait.discarded = True
        return dropped

    def to_dict(self, include_graph: bool = True) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "tenant_id": self.tenant_id,
            "lead_id": self.lead_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "context": self.context,
            "node_results": [r.to_dict() for r in self.node_results],
            "frontier": list(self.frontier),
            "wait_states": [w.to_dict() for w in self.wait_states],
            "error": self.error,
            "pass_count": self.pass_count,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }
        if include_graph:
            d["graph"] = self.graph.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            tenant_id=data["tenant_id"],
            graph=WorkflowGraph.from_dict(data["graph"]),
            lead_id=data.get("lead_id"),
            workflow_version=data.get("workflow_version", 1),
            status=ExecutionStatus(data["status"]),
            context=data.get("context") or {},
            node_results=[NodeResult.from_dict(r) for r in data.get("node_results") or []],
            frontier=list(data.get("frontier") or []),
            wait_states=[WaitState.from_dict(w) for w in data.get("wait_states") or []],
            error=data.get("error"),
            pass_count=data.get("pass_count", 0),
            run_once_key=data.get("run_once_key"),
            started_at=data.get("started_at", time.time()),
            completed_at=data.get("completed_at"),
            updated_at=data.get("updated_at", time.time()),
        )


def run_once_key(workflow_id: str, lead_id: Optional[str]) -> Optional[str]:
    """Uniqueness key enforcing one live execution per (workflow, lead)."""
    if not lead_id:
        return None
    return f"{workflow_id}:{lead_id}"


# =============================================================================
# NODE STEP RESULTS
# =============================================================================

class StepAction(str, Enum):
    CONTINUE = "continue"
    SUSPEND = "suspend"
    DEFER = "defer"            # Throttled: suspend and re-run the node later
    FAIL = "fail"
    END = "end"


@dataclass
class StepResult:
    """What a node executor decided. The scheduler applies it."""
    action: StepAction
    output: Dict[str, Any] = field(default_factory=dict)
    context_updates: Dict[str, Any] = field(default_factory=dict)
    wait: Optional[WaitState] = None
    error: Optional[str] = None
    follow_all: bool = False       # split_path: ignore edge conditions
    lead_changed: bool = False     # reload the lead snapshot before the next node

    @classmethod
    def proceed(cls, output: Optional[Dict[str, Any]] = None,
                context_updates: Optional[Dict[str, Any]] = None,
                follow_all: bool = False, lead_changed: bool = False) -> "StepResult":
        return cls(StepAction.CONTINUE, output or {}, context_updates or {},
                   follow_all=follow_all, lead_changed=lead_changed)

    @classmethod
    def suspend(cls, wait: WaitState, output: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(StepAction.SUSPEND, output or {}, wait=wait)

    @classmethod
    def defer(cls, wait: WaitState, output: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(StepAction.DEFER, output or {}, wait=wait)

    @classmethod
    def fail(cls, error: str) -> "StepResult":
        return cls(StepAction.FAIL, error=error)

    @classmethod
    def finish(cls, output: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(StepAction.END, output or {})


_STEP_OUTCOMES = {
    StepAction.CONTINUE: NodeOutcome.SUCCESS,
    StepAction.END: NodeOutcome.SUCCESS,
    StepAction.SUSPEND: NodeOutcome.SUSPENDED,
    StepAction.DEFER: NodeOutcome.DEFERRED,
    StepAction.FAIL: NodeOutcome.FAILED,
}


def outcome_for(action: StepAction) -> NodeOutcome:
    return _STEP_OUTCOMES[action]


@dataclass
class NodeContext:
    """Read-only view handed to a node executor."""
    execution_id: str
    workflow_id: str
    tenant_id: str
    lead_id: Optional[str]
    context: Dict[str, Any]
    lead: Optional[Dict[str, Any]]
    now: float

    @property
    def scope(self) -> Dict[str, Any]:
        """Variables visible to conditions and templates."""
        return build_scope(self.context, self.lead)


def build_scope(context: Dict[str, Any], lead: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    scope = dict(context)
    if lead is not None:
        scope["lead"] = lead
    return scope
