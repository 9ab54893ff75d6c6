"""Execution engine package.

Durable workflow execution with:
- Breadth-first traversal with per-pass cycle protection
- Branch-level suspension (delay, wait_for_reply, reputation throttle,
  condition polls and external events)
- Exactly-once resume through conditional status updates
- SQL persistence after every node for crash recovery
- Edge conditions as structured dicts or a small boolean expression language

Only the dependency-free modules are re-exported here. The engine classes
live in executor, store, recovery and timers, which import the
collaborator and handler services.
"""

from .models import (
    ExecutionStatus,
    NodeOutcome,
    WaitKind,
    ResumeOutcome,
    NodeResult,
    WaitState,
    Execution,
    StepAction,
    StepResult,
    NodeContext,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    EVENT_WAIT_KINDS,
    RERUN_WAIT_KINDS,
    run_once_key,
)
from .errors import (
    WorkflowError,
    WorkflowDefinitionError,
    WorkflowNotFoundError,
    ExecutionNotFoundError,
    NodeExecutionError,
    CollaboratorError,
    ConditionSyntaxError,
)
from .graph import validate_graph, collect_definition_errors, reachable_nodes
from .conditions import (
    evaluate_condition,
    evaluate_expression,
    evaluate_edge_condition,
    validate_condition,
    decide_next_edges,
    get_nested_value,
    OPERATORS,
)

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeOutcome",
    "WaitKind",
    "ResumeOutcome",
    "NodeResult",
    "WaitState",
    "Execution",
    "StepAction",
    "StepResult",
    "NodeContext",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "EVENT_WAIT_KINDS",
    "RERUN_WAIT_KINDS",
    "run_once_key",
    # Errors
    "WorkflowError",
    "WorkflowDefinitionError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    "NodeExecutionError",
    "CollaboratorError",
    "ConditionSyntaxError",
    # Graph
    "validate_graph",
    "collect_definition_errors",
    "reachable_nodes",
    # Conditions
    "evaluate_condition",
    "evaluate_expression",
    "evaluate_edge_condition",
    "validate_condition",
    "decide_next_edges",
    "get_nested_value",
    "OPERATORS",
]
