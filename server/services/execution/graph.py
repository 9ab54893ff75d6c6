"""Structural validation of workflow graphs.

Runs when a workflow is activated. Collects every problem instead of
stopping at the first so the editor can show them all at once.
"""

from collections import Counter, deque
from typing import Dict, Any, List, Optional, Set

from pydantic import ValidationError

from constants import ALL_NODE_TYPES, TRIGGER_NODE_TYPE
from core.logging import get_logger
from models.nodes import ConditionNodeData, WorkflowGraph, WorkflowTrigger, validate_node_data
from services.execution.conditions import validate_condition
from services.execution.errors import WorkflowDefinitionError

logger = get_logger(__name__)


def _format_validation_error(prefix: str, error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()) if p not in ("type",))
        where = f"{prefix}.{loc}" if loc else prefix
        messages.append(f"{where}: {item.get('msg')}")
    return messages


def collect_definition_errors(trigger: Optional[Dict[str, Any]],
                              nodes: List[Dict[str, Any]],
                              edges: List[Dict[str, Any]]) -> List[str]:
    """Return every structural problem in a raw workflow definition."""
    errors: List[str] = []

    # Trigger descriptor
    if not trigger or not trigger.get("type"):
        errors.append("workflow has no trigger descriptor")
    else:
        try:
            WorkflowTrigger.model_validate(trigger)
        except ValidationError as e:
            errors.extend(_format_validation_error("trigger", e))

    if not nodes:
        errors.append("workflow has no nodes")
        return errors

    # Nodes
    ids = [n.get("id") for n in nodes]
    for node_id, count in Counter(ids).items():
        if not node_id:
            errors.append("node without id")
        elif count > 1:
            errors.append(f"duplicate node id '{node_id}'")

    trigger_nodes = [n for n in nodes if n.get("type") == TRIGGER_NODE_TYPE]
    if not trigger_nodes:
        errors.append("missing trigger node")
    elif len(trigger_nodes) > 1:
        errors.append("workflow has more than one trigger node")

    for node in nodes:
        node_id = node.get("id") or "?"
        node_type = node.get("type")
        if node_type not in ALL_NODE_TYPES:
            errors.append(f"node '{node_id}' has unknown type '{node_type}'")
            continue
        try:
            data = validate_node_data(node_type, node.get("data") or {})
        except ValidationError as e:
            errors.extend(_format_validation_error(f"node '{node_id}'", e))
            continue
        if isinstance(data, ConditionNodeData) and (data.expression or "").strip():
            problem = validate_condition(data.expression)
            if problem:
                errors.append(f"node '{node_id}': {problem}")

    # Edges
    known: Set[str] = {i for i in ids if i}
    for index, edge in enumerate(edges or []):
        label = edge.get("id") or f"#{index}"
        source, target = edge.get("source"), edge.get("target")
        if source not in known:
            errors.append(f"edge '{label}' has dangling source '{source}'")
        if target not in known:
            errors.append(f"edge '{label}' has dangling target '{target}'")
        condition = edge.get("condition")
        if isinstance(condition, str) and not condition.strip():
            condition = None
        problem = validate_condition(condition or None)
        if problem:
            errors.append(f"edge '{label}': {problem}")

    return errors


def validate_graph(trigger: Optional[Dict[str, Any]],
                   nodes: List[Dict[str, Any]],
                   edges: List[Dict[str, Any]]) -> WorkflowGraph:
    """Validate a raw definition and build the typed graph.

    Raises:
        WorkflowDefinitionError: with every problem found
    """
    errors = collect_definition_errors(trigger, nodes, edges)
    if errors:
        raise WorkflowDefinitionError(errors)

    try:
        graph = WorkflowGraph.model_validate({
            "trigger": trigger,
            "nodes": nodes,
            "edges": edges or [],
        })
    except ValidationError as e:
        raise WorkflowDefinitionError(_format_validation_error("workflow", e))

    unreachable = {n.id for n in graph.nodes} - reachable_nodes(graph)
    if unreachable:
        logger.warning("Workflow has unreachable nodes", nodes=sorted(unreachable))
    return graph


def reachable_nodes(graph: WorkflowGraph) -> Set[str]:
    """Node ids reachable from the trigger node, ignoring conditions."""
    start = graph.trigger_node()
    if start is None:
        return set()
    seen = {start.id}
    queue = deque([start.id])
    while queue:
        node_id = queue.popleft()
        for edge in graph.outgoing(node_id):
            if edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen
