"""Helpers shared by node handlers."""

from typing import Any, Dict, Optional

from core.logging import get_logger
from models.nodes import WorkflowNode
from services.collaborators import collaborator_call
from services.execution.errors import NodeExecutionError
from services.execution.models import NodeContext, StepResult, WaitKind, WaitState
from services.reputation import ReputationService

logger = get_logger(__name__)


def require_lead(node: WorkflowNode, ctx: NodeContext) -> Dict[str, Any]:
    """Lead snapshot for lead-scoped nodes.

    Raises:
        NodeExecutionError: execution has no lead or the lead no longer exists
    """
    if not ctx.lead_id:
        raise NodeExecutionError(f"{node.type} requires a lead-scoped execution", node.id)
    if ctx.lead is None:
        raise NodeExecutionError(f"lead '{ctx.lead_id}' not found", node.id)
    return ctx.lead


async def throttle(gate: ReputationService, node: WorkflowNode, ctx: NodeContext,
                   channel: str) -> Optional[StepResult]:
    """Consult the reputation gate. Returns a deferral when the send must wait."""
    async with collaborator_call("reputation"):
        decision = await gate.can_send(ctx.tenant_id, channel)
    if decision.allowed:
        return None

    retry_after = decision.retry_after_seconds or 60.0
    wait = WaitState(node_id=node.id, kind=WaitKind.THROTTLE,
                     resume_at=ctx.now + retry_after, created_at=ctx.now)
    logger.info("Send deferred by reputation gate", execution_id=ctx.execution_id,
                node_id=node.id, channel=channel, retry_after=retry_after)
    return StepResult.defer(wait, output={"channel": channel, "retry_after": retry_after})


async def record_dispatch(gate: ReputationService, ctx: NodeContext, channel: str) -> None:
    async with collaborator_call("reputation"):
        await gate.record_dispatch(ctx.tenant_id, channel)
