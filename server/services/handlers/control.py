"""Control node handlers - Trigger, Delay, Wait for Reply, Condition, Split, End."""

from core.logging import get_logger
from models.nodes import WorkflowNode
from services.execution.conditions import evaluate_expression
from services.execution.models import NodeContext, StepResult, WaitKind, WaitState

logger = get_logger(__name__)


async def handle_trigger(node: WorkflowNode, ctx: NodeContext) -> StepResult:
    """Entry node. The trigger payload is already seeded into the context."""
    trigger = ctx.context.get("trigger") or {}
    return StepResult.proceed(output={"fields": sorted(trigger)})


async def handle_delay(node: WorkflowNode, ctx: NodeContext) -> StepResult:
    """Suspend this branch until now + duration."""
    seconds = node.data.seconds
    wait = WaitState(node_id=node.id, kind=WaitKind.DELAY,
                     resume_at=ctx.now + seconds, created_at=ctx.now)
    logger.debug("Delay scheduled", execution_id=ctx.execution_id,
                 node_id=node.id, seconds=seconds)
    return StepResult.suspend(wait, output={"seconds": seconds, "resume_at": wait.resume_at})


async def handle_wait_for_reply(node: WorkflowNode, ctx: NodeContext) -> StepResult:
    """Suspend this branch until the lead replies, or until the timeout."""
    timeout = node.data.timeout_seconds
    wait = WaitState(
        node_id=node.id,
        kind=WaitKind.REPLY,
        channel=node.data.channel,
        timeout_at=ctx.now + timeout if timeout else None,
        created_at=ctx.now,
    )
    output = {"channel": node.data.channel}
    if wait.timeout_at:
        output["timeout_at"] = wait.timeout_at
    return StepResult.suspend(wait, output=output)


async def handle_condition(node: WorkflowNode, ctx: NodeContext) -> StepResult:
    """Evaluate the optional expression and expose it as conditions.<node_id>.

    Branching itself happens on the outgoing edges.
    """
    expression = node.data.expression
    if not expression:
        return StepResult.proceed()

    result = evaluate_expression(expression, ctx.scope)
    conditions = dict(ctx.context.get("conditions") or {})
    conditions[node.id] = result
    return StepResult.proceed(output={"result": result},
                              context_updates={"conditions": conditions})


async def handle_split_path(node: WorkflowNode, ctx: NodeContext) -> StepResult:
    return StepResult.proceed(follow_all=True)


async def handle_end(node: WorkflowNode, ctx: NodeContext) -> StepResult:
    return StepResult.finish(output={"ended": True})
