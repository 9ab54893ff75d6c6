"""Messaging node handlers - Send Message, Send Email.

Both render their body against the execution scope, consult the
reputation gate and hand the message to the dispatcher. Delivery itself
happens outside the engine.
"""

from core.logging import get_logger
from models.nodes import WorkflowNode
from services.collaborators import MessageDispatcher, collaborator_call
from services.execution.models import NodeContext, StepResult
from services.handlers.common import record_dispatch, require_lead, throttle
from services.parameter_resolver import resolver
from services.reputation import ReputationService

logger = get_logger(__name__)


async def handle_send_message(
    node: WorkflowNode,
    ctx: NodeContext,
    dispatcher: MessageDispatcher,
    gate: ReputationService,
) -> StepResult:
    """Enqueue a templated message on the node's channel.

    Args:
        node: send_message node (channel, content, templateId)
        ctx: Node context
        dispatcher: Message dispatcher collaborator
        gate: Reputation gate

    Returns:
        Continue with the rendered message, or a deferral when throttled
    """
    require_lead(node, ctx)
    channel = node.data.channel

    deferred = await throttle(gate, node, ctx, channel)
    if deferred:
        return deferred

    content = resolver.render(node.data.content, ctx.scope)
    async with collaborator_call("message_dispatcher"):
        await dispatcher.enqueue_send(ctx.tenant_id, ctx.lead_id, channel, content,
                                      template_id=node.data.template_id)
    await record_dispatch(gate, ctx, channel)

    logger.info("Message enqueued by workflow", execution_id=ctx.execution_id,
                node_id=node.id, channel=channel)
    return StepResult.proceed(output={
        "channel": channel,
        "content": content,
        "template_id": node.data.template_id,
    })


async def handle_send_email(
    node: WorkflowNode,
    ctx: NodeContext,
    dispatcher: MessageDispatcher,
    gate: ReputationService,
) -> StepResult:
    """Enqueue an email with rendered subject and body."""
    require_lead(node, ctx)
    channel = "email"

    deferred = await throttle(gate, node, ctx, channel)
    if deferred:
        return deferred

    subject = resolver.render(node.data.subject, ctx.scope)
    content = resolver.render(node.data.content, ctx.scope)
    async with collaborator_call("message_dispatcher"):
        await dispatcher.enqueue_send(ctx.tenant_id, ctx.lead_id, channel, content,
                                      template_id=node.data.template_id, subject=subject)
    await record_dispatch(gate, ctx, channel)

    return StepResult.proceed(output={"channel": channel, "subject": subject, "content": content})
