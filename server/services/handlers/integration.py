"""Integration node handlers - Webhook, AI Agent."""

from typing import Any, Dict

from constants import WEBHOOK_CHANNEL
from core.logging import get_logger
from models.nodes import WorkflowNode
from services.collaborators import AIAgent, MessageDispatcher, WebhookCaller, collaborator_call
from services.execution.models import NodeContext, StepResult
from services.handlers.common import record_dispatch, require_lead, throttle
from services.parameter_resolver import resolver
from services.reputation import ReputationService

logger = get_logger(__name__)

DEFAULT_AI_CHANNEL = "whatsapp"


async def handle_webhook(
    node: WorkflowNode,
    ctx: NodeContext,
    webhook_caller: WebhookCaller,
    gate: ReputationService,
) -> StepResult:
    """POST the execution context to an external URL.

    Fire-and-forget: the node succeeds once the call is handed off, whatever
    the remote end answers.
    """
    deferred = await throttle(gate, node, ctx, WEBHOOK_CHANNEL)
    if deferred:
        return deferred

    url = resolver.render(node.data.url, ctx.scope)
    payload: Dict[str, Any] = {
        "execution_id": ctx.execution_id,
        "workflow_id": ctx.workflow_id,
        "tenant_id": ctx.tenant_id,
        "lead_id": ctx.lead_id,
        "node_id": node.id,
        "context": ctx.context,
    }
    if node.data.include_lead and ctx.lead is not None:
        payload["lead"] = ctx.lead

    webhook_caller.post_webhook(url, payload, resolver.resolve(node.data.headers, ctx.scope))
    await record_dispatch(gate, ctx, WEBHOOK_CHANNEL)

    logger.info("Webhook dispatched", execution_id=ctx.execution_id, node_id=node.id, url=url)
    return StepResult.proceed(output={"url": url, "dispatched": True})


async def handle_ai_agent(
    node: WorkflowNode,
    ctx: NodeContext,
    ai_agent: AIAgent,
    dispatcher: MessageDispatcher,
    gate: ReputationService,
) -> StepResult:
    """Ask the AI collaborator for a response and store it at context[outputKey].

    With sendReply the response's "message" is also sent to the lead, so the
    gate is consulted before the (possibly expensive) AI call.
    """
    data = node.data
    channel = data.channel or DEFAULT_AI_CHANNEL

    if data.send_reply:
        require_lead(node, ctx)
        deferred = await throttle(gate, node, ctx, channel)
        if deferred:
            return deferred

    instructions = resolver.render(data.instructions, ctx.scope)
    async with collaborator_call("ai_agent"):
        response = await ai_agent.respond(ctx.tenant_id, ctx.lead_id, instructions, ctx.scope)
    response = dict(response or {})

    message = response.get("message")
    if data.send_reply and message:
        async with collaborator_call("message_dispatcher"):
            await dispatcher.enqueue_send(ctx.tenant_id, ctx.lead_id, channel, str(message))
        await record_dispatch(gate, ctx, channel)
        response["sent"] = True

    return StepResult.proceed(output=response, context_updates={data.output_key: response})
