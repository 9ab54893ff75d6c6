"""Lead node handlers - Add Tag, Remove Tag, Update Lead, Create Task."""

from datetime import datetime, timezone
from typing import Any, Dict

from core.logging import get_logger
from models.nodes import WorkflowNode
from services.collaborators import LeadStore, TaskSink, collaborator_call
from services.execution.models import NodeContext, StepResult
from services.handlers.common import require_lead
from services.parameter_resolver import resolver

logger = get_logger(__name__)


async def handle_add_tag(node: WorkflowNode, ctx: NodeContext, lead_store: LeadStore) -> StepResult:
    require_lead(node, ctx)
    tag = resolver.render(node.data.tag, ctx.scope)
    async with collaborator_call("lead_store"):
        changed = await lead_store.add_tag(ctx.tenant_id, ctx.lead_id, tag)
    return StepResult.proceed(output={"tag": tag, "changed": changed}, lead_changed=changed)


async def handle_remove_tag(node: WorkflowNode, ctx: NodeContext, lead_store: LeadStore) -> StepResult:
    require_lead(node, ctx)
    tag = resolver.render(node.data.tag, ctx.scope)
    async with collaborator_call("lead_store"):
        changed = await lead_store.remove_tag(ctx.tenant_id, ctx.lead_id, tag)
    return StepResult.proceed(output={"tag": tag, "changed": changed}, lead_changed=changed)


async def handle_update_lead(node: WorkflowNode, ctx: NodeContext, lead_store: LeadStore) -> StepResult:
    """Apply a partial update. Values may be templates over the current scope."""
    require_lead(node, ctx)
    updates = resolver.resolve(node.data.updates, ctx.scope)
    async with collaborator_call("lead_store"):
        await lead_store.update_lead(ctx.tenant_id, ctx.lead_id, updates)
    logger.info("Lead updated by workflow", execution_id=ctx.execution_id,
                lead_id=ctx.lead_id, fields=sorted(updates))
    return StepResult.proceed(output={"updated": sorted(updates)}, lead_changed=True)


async def handle_create_task(node: WorkflowNode, ctx: NodeContext, task_sink: TaskSink) -> StepResult:
    """Create a follow-up task for a human agent.

    Tasks may be created from lead-less executions (e.g. scheduled workflows).
    """
    data = node.data
    task: Dict[str, Any] = {
        "title": resolver.render(data.title, ctx.scope),
        "description": resolver.render(data.description, ctx.scope),
        "assigned_to": data.assigned_to,
        "priority": data.priority,
        "workflow_id": ctx.workflow_id,
        "execution_id": ctx.execution_id,
    }
    if data.due_in_hours:
        due = datetime.fromtimestamp(ctx.now + data.due_in_hours * 3600, tz=timezone.utc)
        task["due_at"] = due.isoformat()

    async with collaborator_call("task_sink"):
        await task_sink.create_task(ctx.tenant_id, ctx.lead_id, task)
    return StepResult.proceed(output={"task": task})
