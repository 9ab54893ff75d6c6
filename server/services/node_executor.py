"""Node Executor - Single node execution with handler dispatch.

Uses a registry pattern for clean handler dispatch without if-else chains.
Handlers never touch execution state; they return a StepResult that the
workflow executor applies.
"""

import asyncio
from functools import partial
from typing import Callable, Dict

from core.logging import get_logger
from models.nodes import WorkflowNode
from services.collaborators import AIAgent, LeadStore, MessageDispatcher, TaskSink, WebhookCaller
from services.execution.errors import CollaboratorError, NodeExecutionError
from services.execution.models import NodeContext, StepResult
from services.handlers import (
    handle_trigger, handle_delay, handle_wait_for_reply, handle_condition,
    handle_split_path, handle_end,
    handle_send_message, handle_send_email,
    handle_add_tag, handle_remove_tag, handle_update_lead, handle_create_task,
    handle_webhook, handle_ai_agent,
)
from services.reputation import ReputationService

logger = get_logger(__name__)


class NodeExecutor:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(
        self,
        lead_store: LeadStore,
        dispatcher: MessageDispatcher,
        task_sink: TaskSink,
        webhook_caller: WebhookCaller,
        ai_agent: AIAgent,
        gate: ReputationService,
    ):
        self.lead_store = lead_store
        self.dispatcher = dispatcher
        self.task_sink = task_sink
        self.webhook_caller = webhook_caller
        self.ai_agent = ai_agent
        self.gate = gate
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Callable]:
        """Build handler registry with collaborators bound via partial."""
        return {
            # Workflow control
            'trigger': handle_trigger,
            'delay': handle_delay,
            'wait_for_reply': handle_wait_for_reply,
            'condition': handle_condition,
            'split_path': handle_split_path,
            'end': handle_end,
            # Messaging
            'send_message': partial(handle_send_message, dispatcher=self.dispatcher, gate=self.gate),
            'send_email': partial(handle_send_email, dispatcher=self.dispatcher, gate=self.gate),
            # Lead
            'add_tag': partial(handle_add_tag, lead_store=self.lead_store),
            'remove_tag': partial(handle_remove_tag, lead_store=self.lead_store),
            'update_lead': partial(handle_update_lead, lead_store=self.lead_store),
            'create_task': partial(handle_create_task, task_sink=self.task_sink),
            # Integration
            'webhook': partial(handle_webhook, webhook_caller=self.webhook_caller, gate=self.gate),
            'ai_agent': partial(handle_ai_agent, ai_agent=self.ai_agent,
                                dispatcher=self.dispatcher, gate=self.gate),
        }

    @property
    def node_types(self):
        return frozenset(self._handlers)

    async def execute(self, node: WorkflowNode, ctx: NodeContext) -> StepResult:
        """Execute a single workflow node.

        Node-level failures become StepResult.fail so the executor can mark
        the execution failed. CollaboratorError propagates: an unavailable
        dependency is a transport problem, not a bad node.
        """
        handler = self._handlers.get(node.type)
        if handler is None:
            return StepResult.fail(f"Unknown node type: {node.type}")

        try:
            return await handler(node, ctx)
        except (CollaboratorError, asyncio.CancelledError):
            raise
        except NodeExecutionError as e:
            logger.warning("Node failed", execution_id=ctx.execution_id,
                           node_id=node.id, node_type=node.type, error=str(e))
            return StepResult.fail(str(e))
        except Exception as e:
            logger.error("Node execution error", execution_id=ctx.execution_id,
                         node_id=node.id, node_type=node.type, error=str(e))
            return StepResult.fail(f"{type(e).__name__}: {e}")
