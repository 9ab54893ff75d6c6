"""Workflow Service - Facade for workflow definitions, triggers and executions.

This is a thin facade that delegates to specialized modules:
- TriggerMatcher: event -> workflows to start / executions to resume
- WorkflowExecutor: traversal, suspend and resume of one execution
- ExecutionStore: durable execution state and the query surface
- scheduler: cron ticks of schedule-triggered workflows

Worker invocations run as background asyncio tasks bounded by a semaphore.
"""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.config import Settings
from core.database import Database
from core.logging import get_logger
from models.database import WorkflowRecord
from models.nodes import WorkflowGraph
from services import scheduler
from services.execution.errors import (
    CollaboratorError,
    ExecutionNotFoundError,
    WorkflowDefinitionError,
    WorkflowNotFoundError,
)
from services.execution.executor import WorkflowExecutor
from services.execution.graph import validate_graph
from services.execution.models import (
    ACTIVE_STATUSES,
    Execution,
    ExecutionStatus,
    ResumeOutcome,
)
from services.execution.store import ExecutionStore
from services.triggers import TriggerMatch, TriggerMatcher

logger = get_logger(__name__)

SCHEDULE_TRIGGER = "schedule"
# A reply racing a running pass is retried this many times before giving up
REPLY_RESUME_ATTEMPTS = 5

DEFINITION_FIELDS = ("trigger", "nodes", "edges")


def schedule_job_id(workflow_id: str) -> str:
    return f"workflow-schedule:{workflow_id}"


class WorkflowService:
    """Workflow lifecycle, event ingestion and execution entry points."""

    def __init__(
        self,
        database: Database,
        store: ExecutionStore,
        executor: WorkflowExecutor,
        matcher: TriggerMatcher,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.database = database
        self.store = store
        self.executor = executor
        self.matcher = matcher
        self.settings = settings
        self.clock = clock
        self._semaphore = asyncio.Semaphore(settings.workflow_concurrency)
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    async def create_workflow(
        self,
        tenant_id: str,
        name: str,
        trigger: Dict[str, Any],
        nodes: List[Dict[str, Any]],
        edges: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
        run_once_per_lead: bool = True,
        workflow_id: Optional[str] = None,
    ) -> WorkflowRecord:
        """Store a draft workflow. Drafts are not validated until activation."""
        record = WorkflowRecord(
            id=workflow_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            description=description,
            trigger_type=(trigger or {}).get("type", ""),
            trigger_config=(trigger or {}).get("config") or {},
            nodes=nodes or [],
            edges=edges or [],
            run_once_per_lead=run_once_per_lead,
        )
        record = await self.database.create_workflow(record)
        logger.info("Workflow created", workflow_id=record.id, tenant_id=tenant_id)
        return record

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        record = await self.database.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        return record

    async def list_workflows(self, tenant_id: Optional[str] = None) -> List[WorkflowRecord]:
        return await self.database.list_workflows(tenant_id=tenant_id)

    async def update_workflow(self, workflow_id: str, **changes: Any) -> WorkflowRecord:
        """Edit a workflow. Definition edits bump the version.

        In-flight executions keep the graph snapshot they started with. An
        active workflow must stay valid: an invalid edit is rejected.
        """
        record = await self.get_workflow(workflow_id)
        fields: Dict[str, Any] = {}

        for key in ("name", "description", "run_once_per_lead"):
            if key in changes:
                fields[key] = changes[key]
        if "trigger" in changes:
            fields["trigger_type"] = (changes["trigger"] or {}).get("type", "")
            fields["trigger_config"] = (changes["trigger"] or {}).get("config") or {}
        for key in ("nodes", "edges"):
            if key in changes:
                fields[key] = changes[key] or []

        definition_changed = any(key in changes for key in DEFINITION_FIELDS)
        if definition_changed:
            fields["version"] = record.version + 1
            if record.is_active:
                candidate = record.definition()
                candidate["trigger"] = {
                    "type": fields.get("trigger_type", record.trigger_type),
                    "config": fields.get("trigger_config", record.trigger_config),
                }
                candidate["nodes"] = fields.get("nodes", record.nodes)
                candidate["edges"] = fields.get("edges", record.edges)
                self._check_definition(candidate)

        updated = await self.database.update_workflow(workflow_id, **fields)
        if updated.is_active and definition_changed:
            self._sync_schedule(updated)
        logger.info("Workflow updated", workflow_id=workflow_id, version=updated.version)
        return updated

    async def activate(self, workflow_id: str) -> WorkflowRecord:
        """Validate the definition and start reacting to its trigger.

        Raises:
            WorkflowDefinitionError: the graph is malformed; workflow stays inactive
        """
        record = await self.get_workflow(workflow_id)
        try:
            self._check_definition(record.definition())
        except WorkflowDefinitionError as e:
            logger.warning("Workflow activation rejected", workflow_id=workflow_id, errors=e.errors)
            raise

        record = await self.database.update_workflow(workflow_id, is_active=True, status="active")
        self._sync_schedule(record)
        logger.info("Workflow activated", workflow_id=workflow_id, trigger=record.trigger_type)
        return record

    async def deactivate(self, workflow_id: str) -> WorkflowRecord:
        """Stop reacting to new events. Running executions continue."""
        await self.get_workflow(workflow_id)
        record = await self.database.update_workflow(workflow_id, is_active=False, status="paused")
        scheduler.remove_job(schedule_job_id(workflow_id))
        logger.info("Workflow deactivated", workflow_id=workflow_id)
        return record

    async def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Delete a workflow, cancelling its live executions.

        Executions are kept for audit, so a workflow that has any is
        archived instead of removed.
        """
        await self.get_workflow(workflow_id)
        scheduler.remove_job(schedule_job_id(workflow_id))

        cancelled = 0
        for execution in await self.store.list(workflow_id=workflow_id, statuses=ACTIVE_STATUSES):
            await self.executor.cancel(execution.id, reason="workflow deleted")
            cancelled += 1

        if await self.store.list(workflow_id=workflow_id, limit=1):
            await self.database.update_workflow(workflow_id, is_active=False, status="archived")
            logger.info("Workflow archived", workflow_id=workflow_id, cancelled=cancelled)
            return {"workflow_id": workflow_id, "deleted": False, "archived": True,
                    "cancelled_executions": cancelled}

        await self.database.delete_workflow(workflow_id)
        return {"workflow_id": workflow_id, "deleted": True, "archived": False,
                "cancelled_executions": cancelled}

    async def restore_schedules(self) -> int:
        """Register cron jobs of active schedule workflows (startup)."""
        workflows = await self.database.list_workflows(trigger_type=SCHEDULE_TRIGGER, active_only=True)
        for record in workflows:
            self._sync_schedule(record)
        return len(workflows)

    def _check_definition(self, definition: Dict[str, Any]) -> WorkflowGraph:
        graph = validate_graph(definition.get("trigger"), definition.get("nodes") or [],
                               definition.get("edges") or [])
        if graph.trigger.type == SCHEDULE_TRIGGER:
            cron = graph.trigger.config.get("cron")
            if not cron:
                raise WorkflowDefinitionError(["schedule trigger requires 'cron'"])
            try:
                scheduler.build_cron_trigger(cron, graph.trigger.config.get("timezone", "UTC"))
            except (ValueError, TypeError) as e:
                raise WorkflowDefinitionError([f"invalid cron expression '{cron}': {e}"])
        return graph

    def _sync_schedule(self, record: WorkflowRecord) -> None:
        job_id = schedule_job_id(record.id)
        if record.trigger_type != SCHEDULE_TRIGGER:
            scheduler.remove_job(job_id)
            return
        config = record.trigger_config or {}
        scheduler.register_cron_job(
            job_id, config["cron"], self._schedule_tick, config.get("timezone", "UTC"),
            workflow_id=record.id, tenant_id=record.tenant_id,
        )

    async def _schedule_tick(self, workflow_id: str, tenant_id: str) -> None:
        await self.notify(SCHEDULE_TRIGGER, {
            "tenant_id": tenant_id,
            "workflow_id": workflow_id,
            "fired_at": self.clock(),
        })

    # =========================================================================
    # EVENTS AND EXECUTION ENTRY POINTS
    # =========================================================================

    async def notify(self, event_type: str, payload: Dict[str, Any]) -> List[TriggerMatch]:
        """Ingest a domain event. Matching is awaited, the runs are not.

        Returns:
            The resume and start decisions taken for this event
        """
        matches = await self.matcher.match(event_type, payload)
        for match in matches:
            if match.action == "resume":
                self._spawn(self._resume_reply(match, payload))
            else:
                workflow = await self.database.get_workflow(match.workflow_id)
                if workflow is None:
                    continue
                await self._admit_and_spawn(workflow, match.tenant_id, match.lead_id,
                                            {"event_type": event_type, **payload})
        return matches

    async def execute(self, workflow_id: str, tenant_id: str,
                      lead_id: Optional[str] = None,
                      trigger_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Start a workflow directly (manual test or API call).

        Returns after the execution is persisted; the first pass runs in
        the background.

        Raises:
            WorkflowNotFoundError: unknown workflow id
            WorkflowDefinitionError: the graph is malformed
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.tenant_id != tenant_id:
            raise WorkflowNotFoundError(workflow_id)
        return await self._admit_and_spawn(workflow, tenant_id, lead_id, trigger_data or {})

    async def _admit_and_spawn(self, workflow: WorkflowRecord, tenant_id: str,
                               lead_id: Optional[str], trigger_data: Dict[str, Any]) -> Dict[str, Any]:
        graph = self._check_definition(workflow.definition())
        execution = Execution.create(
            workflow_id=workflow.id,
            tenant_id=tenant_id,
            graph=graph,
            lead_id=lead_id,
            version=workflow.version,
            trigger_data=trigger_data,
            run_once=workflow.run_once_per_lead,
            now=self.clock(),
        )
        if not await self.executor.admit(execution):
            return {"execution_id": None, "status": "skipped"}

        self._spawn(self.executor.run(execution))
        return {"execution_id": execution.id, "status": execution.status.value}

    async def _resume_reply(self, match: TriggerMatch, payload: Dict[str, Any],
                            attempt: int = 1) -> ResumeOutcome:
        outcome = await self.executor.resume(match.execution_id, match.node_id,
                                             payload=payload, wait_id=match.wait_id)
        if outcome != ResumeOutcome.BUSY:
            return outcome
        if attempt < REPLY_RESUME_ATTEMPTS:
            # Timer resumes carry no reply payload
            self._track(self._retry_reply(match, payload, attempt + 1))
        else:
            logger.warning("Reply dropped, execution stayed busy",
                           execution_id=match.execution_id, node_id=match.node_id)
        return outcome

    async def _retry_reply(self, match: TriggerMatch, payload: Dict[str, Any], attempt: int) -> None:
        """Wait outside the concurrency limit, then retry the resume in a fresh slot."""
        await asyncio.sleep(self.settings.resume_retry_seconds)
        self._spawn(self._resume_reply(match, payload, attempt))

    async def resume(self, execution_id: str, node_id: str,
                     payload: Optional[Dict[str, Any]] = None,
                     wait_id: Optional[str] = None) -> ResumeOutcome:
        """Resume entrypoint for callers outside the timer path."""
        return await self.executor.resume(execution_id, node_id, payload=payload, wait_id=wait_id)

    async def cancel(self, execution_id: str) -> Execution:
        return await self.executor.cancel(execution_id, reason="cancelled by user")

    # =========================================================================
    # QUERY SURFACE
    # =========================================================================

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self.store.load(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(self, workflow_id: Optional[str] = None,
                              lead_id: Optional[str] = None,
                              status: Optional[str] = None,
                              limit: int = 100) -> List[Execution]:
        statuses = [ExecutionStatus(status)] if status else None
        return await self.store.list(workflow_id=workflow_id, lead_id=lead_id,
                                     statuses=statuses, limit=limit)

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        return self._track(self._guarded(coro))

    def _track(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Awaitable[Any]) -> Any:
        async with self._semaphore:
            try:
                return await coro
            except CollaboratorError as e:
                logger.warning("Execution failed on collaborator", collaborator=e.collaborator,
                               error=str(e))
            except Exception as e:
                logger.error("Background execution task failed", error=str(e), exc_info=True)
        return None

    async def drain(self) -> None:
        """Wait until every background execution task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
