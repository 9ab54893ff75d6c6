"""Workflow executor: graph traversal with durable suspend and resume.

Implements:
- Breadth-first traversal from the trigger node (or a persisted frontier)
- Per-pass cycle protection: a node runs at most once per pass
- Suspension of individual branches (delay, wait_for_reply, throttle)
- Resume with exactly-once semantics via conditional status updates
- Persistence after every node so any worker can pick the run up again
"""

import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from core.config import Settings
from core.database import Database
from core.logging import bound_execution, get_logger, log_execution_event
from services.collaborators import LeadStore, collaborator_call
from services.execution.conditions import decide_next_edges
from services.execution.errors import CollaboratorError, ExecutionNotFoundError
from services.execution.models import (
    Execution,
    ExecutionStatus,
    NodeContext,
    NodeResult,
    NodeOutcome,
    ResumeOutcome,
    StepAction,
    EVENT_WAIT_KINDS,
    RERUN_WAIT_KINDS,
    WaitKind,
    WaitState,
    build_scope,
    outcome_for,
)
from services.execution.store import ExecutionStore
from services.execution.timers import Timer
from services.node_executor import NodeExecutor

logger = get_logger(__name__)


class WorkflowExecutor:
    """Runs executions pass by pass.

    A pass starts from the execution's frontier (the trigger node for a new
    run, the resumed node's successors after a resume) and drains it
    breadth-first. Nodes that suspend leave the frontier and park a
    WaitState; the pass ends SUSPENDED while any wait is pending and
    COMPLETED otherwise.
    """

    def __init__(self, store: ExecutionStore, node_executor: NodeExecutor,
                 lead_store: LeadStore, timer: Timer, settings: Settings,
                 database: Optional[Database] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.node_executor = node_executor
        self.lead_store = lead_store
        self.timer = timer
        self.settings = settings
        self.database = database
        self.clock = clock

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def start(self, execution: Execution) -> Optional[Execution]:
        """Persist a new execution and run its first pass.

        Returns:
            The execution after the pass, or None when a run-once execution
            for the same (workflow, lead) is already live
        """
        if not await self.admit(execution):
            return None
        return await self.run(execution)

    async def admit(self, execution: Execution) -> bool:
        """Persist a new execution without running it (synchronous acceptance)."""
        if not await self.store.insert(execution):
            return False
        if self.database is not None:
            await self.database.record_workflow_run(execution.workflow_id)
        log_execution_event(logger, "Execution started", execution.id, execution.workflow_id,
                            tenant_id=execution.tenant_id, lead_id=execution.lead_id)
        return True

    async def run(self, execution: Execution) -> Execution:
        """Run the first pass of an admitted execution."""
        return await self._run_pass(execution)

    async def resume(self, execution_id: str, node_id: str,
                     payload: Optional[Dict[str, Any]] = None,
                     wait_id: Optional[str] = None,
                     timed_out: bool = False) -> ResumeOutcome:
        """Continue a suspended execution at the given node.

        Args:
            execution_id: Execution to resume
            node_id: Suspended node
            payload: Reply data (wait_for_reply) or extra context for manual resumes
            wait_id: Exact WaitState; the node's latest one when omitted
            timed_out: A reply wait's timeout fired

        Returns:
            ResumeOutcome; only RESUMED means a pass ran
        """
        execution = await self.store.load(execution_id)
        if execution is None:
            return ResumeOutcome.NOT_FOUND
        if execution.is_terminal:
            return ResumeOutcome.TERMINAL

        wait = execution.find_wait(node_id, wait_id)
        if wait is None:
            return ResumeOutcome.NOT_FOUND
        if not wait.pending:
            return ResumeOutcome.DUPLICATE

        # A timed wait never resumes early; neither does an event-wait timeout
        due_at = wait.fire_at if (wait.kind not in EVENT_WAIT_KINDS or timed_out) else None
        if due_at is not None and self.clock() < due_at:
            self.timer.schedule(execution_id, node_id, wait.id, due_at)
            return ResumeOutcome.NOT_READY

        if not await self.store.claim(execution_id):
            return await self._claim_lost(execution_id, node_id, wait.id)

        execution = await self.store.load(execution_id)
        wait = execution.find_wait(node_id, wait.id)
        if wait is None or not wait.pending:
            # Resumed and re-suspended by another worker between load and claim
            await self.store.claim(execution_id, ExecutionStatus.RUNNING, ExecutionStatus.SUSPENDED)
            return ResumeOutcome.DUPLICATE

        wait.resumed = True
        wait.resumed_at = self.clock()
        self.timer.cancel(execution_id, wait.id)
        self._apply_resume_payload(execution, wait, payload, timed_out)

        log_execution_event(logger, "Execution resumed", execution.id, execution.workflow_id,
                            node_id=node_id, wait_kind=wait.kind.value, timed_out=timed_out)
        await self._run_pass(execution, resumed=wait)
        return ResumeOutcome.RESUMED

    async def on_timer(self, execution_id: str, node_id: str, wait_id: str) -> ResumeOutcome:
        """Timer callback: resume a timed wait or time out an event wait."""
        execution = await self.store.load(execution_id)
        wait = execution.find_wait(node_id, wait_id) if execution else None
        timed_out = wait is not None and wait.kind in EVENT_WAIT_KINDS

        outcome = await self.resume(execution_id, node_id, wait_id=wait_id, timed_out=timed_out)
        if outcome == ResumeOutcome.BUSY:
            retry_at = self.clock() + self.settings.resume_retry_seconds
            logger.debug("Execution busy, retrying resume", execution_id=execution_id,
                         node_id=node_id, retry_at=retry_at)
            self.timer.schedule(execution_id, node_id, wait_id, retry_at)
        return outcome

    async def cancel(self, execution_id: str, reason: Optional[str] = None) -> Execution:
        """Cancel a running or suspended execution.

        A worker mid-pass notices at its next save or status check and stops.

        Raises:
            ExecutionNotFoundError: unknown execution id
        """
        execution = await self.store.load(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.is_terminal:
            return execution

        if not await self.store.mark_cancelled(execution_id, reason):
            # Reached a terminal state on its own meanwhile
            return await self.store.load(execution_id)

        execution = await self.store.load(execution_id)
        dropped = execution.discard_waits()
        await self.store.save(execution, expected=(ExecutionStatus.CANCELLED,))
        for wait in dropped:
            self.timer.cancel(execution_id, wait.id)

        log_execution_event(logger, "Execution cancelled", execution.id, execution.workflow_id,
                            reason=reason, discarded_waits=len(dropped))
        return execution

    async def recover(self, execution_id: str, stale_before: float) -> Optional[Execution]:
        """Adopt a RUNNING execution whose worker died and continue from its frontier."""
        if not await self.store.take_over(execution_id, stale_before):
            return None
        execution = await self.store.load(execution_id)
        log_execution_event(logger, "Execution recovered", execution.id, execution.workflow_id,
                            frontier=execution.frontier)
        return await self._run_pass(execution)

    # =========================================================================
    # PASS
    # =========================================================================

    async def _run_pass(self, execution: Execution,
                        resumed: Optional[WaitState] = None) -> Execution:
        with bound_execution(execution.id, execution.workflow_id, execution.tenant_id,
                             lead_id=execution.lead_id):
            return await self._traverse(execution, resumed)

    async def _traverse(self, execution: Execution,
                        resumed: Optional[WaitState]) -> Execution:
        execution.pass_count += 1
        pass_number = execution.pass_count
        graph = execution.graph
        queue: Deque[str] = deque(execution.frontier)
        executed: Set[str] = set()
        in_flight = None

        try:
            lead = await self._load_lead(execution)

            if resumed is not None:
                if resumed.kind in RERUN_WAIT_KINDS:
                    # Deferred or polling node runs again
                    if resumed.node_id not in queue:
                        queue.append(resumed.node_id)
                else:
                    self._enqueue_successors(execution, resumed.node_id, lead, queue, executed)

            while queue:
                node_id = queue.popleft()
                if node_id in executed:
                    continue
                node = graph.node(node_id)
                if node is None:
                    logger.warning("Frontier references unknown node",
                                   execution_id=execution.id, node_id=node_id)
                    continue

                parked = execution.find_wait(node_id)
                if parked is not None and parked.pending:
                    # One WaitState per node: a branch reaching a parked node joins its wait
                    logger.debug("Node already waiting, branch merged", execution_id=execution.id,
                                 node_id=node_id, wait_id=parked.id)
                    continue

                if await self.store.get_status(execution.id) != ExecutionStatus.RUNNING:
                    logger.info("Execution no longer running, stopping pass",
                                execution_id=execution.id, node_id=node_id)
                    return await self._reload(execution)

                in_flight = node
                step = await self.node_executor.execute(node, self._node_context(execution, lead))
                in_flight = None
                executed.add(node_id)
                execution.node_results.append(NodeResult(
                    node_id=node_id,
                    node_type=node.type,
                    outcome=outcome_for(step.action),
                    output=step.output,
                    error=step.error,
                    executed_at=self.clock(),
                    pass_number=pass_number,
                ))

                to_arm: Optional[WaitState] = None
                dropped: List[WaitState] = []
                if step.action == StepAction.CONTINUE:
                    execution.context.update(step.context_updates)
                    if step.lead_changed:
                        lead = await self._load_lead(execution)
                    self._enqueue_successors(execution, node_id, lead, queue, executed,
                                             take_all=step.follow_all)
                elif step.action in (StepAction.SUSPEND, StepAction.DEFER):
                    execution.wait_states.append(step.wait)
                    to_arm = step.wait
                elif step.action == StepAction.END:
                    queue.clear()
                    dropped = self._finish(execution, ExecutionStatus.COMPLETED)
                else:
                    queue.clear()
                    dropped = self._finish(execution, ExecutionStatus.FAILED,
                                           f"Node '{node_id}' failed: {step.error}")

                execution.frontier = list(queue)
                if not await self.store.save(execution):
                    logger.info("Execution changed concurrently, stopping pass",
                                execution_id=execution.id, node_id=node_id)
                    return await self._reload(execution)

                if to_arm is not None and to_arm.fire_at is not None:
                    self.timer.schedule(execution.id, to_arm.node_id, to_arm.id, to_arm.fire_at)
                if execution.is_terminal:
                    await self._after_terminal(execution, dropped)
                    return execution

            return await self._end_pass(execution)

        except CollaboratorError as e:
            await self._fail_on_collaborator(execution, in_flight, e, pass_number)
            raise

    async def _end_pass(self, execution: Execution) -> Execution:
        """Frontier drained: park as SUSPENDED while waits are pending, else complete."""
        execution.frontier = []
        dropped: List[WaitState] = []
        if execution.pending_waits():
            execution.status = ExecutionStatus.SUSPENDED
        else:
            dropped = self._finish(execution, ExecutionStatus.COMPLETED)

        if not await self.store.save(execution):
            return await self._reload(execution)

        if execution.is_terminal:
            await self._after_terminal(execution, dropped)
        else:
            log_execution_event(logger, "Execution suspended", execution.id, execution.workflow_id,
                                waiting_on=[w.node_id for w in execution.pending_waits()])
        return execution

    def _enqueue_successors(self, execution: Execution, node_id: str,
                            lead: Optional[Dict[str, Any]], queue: Deque[str],
                            executed: Set[str], take_all: bool = False) -> None:
        scope = build_scope(execution.context, lead)
        for edge in decide_next_edges(execution.graph.outgoing(node_id), scope, take_all=take_all):
            if edge.target in executed:
                logger.debug("Cycle edge skipped for this pass", execution_id=execution.id,
                             source=node_id, target=edge.target)
                continue
            if edge.target not in queue:
                queue.append(edge.target)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _node_context(self, execution: Execution, lead: Optional[Dict[str, Any]]) -> NodeContext:
        return NodeContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            tenant_id=execution.tenant_id,
            lead_id=execution.lead_id,
            context=dict(execution.context),
            lead=lead,
            now=self.clock(),
        )

    async def _load_lead(self, execution: Execution) -> Optional[Dict[str, Any]]:
        if not execution.lead_id:
            return None
        async with collaborator_call("lead_store"):
            return await self.lead_store.get_lead(execution.tenant_id, execution.lead_id)

    def _apply_resume_payload(self, execution: Execution, wait: WaitState,
                              payload: Optional[Dict[str, Any]], timed_out: bool) -> None:
        context = execution.context
        if wait.kind == WaitKind.REPLY:
            context["reply_timed_out"] = timed_out
            if not timed_out:
                reply = dict(payload or {})
                replies = dict(context.get("replies") or {})
                replies[wait.node_id] = reply
                context["reply"] = reply
                context["replies"] = replies
        elif wait.kind == WaitKind.EXTERNAL_EVENT:
            context["event_timed_out"] = timed_out
            if payload:
                context.update(payload)
        elif payload:
            context.update(payload)

    def _finish(self, execution: Execution, status: ExecutionStatus,
                error: Optional[str] = None) -> List[WaitState]:
        """Move to a terminal state. Returns the waits that were discarded."""
        execution.status = status
        execution.error = error
        execution.completed_at = self.clock()
        execution.run_once_key = None
        execution.frontier = []
        return execution.discard_waits()

    async def _after_terminal(self, execution: Execution, dropped: List[WaitState]) -> None:
        for wait in dropped:
            self.timer.cancel(execution.id, wait.id)
        if self.database is not None:
            await self.database.record_workflow_outcome(
                execution.workflow_id, execution.status == ExecutionStatus.COMPLETED
            )
        log_execution_event(logger, f"Execution {execution.status.value}", execution.id,
                            execution.workflow_id, passes=execution.pass_count,
                            nodes_run=len(execution.node_results), error=execution.error)

    async def _fail_on_collaborator(self, execution: Execution, node, error: CollaboratorError,
                                    pass_number: int) -> None:
        logger.error("Collaborator unavailable, failing execution", execution_id=execution.id,
                     collaborator=error.collaborator, error=str(error))
        if node is not None:
            execution.node_results.append(NodeResult(
                node_id=node.id,
                node_type=node.type,
                outcome=NodeOutcome.FAILED,
                error=str(error),
                executed_at=self.clock(),
                pass_number=pass_number,
            ))
        dropped = self._finish(execution, ExecutionStatus.FAILED, str(error))
        if await self.store.save(execution):
            await self._after_terminal(execution, dropped)

    async def _reload(self, execution: Execution) -> Execution:
        return await self.store.load(execution.id) or execution

    async def _claim_lost(self, execution_id: str, node_id: str, wait_id: str) -> ResumeOutcome:
        """Explain why the SUSPENDED -> RUNNING claim failed."""
        current = await self.store.load(execution_id)
        if current is None:
            return ResumeOutcome.NOT_FOUND
        if current.is_terminal:
            return ResumeOutcome.TERMINAL
        wait = current.find_wait(node_id, wait_id)
        if wait is not None and not wait.pending:
            return ResumeOutcome.DUPLICATE
        return ResumeOutcome.BUSY
