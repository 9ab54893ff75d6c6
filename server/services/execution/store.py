"""Durable execution store.

Every status transition is a conditional UPDATE (``WHERE status IN ...``),
which gives mutual exclusion on the execution id: of two workers racing
to resume the same execution exactly one sees a row updated.
"""

import time
from typing import Callable, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.database import Database
from core.logging import get_logger
from models.database import ExecutionRecord
from services.execution.models import ACTIVE_STATUSES, Execution, ExecutionStatus

logger = get_logger(__name__)


def _to_values(execution: Execution) -> dict:
    data = execution.to_dict()
    return {
        "tenant_id": execution.tenant_id,
        "workflow_id": execution.workflow_id,
        "workflow_version": execution.workflow_version,
        "graph": data["graph"],
        "lead_id": execution.lead_id,
        "status": execution.status.value,
        "context": data["context"],
        "node_results": data["node_results"],
        "frontier": data["frontier"],
        "wait_states": data["wait_states"],
        "error": execution.error[:2000] if execution.error else None,
        "pass_count": execution.pass_count,
        "run_once_key": execution.run_once_key,
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
        "updated_at": execution.updated_at,
    }


def _from_record(record: ExecutionRecord) -> Execution:
    return Execution.from_dict({
        "id": record.id,
        "tenant_id": record.tenant_id,
        "workflow_id": record.workflow_id,
        "workflow_version": record.workflow_version,
        "graph": record.graph,
        "lead_id": record.lead_id,
        "status": record.status,
        "context": record.context,
        "node_results": record.node_results,
        "frontier": record.frontier,
        "wait_states": record.wait_states,
        "error": record.error,
        "pass_count": record.pass_count,
        "run_once_key": record.run_once_key,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "updated_at": record.updated_at,
    })


def _status_values(statuses: Iterable[ExecutionStatus]) -> List[str]:
    return [ExecutionStatus(s).value for s in statuses]


class ExecutionStore:
    """SQL-backed persistence for Execution records."""

    def __init__(self, database: Database, clock: Callable[[], float] = time.time):
        self.database = database
        self.clock = clock

    async def insert(self, execution: Execution) -> bool:
        """Insert a new execution.

        Returns:
            False when the run-once key is already held by a live execution
        """
        try:
            async with self.database.get_session() as session:
                session.add(ExecutionRecord(id=execution.id, **_to_values(execution)))
                await session.commit()
                return True
        except IntegrityError:
            logger.info("Run-once execution already live",
                        workflow_id=execution.workflow_id,
                        lead_id=execution.lead_id)
            return False

    async def load(self, execution_id: str) -> Optional[Execution]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord).where(ExecutionRecord.id == execution_id)
            )
            record = result.scalar_one_or_none()
            return _from_record(record) if record else None

    async def save(self, execution: Execution,
                   expected: Iterable[ExecutionStatus] = (ExecutionStatus.RUNNING,)) -> bool:
        """Persist the full execution if its stored status is still one of `expected`.

        Returns:
            False when another actor changed the status first (e.g. cancelled)
        """
        execution.updated_at = self.clock()
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == execution.id)
                .where(ExecutionRecord.status.in_(_status_values(expected)))
                .values(**_to_values(execution))
            )
            await session.commit()
            return result.rowcount == 1

    async def claim(self, execution_id: str,
                    from_status: ExecutionStatus = ExecutionStatus.SUSPENDED,
                    to_status: ExecutionStatus = ExecutionStatus.RUNNING) -> bool:
        """Atomically move an execution between statuses. Exactly one caller wins."""
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == execution_id)
                .where(ExecutionRecord.status == ExecutionStatus(from_status).value)
                .values(status=ExecutionStatus(to_status).value, updated_at=self.clock())
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_cancelled(self, execution_id: str, error: Optional[str] = None) -> bool:
        """Cancel a running or suspended execution. Any in-flight pass stops at its next save."""
        now = self.clock()
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == execution_id)
                .where(ExecutionRecord.status.in_(_status_values(ACTIVE_STATUSES)))
                .values(status=ExecutionStatus.CANCELLED.value, error=error, frontier=[],
                        run_once_key=None, completed_at=now, updated_at=now)
            )
            await session.commit()
            return result.rowcount == 1

    async def take_over(self, execution_id: str, stale_before: float) -> bool:
        """Adopt a running execution whose worker stopped saving before `stale_before`."""
        async with self.database.get_session() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == execution_id)
                .where(ExecutionRecord.status == ExecutionStatus.RUNNING.value)
                .where(ExecutionRecord.updated_at < stale_before)
                .values(updated_at=self.clock())
            )
            await session.commit()
            return result.rowcount == 1

    async def get_status(self, execution_id: str) -> Optional[ExecutionStatus]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord.status).where(ExecutionRecord.id == execution_id)
            )
            status = result.scalar_one_or_none()
            return ExecutionStatus(status) if status else None

    async def list(self, workflow_id: Optional[str] = None,
                   lead_id: Optional[str] = None,
                   tenant_id: Optional[str] = None,
                   statuses: Optional[Iterable[ExecutionStatus]] = None,
                   updated_before: Optional[float] = None,
                   limit: Optional[int] = None) -> List[Execution]:
        """Query executions, newest first."""
        async with self.database.get_session() as session:
            stmt = select(ExecutionRecord)
            if workflow_id is not None:
                stmt = stmt.where(ExecutionRecord.workflow_id == workflow_id)
            if lead_id is not None:
                stmt = stmt.where(ExecutionRecord.lead_id == lead_id)
            if tenant_id is not None:
                stmt = stmt.where(ExecutionRecord.tenant_id == tenant_id)
            if statuses is not None:
                stmt = stmt.where(ExecutionRecord.status.in_(_status_values(statuses)))
            if updated_before is not None:
                stmt = stmt.where(ExecutionRecord.updated_at < updated_before)
            stmt = stmt.order_by(ExecutionRecord.started_at.desc(), ExecutionRecord.id)
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_from_record(r) for r in result.scalars().all()]
