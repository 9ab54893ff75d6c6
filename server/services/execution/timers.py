"""Resume timers for suspended executions.

The engine only needs "call me back at time T for (execution, node, wait)".
SchedulerTimer fulfils that with one-shot APScheduler jobs.
"""

from typing import Awaitable, Callable, Optional, Protocol

from core.logging import get_logger
from services import scheduler

logger = get_logger(__name__)

ResumeCallback = Callable[[str, str, str], Awaitable[object]]


class Timer(Protocol):
    def schedule(self, execution_id: str, node_id: str, wait_id: str, run_at: float) -> None: ...

    def cancel(self, execution_id: str, wait_id: str) -> None: ...


def job_id_for(execution_id: str, wait_id: str) -> str:
    return f"resume:{execution_id}:{wait_id}"


class SchedulerTimer:
    """Timer backed by the APScheduler singleton.

    The resume callback is bound after construction because the executor
    that owns it also depends on the timer.
    """

    def __init__(self, callback: Optional[ResumeCallback] = None):
        self._callback = callback

    def bind(self, callback: ResumeCallback) -> None:
        self._callback = callback

    async def _fire(self, execution_id: str, node_id: str, wait_id: str) -> None:
        if self._callback is None:
            logger.error("Resume timer fired with no callback bound", execution_id=execution_id)
            return
        try:
            await self._callback(execution_id, node_id, wait_id)
        except Exception as e:
            # Scheduler jobs must not raise; the recovery sweeper re-arms timers
            logger.error("Resume timer callback failed", execution_id=execution_id,
                         node_id=node_id, error=str(e))

    def schedule(self, execution_id: str, node_id: str, wait_id: str, run_at: float) -> None:
        scheduler.register_resume_job(
            job_id_for(execution_id, wait_id), run_at, self._fire,
            execution_id=execution_id, node_id=node_id, wait_id=wait_id,
        )

    def cancel(self, execution_id: str, wait_id: str) -> None:
        scheduler.remove_job(job_id_for(execution_id, wait_id))
