"""Pytest configuration and fixtures."""

from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
from httpx import ASGITransport, AsyncClient

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from models.database import WorkflowRecord
from services import scheduler
from services.collaborators import (
    InMemoryCampaignPauser,
    InMemoryLeadStore,
    InMemoryMessageDispatcher,
    InMemoryTaskSink,
)
from services.execution import Execution, ResumeOutcome
from services.execution.executor import WorkflowExecutor
from services.execution.store import ExecutionStore
from services.node_executor import NodeExecutor
from services.reputation import ReputationService
from services.triggers import TriggerMatcher
from services.workflow import WorkflowService

TENANT = "tenant-1"
START_TIME = 1_700_000_000.0


# =============================================================================
# GRAPH BUILDERS
# =============================================================================

def node(node_id: str, node_type: str, **data: Any) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data}


def edge(source: str, target: str, condition: Any = None) -> Dict[str, Any]:
    e = {"id": f"{source}->{target}", "source": source, "target": target}
    if condition is not None:
        e["condition"] = condition
    return e


def chain(*node_ids: str) -> List[Dict[str, Any]]:
    return [edge(a, b) for a, b in zip(node_ids, node_ids[1:])]


# =============================================================================
# FAKES
# =============================================================================

class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    """Records scheduled resumes; tests fire them explicitly."""

    def __init__(self):
        self.scheduled: Dict[str, Tuple[str, str, float]] = {}

    def schedule(self, execution_id: str, node_id: str, wait_id: str, run_at: float) -> None:
        self.scheduled[wait_id] = (execution_id, node_id, run_at)

    def cancel(self, execution_id: str, wait_id: str) -> None:
        self.scheduled.pop(wait_id, None)

    def due(self, now: float) -> List[Tuple[str, str, str]]:
        return [(execution_id, node_id, wait_id)
                for wait_id, (execution_id, node_id, run_at) in self.scheduled.items()
                if run_at <= now]


class RecordingWebhookCaller:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def post_webhook(self, url: str, payload: Dict[str, Any],
                     headers: Optional[Dict[str, str]] = None) -> None:
        self.calls.append({"url": url, "payload": payload, "headers": headers or {}})


class ScriptedAIAgent:
    def __init__(self, response: Optional[Dict[str, Any]] = None):
        self.response = response or {"message": "Hi from AI", "intent": "interested"}
        self.calls: List[Dict[str, Any]] = []

    async def respond(self, tenant_id: str, lead_id: Optional[str], instructions: str,
                      context: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"tenant_id": tenant_id, "lead_id": lead_id,
                           "instructions": instructions})
        return dict(self.response)


class Engine:
    """Fully wired engine over a temporary database with fake collaborators."""

    def __init__(self, settings: Settings, database: Database, cache: CacheService):
        self.settings = settings
        self.database = database
        self.cache = cache
        self.clock = ManualClock()
        self.timer = FakeTimer()
        self.lead_store = InMemoryLeadStore()
        self.dispatcher = InMemoryMessageDispatcher()
        self.task_sink = InMemoryTaskSink()
        self.webhooks = RecordingWebhookCaller()
        self.ai_agent = ScriptedAIAgent()
        self.pauser = InMemoryCampaignPauser()
        self.reputation = ReputationService(cache, settings, pauser=self.pauser, clock=self.clock)
        self.store = ExecutionStore(database, clock=self.clock)
        self.node_executor = NodeExecutor(
            lead_store=self.lead_store,
            dispatcher=self.dispatcher,
            task_sink=self.task_sink,
            webhook_caller=self.webhooks,
            ai_agent=self.ai_agent,
            gate=self.reputation,
        )
        self.executor = WorkflowExecutor(
            store=self.store,
            node_executor=self.node_executor,
            lead_store=self.lead_store,
            timer=self.timer,
            settings=settings,
            database=database,
            clock=self.clock,
        )
        self.matcher = TriggerMatcher(database, self.store)
        self.service = WorkflowService(database, self.store, self.executor, self.matcher,
                                       settings, clock=self.clock)

    def add_lead(self, lead_id: str = "lead-1", **fields: Any) -> Dict[str, Any]:
        return self.lead_store.put_lead(TENANT, {"id": lead_id, "name": "Ana",
                                                 "source": "facebook", **fields})

    async def add_workflow(self, nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                           trigger_type: str = "lead_created",
                           config: Optional[Dict[str, Any]] = None,
                           run_once: bool = True, activate: bool = True) -> WorkflowRecord:
        record = await self.service.create_workflow(
            tenant_id=TENANT,
            name="Test workflow",
            trigger={"type": trigger_type, "config": config or {}},
            nodes=nodes,
            edges=edges,
            run_once_per_lead=run_once,
        )
        if activate:
            record = await self.service.activate(record.id)
        return record

    async def run(self, workflow_id: str, lead_id: Optional[str] = "lead-1",
                  trigger_data: Optional[Dict[str, Any]] = None) -> Execution:
        result = await self.service.execute(workflow_id, TENANT, lead_id=lead_id,
                                            trigger_data=trigger_data)
        await self.service.drain()
        return await self.store.load(result["execution_id"])

    async def notify(self, event_type: str, payload: Dict[str, Any]):
        matches = await self.service.notify(event_type, {"tenant_id": TENANT, **payload})
        await self.service.drain()
        return matches

    async def fire_timers(self) -> List[ResumeOutcome]:
        outcomes = []
        for execution_id, node_id, wait_id in self.timer.due(self.clock()):
            self.timer.scheduled.pop(wait_id, None)
            outcomes.append(await self.executor.on_timer(execution_id, node_id, wait_id))
        return outcomes

    async def lead(self, lead_id: str = "lead-1") -> Dict[str, Any]:
        return await self.lead_store.get_lead(TENANT, lead_id)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'workflows.db'}",
        redis_enabled=False,
        log_format="console",
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database per test."""
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings) -> AsyncGenerator[CacheService, None]:
    service = CacheService(settings)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
async def engine(settings, database, cache) -> AsyncGenerator[Engine, None]:
    wired = Engine(settings, database, cache)
    wired.add_lead()
    yield wired
    await wired.service.drain()


@pytest.fixture(autouse=True)
def reset_scheduler():
    yield
    scheduler.shutdown_scheduler()


@pytest.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the workflow service replaced by the test engine."""
    from main import app
    from routers.workflow import get_workflow_service

    app.dependency_overrides[get_workflow_service] = lambda: engine.service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
