"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.collaborators import (
    HttpWebhookCaller,
    InMemoryCampaignPauser,
    InMemoryLeadStore,
    InMemoryMessageDispatcher,
    InMemoryTaskSink,
    UnconfiguredAIAgent,
)
from services.execution.executor import WorkflowExecutor
from services.execution.recovery import RecoverySweeper
from services.execution.store import ExecutionStore
from services.execution.timers import SchedulerTimer
from services.node_executor import NodeExecutor
from services.reputation import ReputationService
from services.triggers import TriggerMatcher
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Configuration
    config = providers.Configuration()

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (needed by CacheService for SQLite fallback)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when available, SQLite otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database
    )

    # Collaborators - override these with adapters for the real services
    lead_store = providers.Singleton(InMemoryLeadStore)
    message_dispatcher = providers.Singleton(InMemoryMessageDispatcher)
    task_sink = providers.Singleton(InMemoryTaskSink)
    campaign_pauser = providers.Singleton(InMemoryCampaignPauser)
    ai_agent = providers.Singleton(UnconfiguredAIAgent)
    webhook_caller = providers.Singleton(
        HttpWebhookCaller,
        timeout=settings.provided.webhook_timeout
    )

    # Reputation / throttle gate
    reputation = providers.Singleton(
        ReputationService,
        cache=cache,
        settings=settings,
        pauser=campaign_pauser
    )

    # Execution engine
    timer = providers.Singleton(SchedulerTimer)

    execution_store = providers.Singleton(
        ExecutionStore,
        database=database
    )

    node_executor = providers.Singleton(
        NodeExecutor,
        lead_store=lead_store,
        dispatcher=message_dispatcher,
        task_sink=task_sink,
        webhook_caller=webhook_caller,
        ai_agent=ai_agent,
        gate=reputation
    )

    workflow_executor = providers.Singleton(
        WorkflowExecutor,
        store=execution_store,
        node_executor=node_executor,
        lead_store=lead_store,
        timer=timer,
        settings=settings,
        database=database
    )

    trigger_matcher = providers.Singleton(
        TriggerMatcher,
        database=database,
        store=execution_store
    )

    recovery_sweeper = providers.Singleton(
        RecoverySweeper,
        store=execution_store,
        executor=workflow_executor,
        timer=timer,
        settings=settings
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        database=database,
        store=execution_store,
        executor=workflow_executor,
        matcher=trigger_matcher,
        settings=settings
    )


# Global container instance
container = Container()
