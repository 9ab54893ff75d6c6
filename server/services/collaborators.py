"""External collaborators consumed by the workflow engine.

The engine only talks to these narrow interfaces. In-memory implementations
back single-process development and tests; production deployments override
the container providers with adapters for the real lead database, message
queue, task service and AI service.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable

import httpx
from redis.exceptions import RedisError

from core.logging import get_logger
from services.execution.errors import CollaboratorError

logger = get_logger(__name__)


@asynccontextmanager
async def collaborator_call(name: str):
    """Translate transport failures of a collaborator into CollaboratorError."""
    try:
        yield
    except CollaboratorError:
        raise
    except (ConnectionError, TimeoutError, OSError, httpx.TransportError, RedisError) as e:
        raise CollaboratorError(name, str(e) or type(e).__name__) from e


# =============================================================================
# PROTOCOLS
# =============================================================================

@runtime_checkable
class LeadStore(Protocol):
    async def get_lead(self, tenant_id: str, lead_id: str) -> Optional[Dict[str, Any]]: ...

    async def update_lead(self, tenant_id: str, lead_id: str,
                          updates: Dict[str, Any]) -> Dict[str, Any]: ...

    async def add_tag(self, tenant_id: str, lead_id: str, tag: str) -> bool: ...

    async def remove_tag(self, tenant_id: str, lead_id: str, tag: str) -> bool: ...


@runtime_checkable
class MessageDispatcher(Protocol):
    async def enqueue_send(self, tenant_id: str, lead_id: Optional[str], channel: str,
                           content: str, template_id: Optional[str] = None,
                           subject: Optional[str] = None) -> None: ...


@runtime_checkable
class WebhookCaller(Protocol):
    def post_webhook(self, url: str, payload: Dict[str, Any],
                     headers: Optional[Dict[str, str]] = None) -> None: ...


@runtime_checkable
class TaskSink(Protocol):
    async def create_task(self, tenant_id: str, lead_id: Optional[str],
                          task: Dict[str, Any]) -> None: ...


@runtime_checkable
class AIAgent(Protocol):
    async def respond(self, tenant_id: str, lead_id: Optional[str], instructions: str,
                      context: Dict[str, Any]) -> Dict[str, Any]: ...


@runtime_checkable
class CampaignPauser(Protocol):
    async def pause_campaigns(self, tenant_id: str, channel: str, reason: str) -> int: ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryLeadStore:
    """Lead snapshots keyed by (tenant, lead). Last write wins."""

    def __init__(self):
        self._leads: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def put_lead(self, tenant_id: str, lead: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = {"tags": [], **copy.deepcopy(lead)}
        self._leads[(tenant_id, snapshot["id"])] = snapshot
        return copy.deepcopy(snapshot)

    async def get_lead(self, tenant_id: str, lead_id: str) -> Optional[Dict[str, Any]]:
        lead = self._leads.get((tenant_id, lead_id))
        return copy.deepcopy(lead) if lead is not None else None

    def _require(self, tenant_id: str, lead_id: str) -> Dict[str, Any]:
        lead = self._leads.get((tenant_id, lead_id))
        if lead is None:
            raise KeyError(f"lead '{lead_id}' not found")
        return lead

    async def update_lead(self, tenant_id: str, lead_id: str,
                          updates: Dict[str, Any]) -> Dict[str, Any]:
        lead = self._require(tenant_id, lead_id)
        lead.update(copy.deepcopy(updates))
        return copy.deepcopy(lead)

    async def add_tag(self, tenant_id: str, lead_id: str, tag: str) -> bool:
        tags = self._require(tenant_id, lead_id).setdefault("tags", [])
        if tag in tags:
            return False
        tags.append(tag)
        return True

    async def remove_tag(self, tenant_id: str, lead_id: str, tag: str) -> bool:
        tags = self._require(tenant_id, lead_id).setdefault("tags", [])
        if tag not in tags:
            return False
        tags.remove(tag)
        return True


class InMemoryMessageDispatcher:
    """Records enqueued sends; delivery happens elsewhere."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def enqueue_send(self, tenant_id: str, lead_id: Optional[str], channel: str,
                           content: str, template_id: Optional[str] = None,
                           subject: Optional[str] = None) -> None:
        self.sent.append({
            "tenant_id": tenant_id,
            "lead_id": lead_id,
            "channel": channel,
            "content": content,
            "template_id": template_id,
            "subject": subject,
        })
        logger.info("Message enqueued", tenant_id=tenant_id, lead_id=lead_id, channel=channel)


class InMemoryTaskSink:
    def __init__(self):
        self.tasks: List[Dict[str, Any]] = []

    async def create_task(self, tenant_id: str, lead_id: Optional[str],
                          task: Dict[str, Any]) -> None:
        self.tasks.append({"tenant_id": tenant_id, "lead_id": lead_id, **task})


class InMemoryCampaignPauser:
    def __init__(self):
        self.paused: List[Dict[str, Any]] = []

    async def pause_campaigns(self, tenant_id: str, channel: str, reason: str) -> int:
        self.paused.append({"tenant_id": tenant_id, "channel": channel, "reason": reason})
        logger.warning("Campaigns paused", tenant_id=tenant_id, channel=channel, reason=reason)
        return 0


class UnconfiguredAIAgent:
    """Placeholder until an AI conversation service is wired in."""

    async def respond(self, tenant_id: str, lead_id: Optional[str], instructions: str,
                      context: Dict[str, Any]) -> Dict[str, Any]:
        raise CollaboratorError("ai_agent", "no AI conversation service configured")


# =============================================================================
# HTTP WEBHOOK CALLER
# =============================================================================

class HttpWebhookCaller:
    """Fire-and-forget webhook POSTs on background tasks.

    The engine never awaits the response; outcomes are only logged.
    """

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def post_webhook(self, url: str, payload: Dict[str, Any],
                     headers: Optional[Dict[str, str]] = None) -> None:
        task = asyncio.create_task(self._post(url, payload, headers or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> None:
        try:
            response = await self._get_client().post(url, json=payload, headers=headers)
            logger.info("Webhook delivered", url=url, status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery failed", url=url, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight webhook posts (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
