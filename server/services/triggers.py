"""Trigger matcher - maps an incoming event to executions to start or resume.

Resume beats start: an inbound reply that resumes a suspended execution of
a workflow never also starts a fresh execution of that workflow for the
same lead.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from constants import LEAD_EVENT_TYPES, MESSAGE_EVENT_TYPES, REPLY_EVENT_TYPE, TAG_EVENT_TYPES
from core.database import Database
from core.logging import get_logger
from models.database import WorkflowRecord
from services.execution.models import ACTIVE_STATUSES, ExecutionStatus, WaitKind
from services.execution.store import ExecutionStore

logger = get_logger(__name__)

# Trigger config keys that configure the trigger rather than filter payloads
NON_PREDICATE_KEYS = frozenset({"cron", "timezone", "label", "description"})

# Config keys compared for equality against the payload, with payload aliases
EQUALITY_KEYS = {
    "tag": ("tag", "tagName"),
    "source": ("source",),
    "channel": ("channel",),
    "form_id": ("form_id", "formId"),
    "formId": ("form_id", "formId"),
    "campaign_id": ("campaign_id", "campaignId"),
    "campaignId": ("campaign_id", "campaignId"),
    "path": ("path",),
}


@dataclass
class TriggerMatch:
    """One decision of the matcher: start a workflow or resume an execution."""
    action: str                     # "start" | "resume"
    workflow_id: str
    tenant_id: str
    lead_id: Optional[str] = None
    execution_id: Optional[str] = None
    node_id: Optional[str] = None
    wait_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def payload_value(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def extract_tenant_id(payload: Dict[str, Any]) -> Optional[str]:
    return payload_value(payload, "tenant_id", "tenantId")


def extract_lead_id(payload: Dict[str, Any]) -> Optional[str]:
    lead_id = payload_value(payload, "lead_id", "leadId")
    if lead_id is None and isinstance(payload.get("lead"), dict):
        lead_id = payload["lead"].get("id")
    return str(lead_id) if lead_id is not None else None


def _keywords(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [str(k).strip().lower() for k in value or [] if str(k).strip()]


def config_matches(event_type: str, config: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """Does a trigger config predicate accept this event payload?

    Tag events compare the tag, lead events the lead source, message events
    the channel and keywords (any keyword contained in the message text).
    Every other key must equal the payload value under the same name.
    """
    lead = payload.get("lead") if isinstance(payload.get("lead"), dict) else {}

    for key, expected in (config or {}).items():
        if key in NON_PREDICATE_KEYS or expected in (None, "", []):
            continue

        if key == "keywords" and event_type in MESSAGE_EVENT_TYPES:
            text = str(payload_value(payload, "content", "message", "body", "text") or "").lower()
            words = _keywords(expected)
            if words and not any(word in text for word in words):
                return False
            continue

        if key == "source" and event_type in LEAD_EVENT_TYPES:
            actual = payload_value(payload, "source") or lead.get("source")
        elif key == "tag" and event_type in TAG_EVENT_TYPES:
            actual = payload_value(payload, "tag", "tagName")
        elif key in EQUALITY_KEYS:
            actual = payload_value(payload, *EQUALITY_KEYS[key])
        else:
            actual = payload.get(key)

        if actual != expected:
            return False
    return True


class TriggerMatcher:
    """Finds workflows to start and suspended executions to resume for an event."""

    def __init__(self, database: Database, store: ExecutionStore):
        self.database = database
        self.store = store

    async def match(self, event_type: str, payload: Dict[str, Any]) -> List[TriggerMatch]:
        """Ordered matches for one event: resumes first, then starts.

        Args:
            event_type: One of WORKFLOW_TRIGGER_TYPES
            payload: Event payload; must carry the tenant id

        Returns:
            List of TriggerMatch (empty when nothing applies)
        """
        tenant_id = extract_tenant_id(payload)
        if not tenant_id:
            logger.warning("Event without tenant ignored", event_type=event_type)
            return []
        lead_id = extract_lead_id(payload)

        matches: List[TriggerMatch] = []
        if event_type == REPLY_EVENT_TYPE and lead_id:
            matches.extend(await self.match_replies(tenant_id, lead_id, payload.get("channel")))
        resumed_workflows = {m.workflow_id for m in matches}

        workflows = await self.database.list_workflows(
            tenant_id=tenant_id, trigger_type=event_type, active_only=True
        )
        for workflow in workflows:
            if not self._accepts(workflow, event_type, payload):
                continue
            if workflow.id in resumed_workflows:
                logger.debug("Reply resumes existing execution, not starting",
                             workflow_id=workflow.id, lead_id=lead_id)
                continue
            if workflow.run_once_per_lead and lead_id and await self._has_live_execution(workflow.id, lead_id):
                logger.info("Run-once workflow already live for lead, skipping",
                            workflow_id=workflow.id, lead_id=lead_id)
                continue
            matches.append(TriggerMatch("start", workflow.id, tenant_id, lead_id))

        logger.debug("Trigger matched", event_type=event_type, tenant_id=tenant_id,
                     lead_id=lead_id, matches=len(matches))
        return matches

    async def match_replies(self, tenant_id: str, lead_id: str,
                            channel: Optional[str] = None) -> List[TriggerMatch]:
        """Suspended executions of this lead waiting for a reply on this channel."""
        matches = []
        suspended = await self.store.list(tenant_id=tenant_id, lead_id=lead_id,
                                          statuses=[ExecutionStatus.SUSPENDED])
        for execution in suspended:
            for wait in execution.pending_waits():
                if wait.kind != WaitKind.REPLY:
                    continue
                if wait.channel and wait.channel != channel:
                    continue
                matches.append(TriggerMatch(
                    "resume", execution.workflow_id, tenant_id, lead_id,
                    execution_id=execution.id, node_id=wait.node_id, wait_id=wait.id,
                ))
        return matches

    def _accepts(self, workflow: WorkflowRecord, event_type: str, payload: Dict[str, Any]) -> bool:
        if event_type == "schedule":
            # Cron ticks name the workflow they belong to
            return payload_value(payload, "workflow_id", "workflowId") == workflow.id
        return config_matches(event_type, workflow.trigger_config or {}, payload)

    async def _has_live_execution(self, workflow_id: str, lead_id: str) -> bool:
        live = await self.store.list(workflow_id=workflow_id, lead_id=lead_id,
                                     statuses=ACTIVE_STATUSES, limit=1)
        return bool(live)
