"""Reputation / throttle gate for outbound sends.

Keeps a rolling score and an hourly send window per (tenant, channel) in
the shared cache service, so every worker process sees the same state.
Send-type nodes consult can_send() before dispatching; a denial defers
the node instead of failing it because reputation recovers over time.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.cache import CacheService
from core.config import Settings
from core.logging import get_logger
from services.collaborators import CampaignPauser

logger = get_logger(__name__)

WINDOW_SECONDS = 3600
# Sends closer together than this are penalized
BURST_SECONDS = 1.0
STATE_TTL = 30 * 86400
INDEX_KEY = "reputation:index"


@dataclass
class SendDecision:
    allowed: bool
    retry_after_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"allowed": self.allowed}
        if self.retry_after_seconds is not None:
            d["retryAfterSeconds"] = self.retry_after_seconds
        return d


def _key(tenant_id: str, channel: str) -> str:
    return f"reputation:{tenant_id}:{channel}"


def calculate_score(messages_sent: int, messages_failed: int, burst: bool) -> float:
    """100 minus half the failure rate in percent, minus 10 for bursts, clamped to 0..100."""
    failure_rate = messages_failed / messages_sent if messages_sent else 0.0
    score = 100 - failure_rate * 50
    if burst:
        score -= 10
    return max(0.0, min(100.0, score))


class ReputationService:
    """Per-(tenant, channel) reputation score and hourly send window."""

    def __init__(self, cache: CacheService, settings: Settings,
                 pauser: Optional[CampaignPauser] = None,
                 clock: Callable[[], float] = time.time):
        self.cache = cache
        self.settings = settings
        self.pauser = pauser
        self.clock = clock

    async def get_reputation(self, tenant_id: str, channel: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(_key(tenant_id, channel))

    async def can_send(self, tenant_id: str, channel: str) -> SendDecision:
        """Decide whether a send may proceed now."""
        state = await self.get_reputation(tenant_id, channel)
        if not state:
            return SendDecision(allowed=True)

        if state.get("score", 100) < self.settings.reputation_block_score:
            logger.info("Send blocked by reputation score", tenant_id=tenant_id,
                        channel=channel, score=state.get("score"))
            return SendDecision(False, float(self.settings.reputation_block_seconds))

        now = self.clock()
        window_start = state.get("window_start") or now
        if now - window_start < WINDOW_SECONDS and \
                state.get("window_count", 0) >= self.settings.reputation_hourly_limit:
            retry_after = max(1.0, window_start + WINDOW_SECONDS - now)
            logger.info("Send blocked by hourly limit", tenant_id=tenant_id,
                        channel=channel, retry_after=retry_after)
            return SendDecision(False, retry_after)

        return SendDecision(allowed=True)

    async def record_dispatch(self, tenant_id: str, channel: str) -> None:
        """Count an accepted send against the hourly window."""
        key = _key(tenant_id, channel)
        async with self.cache.lock(key):
            now = self.clock()
            state = await self.cache.get(key) or self._initial_state(tenant_id, channel)
            if not state.get("window_start") or now - state["window_start"] >= WINDOW_SECONDS:
                state["window_start"] = now
                state["window_count"] = 0
            state["window_count"] += 1
            await self._store(key, state)

    async def record_message(self, tenant_id: str, channel: str, success: bool) -> float:
        """Feed back a delivery outcome and return the new score."""
        key = _key(tenant_id, channel)
        async with self.cache.lock(key):
            now = self.clock()
            state = await self.cache.get(key)
            if not state or not state.get("messages_sent"):
                state = state or self._initial_state(tenant_id, channel)
                state.update(
                    score=100.0 if success else 90.0,
                    messages_sent=1,
                    messages_failed=0 if success else 1,
                )
            else:
                last = state.get("last_message_at")
                burst = last is not None and now - last < BURST_SECONDS
                state["messages_sent"] += 1
                if not success:
                    state["messages_failed"] += 1
                state["score"] = calculate_score(state["messages_sent"],
                                                 state["messages_failed"], burst)
            state["last_message_at"] = now
            await self._store(key, state)
            return state["score"]

    async def check_reputation(self) -> List[Dict[str, Any]]:
        """Periodic sweep: ask the campaign pauser to pause channels below the floor."""
        flagged = []
        for tenant_id, channel in await self.cache.get(INDEX_KEY) or []:
            state = await self.get_reputation(tenant_id, channel)
            if not state or state.get("score", 100) >= self.settings.reputation_pause_score:
                continue
            logger.warning("Low reputation detected, pausing campaigns",
                           tenant_id=tenant_id, channel=channel, score=state["score"])
            flagged.append(state)
            if self.pauser is not None:
                await self.pauser.pause_campaigns(
                    tenant_id, channel, f"reputation score {state['score']:.1f}"
                )
        return flagged

    def _initial_state(self, tenant_id: str, channel: str) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "channel": channel,
            "score": 100.0,
            "messages_sent": 0,
            "messages_failed": 0,
            "last_message_at": None,
            "window_start": None,
            "window_count": 0,
        }

    async def _store(self, key: str, state: Dict[str, Any]) -> None:
        await self.cache.set(key, state, ttl=STATE_TTL)
        entry = [state["tenant_id"], state["channel"]]
        async with self.cache.lock(INDEX_KEY):
            index = await self.cache.get(INDEX_KEY) or []
            if entry not in index:
                index.append(entry)
                await self.cache.set(INDEX_KEY, index, ttl=STATE_TTL)
