"""Tests for the reputation / throttle gate."""

import pytest

from services.reputation import calculate_score
from tests.conftest import TENANT


class TestScore:
    @pytest.mark.parametrize("sent,failed,burst,expected", [
        (10, 0, False, 100.0),
        (10, 5, False, 75.0),
        (10, 10, False, 50.0),
        (10, 0, True, 90.0),
        (0, 0, False, 100.0),
    ])
    def test_calculate_score(self, sent, failed, burst, expected):
        assert calculate_score(sent, failed, burst) == expected


class TestGate:
    """can_send / record_dispatch / record_message."""

    async def test_unknown_channel_allowed(self, engine):
        decision = await engine.reputation.can_send(TENANT, "whatsapp")
        assert decision.allowed is True
        assert decision.to_dict() == {"allowed": True}

    async def test_low_score_blocks(self, engine):
        await engine.cache.set(f"reputation:{TENANT}:sms", {"tenant_id": TENANT, "channel": "sms",
                                                            "score": 10.0})
        decision = await engine.reputation.can_send(TENANT, "sms")
        assert decision.allowed is False
        assert decision.retry_after_seconds == engine.settings.reputation_block_seconds

    async def test_hourly_limit(self, engine):
        engine.settings.reputation_hourly_limit = 2
        await engine.reputation.record_dispatch(TENANT, "whatsapp")
        await engine.reputation.record_dispatch(TENANT, "whatsapp")

        decision = await engine.reputation.can_send(TENANT, "whatsapp")
        assert decision.allowed is False
        assert decision.retry_after_seconds == 3600

        engine.clock.advance(3600)
        assert (await engine.reputation.can_send(TENANT, "whatsapp")).allowed is True

    async def test_record_message_scores(self, engine):
        assert await engine.reputation.record_message(TENANT, "sms", success=True) == 100.0
        engine.clock.advance(5)
        assert await engine.reputation.record_message(TENANT, "sms", success=False) == 75.0

    async def test_burst_penalty(self, engine):
        await engine.reputation.record_message(TENANT, "sms", success=True)
        engine.clock.advance(0.1)
        assert await engine.reputation.record_message(TENANT, "sms", success=True) == 90.0

    async def test_check_reputation_pauses_campaigns(self, engine):
        await engine.reputation.record_message(TENANT, "sms", success=True)
        state = await engine.reputation.get_reputation(TENANT, "sms")
        state["score"] = 5.0
        await engine.cache.set(f"reputation:{TENANT}:sms", state)
        await engine.reputation.record_message(TENANT, "whatsapp", success=True)

        flagged = await engine.reputation.check_reputation()

        assert [f["channel"] for f in flagged] == ["sms"]
        assert engine.pauser.paused == [{"tenant_id": TENANT, "channel": "sms",
                                         "reason": "reputation score 5.0"}]
