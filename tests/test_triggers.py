"""Tests for trigger matching and event ingestion."""

from services import scheduler
from services.execution import ExecutionStatus
from services.triggers import config_matches, extract_lead_id, extract_tenant_id
from services.workflow import schedule_job_id
from tests.conftest import TENANT, chain, node

SIMPLE = [node("t", "trigger"), node("tag", "add_tag", tag="welcomed")]


class TestConfigMatches:
    """Trigger config predicates over event payloads."""

    def test_empty_config_matches_everything(self):
        assert config_matches("lead_created", {}, {"lead_id": "x"})

    def test_lead_source_from_payload_or_lead(self):
        config = {"source": "facebook"}
        assert config_matches("lead_created", config, {"source": "facebook"})
        assert config_matches("lead_created", config, {"lead": {"source": "facebook"}})
        assert not config_matches("lead_created", config, {"source": "google"})

    def test_tag_aliases(self):
        assert config_matches("tag_added", {"tag": "vip"}, {"tagName": "vip"})
        assert not config_matches("tag_added", {"tag": "vip"}, {"tag": "cold"})

    def test_keywords_any_case_insensitive(self):
        config = {"keywords": "price, quote"}
        assert config_matches("message_received", config, {"content": "What is the PRICE?"})
        assert not config_matches("message_received", config, {"content": "hello"})

    def test_channel_and_blank_values(self):
        config = {"channel": "whatsapp", "form_id": "", "label": "ignored"}
        assert config_matches("message_received", config, {"channel": "whatsapp"})
        assert not config_matches("message_received", config, {"channel": "sms"})

    def test_form_id_alias(self):
        assert config_matches("form_submitted", {"formId": "f1"}, {"form_id": "f1"})

    def test_extract_ids(self):
        assert extract_tenant_id({"tenantId": "t"}) == "t"
        assert extract_lead_id({"lead": {"id": 7}}) == "7"
        assert extract_lead_id({}) is None


class TestNotify:
    async def test_event_starts_matching_workflows(self, engine):
        matching = await engine.add_workflow(SIMPLE, chain("t", "tag"), config={"source": "facebook"})
        await engine.add_workflow(SIMPLE, chain("t", "tag"), config={"source": "google"})

        matches = await engine.notify("lead_created", {"lead_id": "lead-1", "source": "facebook"})

        assert [(m.action, m.workflow_id) for m in matches] == [("start", matching.id)]
        executions = await engine.service.list_executions(workflow_id=matching.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.COMPLETED
        assert executions[0].context["event_type"] == "lead_created"
        assert "welcomed" in (await engine.lead())["tags"]

    async def test_event_without_tenant_ignored(self, engine):
        await engine.add_workflow(SIMPLE, chain("t", "tag"))
        assert await engine.service.notify("lead_created", {"lead_id": "lead-1"}) == []

    async def test_other_tenant_not_matched(self, engine):
        await engine.add_workflow(SIMPLE, chain("t", "tag"))
        matches = await engine.service.notify("lead_created", {"tenant_id": "other", "lead_id": "lead-1"})
        assert matches == []

    async def test_inactive_workflow_not_matched(self, engine):
        await engine.add_workflow(SIMPLE, chain("t", "tag"), activate=False)
        assert await engine.notify("lead_created", {"lead_id": "lead-1"}) == []

    async def test_run_once_skips_live_execution(self, engine):
        nodes = [node("t", "trigger"), node("wait", "wait_for_reply")]
        workflow = await engine.add_workflow(nodes, chain("t", "wait"))

        first = await engine.notify("lead_created", {"lead_id": "lead-1"})
        second = await engine.notify("lead_created", {"lead_id": "lead-1"})

        assert len(first) == 1
        assert second == []
        assert len(await engine.service.list_executions(workflow_id=workflow.id)) == 1

    async def test_schedule_event_matches_own_workflow_only(self, engine):
        config = {"cron": "0 9 * * *"}
        own = await engine.add_workflow(SIMPLE, chain("t", "tag"), trigger_type="schedule", config=config)
        await engine.add_workflow(SIMPLE, chain("t", "tag"), trigger_type="schedule", config=config)

        matches = await engine.notify("schedule", {"workflow_id": own.id})

        assert [m.workflow_id for m in matches] == [own.id]
        assert matches[0].lead_id is None


class TestSchedules:
    async def test_activation_registers_cron_job(self, engine):
        workflow = await engine.add_workflow(SIMPLE, chain("t", "tag"), trigger_type="schedule",
                                             config={"cron": "*/5 * * * *"})
        assert scheduler.get_job_info(schedule_job_id(workflow.id)) is not None

        await engine.service.deactivate(workflow.id)
        assert scheduler.get_job_info(schedule_job_id(workflow.id)) is None

    async def test_restore_schedules(self, engine):
        workflow = await engine.add_workflow(SIMPLE, chain("t", "tag"), trigger_type="schedule",
                                             config={"cron": "0 9 * * 1"})
        scheduler.remove_job(schedule_job_id(workflow.id))

        assert await engine.service.restore_schedules() == 1
        assert scheduler.get_job_info(schedule_job_id(workflow.id)) is not None

    async def test_schedule_tick_runs_workflow(self, engine):
        workflow = await engine.add_workflow(
            [node("t", "trigger"), node("task", "create_task", title="Weekly review")],
            chain("t", "task"), trigger_type="schedule", config={"cron": "0 9 * * 1"},
        )

        await engine.service._schedule_tick(workflow_id=workflow.id, tenant_id=TENANT)
        await engine.service.drain()

        assert [t["title"] for t in engine.task_sink.tasks] == ["Weekly review"]
