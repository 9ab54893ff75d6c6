"""Tests for the workflow HTTP API."""

from tests.conftest import TENANT, chain, edge, node

DEFINITION = {
    "tenant_id": TENANT,
    "name": "Welcome",
    "trigger": {"type": "lead_created", "config": {"source": "facebook"}},
    "nodes": [node("t", "trigger"), node("hello", "send_message", content="Hi {{lead.name}}")],
    "edges": chain("t", "hello"),
}


async def _create(client, **overrides):
    response = await client.post("/api/workflows", json={**DEFINITION, **overrides})
    assert response.status_code == 201
    return response.json()


class TestWorkflowRoutes:
    """Definition lifecycle."""

    async def test_create_get_list(self, client):
        created = await _create(client)
        assert created["status"] == "draft"
        assert created["is_active"] is False

        response = await client.get(f"/api/workflows/{created['id']}")
        assert response.status_code == 200
        assert response.json()["trigger"] == DEFINITION["trigger"]

        response = await client.get("/api/workflows", params={"tenant_id": TENANT})
        assert [w["id"] for w in response.json()["workflows"]] == [created["id"]]

    async def test_unknown_workflow_404(self, client):
        response = await client.get("/api/workflows/nope")
        assert response.status_code == 404

    async def test_activate_invalid_422(self, client):
        created = await _create(client, edges=[edge("t", "ghost")])

        response = await client.post(f"/api/workflows/{created['id']}/activate")

        assert response.status_code == 422
        assert response.json()["detail"]["errors"] == ["edge 't->ghost' has dangling target 'ghost'"]

    async def test_activate_update_deactivate(self, client):
        created = await _create(client)

        response = await client.post(f"/api/workflows/{created['id']}/activate")
        assert response.json()["is_active"] is True

        response = await client.patch(f"/api/workflows/{created['id']}", json={"name": "Renamed"})
        assert response.json()["name"] == "Renamed"
        assert response.json()["version"] == 1

        response = await client.post(f"/api/workflows/{created['id']}/deactivate")
        assert response.json()["status"] == "paused"

    async def test_delete_without_executions(self, client):
        created = await _create(client)
        response = await client.delete(f"/api/workflows/{created['id']}")
        assert response.json()["deleted"] is True
        assert (await client.get(f"/api/workflows/{created['id']}")).status_code == 404


class TestExecutionRoutes:
    async def test_event_ingestion(self, client, engine):
        created = await _create(client)
        await client.post(f"/api/workflows/{created['id']}/activate")

        response = await client.post("/api/workflows/events", json={
            "event_type": "lead_created",
            "payload": {"tenant_id": TENANT, "lead_id": "lead-1", "source": "facebook"},
        })
        await engine.service.drain()

        assert response.status_code == 202
        assert response.json()["matches"] == [{"action": "start", "workflow_id": created["id"],
                                               "tenant_id": TENANT, "lead_id": "lead-1"}]
        executions = (await client.get(f"/api/workflows/{created['id']}/executions")).json()["executions"]
        assert [e["status"] for e in executions] == ["completed"]
        assert engine.dispatcher.sent[0]["content"] == "Hi Ana"

    async def test_unknown_event_type_422(self, client):
        response = await client.post("/api/workflows/events", json={"event_type": "moon", "payload": {}})
        assert response.status_code == 422

    async def test_execute_get_cancel(self, client, engine):
        created = await _create(client, nodes=[node("t", "trigger"), node("wait", "wait_for_reply")],
                                edges=chain("t", "wait"))
        await client.post(f"/api/workflows/{created['id']}/activate")

        response = await client.post(f"/api/workflows/{created['id']}/test",
                                     json={"tenant_id": TENANT, "lead_id": "lead-1"})
        await engine.service.drain()
        assert response.status_code == 202
        execution_id = response.json()["execution_id"]

        execution = (await client.get(f"/api/workflows/executions/{execution_id}")).json()
        assert execution["status"] == "suspended"
        assert "graph" not in execution

        response = await client.post(f"/api/workflows/executions/{execution_id}/cancel")
        assert response.json()["status"] == "cancelled"

    async def test_manual_resume(self, client, engine):
        created = await _create(client, nodes=[node("t", "trigger"), node("wait", "wait_for_reply"),
                                               node("tag", "add_tag", tag="answered")],
                                edges=chain("t", "wait", "tag"))
        await client.post(f"/api/workflows/{created['id']}/activate")
        response = await client.post(f"/api/workflows/{created['id']}/test",
                                     json={"tenant_id": TENANT, "lead_id": "lead-1"})
        await engine.service.drain()
        execution_id = response.json()["execution_id"]

        response = await client.post(f"/api/workflows/executions/{execution_id}/resume",
                                     json={"node_id": "wait", "payload": {"content": "ok"}})

        assert response.json()["outcome"] == "resumed"
        assert (await engine.lead())["tags"] == ["answered"]

    async def test_execute_wrong_tenant_404(self, client):
        created = await _create(client)
        response = await client.post(f"/api/workflows/{created['id']}/test",
                                     json={"tenant_id": "someone-else"})
        assert response.status_code == 404

    async def test_unknown_execution_404(self, client):
        assert (await client.get("/api/workflows/executions/nope")).status_code == 404
        assert (await client.post("/api/workflows/executions/nope/cancel")).status_code == 404

    async def test_bad_status_filter_422(self, client):
        created = await _create(client)
        response = await client.get(f"/api/workflows/{created['id']}/executions",
                                    params={"status": "sleeping"})
        assert response.status_code == 422
