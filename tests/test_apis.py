"""Tests for the HTTP routers."""

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from apis.execution_api import create_execution_api
from apis.flow_api import create_flow_api
from apis.webhook_message_api import create_webhook_message_api
from services.flow_runtime_service import FlowRuntimeService
from services.flow_service import FlowService
from services.flow_validation_service import FlowValidationService


@pytest.fixture
def app(log_util, flow_db):
    flow_service = FlowService(log_util=log_util, flow_db=flow_db, validation_service=FlowValidationService(log_util=log_util))
    runtime_service = FlowRuntimeService(log_util=log_util, flow_db=flow_db)

    app = FastAPI()
    app.include_router(create_flow_api(log_util=log_util, flow_service=flow_service))
    app.include_router(create_execution_api(log_util=log_util, runtime_service=runtime_service))
    app.include_router(create_webhook_message_api(log_util=log_util, runtime_service=runtime_service))
    return app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def order_flow(graph):
    return {
        "name": "Order status",
        "nodes": [
            graph.start(keywords=["order"]),
            graph.node("ask", "question_input", question="Order number?", variableName="order_id"),
            graph.node("done", "action", actionType="send_message", message="Checking now."),
        ],
        "edges": [graph.edge("start", "ask"), graph.edge("ask", "done", "next")],
    }


class TestFlowApi:

    @pytest.mark.asyncio
    async def test_create_publish_and_list(self, client, order_flow):
        created = await client.post("/flow/create", json=order_flow)
        assert created.status_code == 200
        flow_id = created.json()["id"]

        validation = await client.get(f"/flow/validate/{flow_id}")
        assert validation.json()["is_valid"] is True

        published = await client.post(f"/flow/publish/{flow_id}")
        assert published.json()["status"] == "published"

        listed = await client.get("/flow/list", params={"status": "published"})
        assert [f["id"] for f in listed.json()] == [flow_id]

    @pytest.mark.asyncio
    async def test_publish_invalid_flow_returns_issues(self, client):
        created = await client.post("/flow/create", json={"name": "Empty", "nodes": [], "edges": []})

        response = await client.post(f"/flow/publish/{created.json()['id']}")

        assert response.status_code == 400
        assert response.json()["detail"]["issues"][0]["severity"] == "error"

    @pytest.mark.asyncio
    async def test_malformed_graph_is_a_bad_request(self, client):
        response = await client.post("/flow/create", json={"nodes": [{"id": "x", "type": "nope"}]})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_validate_unsaved_graph(self, client):
        response = await client.post("/flow/validate", json={"nodes": [], "edges": []})
        body = response.json()
        assert body["is_valid"] is False
        assert len(body["errors"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_flow_is_404(self, client):
        assert (await client.get("/flow/detail/missing")).status_code == 404
        assert (await client.delete("/flow/delete/missing")).status_code == 404


class TestExecutionApi:

    @pytest.mark.asyncio
    async def test_start_resume_and_state(self, client, order_flow):
        flow_id = (await client.post("/flow/create", json=order_flow)).json()["id"]

        started = await client.post("/execution/start", json={
            "flow_id": flow_id, "instance_id": "chat-1", "keyword": "where is my order"
        })
        assert started.status_code == 200
        assert started.json()["state"]["status"] == "waiting_for_input"

        resumed = await client.post("/execution/resume/chat-1", json={"user_input": "A-100"})
        body = resumed.json()
        assert body["state"]["status"] == "completed"
        assert body["state"]["variables"] == {"order_id": "A-100"}
        assert [m["content"] for m in body["messages"] if m["type"] == "bot"] == ["Checking now."]

        state = await client.get("/execution/state/chat-1")
        assert state.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_resume_finished_instance_conflicts(self, client, order_flow):
        flow_id = (await client.post("/flow/create", json=order_flow)).json()["id"]
        await client.post("/execution/start", json={"flow_id": flow_id, "instance_id": "chat-2", "keyword": "order"})
        await client.post("/execution/cancel/chat-2")

        response = await client.post("/execution/resume/chat-2", json={"user_input": "A-1"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reset_and_unknown_instance(self, client, order_flow):
        flow_id = (await client.post("/flow/create", json=order_flow)).json()["id"]
        await client.post("/execution/start", json={"flow_id": flow_id, "instance_id": "chat-3", "keyword": "order"})

        reset = await client.post("/execution/reset/chat-3")
        assert reset.json()["state"] is None
        assert (await client.get("/execution/state/chat-3")).status_code == 404


class TestWebhookApi:

    @pytest.mark.asyncio
    async def test_inbound_message_triggers_published_flow(self, client, order_flow):
        flow_id = (await client.post("/flow/create", json=order_flow)).json()["id"]
        await client.post(f"/flow/publish/{flow_id}")

        response = await client.post("/webhook/message", json={
            "sender": "+1555",
            "message_type": "text",
            "message_body": {"text": {"body": "order please"}},
        })

        body = response.json()
        assert body["status"] == "success"
        assert body["automation_triggered"] is True
        assert body["flow_id"] == flow_id
        assert body["execution_status"] == "waiting_for_input"

    @pytest.mark.asyncio
    async def test_errors_are_reported_in_body(self, client):
        response = await client.post("/webhook/message", json={
            "sender": "+1555",
            "flow_id": "missing",
            "message_body": {"text": {"body": "order"}},
        })
        assert response.status_code == 200
        assert response.json()["status"] == "error"

    @pytest.mark.asyncio
    async def test_health(self, client):
        assert (await client.get("/webhook/health")).json()["status"] == "healthy"
