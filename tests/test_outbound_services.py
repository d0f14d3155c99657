"""Tests for the outbound HTTP collaborators, using httpx.MockTransport."""

import json

import httpx
import pytest

from models.flow_data import HttpApiNodeData, WebhookConfig
from models.flow_message_data import FlowMessage, MessageOption
from models.variable_store import VariableStore
from services.channel_message_service import ChannelMessageService
from services.http_api_service import HttpApiService
from services.input_flow_webhook_service import InputFlowWebhookService


class Recorder:
    """Transport handler that records requests and replies with a fixed response."""

    def __init__(self, status_code=200, json_body=None, text=None, raise_error=None):
        self.requests = []
        self.status_code = status_code
        self.json_body = json_body
        self.text = text
        self.raise_error = raise_error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        if self.json_body is not None:
            return httpx.Response(self.status_code, json=self.json_body)
        return httpx.Response(self.status_code, text=self.text or "")


class TestHttpApiService:

    @pytest.mark.asyncio
    async def test_get_interpolates_url_and_parses_json(self, log_util):
        recorder = Recorder(json_body={"status": "shipped"})
        service = HttpApiService(log_util=log_util, transport=httpx.MockTransport(recorder))
        node_data = HttpApiNodeData(method="GET", url="https://api.example.com/orders/{{order_id}}", body='{"ignored": true}')

        result = await service.execute(node_data, VariableStore({"order_id": "A17"}))

        assert result.success
        assert result.status_code == 200
        assert result.data == {"status": "shipped"}
        request = recorder.requests[0]
        assert str(request.url) == "https://api.example.com/orders/A17"
        assert request.content == b""

    @pytest.mark.asyncio
    async def test_post_sends_interpolated_json_body_and_auth(self, log_util):
        recorder = Recorder(status_code=201, json_body={"id": 1})
        service = HttpApiService(log_util=log_util, transport=httpx.MockTransport(recorder))
        node_data = HttpApiNodeData.model_validate({
            "method": "POST",
            "url": "https://crm.example.com/leads",
            "headers": [{"key": "X-Source", "value": "{{channel}}"}, {"key": "", "value": "dropped"}],
            "body": '{"email": "{{email}}"}',
            "bodyType": "json",
            "auth": {"type": "bearer", "token": "secret-token"},
        })

        result = await service.execute(node_data, VariableStore({"email": "ada@example.com", "channel": "whatsapp"}))

        assert result.success
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers["X-Source"] == "whatsapp"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"email": "ada@example.com"}

    def test_basic_and_api_key_auth_headers(self, log_util):
        service = HttpApiService(log_util=log_util)
        basic = HttpApiNodeData.model_validate({"auth": {"type": "basic", "username": "u", "password": "p"}})
        api_key = HttpApiNodeData.model_validate({"auth": {"type": "api_key", "apiKey": "k", "apiKeyHeader": "X-Api-Key"}})

        assert service.build_headers(basic, VariableStore())["Authorization"] == "Basic dTpw"
        assert service.build_headers(api_key, VariableStore()) == {"X-Api-Key": "k"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_failure_with_body(self, log_util):
        recorder = Recorder(status_code=404, text="not found")
        service = HttpApiService(log_util=log_util, transport=httpx.MockTransport(recorder))

        result = await service.execute(HttpApiNodeData(url="https://api.example.com/x"), VariableStore())

        assert not result.success
        assert result.status_code == 404
        assert result.data == "not found"
        assert "404" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self, log_util):
        recorder = Recorder(raise_error=httpx.ReadTimeout("too slow"))
        service = HttpApiService(log_util=log_util, transport=httpx.MockTransport(recorder))

        result = await service.execute(HttpApiNodeData(url="https://api.example.com/x"), VariableStore())

        assert not result.success
        assert result.timed_out

    @pytest.mark.asyncio
    async def test_connection_error_is_reported(self, log_util):
        recorder = Recorder(raise_error=httpx.ConnectError("refused"))
        service = HttpApiService(log_util=log_util, transport=httpx.MockTransport(recorder))

        result = await service.execute(HttpApiNodeData(url="https://api.example.com/x"), VariableStore())

        assert not result.success
        assert not result.timed_out
        assert "refused" in result.error


class TestChannelMessageService:

    @pytest.mark.asyncio
    async def test_interactive_message_payload(self, log_util):
        recorder = Recorder()
        service = ChannelMessageService(log_util=log_util, channel_service_url="http://channel.local/send",
                                        transport=httpx.MockTransport(recorder))
        message = FlowMessage(id="m-1", type="bot", content="Pick one", node_id="q",
                              options=[MessageOption(id="1", title="Sales")])

        assert await service.send_message("+1555", message)

        request = recorder.requests[0]
        assert request.headers["Idempotency-Key"] == "m-1"
        body = json.loads(request.content)
        assert body["recipient"] == "+1555"
        assert body["content"]["content_type"] == "interactive"
        assert body["content"]["options"][0]["title"] == "Sales"

    @pytest.mark.asyncio
    async def test_scheduled_template_step_uses_dedupe_key(self, log_util):
        recorder = Recorder()
        service = ChannelMessageService(log_util=log_util, transport=httpx.MockTransport(recorder))

        sent = await service.send_scheduled_step(
            "+1555",
            {"messageType": "template", "templateName": "winback", "templateLanguage": "en"},
            "inst-1:run:seq:s3",
        )

        assert sent
        request = recorder.requests[0]
        assert request.headers["Idempotency-Key"] == "inst-1:run:seq:s3"
        assert json.loads(request.content)["content"]["template_name"] == "winback"

    @pytest.mark.asyncio
    async def test_rejected_or_missing_recipient(self, log_util):
        recorder = Recorder(status_code=503)
        service = ChannelMessageService(log_util=log_util, transport=httpx.MockTransport(recorder))
        message = FlowMessage(id="m-2", type="bot", content="hello")

        assert await service.send_message("+1555", message) is False
        assert await service.send_message(None, message) is False
        assert len(recorder.requests) == 1


class TestInputFlowWebhookService:

    @pytest.mark.asyncio
    async def test_answers_and_metadata_are_posted(self, log_util):
        recorder = Recorder()
        service = InputFlowWebhookService(log_util=log_util, transport=httpx.MockTransport(recorder))
        webhook = WebhookConfig(enabled=True, url="https://hooks.example.com/in", method="PUT",
                                headers={"X-Token": "t"})

        sent = await service.send_answers(webhook, {"name": "Ada"}, {"instance_id": "inst-1"})

        assert sent
        request = recorder.requests[0]
        assert request.method == "PUT"
        assert request.headers["X-Token"] == "t"
        body = json.loads(request.content)
        assert body["answers"] == {"name": "Ada"}
        assert body["metadata"] == {"instance_id": "inst-1"}

    @pytest.mark.asyncio
    async def test_metadata_can_be_left_out(self, log_util):
        recorder = Recorder()
        service = InputFlowWebhookService(log_util=log_util, transport=httpx.MockTransport(recorder))
        webhook = WebhookConfig(enabled=True, url="https://hooks.example.com/in", includeMetadata=False)

        await service.send_answers(webhook, {"name": "Ada"}, {"instance_id": "inst-1"})

        assert "metadata" not in json.loads(recorder.requests[0].content)

    @pytest.mark.asyncio
    async def test_disabled_webhook_is_not_called(self, log_util):
        recorder = Recorder()
        service = InputFlowWebhookService(log_util=log_util, transport=httpx.MockTransport(recorder))

        assert await service.send_answers(WebhookConfig(enabled=False, url="https://x.io"), {}) is False
        assert recorder.requests == []
