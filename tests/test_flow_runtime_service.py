"""Tests for instance hosting: persistence, locking, routing of inbound messages."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from exceptions.flow_exception import (
    ExecutionStateException,
    FlowNotFoundException,
    InstanceNotFoundException,
)
from models.request.webhook_message_request import WebhookMessageRequest
from models.scheduled_step_data import ScheduledStepData
from services.flow_runtime_service import FlowRuntimeService
from services.sequence_scheduler_service import SequenceSchedulerService


@pytest.fixture
def channel():
    service = MagicMock()
    service.send_message = AsyncMock(return_value=True)
    service.send_scheduled_step = AsyncMock(return_value=True)
    return service


@pytest.fixture
def runtime(log_util, flow_db, channel):
    return FlowRuntimeService(log_util=log_util, flow_db=flow_db, channel_message_service=channel)


@pytest.fixture
def survey_flow(graph, flow_db):
    flow = graph.flow(
        [
            graph.start(keywords=["survey"]),
            graph.node("ask", "question_input", question="Rate us 1-5", variableName="rating"),
            graph.node("thanks", "text", message="Thank you!"),
        ],
        [graph.edge("start", "ask"), graph.edge("ask", "thanks", "next")],
        id="flow-survey",
        status="published",
    )
    flow_db.flows[flow.id] = flow
    return flow


def inbound(text, sender="+1555", event_id=None, **kwargs):
    return WebhookMessageRequest(
        sender=sender,
        event_id=event_id,
        message_type="text",
        message_body={"type": "text", "text": {"body": text}},
        **kwargs,
    )


class TestStartAndResume:

    @pytest.mark.asyncio
    async def test_start_persists_waiting_state(self, runtime, flow_db, survey_flow):
        response = await runtime.start_instance("flow-survey", "inst-1", "survey", recipient="+1555")

        assert response.status == "success"
        assert response.state.status == "waiting_for_input"
        assert [m.type for m in response.messages] == ["user", "bot"]
        assert flow_db.states["inst-1"].current_node_id == "ask"

    @pytest.mark.asyncio
    async def test_resume_rehydrates_from_storage(self, runtime, flow_db, survey_flow, channel):
        await runtime.start_instance("flow-survey", "inst-1", "survey", recipient="+1555")
        response = await runtime.resume_instance("inst-1", "5")

        assert response.state.status == "completed"
        assert response.state.variables == {"rating": "5"}
        assert [m.content for m in response.messages if m.type == "bot"] == ["Thank you!"]
        assert flow_db.states["inst-1"].status == "completed"
        assert channel.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_no_trigger_creates_no_state(self, runtime, flow_db, survey_flow):
        response = await runtime.start_instance("flow-survey", "inst-1", "hello")

        assert response.status == "no_trigger"
        assert response.state is None
        assert "inst-1" not in flow_db.states

    @pytest.mark.asyncio
    async def test_unknown_flow_and_instance(self, runtime):
        with pytest.raises(FlowNotFoundException):
            await runtime.start_instance("missing", "inst-1", "hi")
        with pytest.raises(InstanceNotFoundException):
            await runtime.resume_instance("inst-404", "hi")
        with pytest.raises(InstanceNotFoundException):
            await runtime.get_instance_state("inst-404")

    @pytest.mark.asyncio
    async def test_second_start_while_active_is_rejected(self, runtime, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")
        with pytest.raises(ExecutionStateException):
            await runtime.start_instance("flow-survey", "inst-1", "survey")

    @pytest.mark.asyncio
    async def test_new_run_archives_the_finished_one(self, runtime, flow_db, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")
        await runtime.resume_instance("inst-1", "4")
        await runtime.start_instance("flow-survey", "inst-1", "survey")

        assert len(flow_db.archive) == 1
        assert flow_db.archive[0].variables == {"rating": "4"}
        assert flow_db.states["inst-1"].status == "waiting_for_input"

    @pytest.mark.asyncio
    async def test_duplicate_resume_event(self, runtime, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")
        await runtime.resume_instance("inst-1", "5", event_id="evt-1")
        response = await runtime.resume_instance("inst-1", "5", event_id="evt-1")

        assert response.status == "duplicate"
        assert response.messages == []

    @pytest.mark.asyncio
    async def test_concurrent_replies_are_serialized(self, runtime, flow_db, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")

        results = await asyncio.gather(
            runtime.resume_instance("inst-1", "5", event_id="a"),
            runtime.resume_instance("inst-1", "1", event_id="b"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ExecutionStateException)
        assert flow_db.states["inst-1"].visited_nodes.count("thanks") == 1


class TestCancelAndReset:

    @pytest.mark.asyncio
    async def test_cancel_then_reset(self, runtime, flow_db, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")

        cancelled = await runtime.cancel_instance("inst-1")
        assert cancelled.state.status == "cancelled"
        assert flow_db.states["inst-1"].status == "cancelled"

        reset = await runtime.reset_instance("inst-1")
        assert reset.state is None
        assert "inst-1" not in flow_db.states
        with pytest.raises(InstanceNotFoundException):
            await runtime.reset_instance("inst-1")


class TestInboundMessages:

    @pytest.mark.asyncio
    async def test_trigger_then_reply(self, runtime, flow_db, survey_flow):
        first = await runtime.process_inbound_message(inbound("I want the survey", event_id="w1"))
        assert first.status == "success"
        assert first.automation_triggered
        assert first.instance_id == "+1555"
        assert first.execution_status == "waiting_for_input"

        second = await runtime.process_inbound_message(inbound("3", event_id="w2"))
        assert second.execution_status == "completed"
        assert flow_db.states["+1555"].variables == {"rating": "3"}

    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_dropped(self, runtime, survey_flow):
        await runtime.process_inbound_message(inbound("survey", event_id="w1"))
        again = await runtime.process_inbound_message(inbound("survey", event_id="w1"))
        assert again.status == "duplicate"

    @pytest.mark.asyncio
    async def test_draft_flows_do_not_trigger(self, runtime, flow_db, survey_flow):
        flow_db.flows["flow-survey"].status = "draft"
        response = await runtime.process_inbound_message(inbound("survey"))
        assert response.status == "no_trigger"
        assert not response.automation_triggered

    @pytest.mark.asyncio
    async def test_explicit_flow_id_is_used_even_if_unpublished(self, runtime, flow_db, survey_flow):
        flow_db.flows["flow-survey"].status = "draft"
        response = await runtime.process_inbound_message(inbound("survey", flow_id="flow-survey"))
        assert response.automation_triggered

    def test_extract_user_input_from_interactive_reply(self):
        text, option_id = FlowRuntimeService.extract_user_input(
            "interactive",
            {"interactive": {"type": "button_reply", "button_reply": {"id": "2", "title": "Support"}}},
        )
        assert (text, option_id) == ("Support", "2")

    def test_extract_user_input_prefers_normalized_reply(self):
        assert FlowRuntimeService.extract_user_input("text", {"user_reply": "yes", "text": {"body": "no"}}) == ("yes", None)


class TestScheduledDelivery:

    def step(self, step_id="run-1:seq:s1"):
        return ScheduledStepData(
            instance_id="inst-1",
            step_id=step_id,
            dedupe_key=f"inst-1:{step_id}",
            recipient="+1555",
            fire_at=datetime.utcnow(),
            payload={"messageType": "text", "textMessage": "Still there?"},
        )

    @pytest.mark.asyncio
    async def test_step_is_sent_through_channel(self, runtime, channel):
        assert await runtime.deliver_scheduled_step(self.step())
        channel.send_scheduled_step.assert_awaited_once_with(
            "+1555", {"messageType": "text", "textMessage": "Still there?"}, "inst-1:run-1:seq:s1"
        )

    @pytest.mark.asyncio
    async def test_steps_of_cancelled_run_are_dropped(self, runtime, flow_db, channel, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")
        await runtime.cancel_instance("inst-1")
        execution_id = flow_db.states["inst-1"].execution_id

        assert await runtime.deliver_scheduled_step(self.step(f"{execution_id}:seq:s1"))
        channel.send_scheduled_step.assert_not_awaited()

    async def run_scheduler(self, runtime, flow_db, log_util):
        scheduler = SequenceSchedulerService(log_util=log_util, flow_db=flow_db, check_interval_seconds=1)
        scheduler.set_delivery_handler(runtime.deliver_scheduled_step)
        return await scheduler.process_due_steps()

    @pytest.mark.asyncio
    async def test_cancelled_steps_stay_dropped_after_reset(self, runtime, flow_db, channel, log_util, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")
        execution_id = flow_db.states["inst-1"].execution_id
        await flow_db.save_scheduled_step(self.step(f"{execution_id}:seq:s1"))

        await runtime.cancel_instance("inst-1")
        await runtime.reset_instance("inst-1")

        assert await self.run_scheduler(runtime, flow_db, log_util) == 0
        channel.send_scheduled_step.assert_not_awaited()
        step = flow_db.steps[f"inst-1:{execution_id}:seq:s1"]
        assert step.processed
        assert step.cancelled

    @pytest.mark.asyncio
    async def test_cancelled_steps_stay_dropped_after_new_run(self, runtime, flow_db, channel, log_util, survey_flow):
        await runtime.start_instance("flow-survey", "inst-1", "survey")
        cancelled_run = flow_db.states["inst-1"].execution_id
        await flow_db.save_scheduled_step(self.step(f"{cancelled_run}:seq:s1"))
        await runtime.cancel_instance("inst-1")

        await runtime.start_instance("flow-survey", "inst-1", "survey")
        new_run = flow_db.states["inst-1"].execution_id
        await flow_db.save_scheduled_step(self.step(f"{new_run}:seq:s1"))

        assert await self.run_scheduler(runtime, flow_db, log_util) == 1
        channel.send_scheduled_step.assert_awaited_once()
        assert channel.send_scheduled_step.await_args.args[2] == f"inst-1:{new_run}:seq:s1"


class TestInstanceLocks:

    @pytest.mark.asyncio
    async def test_locks_are_released_after_each_event(self, runtime, survey_flow):
        for index in range(50):
            await runtime.process_inbound_message(inbound("survey", sender=f"+1555{index:04d}"))

        assert runtime._locks == {}

    @pytest.mark.asyncio
    async def test_lock_is_kept_while_another_event_waits(self, runtime, survey_flow):
        async with runtime._instance_lock("inst-1"):
            waiting = asyncio.create_task(runtime.start_instance("flow-survey", "inst-1", "survey"))
            await asyncio.sleep(0)
            assert runtime._locks["inst-1"].users == 2

        await waiting
        assert runtime._locks == {}
