import asyncio
import traceback
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List, Tuple, Callable, Awaitable

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import (
    FlowException,
    FlowNotFoundException,
    FlowServiceException,
    InstanceNotFoundException,
    ExecutionStateException,
)

# Models
from models.flow_data import FlowData
from models.execution_state import ExecutionState
from models.flow_message_data import FlowMessage
from models.scheduled_step_data import ScheduledStepData
from models.request.webhook_message_request import WebhookMessageRequest
from models.response.execution_response import ExecutionResponse
from models.response.webhook_message_response import WebhookMessageResponse

# Services
from services.flow_engine import FlowEngine, DEFAULT_MAX_STEPS
from services.trigger_identification_service import TriggerIdentificationService
from services.channel_message_service import ChannelMessageService
from services.http_api_service import HttpApiService
from services.sequence_scheduler_service import SequenceSchedulerService
from services.input_flow_webhook_service import InputFlowWebhookService
from services.assistant_handoff_service import AssistantHandoffService


class InstanceLock:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class FlowRuntimeService:
    """
    Hosts flow engines for conversation instances.

    Every operation on an instance runs under that instance's lock, rehydrates
    the engine from the persisted ExecutionState, and saves the state back
    before the lock is released. Terminal states stay in the live collection
    until a new run replaces them or the instance is reset, then they are archived.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        channel_message_service: Optional[ChannelMessageService] = None,
        http_api_service: Optional[HttpApiService] = None,
        scheduler_service: Optional[SequenceSchedulerService] = None,
        webhook_service: Optional[InputFlowWebhookService] = None,
        assistant_handoff_service: Optional[AssistantHandoffService] = None,
        max_steps: int = DEFAULT_MAX_STEPS
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.channel_message_service = channel_message_service
        self.http_api_service = http_api_service
        self.scheduler_service = scheduler_service
        self.webhook_service = webhook_service
        self.assistant_handoff_service = assistant_handoff_service
        self.max_steps = max_steps
        self.trigger_service = TriggerIdentificationService(log_util=log_util)
        self._locks: Dict[str, InstanceLock] = {}

    @asynccontextmanager
    async def _instance_lock(self, instance_id: str):
        """
        Serialize work on one instance. The entry is dropped once nobody holds or waits for it.
        """
        entry = self._locks.get(instance_id)
        if entry is None:
            entry = InstanceLock()
            self._locks[instance_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[instance_id]

    def _build_engine(
        self,
        flow: FlowData,
        instance_id: str,
        recipient: Optional[str],
        state: Optional[ExecutionState] = None
    ) -> FlowEngine:
        return FlowEngine(
            flow=flow,
            log_util=self.log_util,
            instance_id=instance_id,
            recipient=recipient,
            message_service=self.channel_message_service,
            http_api_service=self.http_api_service,
            scheduler_service=self.scheduler_service,
            webhook_service=self.webhook_service,
            assistant_handoff_service=self.assistant_handoff_service,
            max_steps=self.max_steps,
            state=state
        )

    async def _load_flow(self, flow_id: str) -> FlowData:
        flow = await self.flow_db.get_flow_by_id(flow_id)
        if flow is None:
            raise FlowNotFoundException(f"Flow {flow_id} not found")
        return flow

    async def _load_engine(self, instance_id: str) -> FlowEngine:
        state = await self.flow_db.get_execution_state(instance_id)
        if state is None:
            raise InstanceNotFoundException(f"No execution found for instance {instance_id}")
        flow = await self._load_flow(state.flow_id)
        return self._build_engine(flow, instance_id, state.recipient, state)

    async def _execute(self, engine: FlowEngine, call: Callable[[], Awaitable[Any]]) -> List[FlowMessage]:
        """
        Run one engine call and collect the messages it emits. Unexpected errors
        mark the execution failed and are persisted before being re-raised.
        """
        messages: List[FlowMessage] = []
        unsubscribe = engine.subscribe(messages.append)
        try:
            await call()
        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowRuntimeService",
                message=f"[RUNTIME] Engine error for instance {engine.instance_id}: {str(e)}"
            )
            self.log_util.error(
                service_name="FlowRuntimeService",
                message=f"Traceback: {traceback.format_exc()}"
            )
            if engine.state is not None and not engine.state.is_terminal:
                engine.state.status = "failed"
                engine.state.error_message = str(e)
                await self.flow_db.save_execution_state(engine.state)
            raise FlowServiceException(f"Execution of instance {engine.instance_id} failed: {str(e)}")
        finally:
            unsubscribe()
        return messages

    async def _start_locked(
        self,
        flow: FlowData,
        instance_id: str,
        keyword: str,
        recipient: Optional[str],
        event_id: Optional[str],
        previous: Optional[ExecutionState]
    ) -> Tuple[Optional[ExecutionState], List[FlowMessage]]:
        engine = self._build_engine(flow, instance_id, recipient)
        messages = await self._execute(engine, lambda: engine.start(keyword, event_id))

        if engine.state is None:
            return None, messages

        if previous is not None:
            await self.flow_db.archive_execution_state(previous)
        await self.flow_db.save_execution_state(engine.state)
        return engine.state, messages

    async def start_instance(
        self,
        flow_id: str,
        instance_id: str,
        keyword: str,
        recipient: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> ExecutionResponse:
        """
        Start a fresh run of a flow for an instance.

        Raises:
            FlowNotFoundException: if the flow does not exist
            ExecutionStateException: if the instance already has an active run
        """
        async with self._instance_lock(instance_id):
            flow = await self._load_flow(flow_id)
            previous = await self.flow_db.get_execution_state(instance_id)

            if previous is not None and previous.has_processed_event(event_id):
                return ExecutionResponse(
                    status="duplicate",
                    message=f"Event {event_id} was already processed",
                    state=previous
                )

            if previous is not None and not previous.is_terminal:
                raise ExecutionStateException(
                    f"Instance {instance_id} is already {previous.status}, reset or cancel it first"
                )

            state, messages = await self._start_locked(flow, instance_id, keyword, recipient, event_id, previous)

            if state is None:
                return ExecutionResponse(
                    status="no_trigger",
                    message=f"No trigger in flow {flow_id} matched '{keyword}'",
                    state=None,
                    messages=messages
                )

            self.log_util.info(
                service_name="FlowRuntimeService",
                message=f"[RUNTIME] Instance {instance_id} started flow {flow_id}, status {state.status}"
            )
            return ExecutionResponse(
                status="success",
                message="Execution started",
                state=state,
                messages=messages
            )

    async def resume_instance(
        self,
        instance_id: str,
        user_input: str,
        option_id: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> ExecutionResponse:
        async with self._instance_lock(instance_id):
            engine = await self._load_engine(instance_id)

            if engine.state.has_processed_event(event_id):
                return ExecutionResponse(
                    status="duplicate",
                    message=f"Event {event_id} was already processed",
                    state=engine.state
                )

            messages = await self._execute(engine, lambda: engine.resume(user_input, option_id, event_id))
            await self.flow_db.save_execution_state(engine.state)

            return ExecutionResponse(
                status="success",
                message="Execution resumed",
                state=engine.state,
                messages=messages
            )

    async def cancel_instance(self, instance_id: str) -> ExecutionResponse:
        async with self._instance_lock(instance_id):
            engine = await self._load_engine(instance_id)
            messages = await self._execute(engine, engine.cancel)
            await self.flow_db.save_execution_state(engine.state)
            cancelled_steps = await self.flow_db.cancel_scheduled_steps(instance_id, engine.state.execution_id)
            self.log_util.info(
                service_name="FlowRuntimeService",
                message=f"[RUNTIME] Instance {instance_id} cancelled, {cancelled_steps} scheduled step(s) dropped"
            )

            return ExecutionResponse(
                status="success",
                message="Execution cancelled",
                state=engine.state,
                messages=messages
            )

    async def reset_instance(self, instance_id: str) -> ExecutionResponse:
        """
        Discard the instance's state. The archived copy is kept for history.
        """
        async with self._instance_lock(instance_id):
            state = await self.flow_db.get_execution_state(instance_id)
            if state is None:
                raise InstanceNotFoundException(f"No execution found for instance {instance_id}")

            await self.flow_db.archive_execution_state(state)
            self.log_util.info(
                service_name="FlowRuntimeService",
                message=f"[RUNTIME] Instance {instance_id} reset"
            )
            return ExecutionResponse(status="success", message="Execution reset", state=None)

    async def get_instance_state(self, instance_id: str) -> ExecutionState:
        state = await self.flow_db.get_execution_state(instance_id)
        if state is None:
            raise InstanceNotFoundException(f"No execution found for instance {instance_id}")
        return state

    @staticmethod
    def extract_user_input(message_type: str, message_body: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        """
        Extract the reply text and, for interactive replies, the selected option id.
        Normalized bodies carrying 'user_reply' take precedence over the raw channel structure.
        """
        if "user_reply" in message_body:
            return message_body.get("user_reply") or "", message_body.get("option_id")

        user_input = ""
        option_id = None
        if message_type == "button" and "button" in message_body:
            user_input = message_body["button"].get("text", message_body["button"].get("payload", ""))
        elif message_type == "text" and "text" in message_body:
            user_input = message_body["text"].get("body", "")
        elif message_type == "interactive" and "interactive" in message_body:
            interactive_data = message_body.get("interactive", {})
            if interactive_data.get("type") == "button_reply":
                reply = interactive_data.get("button_reply", {})
            elif interactive_data.get("type") == "list_reply":
                reply = interactive_data.get("list_reply", {})
            else:
                reply = {}
            user_input = reply.get("title", "")
            option_id = reply.get("id")
        return user_input or "", option_id

    async def process_inbound_message(self, request: WebhookMessageRequest) -> WebhookMessageResponse:
        """
        Route an inbound message: answer a waiting instance, otherwise match it
        against flow triggers and start a new run.
        """
        instance_id = request.instance_id or request.sender
        user_input, option_id = self.extract_user_input(request.message_type, request.message_body)

        self.log_util.info(
            service_name="FlowRuntimeService",
            message=f"[RUNTIME] Inbound {request.message_type} message from {request.sender} on {request.channel} for instance {instance_id}"
        )

        async with self._instance_lock(instance_id):
            state = await self.flow_db.get_execution_state(instance_id)

            if state is not None and state.has_processed_event(request.event_id):
                return WebhookMessageResponse(
                    status="duplicate",
                    message=f"Event {request.event_id} was already processed",
                    flow_id=state.flow_id,
                    instance_id=instance_id,
                    execution_status=state.status,
                    current_node_id=state.current_node_id
                )

            if state is not None and state.waiting_for_input:
                flow = await self._load_flow(state.flow_id)
                engine = self._build_engine(flow, instance_id, state.recipient, state)
                messages = await self._execute(
                    engine,
                    lambda: engine.resume(user_input, option_id, request.event_id)
                )
                await self.flow_db.save_execution_state(engine.state)

                return WebhookMessageResponse(
                    status="success",
                    message="Reply processed",
                    automation_triggered=True,
                    flow_id=flow.id,
                    instance_id=instance_id,
                    execution_status=engine.state.status,
                    current_node_id=engine.state.current_node_id,
                    messages=messages
                )

            if request.flow_id:
                flows = [await self._load_flow(request.flow_id)]
            else:
                flows = await self.flow_db.get_published_flows()

            match = self.trigger_service.find_matching_flow(flows, user_input)
            if match is None:
                self.log_util.info(
                    service_name="FlowRuntimeService",
                    message=f"[RUNTIME] No trigger matched inbound message for instance {instance_id}"
                )
                return WebhookMessageResponse(
                    status="no_trigger",
                    message="No flow trigger matched the message",
                    instance_id=instance_id
                )

            flow, _start_node = match
            if state is not None and not state.is_terminal:
                self.log_util.warning(
                    service_name="FlowRuntimeService",
                    message=f"[RUNTIME] Replacing stale {state.status} execution of instance {instance_id}"
                )

            new_state, messages = await self._start_locked(
                flow, instance_id, user_input, request.sender, request.event_id, state
            )

            return WebhookMessageResponse(
                status="success",
                message="Automation triggered",
                automation_triggered=new_state is not None,
                flow_id=flow.id,
                instance_id=instance_id,
                execution_status=new_state.status if new_state else None,
                current_node_id=new_state.current_node_id if new_state else None,
                messages=messages
            )

    async def deliver_scheduled_step(self, step: ScheduledStepData) -> bool:
        """
        Delivery handler for the sequence scheduler. Steps of a cancelled run are
        dropped and reported as handled.
        """
        state = await self.flow_db.get_execution_state(step.instance_id)
        if (
            state is not None
            and state.status == "cancelled"
            and step.step_id.startswith(f"{state.execution_id}:")
        ):
            self.log_util.info(
                service_name="FlowRuntimeService",
                message=f"[RUNTIME] Instance {step.instance_id} was cancelled, step {step.dedupe_key} not sent"
            )
            return True

        if self.channel_message_service is None:
            self.log_util.error(
                service_name="FlowRuntimeService",
                message=f"[RUNTIME] No channel service configured, step {step.dedupe_key} not sent"
            )
            return False

        return await self.channel_message_service.send_scheduled_step(
            step.recipient, step.payload, step.dedupe_key
        )
