"""
Flow Engine
Resumable state machine that walks a flow graph for one conversation instance.
"""
import asyncio
import inspect
import uuid
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Callable, Awaitable, Union, TYPE_CHECKING

# Utils
from utils.log_utils import LogUtil
from utils.delay_utils import parse_delay_seconds, TEMPLATE_REQUIRED_AFTER_SECONDS

# Exceptions
from exceptions.flow_exception import NodeNotFoundException, ExecutionStateException

# Models
from models.flow_data import (
    FlowData,
    FlowNode,
    FlowEdge,
    StartNode,
    QuestionNode,
    TextNode,
    MediaNode,
    ConditionNode,
    ActionNode,
    QuestionInputNode,
    UserInputFlowNode,
    SequenceNode,
    HttpApiNode,
    CTAButtonNode,
    DEFAULT_HANDLE,
    TRUE_HANDLE,
    FALSE_HANDLE,
    SUCCESS_HANDLE,
    ERROR_HANDLE,
    NEXT_HANDLE,
    FIRST_QUESTION_HANDLE,
    option_handle,
)
from models.execution_state import ExecutionState, ExecutionStatus
from models.flow_message_data import FlowMessage, MessageOption
from models.http_api_result import HttpApiResult
from models.variable_store import VariableStore

# Services
from services.condition_evaluation_service import ConditionEvaluationService
from services.trigger_identification_service import TriggerIdentificationService

if TYPE_CHECKING:
    from services.channel_message_service import ChannelMessageService
    from services.http_api_service import HttpApiService
    from services.sequence_scheduler_service import SequenceSchedulerService
    from services.input_flow_webhook_service import InputFlowWebhookService
    from services.assistant_handoff_service import AssistantHandoffService

MessageListener = Callable[[FlowMessage], Union[None, Awaitable[None]]]

DEFAULT_MAX_STEPS = 500
DEFAULT_HTTP_TIMEOUT_SECONDS = 30


class FlowEngine:
    """
    Executes one flow for one conversation instance.

    The engine is single-threaded per instance: each call to start/resume runs
    nodes to completion until the flow waits for input or terminates. Callers
    must not run two calls on the same engine at once (FlowRuntimeService holds
    a lock per instance for that).
    """

    def __init__(
        self,
        flow: FlowData,
        log_util: LogUtil,
        instance_id: str,
        recipient: Optional[str] = None,
        message_service: Optional["ChannelMessageService"] = None,
        http_api_service: Optional["HttpApiService"] = None,
        scheduler_service: Optional["SequenceSchedulerService"] = None,
        webhook_service: Optional["InputFlowWebhookService"] = None,
        assistant_handoff_service: Optional["AssistantHandoffService"] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        state: Optional[ExecutionState] = None
    ):
        self.flow = flow
        self.log_util = log_util
        self.instance_id = instance_id
        self.recipient = recipient
        self.message_service = message_service
        self.http_api_service = http_api_service
        self.scheduler_service = scheduler_service
        self.webhook_service = webhook_service
        self.assistant_handoff_service = assistant_handoff_service
        self.max_steps = max_steps
        self.sleep = sleep

        self.state: Optional[ExecutionState] = state
        self.messages: List[FlowMessage] = []
        self._listeners: List[MessageListener] = []

        self.condition_service = ConditionEvaluationService(log_util=log_util)
        self.trigger_service = TriggerIdentificationService(log_util=log_util)

        self._handlers = {
            "start": self._handle_start_node,
            "question": self._handle_question_node,
            "text": self._handle_text_node,
            "media": self._handle_media_node,
            "condition": self._handle_condition_node,
            "action": self._handle_action_node,
            "question_input": self._handle_question_input_node,
            "user_input_flow": self._handle_user_input_flow_node,
            "sequence": self._handle_sequence_node,
            "http_api": self._handle_http_api_node,
            "cta_button": self._handle_cta_button_node,
        }

    # Observer interface

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """
        Register a callback for every emitted message. Returns a function that unsubscribes it.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_state(self) -> Optional[ExecutionState]:
        return self.state

    @property
    def variables(self) -> VariableStore:
        return VariableStore(self.state.variables if self.state is not None else {})

    async def _emit(self, message_type: str, content: str, node_id: Optional[str] = None, **fields) -> FlowMessage:
        message = FlowMessage(
            id=f"msg-{uuid.uuid4().hex}",
            type=message_type,
            content=content or "",
            node_id=node_id,
            **fields
        )
        self.messages.append(message)

        if message_type == "bot" and self.message_service is not None:
            try:
                accepted = await self.message_service.send_message(self.recipient, message)
                if not accepted:
                    self.log_util.warning(
                        service_name="FlowEngine",
                        message=f"[FLOW_ENGINE] Message {message.id} from node {node_id} was not accepted for {self.recipient}"
                    )
            except Exception as e:
                self.log_util.error(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] Error sending message from node {node_id}: {str(e)}"
                )

        for listener in list(self._listeners):
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.log_util.error(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] Message listener failed: {str(e)}"
                )

        return message

    async def _notice(self, content: str, node_id: Optional[str] = None) -> FlowMessage:
        return await self._emit("system", content, node_id=node_id)

    # Entry points

    async def start(self, keyword: str, event_id: Optional[str] = None) -> Optional[ExecutionState]:
        """
        Start a fresh execution from the first start node whose trigger matches the keyword.

        Returns:
            The new ExecutionState, or None when no trigger matched
        """
        if self.state is not None and self.state.has_processed_event(event_id):
            self.log_util.info(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] Duplicate start event {event_id} for instance {self.instance_id} ignored"
            )
            return self.state

        if self.state is not None and not self.state.is_terminal:
            raise ExecutionStateException(
                f"Instance {self.instance_id} is already {self.state.status}, reset or cancel it before starting again"
            )

        self.messages = []
        await self._emit("user", keyword)

        start_node = self.trigger_service.find_matching_start_node(self.flow, keyword)
        if start_node is None:
            await self._notice(f"No trigger found for \"{keyword}\". Try a different keyword.")
            self.log_util.info(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] No trigger in flow {self.flow.id} for '{keyword}', instance {self.instance_id} stays idle"
            )
            return None

        self.state = ExecutionState(
            instance_id=self.instance_id,
            flow_id=self.flow.id,
            recipient=self.recipient,
            trigger_keyword=keyword,
            start_node_id=start_node.id,
            status="running"
        )
        self.state.remember_event(event_id)

        self.log_util.info(
            service_name="FlowEngine",
            message=f"[FLOW_ENGINE] Instance {self.instance_id} started flow {self.flow.id} at node {start_node.id}"
        )

        await self._run(start_node.id)
        return self.state

    async def resume(self, user_input: str, option_id: Optional[str] = None, event_id: Optional[str] = None) -> ExecutionState:
        """
        Continue a waiting execution with the contact's reply.

        Raises:
            ExecutionStateException: if the instance is not waiting for input
        """
        if self.state is None:
            raise ExecutionStateException(f"Instance {self.instance_id} has no execution to resume")

        if self.state.has_processed_event(event_id):
            self.log_util.info(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] Duplicate resume event {event_id} for instance {self.instance_id} ignored"
            )
            return self.state

        if not self.state.waiting_for_input:
            raise ExecutionStateException(
                f"Instance {self.instance_id} is not waiting for input (status: {self.state.status})"
            )

        node = self.flow.get_node(self.state.current_node_id)
        if node is None:
            raise NodeNotFoundException(
                f"Node {self.state.current_node_id} not found in flow {self.flow.id}"
            )

        self.state.remember_event(event_id)
        user_input = user_input or ""
        await self._emit("user", user_input)

        if isinstance(node, QuestionInputNode):
            next_node_id = await self._resume_question_input(node, user_input, option_id)
        elif isinstance(node, QuestionNode):
            next_node_id = await self._resume_question(node, user_input, option_id)
        else:
            raise ExecutionStateException(f"Node {node.id} of type {node.type} does not accept input")

        await self._run(next_node_id)
        return self.state

    def reset(self):
        """
        Drop the execution state and transcript. The flow itself is untouched.
        """
        self.state = None
        self.messages = []

    async def cancel(self) -> ExecutionState:
        if self.state is None or self.state.is_terminal:
            raise ExecutionStateException(f"Instance {self.instance_id} has no active execution to cancel")

        await self._terminate("cancelled", notice="Conversation cancelled.")
        return self.state

    # Traversal

    async def _run(self, node_id: Optional[str]):
        while node_id is not None and self.state.status == "running":
            node_id = await self.step(node_id)

    async def step(self, node_id: str) -> Optional[str]:
        """
        Process one node.

        Returns:
            The node to process next, or None if the execution waits or ended
        """
        if self.state is None:
            raise ExecutionStateException(f"Instance {self.instance_id} has no active execution")

        node = self.flow.get_node(node_id)
        if node is None:
            raise NodeNotFoundException(f"Node {node_id} not found in flow {self.flow.id}")

        if self.state.step_count >= self.max_steps:
            await self._terminate(
                "failed",
                notice=f"Flow loop detected: stopped after {self.max_steps} steps.",
                error_message="Flow loop detected"
            )
            return None

        if self.state.active_input_flow_node_id and not isinstance(node, QuestionInputNode):
            await self._complete_input_flow()

        self.state.step_count += 1
        self.state.current_node_id = node_id
        self.state.visited_nodes.append(node_id)
        self.state.updated_at = datetime.utcnow()

        self.log_util.debug(
            service_name="FlowEngine",
            message=f"[FLOW_ENGINE] Instance {self.instance_id} processing {node.type} node {node_id}"
        )

        handler = self._handlers[node.type]
        return await handler(node)

    def _edge_target(self, edges: List[FlowEdge]) -> Optional[str]:
        """
        First edge wins. A target missing from the flow means there is no path.
        """
        if not edges:
            return None
        edge = edges[0]
        if self.flow.get_node(edge.target) is None:
            self.log_util.warning(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] Edge {edge.id} points to missing node {edge.target}, treating as no path"
            )
            return None
        return edge.target

    def _handle_target(self, node_id: str, handle: str) -> Optional[str]:
        return self._edge_target(self.flow.edges_from(node_id, handle))

    def _default_target(self, node_id: str, strict: bool = False) -> Optional[str]:
        """
        Target of the node's default output. Unless strict, falls back to the
        first edge leaving the node when no edge uses the default handle.
        """
        edges = [
            edge for edge in self.flow.edges_from(node_id)
            if edge.sourceHandle is None or edge.sourceHandle == DEFAULT_HANDLE
        ]
        if not edges and not strict:
            edges = self.flow.edges_from(node_id)
        return self._edge_target(edges)

    async def _continue_or_complete(self, node: FlowNode) -> Optional[str]:
        next_node_id = self._default_target(node.id)
        if next_node_id is None:
            await self._terminate("completed")
        return next_node_id

    async def _terminate(
        self,
        status: ExecutionStatus,
        notice: Optional[str] = None,
        error_message: Optional[str] = None
    ):
        if notice:
            await self._notice(notice, node_id=self.state.current_node_id)

        if self.state.active_input_flow_node_id and status != "cancelled":
            await self._complete_input_flow()

        self.state.status = status
        self.state.pending_variable_name = None
        self.state.error_message = error_message
        self.state.completed_at = datetime.utcnow()
        self.state.updated_at = self.state.completed_at

        self.log_util.info(
            service_name="FlowEngine",
            message=f"[FLOW_ENGINE] Instance {self.instance_id} {status} at node {self.state.current_node_id}"
        )

    # Node handlers

    async def _handle_start_node(self, node: StartNode) -> Optional[str]:
        next_node_id = self._default_target(node.id)
        if next_node_id is None:
            await self._terminate("completed", notice="Flow ends here (no connected node).")
        return next_node_id

    async def _handle_question_node(self, node: QuestionNode) -> Optional[str]:
        data = node.data
        options = [
            MessageOption(id=option.id, title=option.title, description=option.description)
            for option in data.options
        ]

        await self._emit(
            "bot",
            data.body,
            node_id=node.id,
            options=options or None,
            header=data.header.content if data.header else None,
            footer=data.footer
        )

        if options:
            self.state.status = "waiting_for_input"
            self.state.pending_variable_name = None
            return None

        return await self._continue_or_complete(node)

    async def _handle_text_node(self, node: TextNode) -> Optional[str]:
        data = node.data

        if data.delaySeconds and data.delaySeconds > 0:
            await self.sleep(data.delaySeconds)

        if data.message:
            await self._emit("bot", data.message, node_id=node.id)

        return await self._continue_or_complete(node)

    async def _handle_media_node(self, node: MediaNode) -> Optional[str]:
        data = node.data

        await self._emit(
            "bot",
            data.caption or f"[{data.mediaType.upper()}]",
            node_id=node.id,
            media_type=data.mediaType,
            media_id=data.mediaId
        )

        return await self._continue_or_complete(node)

    async def _handle_condition_node(self, node: ConditionNode) -> Optional[str]:
        passes = self.condition_service.evaluate(node.data, self.variables)
        branch = "True" if passes else "False"

        await self._notice(f"Condition evaluated: {branch}", node_id=node.id)

        next_node_id = self._handle_target(node.id, TRUE_HANDLE if passes else FALSE_HANDLE)
        if next_node_id is None:
            await self._terminate(
                "failed",
                notice=f"No path for {branch} branch.",
                error_message=f"No path connected for {branch} branch of node {node.id}"
            )
        return next_node_id

    async def _handle_action_node(self, node: ActionNode) -> Optional[str]:
        data = node.data

        if data.actionType == "send_message":
            if data.message:
                await self._emit("bot", data.message, node_id=node.id)

        elif data.actionType == "fallback_ai":
            if not data.assistantId:
                self.log_util.warning(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] Action node {node.id} has no assistant bound, handoff skipped"
                )
            elif self.assistant_handoff_service is None:
                self.log_util.warning(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] No assistant handoff service configured, handoff to {data.assistantId} skipped"
                )
            else:
                try:
                    await self.assistant_handoff_service.handoff(
                        assistant_id=data.assistantId,
                        instance_id=self.instance_id,
                        recipient=self.recipient,
                        variables=self.variables.as_dict()
                    )
                except Exception as e:
                    self.log_util.error(
                        service_name="FlowEngine",
                        message=f"[FLOW_ENGINE] Handoff to assistant {data.assistantId} failed: {str(e)}"
                    )
            await self._notice("Conversation handed off to AI Assistant", node_id=node.id)

        elif data.actionType == "end":
            await self._notice("Conversation ended", node_id=node.id)

        # Every action kind ends the execution
        await self._terminate("completed")
        return None

    async def _handle_question_input_node(self, node: QuestionInputNode) -> Optional[str]:
        data = node.data
        options = None
        if data.inputType == "multiple_choice" and data.options:
            options = [MessageOption(id=str(index), title=option) for index, option in enumerate(data.options)]

        await self._emit(
            "bot",
            data.question,
            node_id=node.id,
            input_type=data.inputType,
            variable_name=data.variableName or None,
            options=options
        )

        self.state.status = "waiting_for_input"
        self.state.pending_variable_name = data.variableName or None
        return None

    async def _handle_user_input_flow_node(self, node: UserInputFlowNode) -> Optional[str]:
        data = node.data

        await self._notice(f"Starting input flow: {data.flowName or 'Untitled'}", node_id=node.id)

        self.state.active_input_flow_node_id = node.id
        self.state.input_flow_answers = {}

        next_node_id = self._handle_target(node.id, FIRST_QUESTION_HANDLE)
        if next_node_id is None:
            await self._terminate("completed", notice="Input flow has no first question connected.")
        return next_node_id

    async def _handle_sequence_node(self, node: SequenceNode) -> Optional[str]:
        steps = node.data.steps
        scheduled = 0
        now = datetime.utcnow()
        elapsed_seconds = 0

        for step in steps:
            delay_seconds = parse_delay_seconds(step.delay, step.delaySeconds)
            if delay_seconds is None:
                self.log_util.warning(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] Sequence step {step.id} on node {node.id} has invalid delay '{step.delay}', skipped"
                )
                continue

            elapsed_seconds += delay_seconds

            if step.messageType == "text" and delay_seconds >= TEMPLATE_REQUIRED_AFTER_SECONDS:
                await self._notice(
                    f"Sequence step {step.id} skipped: messages sent 24 hours or more later must use a template.",
                    node_id=node.id
                )
                continue

            if self.scheduler_service is None:
                self.log_util.error(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] No scheduler configured, sequence step {step.id} on node {node.id} not scheduled"
                )
                continue

            try:
                await self.scheduler_service.schedule_step(
                    instance_id=self.instance_id,
                    step_id=f"{self.state.execution_id}:{node.id}:{step.id}",
                    fire_at=now + timedelta(seconds=elapsed_seconds),
                    payload=step.model_dump(),
                    flow_id=self.flow.id,
                    node_id=node.id,
                    recipient=self.recipient
                )
                scheduled += 1
            except Exception as e:
                self.log_util.error(
                    service_name="FlowEngine",
                    message=f"[FLOW_ENGINE] Failed to schedule sequence step {step.id} on node {node.id}: {str(e)}"
                )

        if steps:
            plural = "s" if scheduled != 1 else ""
            await self._notice(f"Sequence: {scheduled} follow-up message{plural} scheduled", node_id=node.id)
        else:
            await self._notice("Sequence: No steps configured", node_id=node.id)

        return await self._continue_or_complete(node)

    async def _call_http_api(self, node: HttpApiNode) -> HttpApiResult:
        data = node.data
        if self.http_api_service is None:
            return HttpApiResult(success=False, error="HTTP service not configured")

        timeout = data.timeout if data.timeout and data.timeout > 0 else DEFAULT_HTTP_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(
                self.http_api_service.execute(data, self.variables),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            return HttpApiResult(success=False, error="Request timed out", timed_out=True)
        except Exception as e:
            self.log_util.error(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] HTTP call on node {node.id} raised: {str(e)}"
            )
            return HttpApiResult(success=False, error=str(e))

    async def _handle_http_api_node(self, node: HttpApiNode) -> Optional[str]:
        data = node.data
        result = await self._call_http_api(node)

        if result.success:
            if data.responseVariable:
                self.variables.set(data.responseVariable, result.data)
            await self._notice(f"HTTP {data.method} request succeeded ({result.status_code})", node_id=node.id)

            next_node_id = self._handle_target(node.id, SUCCESS_HANDLE)
            if next_node_id is None:
                await self._terminate("completed", notice="No path connected for Success response.")
            return next_node_id

        await self._notice(f"HTTP {data.method} request failed: {result.error}", node_id=node.id)

        next_node_id = self._handle_target(node.id, ERROR_HANDLE)
        if next_node_id is None:
            await self._terminate(
                "failed",
                notice="No path connected for Error response.",
                error_message=result.error
            )
        return next_node_id

    async def _handle_cta_button_node(self, node: CTAButtonNode) -> Optional[str]:
        data = node.data

        await self._emit(
            "bot",
            data.body,
            node_id=node.id,
            url=data.url,
            button_text=data.buttonText,
            header=data.header,
            footer=data.footer
        )

        return await self._continue_or_complete(node)

    # Resume handlers

    async def _resume_question_input(self, node: QuestionInputNode, user_input: str, option_id: Optional[str]) -> Optional[str]:
        data = node.data

        # Multiple choice selections may arrive as an option index only
        if not user_input.strip() and option_id is not None and data.inputType == "multiple_choice":
            if option_id.isdigit() and int(option_id) < len(data.options):
                user_input = data.options[int(option_id)]

        if data.required and not user_input.strip():
            await self._notice("An answer is required to continue.", node_id=node.id)
            return None

        variable_name = self.state.pending_variable_name
        if variable_name:
            self.variables.set(variable_name, user_input)
            if self.state.active_input_flow_node_id:
                self.state.input_flow_answers[variable_name] = user_input

        self.state.pending_variable_name = None
        self.state.status = "running"

        next_node_id = self._handle_target(node.id, NEXT_HANDLE) or self._default_target(node.id)
        if next_node_id is None:
            await self._terminate("completed")
        return next_node_id

    async def _resume_question(self, node: QuestionNode, user_input: str, option_id: Optional[str]) -> Optional[str]:
        handle = None
        if option_id is not None:
            handle = option_handle(option_id)
        else:
            # Typed replies match an option by its title
            reply = user_input.strip().lower()
            for option in node.data.options:
                if reply and option.title.strip().lower() == reply:
                    handle = option_handle(option.id)
                    break

        if handle is not None:
            next_node_id = self._handle_target(node.id, handle)
        else:
            next_node_id = self._default_target(node.id, strict=True)

        if next_node_id is None:
            await self._notice("This option has no connected node.", node_id=node.id)
            return None

        self.state.status = "running"
        return next_node_id

    async def _complete_input_flow(self):
        """
        Close the active input flow and deliver its answers to the webhook, if one is enabled.
        """
        node = self.flow.get_node(self.state.active_input_flow_node_id)
        answers: Dict[str, Any] = dict(self.state.input_flow_answers)

        self.state.active_input_flow_node_id = None
        self.state.input_flow_answers = {}

        if not isinstance(node, UserInputFlowNode):
            return

        webhook = node.data.webhook
        if webhook is None or not webhook.enabled:
            return

        if self.webhook_service is None:
            self.log_util.warning(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] No webhook service configured, answers of input flow {node.id} not delivered"
            )
            return

        metadata = {
            "instance_id": self.instance_id,
            "flow_id": self.flow.id,
            "flow_name": self.flow.name,
            "input_flow_node_id": node.id,
            "input_flow_name": node.data.flowName,
            "recipient": self.recipient
        }
        try:
            await self.webhook_service.send_answers(webhook, answers, metadata)
        except Exception as e:
            self.log_util.error(
                service_name="FlowEngine",
                message=f"[FLOW_ENGINE] Webhook delivery for input flow {node.id} failed: {str(e)}"
            )
