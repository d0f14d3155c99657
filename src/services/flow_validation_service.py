"""
Flow Validation Service
Static checks over a flow graph before it is published.
"""
from typing import List, Optional, Dict, Tuple
from urllib.parse import urlparse

# Utils
from utils.log_utils import LogUtil
from utils.delay_utils import parse_delay_seconds, TEMPLATE_REQUIRED_AFTER_SECONDS

# Models
from models.flow_data import (
    FlowData,
    FlowNode,
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
    CUSTOM_FIELD_PREFIX,
    DEFAULT_HANDLE,
    TRUE_HANDLE,
    FALSE_HANDLE,
    SUCCESS_HANDLE,
    ERROR_HANDLE,
    option_handle,
)
from models.validation_data import ValidationIssue, ValidationResult
from services.condition_evaluation_service import VALUELESS_OPERATORS


def is_blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class FlowValidationService:
    """
    Validates a flow: structural completeness, reachability and per-kind field rules.
    Errors block publishing, warnings are informational. Never mutates the flow.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def validate_flow(self, flow: FlowData) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if not flow.nodes:
            errors.append(ValidationIssue(
                message="Flow is empty. Add at least one trigger node to start.",
                severity="error"
            ))
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        start_nodes = flow.start_nodes()
        if not start_nodes:
            errors.append(ValidationIssue(
                message="Flow needs at least one Trigger node as an entry point.",
                severity="error"
            ))

        issues: List[ValidationIssue] = []
        for node in flow.nodes:
            issues.extend(self.validate_node(node, flow))
        issues.extend(self._validate_edges(flow))
        issues.extend(self._find_orphaned_nodes(flow, [node.id for node in start_nodes]))

        for issue in issues:
            if issue.severity == "error":
                errors.append(issue)
            else:
                warnings.append(issue)

        result = ValidationResult(is_valid=len(errors) == 0, errors=errors, warnings=warnings)

        self.log_util.info(
            service_name="FlowValidationService",
            message=f"[VALIDATE] Flow {flow.id} validated: {len(errors)} error(s), {len(warnings)} warning(s)"
        )
        return result

    def validate_node(self, node: FlowNode, flow: FlowData) -> List[ValidationIssue]:
        if isinstance(node, StartNode):
            return self._validate_start_node(node, flow)
        if isinstance(node, QuestionNode):
            return self._validate_question_node(node, flow)
        if isinstance(node, TextNode):
            return self._validate_text_node(node)
        if isinstance(node, MediaNode):
            return self._validate_media_node(node)
        if isinstance(node, ConditionNode):
            return self._validate_condition_node(node, flow)
        if isinstance(node, ActionNode):
            return self._validate_action_node(node)
        if isinstance(node, QuestionInputNode):
            return self._validate_question_input_node(node)
        if isinstance(node, UserInputFlowNode):
            return self._validate_user_input_flow_node(node)
        if isinstance(node, SequenceNode):
            return self._validate_sequence_node(node)
        if isinstance(node, HttpApiNode):
            return self._validate_http_api_node(node, flow)
        if isinstance(node, CTAButtonNode):
            return self._validate_cta_button_node(node)
        return []

    def _issue(self, node: FlowNode, message: str, severity: str = "error", field: Optional[str] = None) -> ValidationIssue:
        return ValidationIssue(
            node_id=node.id,
            node_type=node.type,
            field=field,
            message=message,
            severity=severity
        )

    def _validate_start_node(self, node: StartNode, flow: FlowData) -> List[ValidationIssue]:
        issues = []

        if not node.data.trigger.keywords:
            issues.append(self._issue(node, "Trigger node needs at least one keyword.", field="keywords"))

        if not flow.edges_from(node.id):
            issues.append(self._issue(node, "Trigger node must be connected to another node."))

        return issues

    def _validate_question_node(self, node: QuestionNode, flow: FlowData) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if is_blank(data.body):
            issues.append(self._issue(node, "Interactive message needs body text.", field="body"))

        if data.messageType != "text":
            if not data.options:
                issues.append(self._issue(node, "Interactive message needs at least one option.", field="options"))
            else:
                for index, option in enumerate(data.options):
                    if is_blank(option.title):
                        issues.append(self._issue(
                            node,
                            f"Option {index + 1} needs a title.",
                            field=f"options[{index}].title"
                        ))

                # Unconnected options re-prompt at runtime
                for option in data.options:
                    handle = option_handle(option.id)
                    if not flow.edges_from(node.id, handle):
                        issues.append(self._issue(
                            node,
                            f"Option \"{option.title}\" is not connected to any node.",
                            severity="warning",
                            field=handle
                        ))

        return issues

    def _validate_text_node(self, node: TextNode) -> List[ValidationIssue]:
        issues = []

        if is_blank(node.data.message):
            issues.append(self._issue(node, "Text message node needs a message.", field="message"))

        if node.data.delaySeconds is not None and node.data.delaySeconds < 0:
            issues.append(self._issue(node, "Delay cannot be negative.", field="delaySeconds"))

        return issues

    def _validate_media_node(self, node: MediaNode) -> List[ValidationIssue]:
        if is_blank(node.data.mediaId):
            return [self._issue(
                node,
                f"{node.data.mediaType.capitalize()} node needs a file uploaded.",
                field="mediaId"
            )]
        return []

    def _validate_condition_node(self, node: ConditionNode, flow: FlowData) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if not data.rules:
            issues.append(self._issue(node, "Condition node needs at least one rule.", field="rules"))
        else:
            for index, rule in enumerate(data.rules):
                if is_blank(rule.field):
                    issues.append(self._issue(
                        node,
                        f"Rule {index + 1} needs a field to compare.",
                        field=f"rules[{index}].field"
                    ))
                elif rule.field == CUSTOM_FIELD_PREFIX:
                    issues.append(self._issue(
                        node,
                        f"Rule {index + 1} has incomplete custom field selection.",
                        field=f"rules[{index}].field"
                    ))

                if rule.operator not in VALUELESS_OPERATORS and is_blank(rule.value):
                    issues.append(self._issue(
                        node,
                        f"Rule {index + 1} needs a comparison value.",
                        field=f"rules[{index}].value"
                    ))

        if not flow.edges_from(node.id, TRUE_HANDLE):
            issues.append(self._issue(node, "Condition node needs a \"Yes\" path connected.", severity="warning", field="true-output"))

        if not flow.edges_from(node.id, FALSE_HANDLE):
            issues.append(self._issue(node, "Condition node needs a \"No\" path connected.", severity="warning", field="false-output"))

        return issues

    def _validate_action_node(self, node: ActionNode) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if data.actionType == "send_message" and is_blank(data.message):
            issues.append(self._issue(node, "Send message action needs a message.", field="message"))

        if data.actionType == "fallback_ai" and is_blank(data.assistantId):
            issues.append(self._issue(node, "AI handoff needs an assistant selected.", severity="warning", field="assistantId"))

        return issues

    def _validate_question_input_node(self, node: QuestionInputNode) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if is_blank(data.question):
            issues.append(self._issue(node, "Question node needs a question text.", field="question"))

        if data.variableName == CUSTOM_FIELD_PREFIX:
            issues.append(self._issue(node, "Question node has incomplete custom field selection.", field="variableName"))
        elif is_blank(data.variableName):
            issues.append(self._issue(node, "Answer will not be saved, no variable name set.", severity="warning", field="variableName"))

        if data.inputType == "multiple_choice":
            if not data.options:
                issues.append(self._issue(node, "Multiple choice question needs at least one option.", field="options"))
            elif any(is_blank(option) for option in data.options):
                issues.append(self._issue(node, "All multiple choice options must have text.", field="options"))

        return issues

    def _validate_user_input_flow_node(self, node: UserInputFlowNode) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if is_blank(data.flowName):
            issues.append(self._issue(node, "User input flow needs a name.", severity="warning", field="flowName"))

        webhook = data.webhook
        if webhook is not None and webhook.enabled:
            if is_blank(webhook.url):
                issues.append(self._issue(node, "Webhook is enabled but has no URL.", field="webhook.url"))
            elif not is_valid_url(webhook.url):
                issues.append(self._issue(node, "Webhook URL is not valid.", field="webhook.url"))

        return issues

    def _validate_sequence_node(self, node: SequenceNode) -> List[ValidationIssue]:
        issues = []

        if not node.data.steps:
            issues.append(self._issue(node, "Sequence has no steps configured.", severity="warning", field="steps"))
            return issues

        for index, step in enumerate(node.data.steps):
            delay_seconds = parse_delay_seconds(step.delay, step.delaySeconds)
            if delay_seconds is None:
                issues.append(self._issue(
                    node,
                    f"Step {index + 1} has an invalid delay \"{step.delay}\".",
                    field=f"steps[{index}].delay"
                ))
                continue

            if step.messageType == "text":
                if delay_seconds >= TEMPLATE_REQUIRED_AFTER_SECONDS:
                    issues.append(self._issue(
                        node,
                        f"Step {index + 1} waits 24 hours or more and must use a template message.",
                        field=f"steps[{index}].messageType"
                    ))
                if is_blank(step.textMessage):
                    issues.append(self._issue(
                        node,
                        f"Step {index + 1} needs a message.",
                        field=f"steps[{index}].textMessage"
                    ))
            elif is_blank(step.templateName):
                issues.append(self._issue(
                    node,
                    f"Step {index + 1} needs a template selected.",
                    field=f"steps[{index}].templateName"
                ))

        return issues

    def _validate_http_api_node(self, node: HttpApiNode, flow: FlowData) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if is_blank(data.url):
            issues.append(self._issue(node, "HTTP request needs a URL.", field="url"))
        elif "{{" not in data.url and not is_valid_url(data.url):
            issues.append(self._issue(node, "HTTP request URL is not valid.", field="url"))

        if data.timeout <= 0:
            issues.append(self._issue(node, "Timeout must be greater than zero.", field="timeout"))

        if is_blank(data.responseVariable):
            issues.append(self._issue(node, "Response will not be saved, no variable name set.", severity="warning", field="responseVariable"))

        if not flow.edges_from(node.id, SUCCESS_HANDLE):
            issues.append(self._issue(node, "HTTP request needs a \"Success\" path connected.", severity="warning", field="success-output"))

        if not flow.edges_from(node.id, ERROR_HANDLE):
            issues.append(self._issue(node, "HTTP request needs an \"Error\" path connected.", severity="warning", field="error-output"))

        return issues

    def _validate_cta_button_node(self, node: CTAButtonNode) -> List[ValidationIssue]:
        issues = []
        data = node.data

        if is_blank(data.body):
            issues.append(self._issue(node, "CTA button needs a message body.", field="body"))

        if is_blank(data.buttonText):
            issues.append(self._issue(node, "CTA button needs button text.", field="buttonText"))

        if is_blank(data.url):
            issues.append(self._issue(node, "CTA button needs a URL.", field="url"))
        elif not is_valid_url(data.url):
            issues.append(self._issue(node, "CTA button URL is not valid.", field="url"))

        return issues

    def _validate_edges(self, flow: FlowData) -> List[ValidationIssue]:
        """
        Dangling edges are ignored at runtime; duplicate handles resolve to the first edge.
        """
        issues = []
        node_ids = {node.id for node in flow.nodes}
        seen: Dict[Tuple[str, str], str] = {}

        for edge in flow.edges:
            if edge.source not in node_ids or edge.target not in node_ids:
                missing = edge.source if edge.source not in node_ids else edge.target
                issues.append(ValidationIssue(
                    node_id=edge.source if edge.source in node_ids else "",
                    node_type=flow.get_node(edge.source).type if edge.source in node_ids else "",
                    field=edge.id,
                    message=f"Connection {edge.id} points to a missing node ({missing}).",
                    severity="warning"
                ))
                continue

            # No handle and "default" are the same output
            handle = edge.sourceHandle or DEFAULT_HANDLE
            key = (edge.source, handle)
            if key in seen:
                source_node = flow.get_node(edge.source)
                issues.append(self._issue(
                    source_node,
                    f"Output \"{handle}\" has more than one connection, only the first one is used.",
                    severity="warning",
                    field=edge.id
                ))
            else:
                seen[key] = edge.id

        return issues

    def _find_orphaned_nodes(self, flow: FlowData, start_node_ids: List[str]) -> List[ValidationIssue]:
        reachable = flow.reachable_set(start_node_ids)
        return [
            self._issue(node, "This node is not connected to the flow and will not be executed.", severity="warning")
            for node in flow.nodes
            if node.id not in reachable and node.type != "start"
        ]
