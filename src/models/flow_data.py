from pydantic import BaseModel, Field, Discriminator, ConfigDict
from typing import Optional, List, Dict, Any, Union, Literal, Annotated, Set
from collections import deque
from datetime import datetime

# Handles that select one output of a multi-output node
DEFAULT_HANDLE = "default"
TRUE_HANDLE = "true"
FALSE_HANDLE = "false"
SUCCESS_HANDLE = "success"
ERROR_HANDLE = "error"
NEXT_HANDLE = "next"
FIRST_QUESTION_HANDLE = "first-question"
OPTION_HANDLE_PREFIX = "option-"

# Prefix marking a contact custom field used as a variable name
CUSTOM_FIELD_PREFIX = "custom:"


def option_handle(option_id: str) -> str:
    return f"{OPTION_HANDLE_PREFIX}{option_id}"


class NodePosition(BaseModel):
    x: float = 0
    y: float = 0

# Start node
class TriggerConfig(BaseModel):
    id: Optional[str] = None
    type: Literal["keyword", "first_message", "button_click"] = "keyword"
    keywords: List[str] = []
    caseSensitive: bool = False

class StartNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    tagSlug: Optional[str] = None  # Tag applied to contacts who trigger this flow
    tagName: Optional[str] = None

# Question node (interactive message)
class MenuHeader(BaseModel):
    type: Literal["text", "image", "video", "document"] = "text"
    content: str = ""  # Text or media reference

class MenuOption(BaseModel):
    id: str
    title: str = ""
    description: Optional[str] = None

class QuestionNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    body: str = ""
    header: Optional[MenuHeader] = None
    footer: Optional[str] = None
    messageType: Literal["text", "buttons", "list"] = "buttons"
    options: List[MenuOption] = []

# Text node
class TextNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    message: str = ""
    delaySeconds: Optional[float] = None  # Wait before sending

# Media node
class MediaNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    mediaType: Literal["image", "video", "document", "audio"] = "image"
    mediaId: Optional[str] = None  # Media reference after upload
    fileName: Optional[str] = None
    caption: Optional[str] = None

# Condition node
class ConditionRule(BaseModel):
    field: str = ""
    operator: Literal["equals", "not_equals", "contains", "not_contains", "exists", "not_exists"] = "equals"
    value: Optional[str] = None

class ConditionNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    matchType: Literal["all", "any"] = "all"
    rules: List[ConditionRule] = []

# Action node
class ActionNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    actionType: Literal["send_message", "fallback_ai", "end"] = "end"
    message: Optional[str] = None  # For send_message
    assistantId: Optional[str] = None  # For fallback_ai

# Question input node
class QuestionInputNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    question: str = ""
    variableName: str = ""
    inputType: Literal["free_text", "multiple_choice"] = "free_text"
    options: List[str] = []
    required: bool = False

# User input flow node
class WebhookConfig(BaseModel):
    enabled: bool = False
    url: str = ""
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: Dict[str, str] = {}
    includeMetadata: bool = True

class UserInputFlowNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    flowName: str = ""
    description: Optional[str] = None
    webhook: Optional[WebhookConfig] = None

# Sequence node
class SequenceStep(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    delay: str = ""  # Preset such as "30m", "24h", "2d"
    delaySeconds: Optional[int] = None
    messageType: Literal["text", "template"] = "text"
    textMessage: Optional[str] = None
    templateName: Optional[str] = None
    templateId: Optional[str] = None
    templateLanguage: Optional[str] = None
    templateComponents: Optional[List[Dict[str, Any]]] = None

class SequenceNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    steps: List[SequenceStep] = []

# HTTP API node
class HttpHeader(BaseModel):
    key: str = ""
    value: str = ""

class HttpAuth(BaseModel):
    type: Literal["none", "basic", "bearer", "api_key"] = "none"
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    apiKey: Optional[str] = None
    apiKeyHeader: Optional[str] = None

class HttpApiNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    url: str = ""
    headers: List[HttpHeader] = []
    body: str = ""
    bodyType: Literal["json", "form", "none"] = "json"
    responseVariable: str = ""
    timeout: float = 30  # Seconds
    auth: Optional[HttpAuth] = None

# CTA button node
class CTAButtonNodeData(BaseModel):
    model_config = ConfigDict(extra='allow')

    label: str = ""
    body: str = ""
    buttonText: str = ""
    url: str = ""
    header: Optional[str] = None
    footer: Optional[str] = None

# Base FlowNode with common fields
class BaseFlowNode(BaseModel):
    model_config = ConfigDict(extra='allow')  # Allow presentation fields like 'width', 'selected', etc.

    id: str
    position: NodePosition = Field(default_factory=NodePosition)

class StartNode(BaseFlowNode):
    type: Literal["start"]
    data: StartNodeData = Field(default_factory=StartNodeData)

class QuestionNode(BaseFlowNode):
    type: Literal["question"]
    data: QuestionNodeData = Field(default_factory=QuestionNodeData)

class TextNode(BaseFlowNode):
    type: Literal["text"]
    data: TextNodeData = Field(default_factory=TextNodeData)

class MediaNode(BaseFlowNode):
    type: Literal["media"]
    data: MediaNodeData = Field(default_factory=MediaNodeData)

class ConditionNode(BaseFlowNode):
    type: Literal["condition"]
    data: ConditionNodeData = Field(default_factory=ConditionNodeData)

class ActionNode(BaseFlowNode):
    type: Literal["action"]
    data: ActionNodeData = Field(default_factory=ActionNodeData)

class QuestionInputNode(BaseFlowNode):
    type: Literal["question_input"]
    data: QuestionInputNodeData = Field(default_factory=QuestionInputNodeData)

class UserInputFlowNode(BaseFlowNode):
    type: Literal["user_input_flow"]
    data: UserInputFlowNodeData = Field(default_factory=UserInputFlowNodeData)

class SequenceNode(BaseFlowNode):
    type: Literal["sequence"]
    data: SequenceNodeData = Field(default_factory=SequenceNodeData)

class HttpApiNode(BaseFlowNode):
    type: Literal["http_api"]
    data: HttpApiNodeData = Field(default_factory=HttpApiNodeData)

class CTAButtonNode(BaseFlowNode):
    type: Literal["cta_button"]
    data: CTAButtonNodeData = Field(default_factory=CTAButtonNodeData)

# Union of all node types with discriminator
FlowNode = Annotated[
    Union[
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
        CTAButtonNode
    ],
    Discriminator("type")
]

class FlowEdge(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    source: str
    target: str
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None
    label: Optional[str] = None


class FlowData(BaseModel):
    id: Optional[str] = None
    name: str = "Untitled flow"
    description: Optional[str] = ""
    nodes: List[FlowNode] = []
    edges: List[FlowEdge] = []
    status: Optional[str] = Field(default="draft", description="Flow status: draft, published")
    version: int = 1
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def start_nodes(self) -> List[StartNode]:
        return [node for node in self.nodes if node.type == "start"]

    def trigger_keywords(self) -> List[str]:
        """
        Keywords declared by all start nodes, in authored order.
        """
        keywords = []
        for node in self.start_nodes():
            keywords.extend(node.data.trigger.keywords)
        return keywords

    def edges_from(self, node_id: str, handle: Optional[str] = None) -> List[FlowEdge]:
        """
        Edges leaving a node in authored order, optionally limited to one source handle.
        """
        return [
            edge for edge in self.edges
            if edge.source == node_id and (handle is None or edge.sourceHandle == handle)
        ]

    def reachable_set(self, entry_ids: List[str]) -> Set[str]:
        """
        Breadth-first walk following edges forward from the entry nodes.
        The entry nodes are part of the result.
        """
        reachable: Set[str] = set()
        queue = deque()
        for entry_id in entry_ids:
            if entry_id not in reachable:
                reachable.add(entry_id)
                queue.append(entry_id)

        while queue:
            current_id = queue.popleft()
            for edge in self.edges_from(current_id):
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)

        return reachable
