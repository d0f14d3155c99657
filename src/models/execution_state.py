from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
import uuid
from datetime import datetime

ExecutionStatus = Literal["running", "waiting_for_input", "completed", "failed", "cancelled"]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")

# Bound on remembered inbound event ids per instance
MAX_TRACKED_EVENT_IDS = 200


class ExecutionState(BaseModel):
    """
    State of one live execution of a flow for a single conversation.
    Mutated only by the flow engine.
    """
    id: Optional[str] = None  # MongoDB _id
    instance_id: str = Field(..., description="Conversation instance identifier")
    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Identifier of this run of the flow")
    flow_id: Optional[str] = Field(None, description="Flow being executed")
    recipient: Optional[str] = Field(None, description="Contact the outbound messages are addressed to")
    trigger_keyword: Optional[str] = Field(None, description="Inbound text that matched the trigger")
    start_node_id: Optional[str] = None
    status: ExecutionStatus = "running"
    current_node_id: Optional[str] = None
    visited_nodes: List[str] = []
    variables: Dict[str, Any] = {}
    pending_variable_name: Optional[str] = Field(None, description="Variable the next input is bound to")
    step_count: int = 0
    processed_event_ids: List[str] = []
    active_input_flow_node_id: Optional[str] = Field(None, description="user_input_flow node collecting answers")
    input_flow_answers: Dict[str, Any] = {}
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def waiting_for_input(self) -> bool:
        return self.status == "waiting_for_input"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_processed_event(self, event_id: Optional[str]) -> bool:
        return event_id is not None and event_id in self.processed_event_ids

    def remember_event(self, event_id: Optional[str]):
        if event_id is None:
            return
        self.processed_event_ids.append(event_id)
        if len(self.processed_event_ids) > MAX_TRACKED_EVENT_IDS:
            self.processed_event_ids = self.processed_event_ids[-MAX_TRACKED_EVENT_IDS:]
