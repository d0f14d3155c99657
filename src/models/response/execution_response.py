from typing import Optional, List
from pydantic import BaseModel, Field

from models.execution_state import ExecutionState
from models.flow_message_data import FlowMessage


class ExecutionResponse(BaseModel):
    """
    Response for execution operations: resulting state plus the messages emitted by the call.
    """
    status: str = Field(..., description="Processing status (success, no_trigger, duplicate)")
    message: str = Field(..., description="Human-readable message")
    state: Optional[ExecutionState] = Field(None, description="Execution state after the call")
    messages: List[FlowMessage] = Field(default_factory=list, description="Messages emitted during the call")
