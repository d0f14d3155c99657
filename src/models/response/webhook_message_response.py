from typing import Optional, List
from pydantic import BaseModel, Field

from models.flow_message_data import FlowMessage


class WebhookMessageResponse(BaseModel):
    """
    Response model for inbound message processing.
    Indicates whether automation was triggered or resumed and the current state.
    """
    status: str = Field(..., description="Processing status (success, no_trigger, duplicate, error)")
    message: str = Field(..., description="Human-readable message")
    automation_triggered: bool = Field(default=False, description="Whether a flow was started or resumed")
    flow_id: Optional[str] = Field(None, description="Flow ID if automation is active")
    instance_id: Optional[str] = Field(None, description="Instance the message was routed to")
    execution_status: Optional[str] = Field(None, description="Instance status after processing")
    current_node_id: Optional[str] = Field(None, description="Current node ID if automation is active")
    messages: List[FlowMessage] = Field(default_factory=list, description="Messages emitted while processing")
    error_details: Optional[str] = Field(None, description="Error details if status is error")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "success",
                "message": "Automation processed successfully",
                "automation_triggered": True,
                "flow_id": "flow_123",
                "instance_id": "+1234567890",
                "execution_status": "waiting_for_input",
                "current_node_id": "node_456",
                "messages": [],
                "error_details": None
            }
        }
