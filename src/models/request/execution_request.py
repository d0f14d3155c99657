from typing import Optional
from pydantic import BaseModel, Field


class StartExecutionRequest(BaseModel):
    """
    Request to start a flow instance from an inbound trigger text.
    """
    flow_id: str = Field(..., description="Flow to execute")
    instance_id: str = Field(..., description="Conversation instance ID")
    keyword: str = Field(..., description="Inbound text matched against the flow triggers")
    recipient: Optional[str] = Field(None, description="Contact the outbound messages are addressed to")
    event_id: Optional[str] = Field(None, description="Inbound event ID")


class ResumeExecutionRequest(BaseModel):
    """
    Request to resume a waiting instance with the contact's reply.
    """
    user_input: str = Field(default="", description="Reply text")
    option_id: Optional[str] = Field(None, description="Selected option ID for interactive questions")
    event_id: Optional[str] = Field(None, description="Inbound event ID")
