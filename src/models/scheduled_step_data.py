from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


def build_dedupe_key(instance_id: str, step_id: str) -> str:
    return f"{instance_id}:{step_id}"


class ScheduledStepData(BaseModel):
    """
    Model for storing a sequence step scheduled for later delivery.
    Used by the background scheduler to send follow-up messages.
    """
    id: Optional[str] = None  # MongoDB _id
    instance_id: str = Field(..., description="Instance that scheduled the step")
    step_id: str = Field(..., description="Sequence step ID")
    dedupe_key: str = Field(..., description="instance_id:step_id, unique per scheduled step")
    flow_id: Optional[str] = Field(None, description="Flow the sequence node belongs to")
    node_id: Optional[str] = Field(None, description="Sequence node ID")
    recipient: Optional[str] = Field(None, description="Contact the step is sent to")
    fire_at: datetime = Field(..., description="When the step should be delivered")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Message kind and content of the step")
    processed: bool = Field(default=False, description="Whether the step has been delivered")
    cancelled: bool = Field(default=False, description="Whether the step was closed because its run was cancelled")
    attempts: int = Field(default=0, description="Delivery attempts made so far")
    last_error: Optional[str] = Field(None, description="Error from the last failed delivery attempt")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when the record was created")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when the record was last updated")
