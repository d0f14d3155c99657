from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class WebhookMessageRequest(BaseModel):
    """
    Request model for inbound conversation messages from channel services.
    The message either answers a waiting instance or is checked against flow triggers.
    """
    sender: str = Field(..., description="Contact identifier (phone number, visitor ID, etc.)")
    instance_id: Optional[str] = Field(None, description="Conversation instance ID, defaults to the sender")
    flow_id: Optional[str] = Field(None, description="Restrict trigger matching to this flow")
    event_id: Optional[str] = Field(None, description="Inbound event ID used to drop duplicate deliveries")
    message_type: str = Field(default="text", description="Type of message (text, button, interactive)")
    message_body: Dict[str, Any] = Field(..., description="Message content/payload")
    channel: str = Field(default="whatsapp", description="Channel name (whatsapp, widget, messenger, instagram)")

    class Config:
        json_schema_extra = {
            "example": {
                "sender": "+1234567890",
                "event_id": "wamid.HBgLMTIzNDU2Nzg5MBUCABIYFjNFQjA",
                "message_type": "text",
                "message_body": {
                    "type": "text",
                    "text": {"body": "Hello"}
                },
                "channel": "whatsapp"
            }
        }
