from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime


class MessageOption(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class FlowMessage(BaseModel):
    """
    One entry of the conversation transcript produced while executing a flow.
    bot messages go to the contact, user messages echo inbound input,
    system messages are notices about the execution itself.
    """
    id: str
    type: Literal["bot", "user", "system"]
    content: str = ""
    node_id: Optional[str] = None
    options: Optional[List[MessageOption]] = None
    media_type: Optional[str] = None
    media_id: Optional[str] = None
    input_type: Optional[str] = None
    variable_name: Optional[str] = None
    url: Optional[str] = None
    button_text: Optional[str] = None
    header: Optional[str] = None
    footer: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
