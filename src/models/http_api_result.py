from pydantic import BaseModel
from typing import Optional, Any


class HttpApiResult(BaseModel):
    """
    Outcome of the outbound call made for an http_api node.
    """
    success: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None
    timed_out: bool = False
