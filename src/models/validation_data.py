from pydantic import BaseModel, Field
from typing import Optional, List, Literal


class ValidationIssue(BaseModel):
    """
    A single finding from flow validation, tagged with the node it belongs to
    so the builder can highlight it. node_id is empty for flow-level issues.
    """
    node_id: str = Field(default="", description="Node the issue belongs to, empty for flow-level issues")
    node_type: str = Field(default="", description="Kind of the node the issue belongs to")
    field: Optional[str] = Field(default=None, description="Payload field the issue refers to")
    message: str
    severity: Literal["error", "warning"] = "error"


class ValidationResult(BaseModel):
    """
    Outcome of validating a flow. Errors block publishing, warnings do not.
    """
    is_valid: bool = True
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
