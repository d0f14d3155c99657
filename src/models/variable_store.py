import re
from typing import Any, Dict, Optional

# {{variable}} placeholders, optionally padded with spaces
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")


class VariableStore:
    """
    Per-instance key/value map of collected answers and HTTP results.
    Wraps the dict owned by the ExecutionState, so writes land in the state.
    """

    def __init__(self, variables: Optional[Dict[str, Any]] = None):
        self._variables = variables if variables is not None else {}

    def get(self, name: str, default: str = "") -> Any:
        value = self._variables.get(name)
        if value is None:
            return default
        return value

    def get_text(self, name: str) -> str:
        """
        Value as a string; unset variables read as an empty string.
        """
        value = self.get(name)
        if isinstance(value, str):
            return value
        return str(value)

    def set(self, name: str, value: Any):
        self._variables[name] = value

    def has(self, name: str) -> bool:
        return self.get_text(name) != ""

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._variables)

    def interpolate(self, text: Optional[str]) -> str:
        """
        Replace {{name}} placeholders with variable values. Unknown names become empty strings.
        """
        if not text:
            return ""
        return PLACEHOLDER_PATTERN.sub(lambda match: self.get_text(match.group(1)), text)

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def __len__(self) -> int:
        return len(self._variables)
