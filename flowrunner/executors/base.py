"""Executor contract shared by every node type."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from ..models.core import ActionResult, NodeType


class ActionExecutor(ABC):
    """One implementation per NodeType.

    ``preflight`` runs before a step is marked running and must not perform
    any I/O; ``execute`` does the actual work. Executors may raise
    ExecutorError; the registry turns it into a failed ActionResult.
    """

    node_type: NodeType

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        """Return a failed result when the config can be rejected up front."""
        return None

    @abstractmethod
    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        """Run the node with its resolved config."""


def require_fields(config: Dict[str, Any], *fields: str) -> Optional[ActionResult]:
    """Fail with a validation result when any field is missing or blank."""
    missing = [
        field for field in fields
        if config.get(field) is None or (isinstance(config.get(field), str) and not config[field].strip())
    ]
    if missing:
        return ActionResult.fail(
            f"Missing required field(s): {', '.join(missing)}",
            category="validation"
        )
    return None
