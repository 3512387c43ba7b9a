"""Registry mapping node types to their executors."""

from typing import Any, Dict, List, Mapping, Optional

from ..core.exceptions import ExecutorError
from ..core.logging import get_logger
from ..models.core import ActionResult, NodeType
from .base import ActionExecutor

logger = get_logger(__name__)


class ExecutorRegistry:
    """Lookup table from NodeType to ActionExecutor.

    ``run`` and ``preflight`` never raise: every failure comes back as an
    ActionResult with ``success=False``.
    """

    def __init__(self):
        self._executors: Dict[NodeType, ActionExecutor] = {}

    def register(self, executor: ActionExecutor, replace: bool = False) -> None:
        """Register an executor for its node type.

        Args:
            executor: Executor instance; its ``node_type`` is the key
            replace: Allow overriding an existing registration

        Raises:
            ExecutorError: If the type is already registered and replace is False
        """
        node_type = NodeType(executor.node_type)
        if node_type in self._executors and not replace:
            raise ExecutorError(
                f"Executor for '{node_type.value}' is already registered",
                error_category="configuration"
            )
        self._executors[node_type] = executor
        logger.debug(f"Registered executor {type(executor).__name__} for {node_type.value}")

    def get(self, node_type: NodeType) -> ActionExecutor:
        """Return the executor for a node type.

        Raises:
            ExecutorError: If no executor is registered for the type
        """
        executor = self._executors.get(NodeType(node_type))
        if executor is None:
            raise ExecutorError(
                f"No executor registered for node type '{NodeType(node_type).value}'",
                error_category="configuration"
            )
        return executor

    def has(self, node_type: NodeType) -> bool:
        return NodeType(node_type) in self._executors

    def list_types(self) -> List[NodeType]:
        return list(self._executors)

    def preflight(self, node_type: NodeType, config: Dict[str, Any]) -> Optional[ActionResult]:
        """Run the executor's pre-dispatch checks; None means the node may run."""
        try:
            return self.get(node_type).preflight(config)
        except ExecutorError as e:
            return ActionResult.fail(e.message, category=e.error_category, data=e.data)
        except Exception as e:
            logger.error(f"Preflight for {node_type} raised unexpectedly: {e}", exc_info=True)
            return ActionResult.fail(f"Internal error: {e}", category="internal")

    def run(self, node_type: NodeType, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        """Execute a node, converting any exception into a failed result."""
        try:
            result = self.get(node_type).execute(config, context)
        except ExecutorError as e:
            return ActionResult.fail(e.message, category=e.error_category, data=e.data)
        except Exception as e:
            logger.error(f"Executor for {node_type} raised unexpectedly: {e}", exc_info=True)
            return ActionResult.fail(f"Internal error: {e}", category="internal")

        if not isinstance(result, ActionResult):
            return ActionResult.fail(
                f"Executor for '{NodeType(node_type).value}' returned {type(result).__name__}, expected ActionResult",
                category="internal"
            )
        return result
