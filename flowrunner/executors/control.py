"""Control-flow executors: conditions and trigger pass-through."""

from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import EvaluationError
from ..core.expressions import Evaluator
from ..models.core import ActionResult, BranchLabel, NodeType
from .base import ActionExecutor


class ConditionExecutor(ActionExecutor):
    """Evaluates a boolean expression and reports which branch is taken."""

    node_type = NodeType.CONDITION

    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        if not isinstance(config.get("expression"), str):
            return ActionResult.fail("Missing required field(s): expression", category="validation")
        return None

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        # templates were resolved by the engine; evaluate the text as-is
        expression = config["expression"]
        try:
            # a condition whose placeholders all resolved to nothing is false
            result = bool(expression.strip()) and self.evaluator.evaluate_resolved_condition(expression)
        except EvaluationError as e:
            return ActionResult.fail(e.message, category="evaluation")
        branch = BranchLabel.TRUE if result else BranchLabel.FALSE
        return ActionResult.ok({"result": result, "branch": branch.value, "expression": expression})


class TriggerExecutor(ActionExecutor):
    """Trigger nodes pass the trigger input through as their output."""

    def __init__(self, node_type: NodeType):
        if not NodeType(node_type).is_trigger:
            raise ValueError(f"{node_type} is not a trigger type")
        self.node_type = NodeType(node_type)

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        return ActionResult.ok(context.get("trigger"))
