"""Data transform action."""

from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import EvaluationError
from ..core.expressions import Evaluator
from ..models.core import ActionResult, NodeType
from .base import ActionExecutor, require_fields

TRANSFORM_MODES = ("jsonpath", "expression")


class TransformExecutor(ActionExecutor):
    """Maps data from the context, either by JSON path or a safe expression.

    The mode is explicit in the node config; strings are never sniffed to
    guess which language they are written in.
    """

    node_type = NodeType.TRANSFORM

    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        mode = config.get("mode")
        if mode not in TRANSFORM_MODES:
            return ActionResult.fail(
                f"Transform mode must be one of {', '.join(TRANSFORM_MODES)}; got {mode!r}",
                category="validation"
            )
        if mode == "jsonpath":
            return require_fields(config, "expression")
        return None

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        rejected = self.preflight(config)
        if rejected is not None:
            return rejected

        expression = config.get("expression")
        try:
            if config["mode"] == "jsonpath":
                value = self.evaluator.extract_json_path(str(expression), context)
            else:
                value = self.evaluator.evaluate_safe_expression(expression, context)
        except EvaluationError as e:
            return ActionResult.fail(e.message, category="evaluation")
        return ActionResult.ok({"result": value})
