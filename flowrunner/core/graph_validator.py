"""Structural validation of workflow graphs."""

from typing import Callable, Dict, List, Optional, Set

from ..models.core import (
    BranchLabel, Edge, Node, NodeType, ValidationIssue, ValidationResult, WorkflowDefinition
)
from .exceptions import GraphValidationError, SchedulingError
from .logging import get_logger

logger = get_logger(__name__)

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
TRANSFORM_MODES = {"jsonpath", "expression"}

REQUIRED_FIELDS: Dict[NodeType, List[str]] = {
    NodeType.HTTP_REQUEST: ["url"],
    NodeType.SEND_EMAIL: ["to", "subject"],
    NodeType.SEND_TELEGRAM: ["chatId", "message"],
    NodeType.DATABASE_QUERY: ["query"],
    NodeType.TRANSFORM: ["expression", "mode"],
    NodeType.CONDITION: ["expression"],
    NodeType.SCHEDULE_TRIGGER: ["cron"],
}


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


class GraphValidator:
    """Checks a node/edge set for structural soundness.

    Validation is pure: the same definition always yields the same result,
    and nothing is persisted or mutated.
    """

    def __init__(self, cron_checker: Optional[Callable[[str, Optional[str]], None]] = None):
        """
        Args:
            cron_checker: Callable raising SchedulingError for an invalid cron
                expression or timezone. Defaults to the scheduler's parser.
        """
        if cron_checker is None:
            from .scheduler import validate_cron
            cron_checker = validate_cron
        self._cron_checker = cron_checker

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition.

        Args:
            definition: Graph to validate

        Returns:
            ValidationResult with errors (graph unrunnable) and warnings (advisory)
        """
        result = ValidationResult()
        nodes = definition.nodes

        if not nodes:
            result.errors.append(ValidationIssue(message="Workflow is empty. Add at least one node."))
            return result

        nodes_by_id: Dict[str, Node] = {}
        for node in nodes:
            if node.id in nodes_by_id:
                result.errors.append(ValidationIssue(
                    message=f"Duplicate node id '{node.id}'.", node_id=node.id
                ))
                continue
            nodes_by_id[node.id] = node

        edges = self._validate_edge_references(definition.edges, nodes_by_id, result)

        self._validate_triggers(nodes, edges, nodes_by_id, result)
        self._validate_connectivity(nodes, edges, nodes_by_id, result)
        self._validate_conditions(nodes, edges, result)
        self._validate_cycles(nodes_by_id, edges, result)
        for node in nodes_by_id.values():
            self._validate_required_fields(node, result)

        if result.errors:
            logger.debug(f"Graph validation found {len(result.errors)} error(s), {len(result.warnings)} warning(s)")
        return result

    def ensure_valid(self, definition: WorkflowDefinition, workflow_id: Optional[str] = None) -> ValidationResult:
        """Validate and raise GraphValidationError when any error is present."""
        result = self.validate(definition)
        if not result.is_valid:
            raise GraphValidationError(
                f"Workflow validation failed: {'; '.join(result.error_messages())}",
                validation_errors=result.error_messages(),
                workflow_id=workflow_id
            )
        return result

    def _validate_edge_references(self, edges: List[Edge], nodes_by_id: Dict[str, Node],
                                  result: ValidationResult) -> List[Edge]:
        """Report edges pointing at unknown nodes and return the usable ones."""
        valid = []
        for edge in edges:
            missing = [
                node_id for node_id in (edge.source_node_id, edge.target_node_id)
                if node_id not in nodes_by_id
            ]
            if missing:
                for node_id in missing:
                    result.errors.append(ValidationIssue(
                        message=f"Edge {edge.source_node_id} -> {edge.target_node_id} references unknown node '{node_id}'."
                    ))
                continue
            valid.append(edge)
        return valid

    def _validate_triggers(self, nodes: List[Node], edges: List[Edge], nodes_by_id: Dict[str, Node],
                           result: ValidationResult) -> None:
        triggers = [node for node in nodes if node.type.is_trigger]
        if not triggers:
            result.errors.append(ValidationIssue(message="Workflow must have at least one trigger node."))
            return
        if len(triggers) > 1:
            result.warnings.append(ValidationIssue(
                message="Multiple triggers detected. Only the first will be used."
            ))

        active = triggers[0]
        if not any(edge.source_node_id == active.id for edge in edges):
            result.errors.append(ValidationIssue(
                message=f"Trigger '{active.display_name}' must be connected to at least one node.",
                node_id=active.id
            ))

    def _validate_connectivity(self, nodes: List[Node], edges: List[Edge], nodes_by_id: Dict[str, Node],
                               result: ValidationResult) -> None:
        """Warn about dead nodes and nodes the active trigger can never reach."""
        connected: Set[str] = set()
        for edge in edges:
            connected.add(edge.source_node_id)
            connected.add(edge.target_node_id)

        triggers = [node for node in nodes if node.type.is_trigger]
        reachable = find_reachable(triggers[0].id, edges) if triggers else set()

        for node in nodes_by_id.values():
            if node.type.is_trigger:
                continue
            if node.id not in connected:
                result.warnings.append(ValidationIssue(
                    message=f"Node '{node.display_name}' is not connected to the workflow.",
                    node_id=node.id
                ))
            elif triggers and node.id not in reachable:
                result.warnings.append(ValidationIssue(
                    message=f"Node '{node.display_name}' is not reachable from trigger "
                            f"'{triggers[0].display_name}' and will not run.",
                    node_id=node.id
                ))

        for edge in edges:
            source = nodes_by_id[edge.source_node_id]
            if edge.branch is not None and source.type is not NodeType.CONDITION:
                result.warnings.append(ValidationIssue(
                    message=f"Edge from '{source.display_name}' carries a branch label but the node "
                            f"is not a condition; the label is ignored.",
                    node_id=source.id
                ))

    def _validate_conditions(self, nodes: List[Node], edges: List[Edge], result: ValidationResult) -> None:
        for node in nodes:
            if node.type is not NodeType.CONDITION:
                continue
            outgoing = [edge for edge in edges if edge.source_node_id == node.id]
            if not outgoing:
                result.errors.append(ValidationIssue(
                    message=f"Condition '{node.display_name}' must have at least one outgoing connection.",
                    node_id=node.id
                ))
                continue

            for label in BranchLabel:
                count = sum(1 for edge in outgoing if edge.branch is label)
                if count > 1:
                    result.errors.append(ValidationIssue(
                        message=f"Condition '{node.display_name}' has more than one '{label.value}' branch.",
                        node_id=node.id
                    ))
                elif count == 0:
                    result.warnings.append(ValidationIssue(
                        message=f"Condition '{node.display_name}' has no '{label.value}' branch; "
                                f"that path ends the flow.",
                        node_id=node.id
                    ))

    def _validate_cycles(self, nodes_by_id: Dict[str, Node], edges: List[Edge],
                         result: ValidationResult) -> None:
        """
        Iterative DFS with a recursion stack; any back-edge is a cycle.

        Edges into the active trigger are not execution edges and are left
        out, the same way the execution plan drops them.
        """
        triggers = [node for node in nodes_by_id.values() if node.type.is_trigger]
        active_id = triggers[0].id if triggers else None

        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in nodes_by_id}
        for edge in edges:
            if edge.target_node_id == active_id:
                continue
            adjacency[edge.source_node_id].append(edge.target_node_id)

        visited: Set[str] = set()
        rec_stack: Set[str] = set()
        reported: Set[str] = set()

        # Triggers first so cycles are reported along execution order
        ordered = sorted(nodes_by_id.values(), key=lambda node: not node.type.is_trigger)
        for root in ordered:
            if root.id in visited:
                continue
            visited.add(root.id)
            rec_stack.add(root.id)
            stack = [(root.id, iter(adjacency[root.id]))]
            while stack:
                node_id, neighbors = stack[-1]
                neighbor = next(neighbors, None)
                if neighbor is None:
                    stack.pop()
                    rec_stack.discard(node_id)
                elif neighbor in rec_stack:
                    if neighbor not in reported:
                        reported.add(neighbor)
                        result.errors.append(ValidationIssue(
                            message=f"Cycle detected at node "
                                    f"'{nodes_by_id[neighbor].display_name}'.",
                            node_id=neighbor
                        ))
                elif neighbor not in visited:
                    visited.add(neighbor)
                    rec_stack.add(neighbor)
                    stack.append((neighbor, iter(adjacency[neighbor])))

    def _validate_required_fields(self, node: Node, result: ValidationResult) -> None:
        config = node.config or {}
        for field in REQUIRED_FIELDS.get(node.type, []):
            if _is_blank(config.get(field)):
                result.errors.append(ValidationIssue(
                    message=f"{node.type.value} node '{node.display_name}' requires '{field}'.",
                    node_id=node.id
                ))

        if node.type is NodeType.HTTP_REQUEST:
            method = config.get("method")
            if not _is_blank(method) and str(method).upper() not in HTTP_METHODS:
                result.errors.append(ValidationIssue(
                    message=f"httpRequest node '{node.display_name}' has unsupported method '{method}'.",
                    node_id=node.id
                ))
        elif node.type is NodeType.TRANSFORM:
            mode = config.get("mode")
            if not _is_blank(mode) and mode not in TRANSFORM_MODES:
                result.errors.append(ValidationIssue(
                    message=f"transform node '{node.display_name}' has unknown mode '{mode}' "
                            f"(expected one of {sorted(TRANSFORM_MODES)}).",
                    node_id=node.id
                ))
        elif node.type is NodeType.SCHEDULE_TRIGGER and not _is_blank(config.get("cron")):
            try:
                self._cron_checker(config["cron"], config.get("timezone"))
            except SchedulingError as e:
                result.errors.append(ValidationIssue(
                    message=f"scheduleTrigger node '{node.display_name}': {e.message}",
                    node_id=node.id
                ))


def find_reachable(start_id: str, edges: List[Edge]) -> Set[str]:
    """Breadth-first set of node ids reachable from start_id (inclusive)."""
    adjacency: Dict[str, List[str]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source_node_id, []).append(edge.target_node_id)

    reachable = {start_id}
    queue = [start_id]
    while queue:
        current = queue.pop(0)
        for neighbor in adjacency.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)
    return reachable


def validate_workflow(definition: WorkflowDefinition) -> ValidationResult:
    """Validate a definition with the default cron parser."""
    return GraphValidator().validate(definition)
