"""Data models for the workflow engine."""

from .core import (
    ActionResult,
    BranchLabel,
    Edge,
    Execution,
    ExecutionEvent,
    ExecutionStatusEnum,
    Node,
    NodeKind,
    NodeType,
    RetryPolicy,
    ScheduledTriggerJob,
    StepLog,
    StepStatusEnum,
    TriggerRegistration,
    ValidationIssue,
    ValidationResult,
    Workflow,
    WorkflowDefinition,
)

__all__ = [
    "ActionResult",
    "BranchLabel",
    "Edge",
    "Execution",
    "ExecutionEvent",
    "ExecutionStatusEnum",
    "Node",
    "NodeKind",
    "NodeType",
    "RetryPolicy",
    "ScheduledTriggerJob",
    "StepLog",
    "StepStatusEnum",
    "TriggerRegistration",
    "ValidationIssue",
    "ValidationResult",
    "Workflow",
    "WorkflowDefinition",
]
