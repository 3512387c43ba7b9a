"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    ExecutorError,
    EvaluationError,
    SchedulingError,
    EngineFault,
    ExecutionEngineError,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "ExecutorError",
    "EvaluationError",
    "SchedulingError",
    "EngineFault",
    "ExecutionEngineError",
    "ExecutionNotFoundError",
    "WorkflowNotFoundError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
