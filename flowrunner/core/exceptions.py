"""Error taxonomy for the workflow execution engine."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    EVALUATION = "evaluation"
    SCHEDULING = "scheduling"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow graph is unrunnable. Never retried."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class ExecutorError(WorkflowEngineError):
    """Raised inside an executor when its underlying operation fails.

    The registry converts it into a failed ActionResult; it never crosses
    the registry boundary.
    """

    def __init__(
        self,
        message: str,
        error_category: str = "internal",
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        self.error_category = error_category
        self.data = data
        if node_id:
            self.add_context(node_id=node_id)


class EvaluationError(ExecutorError):
    """Raised when a template, condition or transform expression is malformed."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, error_category="evaluation", **kwargs)
        self.category = ErrorCategory.EVALUATION
        self.recoverable = False
        if expression is not None:
            self.add_details(expression=expression)


class SchedulingError(WorkflowEngineError):
    """Raised when a schedule cannot be registered (invalid cron, unknown timezone...)."""

    def __init__(
        self,
        message: str,
        trigger_id: Optional[str] = None,
        cron_expression: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.SCHEDULING,
            **kwargs
        )
        if trigger_id:
            self.add_context(trigger_id=trigger_id)
        if cron_expression is not None:
            self.add_details(cron_expression=cron_expression)


class EngineFault(WorkflowEngineError):
    """Unexpected internal failure. The only error that escapes the engine."""

    def __init__(self, message: str, execution_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.INTERNAL,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when an execution engine request cannot be honoured."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class ExecutionNotFoundError(ExecutionEngineError):
    """Raised when an execution id is unknown."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} not found", execution_id=execution_id)


class WorkflowNotFoundError(ExecutionEngineError):
    """Raised when a workflow id (or version) is unknown."""

    def __init__(self, workflow_id: str, version: Optional[int] = None):
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Workflow {workflow_id}{suffix} not found", workflow_id=workflow_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
