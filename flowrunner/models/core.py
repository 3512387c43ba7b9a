"""Core Pydantic models for the workflow execution engine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeKind(str, Enum):
    """Broad role of a node in the graph."""
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"


class NodeType(str, Enum):
    """Closed set of concrete node types. Each one has exactly one executor."""
    WEBHOOK_TRIGGER = "webhookTrigger"
    SCHEDULE_TRIGGER = "scheduleTrigger"
    EMAIL_TRIGGER = "emailTrigger"
    HTTP_REQUEST = "httpRequest"
    SEND_EMAIL = "sendEmail"
    SEND_TELEGRAM = "sendTelegram"
    DATABASE_QUERY = "databaseQuery"
    TRANSFORM = "transform"
    CONDITION = "condition"

    @property
    def kind(self) -> NodeKind:
        if self in _TRIGGER_TYPES:
            return NodeKind.TRIGGER
        if self is NodeType.CONDITION:
            return NodeKind.CONDITION
        return NodeKind.ACTION

    @property
    def is_trigger(self) -> bool:
        return self.kind is NodeKind.TRIGGER


_TRIGGER_TYPES = frozenset({
    NodeType.WEBHOOK_TRIGGER,
    NodeType.SCHEDULE_TRIGGER,
    NodeType.EMAIL_TRIGGER,
})


class BranchLabel(str, Enum):
    """Labels on a condition node's outgoing edges."""
    TRUE = "true"
    FALSE = "false"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatusEnum.SUCCESS, ExecutionStatusEnum.FAILED, ExecutionStatusEnum.CANCELLED)


class StepStatusEnum(str, Enum):
    """Enumeration of step log statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class RetryPolicy(BaseModel):
    """Per-node retry behaviour for failed executor results."""
    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(default=0, ge=0, le=10, alias="maxAttempts", description="Extra attempts after the first")
    initial_delay_ms: int = Field(default=1000, ge=0, alias="initialDelayMs")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, alias="backoffMultiplier")
    max_delay_ms: int = Field(default=30000, ge=0, alias="maxDelayMs")

    def delay_seconds(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier ** (retry_number - 1))
        return min(delay_ms, self.max_delay_ms) / 1000.0


class Node(BaseModel):
    """A single node of a workflow graph."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier within the graph")
    type: NodeType = Field(..., description="Concrete node type")
    label: Optional[str] = Field(None, description="Display name")
    config: Dict[str, Any] = Field(default_factory=dict, description="Field name to literal or template string")
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    retry: Optional[RetryPolicy] = Field(None, alias="retryConfig")

    @field_validator('id')
    @classmethod
    def validate_id(cls, node_id):
        """Ensure node ID is not blank."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @property
    def kind(self) -> NodeKind:
        return self.type.kind

    @property
    def display_name(self) -> str:
        return self.label or self.type.value


class Edge(BaseModel):
    """Directed link between two nodes, optionally labeled with a branch."""
    model_config = ConfigDict(populate_by_name=True)

    source_node_id: str = Field(..., alias="sourceNodeId")
    target_node_id: str = Field(..., alias="targetNodeId")
    branch: Optional[BranchLabel] = Field(None, description="Branch label for condition-node edges")


class WorkflowDefinition(BaseModel):
    """Immutable snapshot of a workflow graph."""
    model_config = ConfigDict(frozen=True)

    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    def trigger_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.type.is_trigger]

    @property
    def active_trigger(self) -> Optional[Node]:
        """First trigger node by insertion order."""
        triggers = self.trigger_nodes()
        return triggers[0] if triggers else None


class Workflow(BaseModel):
    """Persisted workflow record."""
    id: str
    name: str
    version: int = 1
    is_active: bool = False
    definition: WorkflowDefinition
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ValidationIssue(BaseModel):
    """One validation finding, optionally tied to a node."""
    message: str
    node_id: Optional[str] = None


class ValidationResult(BaseModel):
    """Result of graph validation."""
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error_messages(self) -> List[str]:
        return [issue.message for issue in self.errors]

    def warning_messages(self) -> List[str]:
        return [issue.message for issue in self.warnings]


class ActionResult(BaseModel):
    """Structured outcome of one executor invocation."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_category: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, category: str = "internal", data: Any = None) -> "ActionResult":
        return cls(success=False, error=error, error_category=category, data=data)


class Execution(BaseModel):
    """One run of a workflow definition."""
    id: str
    workflow_id: str
    workflow_version: int
    status: ExecutionStatusEnum = ExecutionStatusEnum.PENDING
    trigger_input: Any = None
    output: Any = None
    error: Optional[str] = None
    replay_of: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class StepLog(BaseModel):
    """Persisted record of one node's dispatch within an execution."""
    id: str
    execution_id: str
    node_id: str
    node_label: str
    node_type: NodeType
    sequence: int
    status: StepStatusEnum
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    attempts: int = 0
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None


class ScheduledTriggerJob(BaseModel):
    """One recurring-schedule registration."""
    trigger_id: str
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    next_fire_at: Optional[datetime] = None
    paused: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TriggerRegistration(BaseModel):
    """Maps an inbound webhook token or email address to a workflow."""
    id: str
    workflow_id: str
    trigger_type: NodeType
    token: str
    secret: Optional[str] = None
    email_address: Optional[str] = None
    created_at: Optional[datetime] = None


class ExecutionEvent(BaseModel):
    """Progress event published while an execution runs."""
    event_type: str
    execution_id: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
