"""FastAPI REST endpoints for the workflow execution engine."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..core.engine import ExecutionEngine
from ..core.exceptions import (
    ExecutionEngineError,
    ExecutionNotFoundError,
    GraphValidationError,
    SchedulingError,
    StorageError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    create_error_response
)
from ..core.logging import get_logger, log_with_context
from ..core.scheduler import TriggerScheduler
from ..core.triggers import (
    build_email_trigger_input, build_webhook_trigger_input, extract_token_from_address, verify_signature
)
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    Execution, NodeType, ScheduledTriggerJob, StepLog, TriggerRegistration, ValidationIssue, Workflow,
    WorkflowDefinition
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Flowrunner-Signature"

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized in the application lifespan)
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_trigger_scheduler: Optional[TriggerScheduler] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine,
    trigger_scheduler: TriggerScheduler
):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_engine, _trigger_scheduler
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine
    _trigger_scheduler = trigger_scheduler


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow manager not initialized"
        )
    return _workflow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_trigger_scheduler() -> TriggerScheduler:
    """Dependency to get the trigger scheduler."""
    if _trigger_scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Trigger scheduler not initialized"
        )
    return _trigger_scheduler


def _raise_http_error(error: Exception, action: str) -> NoReturn:
    """Map an engine error raised while performing ``action`` onto an HTTPException."""
    if isinstance(error, HTTPException):
        raise error

    if isinstance(error, WorkflowEngineError):
        if isinstance(error, (GraphValidationError, SchedulingError)):
            status_code = status.HTTP_400_BAD_REQUEST
        elif isinstance(error, (ExecutionNotFoundError, WorkflowNotFoundError)):
            status_code = status.HTTP_404_NOT_FOUND
        elif isinstance(error, ExecutionEngineError):
            status_code = status.HTTP_409_CONFLICT
        elif isinstance(error, StorageError):
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

        if status_code >= 500:
            log_with_context(logger, logging.ERROR, f"Workflow engine error while {action}", error=error.to_dict())
        else:
            logger.warning(f"Workflow engine error while {action}: {str(error)}")
        raise HTTPException(status_code=status_code, detail=create_error_response(error))

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models
class SaveWorkflowRequest(BaseModel):
    """Request model for saving a workflow."""
    name: str = Field(..., min_length=1, description="Workflow name")
    definition: WorkflowDefinition = Field(..., description="Graph definition")
    is_active: Optional[bool] = Field(None, description="Activation state; unchanged when omitted")


class SaveWorkflowResponse(BaseModel):
    """Response model for workflow saves."""
    workflow: Workflow
    message: str
    validation_warnings: List[str] = Field(default_factory=list)
    triggers: List[TriggerRegistration] = Field(default_factory=list)


class ValidateWorkflowResponse(BaseModel):
    """Response model for standalone validation."""
    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class StartExecutionRequest(BaseModel):
    """Request model for starting an execution."""
    workflow_id: str = Field(..., description="Workflow to run")
    trigger_input: Any = Field(None, description="Payload exposed to nodes as {{trigger...}}")
    version: Optional[int] = Field(None, description="Definition version; current when omitted")


class CancelExecutionResponse(BaseModel):
    execution_id: str
    cancelled: bool
    message: str


class CreateScheduleRequest(BaseModel):
    """Request model for registering a schedule trigger."""
    trigger_id: str = Field(..., min_length=1)
    workflow_id: str
    cron_expression: str
    timezone: Optional[str] = None


class UpdateScheduleRequest(BaseModel):
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None


class DeliveryResponse(BaseModel):
    """Response model for webhook and email deliveries."""
    execution_id: str
    workflow_id: str
    status: str


# Workflows

@router.post(
    "/workflows",
    response_model=SaveWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Validate and store a new workflow definition"
)
async def create_workflow(
    request: SaveWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> SaveWorkflowResponse:
    """
    Create a new workflow.

    Raises:
        HTTPException: 400 if the graph has validation errors
    """
    try:
        logger.info(f"Creating workflow: {request.name}")
        workflow, result = workflow_manager.save_workflow(
            request.name, request.definition, is_active=request.is_active
        )
        return SaveWorkflowResponse(
            workflow=workflow,
            message=f"Workflow '{workflow.name}' created",
            validation_warnings=result.warning_messages(),
            triggers=workflow_manager.list_trigger_registrations(workflow.id)
        )
    except Exception as e:
        _raise_http_error(e, "creating the workflow")


@router.put(
    "/workflows/{workflow_id}",
    response_model=SaveWorkflowResponse,
    summary="Update a workflow",
    description="Store a new version of an existing workflow"
)
async def update_workflow(
    workflow_id: str,
    request: SaveWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> SaveWorkflowResponse:
    try:
        workflow_manager.get_workflow(workflow_id)
        workflow, result = workflow_manager.save_workflow(
            request.name, request.definition, workflow_id=workflow_id, is_active=request.is_active
        )
        return SaveWorkflowResponse(
            workflow=workflow,
            message=f"Workflow '{workflow.name}' saved as version {workflow.version}",
            validation_warnings=result.warning_messages(),
            triggers=workflow_manager.list_trigger_registrations(workflow.id)
        )
    except Exception as e:
        _raise_http_error(e, "updating the workflow")


@router.get("/workflows", response_model=List[Workflow], summary="List workflows")
async def list_workflows(
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[Workflow]:
    try:
        return workflow_manager.list_workflows()
    except Exception as e:
        _raise_http_error(e, "listing workflows")


@router.get("/workflows/{workflow_id}", response_model=Workflow, summary="Get a workflow")
async def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except Exception as e:
        _raise_http_error(e, "retrieving the workflow")


@router.post(
    "/workflows/validate",
    response_model=ValidateWorkflowResponse,
    summary="Validate a workflow definition",
    description="Run graph validation without saving anything"
)
async def validate_workflow(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidateWorkflowResponse:
    try:
        result = workflow_manager.validate_workflow(definition)
        return ValidateWorkflowResponse(is_valid=result.is_valid, errors=result.errors, warnings=result.warnings)
    except Exception as e:
        _raise_http_error(e, "validating the workflow")


@router.post("/workflows/{workflow_id}/activate", response_model=Workflow, summary="Activate a workflow")
async def activate_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.set_active(workflow_id, True)
    except Exception as e:
        _raise_http_error(e, "activating the workflow")


@router.post("/workflows/{workflow_id}/deactivate", response_model=Workflow, summary="Deactivate a workflow")
async def deactivate_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.set_active(workflow_id, False)
    except Exception as e:
        _raise_http_error(e, "deactivating the workflow")


@router.get(
    "/workflows/{workflow_id}/triggers",
    response_model=List[TriggerRegistration],
    summary="List webhook/email trigger registrations"
)
async def list_workflow_triggers(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[TriggerRegistration]:
    try:
        return workflow_manager.list_trigger_registrations(workflow_id)
    except Exception as e:
        _raise_http_error(e, "listing trigger registrations")


# Executions

@router.post(
    "/executions",
    response_model=Execution,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an execution",
    description="Start a manual (test) run of a workflow with the given trigger input"
)
async def start_execution(
    request: StartExecutionRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    """
    Start a workflow execution.

    Raises:
        HTTPException: 404 for an unknown workflow, 400 if the graph is invalid
    """
    try:
        logger.info(f"Starting execution for workflow: {request.workflow_id}")
        return execution_engine.start_execution(request.workflow_id, request.trigger_input, version=request.version)
    except Exception as e:
        _raise_http_error(e, "starting the execution")


@router.post(
    "/executions/stream",
    summary="Stream a test run",
    description="Start an execution and stream its progress events as newline-delimited JSON"
)
async def stream_execution(
    request: StartExecutionRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StreamingResponse:
    try:
        # surface 404/400 before the response starts
        workflow = workflow_manager.get_workflow(request.workflow_id)
        workflow_manager.validator.ensure_valid(workflow.definition, workflow.id)
    except Exception as e:
        _raise_http_error(e, "starting the test run")

    events = execution_engine.stream_test_run(request.workflow_id, request.trigger_input)
    lines = (event.model_dump_json() + "\n" for event in events)
    return StreamingResponse(lines, media_type="application/x-ndjson")


@router.get("/executions", response_model=List[Execution], summary="List executions")
async def list_executions(
    workflow_id: Optional[str] = None,
    limit: int = 50,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[Execution]:
    try:
        return execution_engine.store.list_executions(workflow_id=workflow_id, limit=min(max(limit, 1), 500))
    except Exception as e:
        _raise_http_error(e, "listing executions")


@router.get("/executions/{execution_id}", response_model=Execution, summary="Get an execution")
async def get_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    try:
        return execution_engine.get_execution(execution_id)
    except Exception as e:
        _raise_http_error(e, "retrieving the execution")


@router.get(
    "/executions/{execution_id}/steps",
    response_model=List[StepLog],
    summary="Get step logs",
    description="Step logs of an execution in dispatch order"
)
async def get_execution_steps(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[StepLog]:
    try:
        return execution_engine.list_step_logs(execution_id)
    except Exception as e:
        _raise_http_error(e, "retrieving step logs")


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=CancelExecutionResponse,
    summary="Cancel an execution"
)
async def cancel_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> CancelExecutionResponse:
    try:
        cancelled = execution_engine.cancel_execution(execution_id)
    except Exception as e:
        _raise_http_error(e, "cancelling the execution")

    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "ExecutionFinished",
                "message": f"Execution '{execution_id}' has already finished",
                "details": {"execution_id": execution_id}
            }
        )
    return CancelExecutionResponse(
        execution_id=execution_id, cancelled=True, message="Cancellation requested"
    )


@router.post(
    "/executions/{execution_id}/replay",
    response_model=Execution,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Replay an execution",
    description="Start a new execution with the original's workflow version and trigger input"
)
async def replay_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Execution:
    try:
        return execution_engine.replay_execution(execution_id)
    except Exception as e:
        _raise_http_error(e, "replaying the execution")


# Schedules

@router.post(
    "/schedules",
    response_model=ScheduledTriggerJob,
    status_code=status.HTTP_201_CREATED,
    summary="Register a schedule trigger"
)
async def create_schedule(
    request: CreateScheduleRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> ScheduledTriggerJob:
    try:
        workflow = workflow_manager.get_workflow(request.workflow_id)
        job = trigger_scheduler.create_schedule(
            request.trigger_id, request.workflow_id, request.cron_expression, request.timezone
        )
        if not workflow.is_active:
            job = trigger_scheduler.pause_schedule(request.trigger_id)
        return job
    except Exception as e:
        _raise_http_error(e, "registering the schedule")


@router.get("/schedules", response_model=List[ScheduledTriggerJob], summary="List schedules")
async def list_schedules(
    workflow_id: Optional[str] = None,
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> List[ScheduledTriggerJob]:
    try:
        return trigger_scheduler.list_schedules(workflow_id)
    except Exception as e:
        _raise_http_error(e, "listing schedules")


def _schedule_not_found(trigger_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": "ScheduleNotFound",
            "message": f"No schedule registered for trigger '{trigger_id}'",
            "details": {"trigger_id": trigger_id}
        }
    )


@router.get("/schedules/{trigger_id}", response_model=ScheduledTriggerJob, summary="Get a schedule")
async def get_schedule(
    trigger_id: str,
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> ScheduledTriggerJob:
    try:
        job = trigger_scheduler.get_schedule(trigger_id)
    except Exception as e:
        _raise_http_error(e, "retrieving the schedule")
    if job is None:
        raise _schedule_not_found(trigger_id)
    return job


@router.put("/schedules/{trigger_id}", response_model=ScheduledTriggerJob, summary="Update a schedule")
async def update_schedule(
    trigger_id: str,
    request: UpdateScheduleRequest,
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> ScheduledTriggerJob:
    try:
        if trigger_scheduler.get_schedule(trigger_id) is None:
            raise _schedule_not_found(trigger_id)
        return trigger_scheduler.update_schedule(trigger_id, request.cron_expression, request.timezone)
    except Exception as e:
        _raise_http_error(e, "updating the schedule")


@router.post("/schedules/{trigger_id}/pause", response_model=ScheduledTriggerJob, summary="Pause a schedule")
async def pause_schedule(
    trigger_id: str,
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> ScheduledTriggerJob:
    try:
        job = trigger_scheduler.pause_schedule(trigger_id)
    except Exception as e:
        _raise_http_error(e, "pausing the schedule")
    if job is None:
        raise _schedule_not_found(trigger_id)
    return job


@router.post("/schedules/{trigger_id}/resume", response_model=ScheduledTriggerJob, summary="Resume a schedule")
async def resume_schedule(
    trigger_id: str,
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> ScheduledTriggerJob:
    try:
        job = trigger_scheduler.resume_schedule(trigger_id)
    except Exception as e:
        _raise_http_error(e, "resuming the schedule")
    if job is None:
        raise _schedule_not_found(trigger_id)
    return job


@router.delete("/schedules/{trigger_id}", summary="Remove a schedule")
async def delete_schedule(
    trigger_id: str,
    trigger_scheduler: TriggerScheduler = Depends(get_trigger_scheduler)
) -> Dict[str, Any]:
    try:
        removed = trigger_scheduler.remove_schedule(trigger_id)
    except Exception as e:
        _raise_http_error(e, "removing the schedule")
    return {"trigger_id": trigger_id, "removed": removed}


# Inbound deliveries

def _start_for_registration(
    registration: Optional[TriggerRegistration],
    trigger_type: NodeType,
    trigger_input: Dict[str, Any],
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine
) -> DeliveryResponse:
    if registration is None or registration.trigger_type is not trigger_type:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "TriggerNotFound", "message": "Unknown trigger", "details": {}}
        )
    workflow = workflow_manager.get_workflow(registration.workflow_id)
    if not workflow.is_active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "WorkflowInactive",
                "message": f"Workflow '{workflow.id}' is not active",
                "details": {"workflow_id": workflow.id}
            }
        )
    execution = execution_engine.start_execution(workflow.id, trigger_input)
    return DeliveryResponse(execution_id=execution.id, workflow_id=workflow.id, status=execution.status.value)


@router.post(
    "/hooks/email",
    response_model=DeliveryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Deliver an inbound email",
    description="Accepts a parsed inbound email and starts the workflow its recipient address belongs to"
)
async def deliver_email(
    message: Dict[str, Any],
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> DeliveryResponse:
    try:
        trigger_input = build_email_trigger_input(message)
        registration = None
        for address in trigger_input["to"]:
            token = extract_token_from_address(address)
            if token:
                registration = workflow_manager.store.find_trigger_by_token(token)
                if registration is not None:
                    break
        return _start_for_registration(
            registration, NodeType.EMAIL_TRIGGER, trigger_input, workflow_manager, execution_engine
        )
    except Exception as e:
        _raise_http_error(e, "delivering the email")


@router.post(
    "/hooks/{token}",
    response_model=DeliveryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Deliver a webhook",
    description="Starts the workflow registered for the token; the body must be signed when a secret is set"
)
async def deliver_webhook(
    token: str,
    request: Request,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> DeliveryResponse:
    try:
        raw_body = await request.body()
        registration = workflow_manager.store.find_trigger_by_token(token)
        if registration is not None and registration.secret:
            if not verify_signature(registration.secret, raw_body, request.headers.get(SIGNATURE_HEADER)):
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail={"error": "InvalidSignature", "message": "Webhook signature mismatch", "details": {}}
                )

        body: Any = raw_body.decode("utf-8", errors="replace")
        if "json" in request.headers.get("content-type", "") and raw_body:
            try:
                body = json.loads(raw_body)
            except json.JSONDecodeError:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"error": "InvalidBody", "message": "Request body is not valid JSON", "details": {}}
                )

        trigger_input = build_webhook_trigger_input(
            request.method, dict(request.headers), dict(request.query_params), body
        )
        return _start_for_registration(
            registration, NodeType.WEBHOOK_TRIGGER, trigger_input, workflow_manager, execution_engine
        )
    except Exception as e:
        _raise_http_error(e, "delivering the webhook")
