"""Execution Store: the only place the engine's records touch the database."""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import ExecutionNotFoundError, StorageError, WorkflowNotFoundError
from ..core.logging import get_logger
from ..core.retry import RetryConfig, with_retry
from ..models.core import (
    Execution, ExecutionStatusEnum, NodeType, ScheduledTriggerJob, StepLog, StepStatusEnum,
    TriggerRegistration, Workflow, WorkflowDefinition
)
from .models import (
    ExecutionModel, ScheduledTriggerJobModel, StepLogModel, TriggerRegistrationModel,
    WorkflowModel, WorkflowVersionModel
)

logger = get_logger(__name__)

_NON_TERMINAL = (ExecutionStatusEnum.PENDING.value, ExecutionStatusEnum.RUNNING.value)
_OPEN_STEP = (StepStatusEnum.PENDING.value, StepStatusEnum.RUNNING.value)
_write_retry = with_retry(RetryConfig(max_attempts=3))


def to_jsonable(value: Any) -> Any:
    """Coerce arbitrary executor output (datetimes, decimals...) into JSON-safe data."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


class ExecutionStore(ABC):
    """Repository contract consumed by the engine and the trigger scheduler."""

    # workflows

    @abstractmethod
    def save_workflow(self, name: str, definition: WorkflowDefinition,
                      workflow_id: Optional[str] = None, is_active: Optional[bool] = None) -> Workflow: ...

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Workflow: ...

    @abstractmethod
    def list_workflows(self) -> List[Workflow]: ...

    @abstractmethod
    def get_workflow_definition(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition: ...

    @abstractmethod
    def set_workflow_active(self, workflow_id: str, is_active: bool) -> Workflow: ...

    # executions

    @abstractmethod
    def create_execution(self, execution: Execution) -> Execution: ...

    @abstractmethod
    def update_execution_status(self, execution_id: str, status: ExecutionStatusEnum,
                                started_at: Optional[datetime] = None) -> bool: ...

    @abstractmethod
    def finalize_execution(self, execution_id: str, status: ExecutionStatusEnum, output: Any = None,
                           error: Optional[str] = None, finished_at: Optional[datetime] = None) -> bool: ...

    @abstractmethod
    def get_execution(self, execution_id: str) -> Execution: ...

    @abstractmethod
    def list_executions(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[Execution]: ...

    @abstractmethod
    def list_stale_executions(self, before: datetime) -> List[Execution]: ...

    # step logs

    @abstractmethod
    def append_step_log(self, step: StepLog) -> StepLog: ...

    @abstractmethod
    def update_step_log(self, step_id: str, status: StepStatusEnum, output: Any = None,
                        error: Optional[str] = None, error_category: Optional[str] = None,
                        attempts: Optional[int] = None, duration_ms: Optional[int] = None) -> bool: ...

    @abstractmethod
    def list_step_logs(self, execution_id: str) -> List[StepLog]: ...

    # schedules

    @abstractmethod
    def save_schedule_job(self, job: ScheduledTriggerJob) -> ScheduledTriggerJob: ...

    @abstractmethod
    def get_schedule_job(self, trigger_id: str) -> Optional[ScheduledTriggerJob]: ...

    @abstractmethod
    def delete_schedule_job(self, trigger_id: str) -> bool: ...

    @abstractmethod
    def list_schedule_jobs(self, workflow_id: Optional[str] = None) -> List[ScheduledTriggerJob]: ...

    # inbound trigger registrations

    @abstractmethod
    def save_trigger_registration(self, registration: TriggerRegistration) -> TriggerRegistration: ...

    @abstractmethod
    def find_trigger_by_token(self, token: str) -> Optional[TriggerRegistration]: ...

    @abstractmethod
    def list_trigger_registrations(self, workflow_id: str) -> List[TriggerRegistration]: ...

    @abstractmethod
    def delete_trigger_registration(self, registration_id: str) -> bool: ...


class SqlAlchemyExecutionStore(ExecutionStore):
    """ExecutionStore backed by SQLAlchemy sessions.

    Each operation opens its own session. Operations are serialized with a
    lock so one SQLite connection can be shared by the engine's worker threads.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.RLock()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Storage operation '{operation}' failed: {e}")
                error = StorageError(f"Storage operation '{operation}' failed: {e}", operation=operation)
                # only lock contention and dropped connections are worth retrying
                error.recoverable = isinstance(e, OperationalError)
                raise error from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # workflows

    @_write_retry
    def save_workflow(self, name: str, definition: WorkflowDefinition,
                      workflow_id: Optional[str] = None, is_active: Optional[bool] = None) -> Workflow:
        definition_json = definition.model_dump(mode="json", by_alias=True)
        with self._session("save_workflow") as session:
            model = session.get(WorkflowModel, workflow_id) if workflow_id else None
            if model is None:
                model = WorkflowModel(
                    id=workflow_id or str(uuid.uuid4()),
                    name=name,
                    version=1,
                    is_active=bool(is_active),
                    definition=definition_json,
                )
                session.add(model)
            else:
                model.name = name
                model.version = model.version + 1
                model.definition = definition_json
                if is_active is not None:
                    model.is_active = is_active
            session.add(WorkflowVersionModel(
                workflow_id=model.id, version=model.version, definition=definition_json
            ))
            session.flush()
            logger.info(f"Saved workflow {model.id} version {model.version}")
            return self._workflow_from_model(model)

    def get_workflow(self, workflow_id: str) -> Workflow:
        with self._session("get_workflow") as session:
            model = session.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            return self._workflow_from_model(model)

    def list_workflows(self) -> List[Workflow]:
        with self._session("list_workflows") as session:
            models = session.query(WorkflowModel).order_by(WorkflowModel.created_at).all()
            return [self._workflow_from_model(model) for model in models]

    def get_workflow_definition(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        with self._session("get_workflow_definition") as session:
            if version is None:
                model = session.get(WorkflowModel, workflow_id)
                if model is None:
                    raise WorkflowNotFoundError(workflow_id)
                return WorkflowDefinition.model_validate(model.definition)
            snapshot = session.query(WorkflowVersionModel).filter_by(
                workflow_id=workflow_id, version=version
            ).first()
            if snapshot is None:
                raise WorkflowNotFoundError(workflow_id, version)
            return WorkflowDefinition.model_validate(snapshot.definition)

    @_write_retry
    def set_workflow_active(self, workflow_id: str, is_active: bool) -> Workflow:
        with self._session("set_workflow_active") as session:
            model = session.get(WorkflowModel, workflow_id)
            if model is None:
                raise WorkflowNotFoundError(workflow_id)
            model.is_active = is_active
            session.flush()
            return self._workflow_from_model(model)

    # executions

    @_write_retry
    def create_execution(self, execution: Execution) -> Execution:
        with self._session("create_execution") as session:
            model = ExecutionModel(
                id=execution.id,
                workflow_id=execution.workflow_id,
                workflow_version=execution.workflow_version,
                status=execution.status.value,
                input_json=to_jsonable(execution.trigger_input),
                replay_of=execution.replay_of,
                started_at=execution.started_at,
                created_at=execution.created_at or datetime.utcnow(),
            )
            session.add(model)
            session.flush()
            return self._execution_from_model(model)

    @_write_retry
    def update_execution_status(self, execution_id: str, status: ExecutionStatusEnum,
                                started_at: Optional[datetime] = None) -> bool:
        """Move a non-terminal execution to another non-terminal status."""
        values: Dict[str, Any] = {"status": ExecutionStatusEnum(status).value}
        if started_at is not None:
            values["started_at"] = started_at
        with self._session("update_execution_status") as session:
            updated = session.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status.in_(_NON_TERMINAL)
            ).update(values, synchronize_session=False)
            return updated == 1

    @_write_retry
    def finalize_execution(self, execution_id: str, status: ExecutionStatusEnum, output: Any = None,
                           error: Optional[str] = None, finished_at: Optional[datetime] = None) -> bool:
        """
        Set a terminal status exactly once.

        Returns:
            True if this call finalized the execution, False if it was already terminal
        """
        status = ExecutionStatusEnum(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._session("finalize_execution") as session:
            updated = session.query(ExecutionModel).filter(
                ExecutionModel.id == execution_id,
                ExecutionModel.status.in_(_NON_TERMINAL)
            ).update({
                "status": status.value,
                "output_json": to_jsonable(output),
                "error": error,
                "finished_at": finished_at or datetime.utcnow(),
            }, synchronize_session=False)
            if updated == 0 and session.get(ExecutionModel, execution_id) is None:
                raise ExecutionNotFoundError(execution_id)
            return updated == 1

    def get_execution(self, execution_id: str) -> Execution:
        with self._session("get_execution") as session:
            model = session.get(ExecutionModel, execution_id)
            if model is None:
                raise ExecutionNotFoundError(execution_id)
            return self._execution_from_model(model)

    def list_executions(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[Execution]:
        with self._session("list_executions") as session:
            query = session.query(ExecutionModel)
            if workflow_id:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            models = query.order_by(ExecutionModel.created_at.desc()).limit(limit).all()
            return [self._execution_from_model(model) for model in models]

    def list_stale_executions(self, before: datetime) -> List[Execution]:
        with self._session("list_stale_executions") as session:
            models = session.query(ExecutionModel).filter(
                ExecutionModel.status.in_(_NON_TERMINAL),
                ExecutionModel.created_at < before
            ).all()
            return [
                self._execution_from_model(model) for model in models
                if (model.started_at or model.created_at) < before
            ]

    # step logs

    @_write_retry
    def append_step_log(self, step: StepLog) -> StepLog:
        with self._session("append_step_log") as session:
            model = StepLogModel(
                id=step.id,
                execution_id=step.execution_id,
                node_id=step.node_id,
                node_label=step.node_label,
                node_type=step.node_type.value,
                sequence=step.sequence,
                status=step.status.value,
                input_json=to_jsonable(step.input),
                output_json=to_jsonable(step.output),
                error=step.error,
                error_category=step.error_category,
                attempts=step.attempts,
                duration_ms=step.duration_ms,
                created_at=step.created_at or datetime.utcnow(),
            )
            session.add(model)
            session.flush()
            return self._step_from_model(model)

    @_write_retry
    def update_step_log(self, step_id: str, status: StepStatusEnum, output: Any = None,
                        error: Optional[str] = None, error_category: Optional[str] = None,
                        attempts: Optional[int] = None, duration_ms: Optional[int] = None) -> bool:
        """Complete an open step log; finished steps are never modified."""
        values: Dict[str, Any] = {
            "status": StepStatusEnum(status).value,
            "output_json": to_jsonable(output),
            "error": error,
            "error_category": error_category,
        }
        if attempts is not None:
            values["attempts"] = attempts
        if duration_ms is not None:
            values["duration_ms"] = duration_ms
        with self._session("update_step_log") as session:
            updated = session.query(StepLogModel).filter(
                StepLogModel.id == step_id,
                StepLogModel.status.in_(_OPEN_STEP)
            ).update(values, synchronize_session=False)
            return updated == 1

    def list_step_logs(self, execution_id: str) -> List[StepLog]:
        with self._session("list_step_logs") as session:
            models = session.query(StepLogModel).filter(
                StepLogModel.execution_id == execution_id
            ).order_by(StepLogModel.sequence).all()
            return [self._step_from_model(model) for model in models]

    # schedules

    @_write_retry
    def save_schedule_job(self, job: ScheduledTriggerJob) -> ScheduledTriggerJob:
        with self._session("save_schedule_job") as session:
            model = session.get(ScheduledTriggerJobModel, job.trigger_id)
            if model is None:
                model = ScheduledTriggerJobModel(trigger_id=job.trigger_id, created_at=datetime.utcnow())
                session.add(model)
            model.workflow_id = job.workflow_id
            model.cron = job.cron_expression
            model.timezone = job.timezone
            model.next_fire_at = job.next_fire_at
            model.paused = job.paused
            model.updated_at = datetime.utcnow()
            session.flush()
            return self._job_from_model(model)

    def get_schedule_job(self, trigger_id: str) -> Optional[ScheduledTriggerJob]:
        with self._session("get_schedule_job") as session:
            model = session.get(ScheduledTriggerJobModel, trigger_id)
            return self._job_from_model(model) if model else None

    @_write_retry
    def delete_schedule_job(self, trigger_id: str) -> bool:
        with self._session("delete_schedule_job") as session:
            deleted = session.query(ScheduledTriggerJobModel).filter_by(trigger_id=trigger_id).delete()
            return deleted > 0

    def list_schedule_jobs(self, workflow_id: Optional[str] = None) -> List[ScheduledTriggerJob]:
        with self._session("list_schedule_jobs") as session:
            query = session.query(ScheduledTriggerJobModel)
            if workflow_id:
                query = query.filter_by(workflow_id=workflow_id)
            return [self._job_from_model(model) for model in query.all()]

    # inbound trigger registrations

    @_write_retry
    def save_trigger_registration(self, registration: TriggerRegistration) -> TriggerRegistration:
        with self._session("save_trigger_registration") as session:
            model = TriggerRegistrationModel(
                id=registration.id,
                workflow_id=registration.workflow_id,
                trigger_type=registration.trigger_type.value,
                token=registration.token,
                secret=registration.secret,
                email_address=registration.email_address,
                created_at=registration.created_at or datetime.utcnow(),
            )
            session.merge(model)
            return registration

    def find_trigger_by_token(self, token: str) -> Optional[TriggerRegistration]:
        with self._session("find_trigger_by_token") as session:
            model = session.query(TriggerRegistrationModel).filter_by(token=token).first()
            return self._registration_from_model(model) if model else None

    def list_trigger_registrations(self, workflow_id: str) -> List[TriggerRegistration]:
        with self._session("list_trigger_registrations") as session:
            models = session.query(TriggerRegistrationModel).filter_by(workflow_id=workflow_id).all()
            return [self._registration_from_model(model) for model in models]

    @_write_retry
    def delete_trigger_registration(self, registration_id: str) -> bool:
        with self._session("delete_trigger_registration") as session:
            deleted = session.query(TriggerRegistrationModel).filter_by(id=registration_id).delete()
            return deleted > 0

    # conversions

    @staticmethod
    def _workflow_from_model(model: WorkflowModel) -> Workflow:
        return Workflow(
            id=model.id,
            name=model.name,
            version=model.version,
            is_active=model.is_active,
            definition=WorkflowDefinition.model_validate(model.definition),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _execution_from_model(model: ExecutionModel) -> Execution:
        return Execution(
            id=model.id,
            workflow_id=model.workflow_id,
            workflow_version=model.workflow_version,
            status=ExecutionStatusEnum(model.status),
            trigger_input=model.input_json,
            output=model.output_json,
            error=model.error,
            replay_of=model.replay_of,
            started_at=model.started_at,
            finished_at=model.finished_at,
            created_at=model.created_at,
        )

    @staticmethod
    def _step_from_model(model: StepLogModel) -> StepLog:
        return StepLog(
            id=model.id,
            execution_id=model.execution_id,
            node_id=model.node_id,
            node_label=model.node_label,
            node_type=NodeType(model.node_type),
            sequence=model.sequence,
            status=StepStatusEnum(model.status),
            input=model.input_json,
            output=model.output_json,
            error=model.error,
            error_category=model.error_category,
            attempts=model.attempts or 0,
            duration_ms=model.duration_ms,
            created_at=model.created_at,
        )

    @staticmethod
    def _job_from_model(model: ScheduledTriggerJobModel) -> ScheduledTriggerJob:
        return ScheduledTriggerJob(
            trigger_id=model.trigger_id,
            workflow_id=model.workflow_id,
            cron_expression=model.cron,
            timezone=model.timezone,
            next_fire_at=model.next_fire_at,
            paused=model.paused,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _registration_from_model(model: TriggerRegistrationModel) -> TriggerRegistration:
        return TriggerRegistration(
            id=model.id,
            workflow_id=model.workflow_id,
            trigger_type=NodeType(model.trigger_type),
            token=model.token,
            secret=model.secret,
            email_address=model.email_address,
            created_at=model.created_at,
        )
