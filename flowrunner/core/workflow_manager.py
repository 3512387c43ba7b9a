"""Workflow Manager: validated saves, activation and trigger registration."""

from datetime import datetime
from typing import List, Optional, Tuple

from ..models.core import NodeType, TriggerRegistration, ValidationResult, Workflow, WorkflowDefinition
from ..storage.repository import ExecutionStore
from .graph_validator import GraphValidator
from .logging import get_logger
from .scheduler import TriggerScheduler
from .triggers import (
    EMAIL_LOCAL_PREFIX, generate_email_address, generate_webhook_secret, generate_webhook_token
)

logger = get_logger(__name__)


def schedule_trigger_id(workflow_id: str, node_id: str) -> str:
    return f"{workflow_id}:{node_id}"


class WorkflowManager:
    """Manages workflow definitions and keeps their triggers registered."""

    def __init__(self, store: ExecutionStore, scheduler: TriggerScheduler,
                 validator: Optional[GraphValidator] = None, email_domain: str = "triggers.example.com"):
        self.store = store
        self.scheduler = scheduler
        self.validator = validator or GraphValidator()
        self.email_domain = email_domain

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        return self.validator.validate(definition)

    def save_workflow(self, name: str, definition: WorkflowDefinition, workflow_id: Optional[str] = None,
                      is_active: Optional[bool] = None) -> Tuple[Workflow, ValidationResult]:
        """
        Validate and persist a workflow, bumping its version.

        Args:
            name: Display name
            definition: Graph to save
            workflow_id: Existing workflow to update; a new one is created otherwise
            is_active: New activation state, unchanged when omitted

        Returns:
            Tuple of the saved workflow and the validation result (for warnings)

        Raises:
            GraphValidationError: If the graph has errors; nothing is saved
        """
        result = self.validator.ensure_valid(definition, workflow_id)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warning_messages())}")

        workflow = self.store.save_workflow(name, definition, workflow_id=workflow_id, is_active=is_active)
        self._sync_triggers(workflow)
        return workflow, result

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.store.get_workflow(workflow_id)

    def list_workflows(self) -> List[Workflow]:
        return self.store.list_workflows()

    def set_active(self, workflow_id: str, is_active: bool) -> Workflow:
        """Activate or deactivate a workflow; its schedules pause and resume with it."""
        workflow = self.store.set_workflow_active(workflow_id, is_active)
        self.scheduler.set_workflow_schedules_paused(workflow_id, paused=not is_active)
        logger.info(f"Workflow {workflow_id} {'activated' if is_active else 'deactivated'}")
        return workflow

    def list_trigger_registrations(self, workflow_id: str) -> List[TriggerRegistration]:
        self.store.get_workflow(workflow_id)
        return self.store.list_trigger_registrations(workflow_id)

    def _sync_triggers(self, workflow: Workflow) -> None:
        """
        Register the active trigger of a saved workflow and drop stale registrations.

        Only the active trigger can start executions, so other trigger nodes
        get no schedule, token or address.
        """
        trigger = workflow.definition.active_trigger
        wanted_schedule = None
        wanted_registration = None

        if trigger is not None and trigger.type is NodeType.SCHEDULE_TRIGGER:
            wanted_schedule = schedule_trigger_id(workflow.id, trigger.id)
            self.scheduler.create_schedule(
                wanted_schedule, workflow.id, trigger.config["cron"], trigger.config.get("timezone")
            )
            if not workflow.is_active:
                self.scheduler.pause_schedule(wanted_schedule)
            elif self.scheduler.get_schedule(wanted_schedule).paused:
                self.scheduler.resume_schedule(wanted_schedule)
        elif trigger is not None and trigger.type in (NodeType.WEBHOOK_TRIGGER, NodeType.EMAIL_TRIGGER):
            wanted_registration = schedule_trigger_id(workflow.id, trigger.id)
            self._ensure_registration(workflow.id, wanted_registration, trigger.type)

        for job in self.scheduler.list_schedules(workflow.id):
            if job.trigger_id != wanted_schedule:
                self.scheduler.remove_schedule(job.trigger_id)
        for registration in self.store.list_trigger_registrations(workflow.id):
            if registration.id != wanted_registration:
                self.store.delete_trigger_registration(registration.id)

    def _ensure_registration(self, workflow_id: str, registration_id: str, trigger_type: NodeType) -> None:
        for registration in self.store.list_trigger_registrations(workflow_id):
            if registration.id == registration_id and registration.trigger_type is trigger_type:
                return

        if trigger_type is NodeType.EMAIL_TRIGGER:
            address = generate_email_address(self.email_domain)
            token = address[len(EMAIL_LOCAL_PREFIX):address.index("@")]
            registration = TriggerRegistration(
                id=registration_id, workflow_id=workflow_id, trigger_type=trigger_type,
                token=token, email_address=address, created_at=datetime.utcnow()
            )
        else:
            registration = TriggerRegistration(
                id=registration_id, workflow_id=workflow_id, trigger_type=trigger_type,
                token=generate_webhook_token(), secret=generate_webhook_secret(), created_at=datetime.utcnow()
            )
        self.store.save_trigger_registration(registration)
        logger.info(f"Registered {trigger_type.value} for workflow {workflow_id}")
