"""Tests for WorkflowManager saves, activation and trigger registration."""

import pytest

from flowrunner.core.exceptions import GraphValidationError
from flowrunner.core.triggers import extract_token_from_address
from flowrunner.models.core import NodeType

from conftest import edge, make_definition


def definition_with(trigger_node):
    return make_definition(
        [trigger_node, {"id": "a", "type": "transform", "config": {"mode": "expression", "expression": "1"}}],
        [edge(trigger_node["id"], "a")]
    )


SCHEDULE = {"id": "s", "type": "scheduleTrigger", "config": {"cron": "*/5 * * * *"}}
WEBHOOK = {"id": "w", "type": "webhookTrigger"}
EMAIL = {"id": "e", "type": "emailTrigger"}


class TestWorkflowManager:
    """Test cases for WorkflowManager."""

    def test_save_bumps_version(self, workflow_manager):
        """Each save of the same workflow increments its version."""
        workflow, _ = workflow_manager.save_workflow("Flow", definition_with(WEBHOOK))
        updated, _ = workflow_manager.save_workflow("Flow v2", definition_with(WEBHOOK), workflow_id=workflow.id)

        assert workflow.version == 1
        assert updated.version == 2
        assert updated.name == "Flow v2"

    def test_invalid_graph_is_not_saved(self, workflow_manager, store):
        """Validation errors raise and persist nothing."""
        with pytest.raises(GraphValidationError) as exc_info:
            workflow_manager.save_workflow("Broken", make_definition([], []))

        assert "Workflow is empty. Add at least one node." in exc_info.value.validation_errors
        assert store.list_workflows() == []

    def test_warnings_are_returned(self, workflow_manager):
        """Warnings do not block the save."""
        definition = make_definition(
            [WEBHOOK, {"id": "a", "type": "transform", "config": {"mode": "expression", "expression": "1"}},
             {"id": "b", "type": "transform", "label": "Lonely", "config": {"mode": "expression", "expression": "2"}}],
            [edge("w", "a")]
        )
        workflow, result = workflow_manager.save_workflow("Flow", definition)

        assert workflow.id
        assert "Node 'Lonely' is not connected to the workflow." in result.warning_messages()

    def test_schedule_follows_activation(self, workflow_manager, scheduler):
        """A schedule starts paused for an inactive workflow and follows set_active."""
        workflow, _ = workflow_manager.save_workflow("Nightly", definition_with(SCHEDULE))
        trigger_id = f"{workflow.id}:s"

        job = scheduler.get_schedule(trigger_id)
        assert job.paused is True
        assert not scheduler.has_job(trigger_id)

        workflow_manager.set_active(workflow.id, True)
        assert scheduler.get_schedule(trigger_id).paused is False
        assert scheduler.has_job(trigger_id)

        workflow_manager.set_active(workflow.id, False)
        assert scheduler.get_schedule(trigger_id).paused is True
        assert not scheduler.has_job(trigger_id)

    def test_active_save_installs_schedule(self, workflow_manager, scheduler):
        """Saving an active workflow schedules it immediately."""
        workflow, _ = workflow_manager.save_workflow("Nightly", definition_with(SCHEDULE), is_active=True)

        job = scheduler.get_schedule(f"{workflow.id}:s")
        assert job.paused is False
        assert job.next_fire_at is not None

    def test_webhook_registration_is_stable(self, workflow_manager):
        """Webhook token and secret survive further saves."""
        workflow, _ = workflow_manager.save_workflow("Hook", definition_with(WEBHOOK))
        first = workflow_manager.list_trigger_registrations(workflow.id)
        workflow_manager.save_workflow("Hook", definition_with(WEBHOOK), workflow_id=workflow.id)
        second = workflow_manager.list_trigger_registrations(workflow.id)

        assert len(first) == 1
        assert first[0].trigger_type is NodeType.WEBHOOK_TRIGGER
        assert first[0].token and first[0].secret
        assert [r.token for r in second] == [first[0].token]

    def test_switching_trigger_removes_stale_registrations(self, workflow_manager, scheduler):
        """Replacing a schedule trigger with a webhook drops the schedule."""
        workflow, _ = workflow_manager.save_workflow("Flow", definition_with(SCHEDULE), is_active=True)
        assert scheduler.list_schedules(workflow.id)

        workflow_manager.save_workflow("Flow", definition_with(WEBHOOK), workflow_id=workflow.id)

        assert scheduler.list_schedules(workflow.id) == []
        assert not scheduler.has_job(f"{workflow.id}:s")
        registrations = workflow_manager.list_trigger_registrations(workflow.id)
        assert [r.trigger_type for r in registrations] == [NodeType.WEBHOOK_TRIGGER]

    def test_email_registration(self, workflow_manager, store):
        """Email triggers get a generated address resolvable by token."""
        workflow, _ = workflow_manager.save_workflow("Inbox", definition_with(EMAIL))

        registration = workflow_manager.list_trigger_registrations(workflow.id)[0]
        assert registration.email_address.endswith("@triggers.test")
        assert len(registration.token) == 16
        assert extract_token_from_address(f"Inbox <{registration.email_address}>") == registration.token
        assert store.find_trigger_by_token(registration.token).workflow_id == workflow.id

    def test_only_active_trigger_is_registered(self, workflow_manager, scheduler):
        """Secondary trigger nodes get no schedule or token."""
        definition = make_definition(
            [WEBHOOK, SCHEDULE, {"id": "a", "type": "transform", "config": {"mode": "expression", "expression": "1"}}],
            [edge("w", "a"), edge("s", "a")]
        )
        workflow, _ = workflow_manager.save_workflow("Flow", definition, is_active=True)

        assert scheduler.list_schedules(workflow.id) == []
        assert len(workflow_manager.list_trigger_registrations(workflow.id)) == 1
