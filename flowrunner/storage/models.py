"""SQLAlchemy database models for the execution store."""

from datetime import datetime
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Current state of a workflow; definitions of every version live in workflow_versions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=False)
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    versions = relationship("WorkflowVersionModel", back_populates="workflow")
    executions = relationship("ExecutionModel", back_populates="workflow")


class WorkflowVersionModel(Base):
    """Immutable definition snapshot; replays run against these."""
    __tablename__ = "workflow_versions"
    __table_args__ = (UniqueConstraint("workflow_id", "version", name="uq_workflow_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    version = Column(Integer, nullable=False)
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="versions")


class ExecutionModel(Base):
    """One run of a workflow version."""
    __tablename__ = "executions"
    __table_args__ = (
        Index("idx_executions_status_started", "status", "started_at"),
        Index("idx_executions_workflow", "workflow_id"),
    )

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    status = Column(String, nullable=False)  # pending, running, success, failed, cancelled
    input_json = Column(JSON)
    output_json = Column(JSON)
    error = Column(Text)
    replay_of = Column(String)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="executions")
    step_logs = relationship("StepLogModel", back_populates="execution", order_by="StepLogModel.sequence")


class StepLogModel(Base):
    """One node dispatch within an execution."""
    __tablename__ = "step_logs"
    __table_args__ = (Index("idx_step_logs_execution_sequence", "execution_id", "sequence"),)

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False)
    node_id = Column(String, nullable=False)
    node_label = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    sequence = Column(Integer, nullable=False)
    status = Column(String, nullable=False)  # pending, running, success, error, skipped
    input_json = Column(JSON)
    output_json = Column(JSON)
    error = Column(Text)
    error_category = Column(String)
    attempts = Column(Integer, default=0)
    duration_ms = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

    execution = relationship("ExecutionModel", back_populates="step_logs")


class ScheduledTriggerJobModel(Base):
    """Recurring cron registration for a schedule trigger."""
    __tablename__ = "scheduled_trigger_jobs"

    trigger_id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    cron = Column(String, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    next_fire_at = Column(DateTime)
    paused = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TriggerRegistrationModel(Base):
    """Inbound webhook token / email address mapped to a workflow."""
    __tablename__ = "trigger_registrations"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    trigger_type = Column(String, nullable=False)
    token = Column(String, nullable=False, unique=True)
    secret = Column(String)
    email_address = Column(String, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)
