"""Persistence for workflows, executions, step logs and trigger registrations."""

from .database import Base, Database, create_database_engine
from .repository import ExecutionStore, SqlAlchemyExecutionStore, to_jsonable

__all__ = [
    "Base",
    "Database",
    "ExecutionStore",
    "SqlAlchemyExecutionStore",
    "create_database_engine",
    "to_jsonable",
]
