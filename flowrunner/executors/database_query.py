"""Database statement action."""

import re
import time
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import create_engine, make_url, text
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import QueuePool

from ..core.logging import get_logger
from ..models.core import ActionResult, NodeType
from .base import ActionExecutor

logger = get_logger(__name__)

DEFAULT_STATEMENT_TIMEOUT_MS = 30000
ALLOWED_STATEMENTS = ("SELECT", "INSERT", "UPDATE", "DELETE")

DANGEROUS_PATTERNS = [
    (re.compile(r"\bDROP\s+", re.IGNORECASE), "DROP"),
    (re.compile(r"\bTRUNCATE\s+", re.IGNORECASE), "TRUNCATE"),
    (re.compile(r"\bALTER\s+", re.IGNORECASE), "ALTER"),
    (re.compile(r"\bCREATE\s+", re.IGNORECASE), "CREATE"),
    (re.compile(r"\bGRANT\s+", re.IGNORECASE), "GRANT"),
    (re.compile(r"\bREVOKE\s+", re.IGNORECASE), "REVOKE"),
    (re.compile(r"--"), "inline comment"),
    (re.compile(r"/\*"), "block comment"),
    (re.compile(r";"), "statement separator"),
]

_ERROR_MESSAGES = [
    (("connection refused", "econnrefused", "could not connect", "unable to open database"),
     "Could not connect to database. Please check the connection string."),
    (("authentication failed", "access denied"),
     "Database authentication failed. Please check credentials."),
    (("statement timeout", "canceling statement due to statement timeout", "max_execution_time"),
     "Query execution timeout. Please optimize your query."),
    (("does not exist", "no such table", "no such column", "unknown column"),
     "Database object does not exist: {message}"),
    (("syntax error",),
     "SQL syntax error: {message}"),
]


def check_statement(query: Any) -> Optional[str]:
    """Return a rejection reason for a statement, or None when it is permitted."""
    if query is None or not str(query).strip():
        return "SQL query cannot be empty."
    query = str(query)
    normalized = query.strip().upper()
    if not normalized.startswith(ALLOWED_STATEMENTS):
        return "Only SELECT, INSERT, UPDATE, and DELETE statements are allowed."
    for pattern, name in DANGEROUS_PATTERNS:
        if pattern.search(query):
            return f"Query contains a disallowed pattern ({name})."
    return None


def describe_database_error(error: Exception) -> str:
    message = str(getattr(error, "orig", None) or error).strip()
    lowered = message.lower()
    for needles, template in _ERROR_MESSAGES:
        if any(needle in lowered for needle in needles):
            return template.format(message=message)
    return message


class DatabaseQueryExecutor(ActionExecutor):
    """Runs one SQL statement on a short-lived single-connection pool.

    The statement is checked against the allow-list before anything touches
    the network, and the pool is disposed whether the statement succeeds or not.
    """

    node_type = NodeType.DATABASE_QUERY

    def __init__(self, statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS, connect_timeout: int = 10):
        self.statement_timeout_ms = statement_timeout_ms
        self.connect_timeout = connect_timeout

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        reason = check_statement(config.get("query"))
        if reason:
            return ActionResult.fail(reason, category="validation")
        if not str(config.get("connectionString") or "").strip():
            return ActionResult.fail(
                "Database connection string is required. Please configure credentials.",
                category="validation"
            )
        params = config.get("params")
        if params not in (None, "") and not isinstance(params, dict):
            return ActionResult.fail("Field 'params' must be an object of named parameters",
                                     category="validation")
        return None

    def engine_options(self, connection_string: str) -> Dict[str, Any]:
        """Pool and driver options bounding connection setup for a URL."""
        backend = make_url(connection_string).get_backend_name()
        if backend in ("postgresql", "mysql", "mariadb"):
            connect_args = {"connect_timeout": self.connect_timeout}
        elif backend == "sqlite":
            connect_args = {"timeout": self.connect_timeout}
        else:
            connect_args = {}
        return {
            "poolclass": QueuePool,
            "pool_size": 1,
            "max_overflow": 0,
            "pool_timeout": self.connect_timeout,
            "connect_args": connect_args,
        }

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        rejected = self.preflight(config)
        if rejected is not None:
            return rejected

        query = str(config["query"]).strip()
        params = config.get("params") or {}

        try:
            connection_string = str(config["connectionString"]).strip()
            engine = create_engine(connection_string, **self.engine_options(connection_string))
        except (ArgumentError, SQLAlchemyError, ImportError, ValueError) as e:
            return ActionResult.fail(f"Invalid connection string: {e}", category="validation")

        started = time.monotonic()
        try:
            with engine.connect() as connection:
                self._apply_statement_timeout(connection)
                result = connection.execute(text(query), params)
                if result.returns_rows:
                    rows = [dict(row) for row in result.mappings()]
                    data = {"rows": rows, "rowCount": len(rows), "fields": list(result.keys())}
                else:
                    data = {"rowCount": result.rowcount}
                connection.commit()
        except SQLAlchemyError as e:
            message = describe_database_error(e)
            logger.error(f"Database query failed: {message}")
            category = "timeout" if "timeout" in message.lower() else "database"
            return ActionResult.fail(message, category=category)
        finally:
            engine.dispose()

        data["durationMs"] = int((time.monotonic() - started) * 1000)
        logger.debug(f"Query executed: {data['rowCount']} row(s)")
        return ActionResult.ok(data)

    def _apply_statement_timeout(self, connection) -> None:
        dialect = connection.dialect.name
        timeout = int(self.statement_timeout_ms)
        if dialect == "postgresql":
            connection.exec_driver_sql(f"SET statement_timeout = {timeout}")
        elif dialect in ("mysql", "mariadb"):
            connection.exec_driver_sql(f"SET SESSION MAX_EXECUTION_TIME = {timeout}")
