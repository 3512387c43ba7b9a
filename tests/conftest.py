"""Pytest configuration and fixtures."""

import json
import os
import socket
import tempfile

import httpx
import pytest

from flowrunner.config import get_testing_config
from flowrunner.core.engine import ExecutionEngine
from flowrunner.core.events import ExecutionEventBus
from flowrunner.core.expressions import Evaluator
from flowrunner.core.graph_validator import GraphValidator
from flowrunner.core.scheduler import TriggerScheduler
from flowrunner.core.workflow_manager import WorkflowManager
from flowrunner.executors import build_default_registry
from flowrunner.executors.ssrf import SSRFGuard
from flowrunner.models.core import WorkflowDefinition
from flowrunner.storage.database import Database
from flowrunner.storage.repository import SqlAlchemyExecutionStore

# Hostname -> address used instead of real DNS
FAKE_DNS = {
    "api.example.com": "93.184.216.34",
    "hooks.example.com": "93.184.216.35",
    "intranet.example.com": "10.1.2.3",
    "metadata.example.com": "169.254.169.254",
    "loopback.example.com": "127.0.0.1",
}


def fake_resolver(host, port, type=None, **kwargs):
    address = FAKE_DNS.get(host)
    if address is None:
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
    return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (address, port))]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler):
        self.requests = []

        def recording_handler(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)


def default_handler(request: httpx.Request) -> httpx.Response:
    """Echo the request back as JSON; a few paths simulate failures."""
    if request.url.path == "/slow":
        raise httpx.ReadTimeout("timed out", request=request)
    if request.url.path == "/missing":
        return httpx.Response(404, json={"error": "not found"})
    if request.url.path == "/flaky":
        return httpx.Response(503, text="try again")
    body = request.content.decode("utf-8") if request.content else None
    return httpx.Response(200, json={
        "method": request.method,
        "url": str(request.url),
        "body": json.loads(body) if body and body.startswith(("{", "[")) else body,
    })


def make_definition(nodes, edges) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({"nodes": nodes, "edges": edges})


def edge(source, target, branch=None):
    data = {"sourceNodeId": source, "targetNodeId": target}
    if branch is not None:
        data["branch"] = branch
    return data


@pytest.fixture(scope="function")
def test_db():
    """Create a temporary test database."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    database = Database(f"sqlite:///{db_path}")
    database.create_tables()

    yield database

    database.dispose()
    os.unlink(db_path)


@pytest.fixture
def store(test_db):
    return SqlAlchemyExecutionStore(test_db.SessionLocal)


@pytest.fixture
def guard():
    return SSRFGuard(resolver=fake_resolver)


@pytest.fixture
def transport():
    return RecordingTransport(default_handler)


@pytest.fixture
def evaluator():
    return Evaluator()


@pytest.fixture
def registry(evaluator, transport, guard):
    config = get_testing_config(email_api_key="re_test_key", telegram_bot_token="123:abc")
    return build_default_registry(config, evaluator, http_transport=transport, guard=guard)


@pytest.fixture
def engine(store, registry, evaluator):
    """Execution engine over the temporary store; shut down after the test."""
    execution_engine = ExecutionEngine(
        store=store,
        registry=registry,
        evaluator=evaluator,
        validator=GraphValidator(),
        max_concurrent_executions=4,
        max_parallel_nodes=4,
        event_bus=ExecutionEventBus()
    )
    yield execution_engine
    execution_engine.shutdown(wait=True)


@pytest.fixture
def scheduler(store, engine):
    trigger_scheduler = TriggerScheduler(store, start_execution=engine.start_execution)
    trigger_scheduler.start()
    yield trigger_scheduler
    trigger_scheduler.shutdown()


@pytest.fixture
def workflow_manager(store, scheduler):
    return WorkflowManager(store, scheduler, email_domain="triggers.test")


@pytest.fixture
def client(transport, guard):
    """Create a test client over a fully wired application."""
    from fastapi.testclient import TestClient
    from flowrunner.factory import create_app

    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)
    config = get_testing_config(database_url=f"sqlite:///{db_path}", email_trigger_domain="triggers.test")
    app = create_app(config, http_transport=transport, guard=guard)

    with TestClient(app) as test_client:
        yield test_client

    os.unlink(db_path)
