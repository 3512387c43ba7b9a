"""Execution Engine: walks a workflow graph and records every step."""

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from queue import Empty
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..executors.registry import ExecutorRegistry
from ..models.core import (
    ActionResult, Edge, Execution, ExecutionEvent, ExecutionStatusEnum, Node, NodeKind, StepLog,
    StepStatusEnum, WorkflowDefinition
)
from ..storage.repository import ExecutionStore, to_jsonable
from . import events
from .events import ExecutionEventBus
from .exceptions import EngineFault, ExecutionEngineError, WorkflowEngineError
from .expressions import Evaluator
from .graph_validator import GraphValidator, find_reachable
from .logging import clear_logging_context, get_logger, log_with_context, set_logging_context
from .retry import run_with_policy

logger = get_logger(__name__)


@dataclass
class NodeOutcome:
    """Terminal state of one plan node within a run."""
    status: StepStatusEnum
    output: Any = None
    branch: Optional[str] = None
    continued: bool = False

    @property
    def dispatched(self) -> bool:
        return self.status is not StepStatusEnum.SKIPPED


@dataclass
class _InFlight:
    node: Node
    step: StepLog


class ExecutionPlan:
    """
    The part of a definition one execution walks.

    Only the active trigger and the nodes reachable from it take part; edges
    pointing back into the trigger are ignored.
    """

    def __init__(self, definition: WorkflowDefinition):
        trigger = definition.active_trigger
        if trigger is None:
            raise ExecutionEngineError("Workflow has no trigger node")
        self.trigger = trigger

        edges = [edge for edge in definition.edges if edge.target_node_id != trigger.id]
        reachable = find_reachable(trigger.id, edges)
        self.nodes: List[Node] = [node for node in definition.nodes if node.id in reachable]
        self.edges: List[Edge] = [
            edge for edge in edges
            if edge.source_node_id in reachable and edge.target_node_id in reachable
        ]

        self.incoming: Dict[str, List[Edge]] = {node.id: [] for node in self.nodes}
        self.outgoing: Dict[str, List[Edge]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            self.incoming[edge.target_node_id].append(edge)
            self.outgoing[edge.source_node_id].append(edge)

    def terminal_ids(self) -> List[str]:
        return [node.id for node in self.nodes if not self.outgoing[node.id]]


def edge_state(edge: Edge, outcomes: Dict[str, NodeOutcome]) -> Optional[bool]:
    """
    Resolve an edge against the outcome of its source node.

    Returns:
        True if the edge carries flow, False if it is dead, None while the
        source has not finished
    """
    outcome = outcomes.get(edge.source_node_id)
    if outcome is None:
        return None
    if outcome.status is StepStatusEnum.SKIPPED:
        return False
    branch = edge.branch.value if edge.branch is not None else None
    if outcome.status is StepStatusEnum.ERROR:
        # a failed condition takes neither branch
        return outcome.continued and branch is None
    if branch is not None and outcome.branch is not None:
        return branch == outcome.branch
    return True


class ExecutionEngine:
    """Engine for running workflow executions with conditional branching and parallel fan-out."""

    def __init__(
        self,
        store: ExecutionStore,
        registry: ExecutorRegistry,
        evaluator: Optional[Evaluator] = None,
        validator: Optional[GraphValidator] = None,
        max_concurrent_executions: int = 10,
        max_parallel_nodes: int = 4,
        event_bus: Optional[ExecutionEventBus] = None
    ):
        """Initialize the execution engine.

        Args:
            store: Repository for executions, step logs and workflow definitions
            registry: Executors keyed by node type
            evaluator: Template evaluator used to resolve node configs
            validator: Graph validator re-run before every execution start
            max_concurrent_executions: Maximum number of executions running at once
            max_parallel_nodes: Maximum sibling nodes in flight within one execution
            event_bus: Optional bus receiving progress events
        """
        self.store = store
        self.registry = registry
        self.evaluator = evaluator or Evaluator()
        self.validator = validator or GraphValidator()
        self.event_bus = event_bus or ExecutionEventBus()
        self._max_parallel_nodes = max_parallel_nodes

        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_executions, thread_name_prefix="execution"
        )
        self._active_executions: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.RLock()

        logger.info(
            f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}, "
            f"max_parallel_nodes={max_parallel_nodes}"
        )

    def start_execution(self, workflow_id: str, trigger_input: Any = None, version: Optional[int] = None,
                        replay_of: Optional[str] = None, execution_id: Optional[str] = None) -> Execution:
        """
        Validate the workflow and start a new execution in the background.

        Args:
            workflow_id: Workflow to run
            trigger_input: Payload exposed to nodes as ``{{trigger...}}``
            version: Definition version; the current version when omitted
            replay_of: Id of the execution this run replays
            execution_id: Pre-assigned id for the new execution

        Returns:
            The created execution, still Pending

        Raises:
            WorkflowNotFoundError: If the workflow or version does not exist
            GraphValidationError: If the definition has graph errors
        """
        try:
            workflow = self.store.get_workflow(workflow_id)
            if version is None or version == workflow.version:
                version = workflow.version
                definition = workflow.definition
            else:
                definition = self.store.get_workflow_definition(workflow_id, version)

            self.validator.ensure_valid(definition, workflow_id)

            execution = self.store.create_execution(Execution(
                id=execution_id or str(uuid.uuid4()),
                workflow_id=workflow_id,
                workflow_version=version,
                status=ExecutionStatusEnum.PENDING,
                trigger_input=to_jsonable(trigger_input),
                replay_of=replay_of,
                created_at=datetime.utcnow()
            ))

            with self._lock:
                self._cancel_events[execution.id] = threading.Event()
                self._active_executions[execution.id] = self._executor.submit(
                    self._run_execution_with_isolation, execution, definition
                )

            logger.info(f"Started execution {execution.id} for workflow {workflow_id} (version {version})")
            return execution

        except Exception as e:
            if isinstance(e, WorkflowEngineError):
                raise
            raise ExecutionEngineError(f"Failed to start execution: {str(e)}", workflow_id=workflow_id)

    def replay_execution(self, execution_id: str) -> Execution:
        """Start a new execution with the original's definition version and trigger input."""
        original = self.store.get_execution(execution_id)
        if not original.status.is_terminal:
            raise ExecutionEngineError(
                f"Execution {execution_id} is still {original.status.value} and cannot be replayed",
                execution_id=execution_id
            )
        logger.info(f"Replaying execution {execution_id}")
        return self.start_execution(
            original.workflow_id,
            original.trigger_input,
            version=original.workflow_version,
            replay_of=original.id
        )

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Request cancellation of an execution.

        Cancellation is cooperative: nodes already running finish, nothing new
        is dispatched.

        Returns:
            True if the request was accepted, False if the execution had already finished
        """
        execution = self.store.get_execution(execution_id)
        if execution.status.is_terminal:
            return False

        with self._lock:
            cancel_event = self._cancel_events.get(execution_id)
            future = self._active_executions.get(execution_id)

        if cancel_event is None:
            # not running in this process
            cancelled = self.store.finalize_execution(execution_id, ExecutionStatusEnum.CANCELLED)
            if cancelled:
                self._publish(execution_id, events.EXECUTION_FINISHED, {"status": ExecutionStatusEnum.CANCELLED.value})
            return cancelled

        cancel_event.set()
        if future is not None and future.cancel():
            # still queued; the run body will never execute
            self.store.finalize_execution(execution_id, ExecutionStatusEnum.CANCELLED)
            self._publish(execution_id, events.EXECUTION_FINISHED, {"status": ExecutionStatusEnum.CANCELLED.value})
            self._cleanup_execution(execution_id)

        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Block until a locally running execution finishes (or the timeout passes)."""
        with self._lock:
            future = self._active_executions.get(execution_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except CancelledError:
                pass
            except FuturesTimeoutError:
                logger.warning(f"Timed out after {timeout}s waiting for execution {execution_id}")
        return self.store.get_execution(execution_id)

    def get_execution(self, execution_id: str) -> Execution:
        return self.store.get_execution(execution_id)

    def list_step_logs(self, execution_id: str) -> List[StepLog]:
        self.store.get_execution(execution_id)
        return self.store.list_step_logs(execution_id)

    def is_execution_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active_executions

    def get_active_executions(self) -> List[str]:
        with self._lock:
            return list(self._active_executions)

    def stream_test_run(self, workflow_id: str, trigger_input: Any = None,
                        poll_interval: float = 0.5) -> Iterator[ExecutionEvent]:
        """
        Start an execution and yield its progress events until it finishes.

        Closing the generator before the final event cancels the execution.
        """
        execution_id = str(uuid.uuid4())
        subscription = self.event_bus.subscribe(execution_id)
        started = False
        finished = False
        try:
            self.start_execution(workflow_id, trigger_input, execution_id=execution_id)
            started = True
            while True:
                try:
                    event = subscription.queue.get(timeout=poll_interval)
                except Empty:
                    if not self.is_execution_active(execution_id):
                        finished = True
                        return
                    continue
                yield event
                if event.event_type in events.TERMINAL_EVENTS:
                    finished = True
                    return
        finally:
            self.event_bus.unsubscribe(subscription)
            if started and not finished:
                logger.info(f"Stream consumer for execution {execution_id} went away; cancelling")
                self.cancel_execution(execution_id)

    def recover_stale_executions(self, grace_period: float) -> List[str]:
        """
        Fail executions left Pending/Running by a process that is gone.

        Args:
            grace_period: Seconds an execution may go without finishing before it counts as abandoned

        Returns:
            Ids of the executions that were marked Failed
        """
        cutoff = datetime.utcnow() - timedelta(seconds=grace_period)
        recovered = []
        for execution in self.store.list_stale_executions(cutoff):
            if self.is_execution_active(execution.id):
                continue
            since = (execution.started_at or execution.created_at).isoformat()
            error = f"EngineFault: execution abandoned (status {execution.status.value} since {since})"
            if self.store.finalize_execution(execution.id, ExecutionStatusEnum.FAILED, error=error):
                recovered.append(execution.id)
                logger.warning(f"Recovered stale execution {execution.id}: {error}")
        return recovered

    def shutdown(self, wait: bool = True) -> None:
        """Stop dispatching everywhere and release the worker pool."""
        with self._lock:
            cancel_events = list(self._cancel_events.values())
        for cancel_event in cancel_events:
            cancel_event.set()
        self._executor.shutdown(wait=wait)
        logger.info("ExecutionEngine shutdown completed")

    def _run_execution_with_isolation(self, execution: Execution, definition: WorkflowDefinition) -> None:
        """
        Run one execution, containing any internal failure to that execution.

        Storage or other internal errors surface as an EngineFault on the
        execution; if even that cannot be written the recovery sweep picks it up.
        """
        set_logging_context(execution_id=execution.id, workflow_id=execution.workflow_id)
        try:
            self._run_execution(execution, definition)
        except Exception as e:
            fault = e if isinstance(e, EngineFault) else EngineFault(str(e), execution_id=execution.id)
            error_message = f"{fault.error_code}: {fault.message}"
            logger.error(f"Execution {execution.id} failed internally: {error_message}", exc_info=True)
            try:
                self.store.finalize_execution(execution.id, ExecutionStatusEnum.FAILED, error=error_message)
            except Exception as finalize_error:
                logger.error(f"Failed to finalize execution {execution.id}: {str(finalize_error)}")
            self._publish(execution.id, events.EXECUTION_FINISHED, {
                "status": ExecutionStatusEnum.FAILED.value, "error": error_message
            })
        finally:
            self._cleanup_execution(execution.id)
            clear_logging_context()

    def _run_execution(self, execution: Execution, definition: WorkflowDefinition) -> None:
        cancel_event = self._cancel_events[execution.id]
        if cancel_event.is_set():
            self._finalize(execution.id, ExecutionStatusEnum.CANCELLED)
            return

        self.store.update_execution_status(execution.id, ExecutionStatusEnum.RUNNING, started_at=datetime.utcnow())
        self._publish(execution.id, events.EXECUTION_STARTED, {
            "workflow_id": execution.workflow_id, "workflow_version": execution.workflow_version
        })

        plan = ExecutionPlan(definition)
        context: Dict[str, Any] = {"trigger": execution.trigger_input}
        outcomes: Dict[str, NodeOutcome] = {}
        pending = list(plan.nodes)
        in_flight: Dict[Future, _InFlight] = {}
        sequence = 0
        cancelled = False
        failure: Optional[str] = None

        with ThreadPoolExecutor(max_workers=self._max_parallel_nodes,
                                thread_name_prefix=f"nodes-{execution.id[:8]}") as pool:
            while True:
                if failure is None and not cancelled and cancel_event.is_set():
                    cancelled = True

                progressed = True
                while progressed and failure is None and not cancelled:
                    progressed = False
                    for node in list(pending):
                        ready = self._readiness(node, plan, outcomes)
                        if ready is None:
                            continue
                        if ready and cancel_event.is_set():
                            cancelled = True
                            break
                        pending.remove(node)
                        progressed = True
                        sequence += 1
                        if not ready:
                            outcomes[node.id] = self._skip(execution.id, node, sequence)
                            continue

                        outcome, submitted = self._dispatch(execution.id, node, sequence, context, pool, cancel_event)
                        if submitted is not None:
                            in_flight[submitted[0]] = submitted[1]
                            continue
                        outcomes[node.id] = outcome
                        if outcome.status is StepStatusEnum.ERROR and not outcome.continued:
                            failure = self._failure_message(node, outcome.output)
                            break

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    entry = in_flight.pop(future)
                    result, attempts, duration_ms = future.result()
                    outcome = self._complete(execution.id, entry, result, attempts, duration_ms, context)
                    outcomes[entry.node.id] = outcome
                    if outcome.status is StepStatusEnum.ERROR and not outcome.continued and failure is None:
                        failure = self._failure_message(entry.node, result.error)

        # nothing more can become eligible; everything left is skipped
        for node in pending:
            sequence += 1
            outcomes[node.id] = self._skip(execution.id, node, sequence)

        if cancelled:
            self._finalize(execution.id, ExecutionStatusEnum.CANCELLED)
        elif failure is not None:
            self._finalize(execution.id, ExecutionStatusEnum.FAILED, error=failure)
        elif cancel_event.is_set():
            # cancel arrived after the last node; the request was already accepted
            self._finalize(execution.id, ExecutionStatusEnum.CANCELLED)
        else:
            self._finalize(execution.id, ExecutionStatusEnum.SUCCESS, output=self._collect_output(plan, outcomes))

    @staticmethod
    def _readiness(node: Node, plan: ExecutionPlan, outcomes: Dict[str, NodeOutcome]) -> Optional[bool]:
        """True when the node should run, False when it must be skipped, None while undecided."""
        incoming = plan.incoming[node.id]
        if not incoming:
            return True
        states = [edge_state(edge, outcomes) for edge in incoming]
        if any(state is None for state in states):
            return None
        return any(states)

    def _dispatch(self, execution_id: str, node: Node, sequence: int, context: Dict[str, Any],
                  pool: ThreadPoolExecutor, cancel_event: threading.Event
                  ) -> Tuple[Optional[NodeOutcome], Optional[Tuple[Future, _InFlight]]]:
        """
        Resolve a node's config and hand it to the node pool.

        Nodes whose resolved config fails the executor's preflight are logged
        as errors without ever running.
        """
        resolved = self.evaluator.resolve(node.config, context)
        preflight = self.registry.preflight(node.type, resolved)
        if preflight is not None and not preflight.success:
            step = self.store.append_step_log(self._new_step(
                execution_id, node, sequence, StepStatusEnum.ERROR, resolved,
                error=preflight.error, error_category=preflight.error_category, duration_ms=0
            ))
            logger.warning(f"Node {node.id} rejected before dispatch: {preflight.error}")
            self._publish(execution_id, events.NODE_FAILED, self._step_event(step))
            return NodeOutcome(
                status=StepStatusEnum.ERROR, output=preflight.error, continued=node.continue_on_error
            ), None

        step = self.store.append_step_log(self._new_step(
            execution_id, node, sequence, StepStatusEnum.RUNNING, resolved
        ))
        self._publish(execution_id, events.NODE_STARTED, self._step_event(step))
        # workers see a snapshot; the context is only written from this thread
        future = pool.submit(self._run_node, execution_id, node, resolved, dict(context), cancel_event)
        return None, (future, _InFlight(node=node, step=step))

    def _run_node(self, execution_id: str, node: Node, config: Dict[str, Any], context: Dict[str, Any],
                  cancel_event: threading.Event) -> Tuple[ActionResult, int, int]:
        """Worker body: invoke the executor under the node's retry policy."""
        set_logging_context(execution_id=execution_id, node_id=node.id)
        started = time.monotonic()
        try:
            result, attempts = run_with_policy(
                lambda: self.registry.run(node.type, config, context),
                node.retry,
                should_stop=cancel_event.is_set,
                sleep=cancel_event.wait,
                label=f"node '{node.display_name}'"
            )
            return result, attempts, int((time.monotonic() - started) * 1000)
        finally:
            clear_logging_context()

    def _complete(self, execution_id: str, entry: _InFlight, result: ActionResult, attempts: int,
                  duration_ms: int, context: Dict[str, Any]) -> NodeOutcome:
        node = entry.node
        if result.success:
            self.store.update_step_log(
                entry.step.id, StepStatusEnum.SUCCESS, output=result.data,
                attempts=attempts, duration_ms=duration_ms
            )
            branch = None
            if node.kind is NodeKind.CONDITION:
                # control decision only; never merged into the context
                branch = (result.data or {}).get("branch")
            else:
                context[node.id] = result.data
            self._publish(execution_id, events.NODE_COMPLETED, {
                **self._step_event(entry.step), "status": StepStatusEnum.SUCCESS.value,
                "output": to_jsonable(result.data), "duration_ms": duration_ms, "branch": branch
            })
            log_with_context(
                logger, logging.INFO, f"Node {node.id} succeeded",
                node_type=node.type.value, attempts=attempts, duration_ms=duration_ms
            )
            return NodeOutcome(status=StepStatusEnum.SUCCESS, output=result.data, branch=branch)

        self.store.update_step_log(
            entry.step.id, StepStatusEnum.ERROR, output=result.data, error=result.error,
            error_category=result.error_category, attempts=attempts, duration_ms=duration_ms
        )
        self._publish(execution_id, events.NODE_FAILED, {
            **self._step_event(entry.step), "status": StepStatusEnum.ERROR.value,
            "error": result.error, "error_category": result.error_category, "duration_ms": duration_ms
        })
        log_with_context(
            logger, logging.WARNING if node.continue_on_error else logging.ERROR,
            f"Node {node.id} failed: {result.error}",
            node_type=node.type.value, error_category=result.error_category,
            attempts=attempts, continued=node.continue_on_error
        )
        return NodeOutcome(status=StepStatusEnum.ERROR, output=result.error, continued=node.continue_on_error)

    def _skip(self, execution_id: str, node: Node, sequence: int) -> NodeOutcome:
        step = self.store.append_step_log(self._new_step(execution_id, node, sequence, StepStatusEnum.SKIPPED))
        self._publish(execution_id, events.NODE_SKIPPED, self._step_event(step))
        return NodeOutcome(status=StepStatusEnum.SKIPPED)

    @staticmethod
    def _failure_message(node: Node, error: Any) -> str:
        return f"Node '{node.display_name}' failed: {error}"

    @staticmethod
    def _collect_output(plan: ExecutionPlan, outcomes: Dict[str, NodeOutcome]) -> Any:
        """Output of the dispatched terminal node, or a mapping when several finished."""
        outputs = {
            node_id: outcomes[node_id].output
            for node_id in plan.terminal_ids()
            if node_id in outcomes and outcomes[node_id].dispatched
        }
        if len(outputs) == 1:
            return next(iter(outputs.values()))
        return outputs or None

    def _finalize(self, execution_id: str, status: ExecutionStatusEnum, output: Any = None,
                  error: Optional[str] = None) -> None:
        if not self.store.finalize_execution(execution_id, status, output=output, error=error):
            logger.warning(f"Execution {execution_id} was already finalized; keeping its status")
            return
        self._publish(execution_id, events.EXECUTION_FINISHED, {
            "status": status.value, "error": error, "output": to_jsonable(output)
        })
        logger.info(f"Execution {execution_id} finished with status {status.value}")

    @staticmethod
    def _new_step(execution_id: str, node: Node, sequence: int, status: StepStatusEnum, config: Any = None,
                  error: Optional[str] = None, error_category: Optional[str] = None,
                  duration_ms: Optional[int] = None) -> StepLog:
        return StepLog(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            node_id=node.id,
            node_label=node.display_name,
            node_type=node.type,
            sequence=sequence,
            status=status,
            input=config,
            error=error,
            error_category=error_category,
            duration_ms=duration_ms,
            created_at=datetime.utcnow()
        )

    @staticmethod
    def _step_event(step: StepLog) -> Dict[str, Any]:
        return {
            "node_id": step.node_id,
            "node_label": step.node_label,
            "node_type": step.node_type.value,
            "sequence": step.sequence,
            "status": step.status.value,
            "error": step.error,
        }

    def _publish(self, execution_id: str, event_type: str, data: Dict[str, Any]) -> None:
        self.event_bus.publish(execution_id, event_type, data)

    def _cleanup_execution(self, execution_id: str) -> None:
        with self._lock:
            self._active_executions.pop(execution_id, None)
            self._cancel_events.pop(execution_id, None)
        logger.debug(f"Cleaned up execution resources for {execution_id}")
