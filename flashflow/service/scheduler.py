from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from flashflow.logging import bind_run_id, get_logger, log_run_trace, sanitize_error_message
from flashflow.service.context import RunContext
from flashflow.service.errors import RunInProgressError, ServiceError, WorkflowValidationError
from flashflow.service.executors import BaseNodeExecutor, NodeExecutionContext, StreamHandle
from flashflow.service.validator import validate
from flashflow.storage.models import Edge, Graph, NodeKind

DEFAULT_NODE_TIMEOUT_SECONDS = 120.0
TERMINAL_EVENTS = ("run-completed", "run-failed", "run-cancelled")


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EdgeState(str, Enum):
    SATISFIED = "satisfied"
    DEAD = "dead"
    FAILED = "failed"
    PENDING = "pending"


# Wakes the event loop of a run after cancel()
_CANCEL_SIGNAL: Dict[str, Any] = {"event": "_cancel", "data": {}}


@dataclass
class RunState:
    """Everything mutable about one run; never shared between runs."""

    run_id: str
    flow_key: str
    graph: Graph
    context: RunContext
    initial_input: Dict[str, Any]
    flow_id: Optional[str] = None
    session_id: Optional[str] = None
    node_status: Dict[str, NodeStatus] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    node_locks: Dict[str, asyncio.Lock] = field(default_factory=dict)
    streams: Dict[str, StreamHandle] = field(default_factory=dict)
    tasks: Dict[str, asyncio.Task] = field(default_factory=dict)
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    active: int = 0

    def emit(self, event: str, **data: Any) -> None:
        self.events.put_nowait({"event": event, "data": {"run_id": self.run_id, **data}})


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    context: Dict[str, Dict[str, Any]]
    node_status: Dict[str, str]
    outputs: Dict[str, Dict[str, Any]]
    errors: Dict[str, str]
    trace: List[Dict[str, Any]]
    final_output: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "context": self.context,
            "node_status": self.node_status,
            "outputs": self.outputs,
            "errors": self.errors,
            "trace": self.trace,
            "final_output": self.final_output,
        }


def normalize_initial_input(initial_input: Any) -> Dict[str, Any]:
    """Accept a plain string or a ``{user_input|text, files, formData}`` mapping."""
    if initial_input is None:
        return {"user_input": ""}
    if isinstance(initial_input, str):
        return {"user_input": initial_input}
    if isinstance(initial_input, Mapping):
        normalized = dict(initial_input)
        text = normalized.pop("text", None)
        if not normalized.get("user_input") and text is not None:
            normalized["user_input"] = str(text)
        normalized.setdefault("user_input", "")
        return normalized
    return {"user_input": str(initial_input)}


class WorkflowScheduler:
    """Runs a validated workflow graph as a DAG of node executors.

    Nodes become ready when none of their incoming edges is still pending and
    at least one is satisfied. Outputs are published into the run context
    before dependents are evaluated. Branch edges whose handle was not chosen
    are dead; a node with only dead edges is blocked, and a node with any failed or
    skipped parent is skipped.
    """

    def __init__(
        self,
        executors: Mapping[NodeKind, BaseNodeExecutor],
        *,
        node_timeout_seconds: float = DEFAULT_NODE_TIMEOUT_SECONDS,
    ) -> None:
        self.executors = dict(executors)
        self.node_timeout = node_timeout_seconds
        self.logger = get_logger(__name__)
        self._runs: Dict[str, RunState] = {}
        self._active_flows: Dict[str, str] = {}
        self._registry_lock = asyncio.Lock()

    # preparation

    def prepare_graph(self, workflow: Union[Mapping[str, Any], Graph], *, validate_graph: bool = True) -> Graph:
        if isinstance(workflow, Graph):
            return workflow
        if validate_graph:
            result = validate(workflow.get("nodes"), workflow.get("edges", []))
            if not result.ok:
                self.logger.info(
                    "run_rejected_invalid_graph",
                    codes=[issue.code for issue in result.hard_errors],
                )
                raise WorkflowValidationError(
                    "workflow has validation errors",
                    issues=result.hard_errors,
                    warnings=result.warnings,
                )
        return Graph.from_dict(dict(workflow))

    async def _claim_flow(self, flow_key: str, run_id: str) -> None:
        async with self._registry_lock:
            if flow_key in self._active_flows:
                raise RunInProgressError(flow_key)
            self._active_flows[flow_key] = run_id

    async def _release_flow(self, flow_key: str, run_id: str) -> None:
        async with self._registry_lock:
            if self._active_flows.get(flow_key) == run_id:
                del self._active_flows[flow_key]

    def is_running(self, flow_key: str) -> bool:
        return flow_key in self._active_flows

    # readiness

    def _edge_state(self, state: RunState, edge: Edge) -> EdgeState:
        status = state.node_status[edge.source]
        if status == NodeStatus.COMPLETED:
            if state.graph.node(edge.source).kind != NodeKind.BRANCH:
                return EdgeState.SATISFIED
            output = state.context.output_of(edge.source) or {}
            chosen = "true" if output.get("conditionResult") else "false"
            # legacy graphs omit the handle on the positive edge
            handle = edge.source_handle or "true"
            return EdgeState.SATISFIED if handle == chosen else EdgeState.DEAD
        if status == NodeStatus.BLOCKED:
            return EdgeState.DEAD
        if status in (NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.CANCELLED):
            return EdgeState.FAILED
        return EdgeState.PENDING

    def _advance(self, state: RunState) -> None:
        """Dispatch ready nodes and settle nodes that can no longer run."""
        if state.cancel_event.is_set():
            return
        changed = True
        while changed:
            changed = False
            for node in state.graph.nodes:
                if state.node_status[node.id] != NodeStatus.PENDING:
                    continue
                incoming = state.graph.incoming(node.id)
                if not incoming:
                    self._dispatch(state, node.id)
                    continue
                edge_states = {self._edge_state(state, edge) for edge in incoming}
                if EdgeState.PENDING in edge_states:
                    continue
                if EdgeState.FAILED in edge_states:
                    # a failed or skipped parent stops the node even when other parents completed
                    state.node_status[node.id] = NodeStatus.SKIPPED
                    state.trace.append({"node": node.id, "status": NodeStatus.SKIPPED.value})
                    state.emit("node-skipped", node_id=node.id, label=node.label)
                    changed = True
                elif EdgeState.SATISFIED in edge_states:
                    self._dispatch(state, node.id)
                else:
                    state.node_status[node.id] = NodeStatus.BLOCKED
                    state.trace.append({"node": node.id, "status": NodeStatus.BLOCKED.value})
                    state.emit("node-blocked", node_id=node.id, label=node.label)
                    changed = True

    def _dispatch(self, state: RunState, node_id: str) -> None:
        lock = state.node_locks[node_id]
        # try-lock: a node that is already claimed is never dispatched twice
        if lock.locked() or state.node_status[node_id] != NodeStatus.PENDING:
            return
        state.node_status[node_id] = NodeStatus.RUNNING
        state.active += 1
        state.tasks[node_id] = asyncio.create_task(self._run_node(state, node_id))

    # execution

    async def _run_node(self, state: RunState, node_id: str) -> None:
        try:
            async with state.node_locks[node_id]:
                await self._execute_node(state, node_id)
        except asyncio.CancelledError:
            stream = state.streams.get(node_id)
            if stream is not None:
                stream.abort()
            state.node_status[node_id] = NodeStatus.CANCELLED
            state.trace.append({"node": node_id, "status": NodeStatus.CANCELLED.value})
            raise
        finally:
            state.streams.pop(node_id, None)
            state.tasks.pop(node_id, None)
            state.active -= 1
        self._advance(state)
        if state.active == 0:
            # wake the event loop when nothing else will
            state.events.put_nowait(None)

    def _fail(self, state: RunState, node_id: str, message: str, started: float) -> None:
        node = state.graph.node(node_id)
        state.node_status[node_id] = NodeStatus.FAILED
        state.errors[node_id] = message
        state.trace.append(
            {
                "node": node_id,
                "status": NodeStatus.FAILED.value,
                "duration_ms": int((time.perf_counter() - started) * 1000),
                "error": message,
            }
        )
        state.emit("node-failed", node_id=node_id, label=node.label, error=message)

    async def _execute_node(self, state: RunState, node_id: str) -> None:
        node = state.graph.node(node_id)
        executor = self.executors[node.kind]
        state.emit("node-started", node_id=node_id, label=node.label, type=node.kind.value)
        stream: Optional[StreamHandle] = None
        if node.kind == NodeKind.LLM:
            stream = StreamHandle(
                node_id,
                on_chunk=lambda nid, text: state.emit("stream-chunk", node_id=nid, chunk=text),
            )
            state.streams[node_id] = stream
        ctx = NodeExecutionContext(
            run_id=state.run_id,
            node=node,
            graph=state.graph,
            context=state.context,
            initial_input=state.initial_input,
            flow_id=state.flow_id,
            session_id=state.session_id,
            stream=stream,
            cancel_event=state.cancel_event,
        )
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(executor.run(ctx), timeout=self.node_timeout)
        except asyncio.TimeoutError:
            if stream is not None:
                stream.clear()
            self.logger.warning("node_timeout", node_id=node_id, timeout=self.node_timeout)
            self._fail(state, node_id, f"node timed out after {self.node_timeout:g}s", started)
            return
        except ServiceError as exc:
            self.logger.warning("node_failed", node_id=node_id, kind=node.kind.value, error=exc.message)
            self._fail(state, node_id, exc.message, started)
            return
        except Exception as exc:
            self.logger.error("node_crashed", node_id=node_id, kind=node.kind.value, error=str(exc))
            self._fail(state, node_id, sanitize_error_message(str(exc)), started)
            return

        # publish before release: dependents only see a completed status after this
        output = state.context.publish(node_id, result.output)
        entry: Dict[str, Any] = {"node": node_id, "duration_ms": result.execution_time_ms}
        if "error" in output:
            message = str(output["error"])
            state.node_status[node_id] = NodeStatus.FAILED
            state.errors[node_id] = message
            state.trace.append({**entry, "status": NodeStatus.FAILED.value, "error": message})
            state.emit("node-failed", node_id=node_id, label=node.label, error=message, output=output)
            self.logger.warning("node_failed", node_id=node_id, kind=node.kind.value, error=message)
            return
        state.node_status[node_id] = NodeStatus.COMPLETED
        state.trace.append({**entry, "status": NodeStatus.COMPLETED.value})
        state.emit(
            "node-completed",
            node_id=node_id,
            label=node.label,
            output=output,
            executionTime=result.execution_time_ms,
        )
        self.logger.info(
            "node_completed", node_id=node_id, kind=node.kind.value, duration_ms=result.execution_time_ms
        )

    async def _abort_in_flight(self, state: RunState) -> None:
        for stream in list(state.streams.values()):
            stream.abort()
        tasks = list(state.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _build_result(self, state: RunState, status: RunStatus) -> RunResult:
        outputs = {
            node.id: output
            for node in state.graph.nodes
            if (output := state.context.output_of(node.id)) is not None
        }
        final_output = next(
            (
                outputs[node.id]
                for node in state.graph.nodes_of_kind(NodeKind.OUTPUT)
                if state.node_status[node.id] == NodeStatus.COMPLETED
            ),
            None,
        )
        return RunResult(
            run_id=state.run_id,
            status=status,
            context=state.context.snapshot(),
            node_status={k: v.value for k, v in state.node_status.items()},
            outputs=outputs,
            errors=dict(state.errors),
            trace=list(state.trace),
            final_output=final_output,
        )

    # public API

    async def run_streaming(
        self,
        workflow: Union[Mapping[str, Any], Graph],
        initial_input: Any = None,
        *,
        flow_id: Optional[str] = None,
        session_id: Optional[str] = None,
        validate: bool = True,
        run_id: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Execute a workflow, yielding ``{"event", "data"}`` dicts.

        Events: run-started, node-started, stream-chunk, node-completed,
        node-failed, node-blocked, node-skipped, then one of run-completed,
        run-failed or run-cancelled. Raises ``WorkflowValidationError``
        before the first event when the graph has hard errors, and
        ``RunInProgressError`` when the same flow is already running.
        """
        graph = self.prepare_graph(workflow, validate_graph=validate)
        run_id = run_id or str(uuid.uuid4())
        flow_key = flow_id or f"run:{run_id}"
        await self._claim_flow(flow_key, run_id)
        state = RunState(
            run_id=run_id,
            flow_key=flow_key,
            graph=graph,
            context=RunContext(graph.nodes),
            initial_input=normalize_initial_input(initial_input),
            flow_id=flow_id,
            session_id=session_id,
        )
        for node in graph.nodes:
            state.node_status[node.id] = NodeStatus.PENDING
            state.node_locks[node.id] = asyncio.Lock()
        self._runs[run_id] = state
        bind_run_id(run_id)
        self.logger.info("run_started", flow_id=flow_id, nodes=len(graph.nodes))
        try:
            yield {
                "event": "run-started",
                "data": {"run_id": run_id, "flow_id": flow_id, "nodes": list(graph.node_ids())},
            }
            self._advance(state)
            while state.active or not state.events.empty():
                event = await state.events.get()
                if event is _CANCEL_SIGNAL:
                    break
                if event is not None:
                    yield event

            if state.cancel_event.is_set():
                await self._abort_in_flight(state)
                for node_id, status in state.node_status.items():
                    # tasks cancelled before they started never report back
                    if status == NodeStatus.RUNNING:
                        state.node_status[node_id] = NodeStatus.CANCELLED
                result = self._build_result(state, RunStatus.CANCELLED)
                self.logger.info("run_cancelled")
                yield {"event": "run-cancelled", "data": {"run_id": run_id, "result": result.to_dict()}}
                return

            for node_id, status in state.node_status.items():
                if status == NodeStatus.PENDING:
                    # only reachable with validation disabled, e.g. a cycle
                    state.node_status[node_id] = NodeStatus.SKIPPED
                    yield {
                        "event": "node-skipped",
                        "data": {"run_id": run_id, "node_id": node_id, "label": graph.node(node_id).label},
                    }
            failed = any(s == NodeStatus.FAILED for s in state.node_status.values())
            result = self._build_result(state, RunStatus.FAILED if failed else RunStatus.COMPLETED)
            self.logger.info("run_finished", status=result.status.value, failed_nodes=sorted(state.errors))
            event_name = "run-failed" if failed else "run-completed"
            yield {"event": event_name, "data": {"run_id": run_id, "result": result.to_dict()}}
        finally:
            await self._abort_in_flight(state)
            self._runs.pop(run_id, None)
            await self._release_flow(flow_key, run_id)
            log_run_trace(state.trace, self.logger)
            bind_run_id(None)

    async def run(
        self,
        workflow: Union[Mapping[str, Any], Graph],
        initial_input: Any = None,
        *,
        flow_id: Optional[str] = None,
        session_id: Optional[str] = None,
        validate: bool = True,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Run to completion and return the terminal ``RunResult``."""
        final: Optional[Dict[str, Any]] = None
        async for event in self.run_streaming(
            workflow,
            initial_input,
            flow_id=flow_id,
            session_id=session_id,
            validate=validate,
            run_id=run_id,
        ):
            if event["event"] in TERMINAL_EVENTS:
                final = event["data"]["result"]
        if final is None:
            raise RuntimeError("run ended without a terminal event")
        return RunResult(
            run_id=final["run_id"],
            status=RunStatus(final["status"]),
            context=final["context"],
            node_status=final["node_status"],
            outputs=final["outputs"],
            errors=final["errors"],
            trace=final["trace"],
            final_output=final["final_output"],
        )

    async def cancel(self, run_id: str) -> bool:
        """Cancel a run: abort streams, clear buffers and stop in-flight nodes."""
        state = self._runs.get(run_id)
        if state is None or state.cancel_event.is_set():
            return False
        state.cancel_event.set()
        for stream in list(state.streams.values()):
            stream.abort()
        for task in list(state.tasks.values()):
            task.cancel()
        state.events.put_nowait(_CANCEL_SIGNAL)
        self.logger.info("run_cancel_requested", run_id=run_id)
        return True

    def active_runs(self) -> List[str]:
        return list(self._runs)
