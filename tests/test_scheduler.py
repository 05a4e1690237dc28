import asyncio

import pytest

from flashflow.service.errors import RunInProgressError, StreamReadError, WorkflowValidationError
from flashflow.service.executors import BaseNodeExecutor, build_executor_registry
from flashflow.service.image import ImageService
from flashflow.service.llm import ChatDelta, EchoChatBackend, LLMService
from flashflow.service.memory import ConversationMemory
from flashflow.service.rag import RAGService
from flashflow.service.scheduler import RunStatus, WorkflowScheduler, normalize_initial_input
from flashflow.service.tools import ToolService
from flashflow.storage.memory import MemoryStore
from flashflow.storage.models import NodeKind


class ScriptedBackend:
    """Chat backend that records prompts and replays scripted chunks."""

    mode = "scripted"

    def __init__(self, chunks=None, *, fail_after=None, delay=0.0):
        self.chunks = chunks
        self.fail_after = fail_after
        self.delay = delay
        self.calls = []

    async def stream(self, messages, *, model, temperature, response_format=None):
        self.calls.append(messages)
        chunks = self.chunks if self.chunks is not None else [messages[-1]["content"]]
        for i, chunk in enumerate(chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise StreamReadError("connection reset")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield ChatDelta(content=chunk)


class CountingExecutor(BaseNodeExecutor):
    kind = NodeKind.LLM

    def __init__(self):
        self.calls = []

    async def execute(self, ctx):
        self.calls.append(ctx.node.id)
        await asyncio.sleep(0)
        return {"response": ctx.node.id}


@pytest.fixture
def tool_service():
    service = ToolService(tool_workers=2)
    yield service
    service.shutdown()


def _scheduler(tools, backend=None, *, store=None, node_timeout_seconds=10.0):
    store = store or MemoryStore()
    llm = LLMService(default_model="test-model", backend=backend or EchoChatBackend())
    registry = build_executor_registry(
        llm=llm,
        memory=ConversationMemory(store),
        rag=RAGService(store),
        tools=tools,
        image=ImageService(api_url=None),
    )
    return WorkflowScheduler(registry, node_timeout_seconds=node_timeout_seconds)


def _input(node_id="in", label="Input"):
    return {"id": node_id, "type": "input", "data": {"label": label}}


def _llm(node_id, label, user_input, **data):
    return {
        "id": node_id,
        "type": "llm",
        "data": {"label": label, "inputMappings": {"user_input": user_input}, **data},
    }


def _output(mode, values, node_id="out", label="Output"):
    return {
        "id": node_id,
        "type": "output",
        "data": {
            "label": label,
            "inputMappings": {"mode": mode, "sources": [{"type": "variable", "value": v} for v in values]},
        },
    }


def _calc(expression="{{Input.user_input}}"):
    return {
        "id": "calc",
        "type": "tool",
        "data": {"label": "Calc", "toolType": "calculator", "inputs": {"expression": expression}},
    }


def _edge(source, target, handle=None):
    edge = {"id": f"{source}-{target}-{handle or ''}", "source": source, "target": target}
    if handle:
        edge["sourceHandle"] = handle
    return edge


def _refund_graph():
    return {
        "nodes": [
            _input(),
            _llm("llm", "Classifier", "{{Input.user_input}}"),
            {
                "id": "br",
                "type": "branch",
                "data": {"label": "Is Refund", "condition": "{{Classifier.response}}.includes('REFUND')"},
            },
            _llm("a", "Refund", "{{Classifier.response}}"),
            _llm("b", "General", "{{Classifier.response}}"),
            _output("select", ["{{Refund.response}}", "{{General.response}}"]),
        ],
        "edges": [
            _edge("in", "llm"),
            _edge("llm", "br"),
            _edge("br", "a", "true"),
            _edge("br", "b", "false"),
            _edge("a", "out"),
            _edge("b", "out"),
        ],
    }


def test_normalize_initial_input():
    assert normalize_initial_input(None) == {"user_input": ""}
    assert normalize_initial_input("hi") == {"user_input": "hi"}
    assert normalize_initial_input({"text": "hi", "files": []}) == {"user_input": "hi", "files": []}
    assert normalize_initial_input({"user_input": "a", "text": "b"}) == {"user_input": "a"}


@pytest.mark.asyncio
async def test_branch_routes_to_true_path_and_blocks_the_other(tool_service):
    scheduler = _scheduler(tool_service)
    result = await scheduler.run(_refund_graph(), "I want a REFUND please")

    assert result.status == RunStatus.COMPLETED
    assert result.node_status["a"] == "completed"
    assert result.node_status["b"] == "blocked"
    assert result.outputs["br"]["conditionResult"] is True
    assert result.final_output == {"text": "I want a REFUND please"}
    assert "b" not in result.outputs


@pytest.mark.asyncio
async def test_branch_false_path(tool_service):
    scheduler = _scheduler(tool_service)
    result = await scheduler.run(_refund_graph(), "where is my parcel")

    assert result.node_status["a"] == "blocked"
    assert result.node_status["b"] == "completed"
    assert result.final_output == {"text": "where is my parcel"}


@pytest.mark.asyncio
async def test_parallel_merge_joins_sources_in_order(tool_service):
    graph = {
        "nodes": [
            _input(),
            _llm("x", "First", "x"),
            _llm("y", "Second", "y"),
            _output("merge", ["{{First.response}}", "{{Second.response}}"]),
        ],
        "edges": [_edge("in", "x"), _edge("in", "y"), _edge("x", "out"), _edge("y", "out")],
    }
    result = await _scheduler(tool_service).run(graph, "ignored")
    assert result.status == RunStatus.COMPLETED
    assert result.final_output == {"text": "x\n\ny"}


@pytest.mark.asyncio
async def test_shared_dependent_runs_once(tool_service):
    scheduler = _scheduler(tool_service)
    counter = CountingExecutor()
    scheduler.executors[NodeKind.LLM] = counter
    graph = {
        "nodes": [
            _input(),
            _llm("a", "A", "{{Input.user_input}}"),
            _llm("b", "B", "{{Input.user_input}}"),
            _llm("c", "C", "{{A.response}} {{B.response}}"),
            _output("direct", ["{{C.response}}"]),
        ],
        "edges": [_edge("in", "a"), _edge("in", "b"), _edge("a", "c"), _edge("b", "c"), _edge("c", "out")],
    }
    result = await scheduler.run(graph, "go")
    assert sorted(counter.calls) == ["a", "b", "c"]
    assert result.final_output == {"text": "c"}


@pytest.mark.asyncio
async def test_failure_is_contained_to_dependents(tool_service):
    graph = {
        "nodes": [
            _input(),
            _calc(),
            _llm("t", "Explain", "{{Calc.result}}"),
            _llm("s", "Echo", "{{Input.user_input}}"),
            _output("direct", ["{{Explain.response}}"], node_id="out1", label="Explained"),
            _output("direct", ["{{Echo.response}}"], node_id="out2", label="Echoed"),
        ],
        "edges": [
            _edge("in", "calc"),
            _edge("calc", "t"),
            _edge("in", "s"),
            _edge("t", "out1"),
            _edge("s", "out2"),
        ],
    }
    result = await _scheduler(tool_service).run(graph, "not math")

    assert result.status == RunStatus.FAILED
    assert result.node_status["calc"] == "failed"
    assert result.node_status["t"] == "skipped"
    assert result.node_status["out1"] == "skipped"
    assert result.node_status["s"] == "completed"
    assert result.node_status["out2"] == "completed"
    assert "calc" in result.errors
    assert result.final_output == {"text": "not math"}


@pytest.mark.asyncio
async def test_one_failed_parent_skips_the_join(tool_service):
    backend = ScriptedBackend()
    graph = {
        "nodes": [
            _input(),
            _calc(),
            _llm("s", "Echo", "{{Input.user_input}}"),
            _llm("c", "Combine", "calc={{Calc.result}} echo={{Echo.response}}"),
            _output("direct", ["{{Combine.response}}"]),
        ],
        "edges": [
            _edge("in", "calc"),
            _edge("in", "s"),
            _edge("calc", "c"),
            _edge("s", "c"),
            _edge("c", "out"),
        ],
    }
    result = await _scheduler(tool_service, backend).run(graph, "not math")

    assert result.status == RunStatus.FAILED
    assert result.node_status["calc"] == "failed"
    assert result.node_status["s"] == "completed"
    assert result.node_status["c"] == "skipped"
    assert result.node_status["out"] == "skipped"
    assert "c" not in result.outputs
    assert [messages[-1]["content"] for messages in backend.calls] == ["not math"]
    assert result.final_output is None


@pytest.mark.asyncio
async def test_unsupported_branch_condition_fails_only_its_path(tool_service):
    graph = {
        "nodes": [
            _input(),
            {"id": "br", "type": "branch", "data": {"label": "Check", "condition": "{{Input.user_input}} == 'x'"}},
            _llm("a", "Yes", "{{Input.user_input}}"),
            _llm("b", "No", "{{Input.user_input}}"),
            _llm("s", "Echo", "{{Input.user_input}}"),
            _output("select", ["{{Yes.response}}", "{{No.response}}"], node_id="out1", label="Routed"),
            _output("direct", ["{{Echo.response}}"], node_id="out2", label="Echoed"),
        ],
        "edges": [
            _edge("in", "br"),
            _edge("br", "a", "true"),
            _edge("br", "b", "false"),
            _edge("in", "s"),
            _edge("a", "out1"),
            _edge("b", "out1"),
            _edge("s", "out2"),
        ],
    }
    result = await _scheduler(tool_service).run(graph, "x")

    assert result.status == RunStatus.FAILED
    assert result.node_status["br"] == "failed"
    assert result.errors["br"].startswith("unsupported expression format")
    assert result.node_status["a"] == "skipped"
    assert result.node_status["b"] == "skipped"
    assert result.node_status["out1"] == "skipped"
    assert result.node_status["s"] == "completed"
    assert result.node_status["out2"] == "completed"
    assert result.final_output == {"text": "x"}


@pytest.mark.asyncio
async def test_tool_success_feeds_downstream(tool_service):
    graph = {
        "nodes": [
            _input(),
            _calc(),
            _output("direct", ["{{Calc.result}}"]),
        ],
        "edges": [_edge("in", "calc"), _edge("calc", "out")],
    }
    result = await _scheduler(tool_service).run(graph, "6 * 7")
    assert result.final_output == {"text": "42"}


@pytest.mark.asyncio
async def test_stream_read_failure_marks_node_failed(tool_service):
    backend = ScriptedBackend(["partial ", "rest"], fail_after=1)
    graph = {
        "nodes": [_input(), _llm("llm", "Writer", "{{Input.user_input}}"), _output("direct", ["{{Writer.response}}"])],
        "edges": [_edge("in", "llm"), _edge("llm", "out")],
    }
    events = [event async for event in _scheduler(tool_service, backend).run_streaming(graph, "hi")]
    names = [e["event"] for e in events]

    assert names[0] == "run-started"
    assert names[-1] == "run-failed"
    chunks = [e["data"]["chunk"] for e in events if e["event"] == "stream-chunk"]
    assert chunks == ["partial "]
    failed = next(e for e in events if e["event"] == "node-failed")
    assert failed["data"]["node_id"] == "llm"
    assert failed["data"]["error"].startswith("Stream read failed")
    assert "response" not in failed["data"]["output"]
    assert events[-1]["data"]["result"]["node_status"]["out"] == "skipped"


@pytest.mark.asyncio
async def test_streaming_event_order(tool_service):
    graph = {
        "nodes": [_input(), _llm("llm", "Writer", "{{Input.user_input}}"), _output("direct", ["{{Writer.response}}"])],
        "edges": [_edge("in", "llm"), _edge("llm", "out")],
    }
    text = "a long enough message to span chunks"
    events = [e async for e in _scheduler(tool_service).run_streaming(graph, text)]
    names = [e["event"] for e in events]

    assert names.index("node-started") < names.index("stream-chunk") < names.index("node-completed")
    streamed = "".join(e["data"]["chunk"] for e in events if e["event"] == "stream-chunk")
    assert streamed == text
    completed = [e["data"]["node_id"] for e in events if e["event"] == "node-completed"]
    assert completed == ["in", "llm", "out"]
    assert names[-1] == "run-completed"
    assert all(e["data"]["run_id"] == events[0]["data"]["run_id"] for e in events)


@pytest.mark.asyncio
async def test_node_timeout_fails_node(tool_service):
    backend = ScriptedBackend(["slow"], delay=1.0)
    scheduler = _scheduler(tool_service, backend, node_timeout_seconds=0.05)
    graph = {
        "nodes": [_input(), _llm("llm", "Writer", "{{Input.user_input}}"), _output("direct", ["{{Writer.response}}"])],
        "edges": [_edge("in", "llm"), _edge("llm", "out")],
    }
    result = await scheduler.run(graph, "hi")
    assert result.node_status["llm"] == "failed"
    assert "timed out" in result.errors["llm"]


@pytest.mark.asyncio
async def test_cancel_stops_in_flight_nodes(tool_service):
    backend = ScriptedBackend(["first ", "second ", "third"], delay=0.2)
    scheduler = _scheduler(tool_service, backend)
    graph = {
        "nodes": [_input(), _llm("llm", "Writer", "{{Input.user_input}}"), _output("direct", ["{{Writer.response}}"])],
        "edges": [_edge("in", "llm"), _edge("llm", "out")],
    }
    events = []
    async for event in scheduler.run_streaming(graph, "hi", run_id="run-1"):
        events.append(event)
        if event["event"] == "stream-chunk":
            assert await scheduler.cancel("run-1") is True

    assert events[-1]["event"] == "run-cancelled"
    result = events[-1]["data"]["result"]
    assert result["status"] == "cancelled"
    assert result["node_status"]["llm"] == "cancelled"
    assert result["node_status"]["out"] == "pending"
    assert scheduler.active_runs() == []
    assert await scheduler.cancel("run-1") is False


@pytest.mark.asyncio
async def test_same_flow_cannot_run_twice(tool_service):
    scheduler = _scheduler(tool_service)
    graph = _refund_graph()
    first = scheduler.run_streaming(graph, "REFUND", flow_id="flow-1", run_id="run-a")
    started = await first.__anext__()
    assert started["event"] == "run-started"
    assert scheduler.is_running("flow-1")

    with pytest.raises(RunInProgressError):
        await scheduler.run(graph, "again", flow_id="flow-1")

    remaining = [event async for event in first]
    assert remaining[-1]["event"] == "run-completed"
    assert not scheduler.is_running("flow-1")

    result = await scheduler.run(graph, "again", flow_id="flow-1")
    assert result.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_invalid_graph_is_rejected_before_running(tool_service):
    scheduler = _scheduler(tool_service)
    graph = _refund_graph()
    graph["nodes"][1]["data"]["inputMappings"]["user_input"] = "{{Refund.response}}"
    with pytest.raises(WorkflowValidationError) as exc_info:
        await scheduler.run(graph, "hi", flow_id="flow-2")
    assert [i.code for i in exc_info.value.issues] == ["FFV-VAR-002"]
    assert exc_info.value.detail["hardErrors"][0]["code"] == "FFV-VAR-002"
    assert not scheduler.is_running("flow-2")


@pytest.mark.asyncio
async def test_unvalidated_cycle_leaves_nodes_skipped(tool_service):
    graph = {
        "nodes": [
            _input(),
            _llm("a", "A", "x"),
            _llm("b", "B", "y"),
            _output("direct", ["{{Input.user_input}}"]),
        ],
        "edges": [_edge("in", "out"), _edge("a", "b"), _edge("b", "a")],
    }
    result = await _scheduler(tool_service).run(graph, "hi", validate=False)
    assert result.node_status["a"] == "skipped"
    assert result.node_status["b"] == "skipped"
    assert result.status == RunStatus.COMPLETED
    assert result.final_output == {"text": "hi"}


@pytest.mark.asyncio
async def test_memory_feeds_history_into_later_runs(tool_service):
    backend = ScriptedBackend()
    store = MemoryStore()
    scheduler = _scheduler(tool_service, backend, store=store)
    graph = {
        "nodes": [
            _input(),
            _llm("llm", "Chat", "{{Input.user_input}}", enableMemory=True, systemPrompt="Be brief."),
            _output("direct", ["{{Chat.response}}"]),
        ],
        "edges": [_edge("in", "llm"), _edge("llm", "out")],
    }
    await scheduler.run(graph, "first question", flow_id="f", session_id="s")
    await scheduler.run(graph, "second question", flow_id="f", session_id="s")

    assert backend.calls[1] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "first question"},
        {"role": "user", "content": "second question"},
    ]
