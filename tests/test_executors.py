import json

import httpx
import pytest

from flashflow.service.context import RunContext
from flashflow.service.errors import NodeExecutionError
from flashflow.service.executors import (
    BranchNodeExecutor,
    ImageGenNodeExecutor,
    InputNodeExecutor,
    LLMNodeExecutor,
    NodeExecutionContext,
    OutputNodeExecutor,
    RAGNodeExecutor,
    StreamHandle,
    ToolNodeExecutor,
    normalize_attachments,
)
from flashflow.service.image import ImageService
from flashflow.service.llm import ChatDelta, LLMService
from flashflow.service.memory import ConversationMemory
from flashflow.service.rag import RAGService
from flashflow.storage.memory import MemoryStore
from flashflow.storage.models import Graph


FILES = [{"name": "policy.txt", "url": "https://cdn.example.com/policy.txt", "type": "text/plain"}]


class MockTools:
    def __init__(self):
        self.calls = []

    async def invoke(self, tool_name, inputs):
        self.calls.append((tool_name, inputs))
        return {"ok": True}


class ReasoningBackend:
    mode = "mock"

    async def stream(self, messages, *, model, temperature, response_format=None):
        yield ChatDelta(reasoning="thinking")
        yield ChatDelta(content="an ")
        yield ChatDelta(content="answer")


def _graph(target, data, upstream=("in",), kind=None):
    nodes = [
        {
            "id": "in",
            "type": "input",
            "data": {
                "label": "Input",
                "enableStructuredForm": True,
                "formFields": [{"name": "city", "label": "City", "defaultValue": "Paris"}, {"name": "n"}],
            },
        },
        {"id": "llm", "type": "llm", "data": {"label": "Writer"}},
        {"id": target, "type": kind or target, "data": data},
    ]
    edges = [{"source": source, "target": target} for source in upstream]
    return Graph.from_dict({"nodes": nodes, "edges": edges})


def _ctx(graph, node_id, outputs=None, **kwargs):
    context = RunContext(graph.nodes)
    for source, output in (outputs or {}).items():
        context.publish(source, output)
    return NodeExecutionContext(run_id="run-1", node=graph.node(node_id), graph=graph, context=context, **kwargs)


@pytest.mark.asyncio
async def test_input_executor_merges_defaults_and_files():
    graph = _graph("output", {"label": "Out"})
    ctx = _ctx(graph, "in", initial_input={"user_input": "hi", "files": FILES, "formData": {"n": 2}})
    output = await InputNodeExecutor().execute(ctx)
    assert output == {"user_input": "hi", "files": FILES, "formData": {"city": "Paris", "n": 2}}


@pytest.mark.asyncio
async def test_llm_executor_collects_reasoning_and_streams():
    graph = _graph("output", {"label": "Out"})
    chunks = []
    stream = StreamHandle("llm", on_chunk=lambda node_id, text: chunks.append(text))
    ctx = _ctx(graph, "llm", outputs={"in": {"user_input": "question"}}, stream=stream)
    executor = LLMNodeExecutor(LLMService(default_model="m", backend=ReasoningBackend()), ConversationMemory(MemoryStore()))

    output = await executor.execute(ctx)
    assert output == {"response": "an answer", "reasoning": "thinking"}
    assert chunks == ["an ", "answer"]


def test_stream_handle_abort_drops_chunks():
    seen = []
    handle = StreamHandle("n", on_chunk=lambda node_id, text: seen.append(text))
    handle.append("a")
    handle.append("")
    handle.abort()
    handle.append("b")
    assert seen == ["a"]
    assert handle.text == ""
    assert handle.aborted


@pytest.mark.asyncio
async def test_output_template_and_direct_modes():
    outputs = {"in": {"user_input": "why?"}, "llm": {"response": "because"}}
    template = _graph("output", {"label": "Out", "inputMappings": {"mode": "template", "template": "Q: {{Input.user_input}} A: {{Writer.response}}"}})
    assert await OutputNodeExecutor().execute(_ctx(template, "output", outputs)) == {"text": "Q: why? A: because"}

    direct = _graph(
        "output",
        {"label": "Out", "inputMappings": {"mode": "direct", "sources": [{"type": "variable", "value": "{{Ghost.text}}"}]}},
    )
    assert await OutputNodeExecutor().execute(_ctx(direct, "output", outputs)) == {"text": "{{Ghost.text}}"}


@pytest.mark.asyncio
async def test_output_select_skips_unresolved_and_blank_sources():
    graph = _graph(
        "output",
        {
            "label": "Out",
            "inputMappings": {
                "mode": "select",
                "sources": [
                    {"type": "variable", "value": "{{Writer.missing}}"},
                    {"type": "static", "value": "   "},
                    {"type": "static", "value": "fallback"},
                ],
            },
        },
    )
    output = await OutputNodeExecutor().execute(_ctx(graph, "output", {"llm": {"response": "r"}}))
    assert output == {"text": "fallback"}


@pytest.mark.asyncio
async def test_output_without_mappings_uses_upstream_text():
    graph = _graph("output", {"label": "Out"}, upstream=("llm",))
    output = await OutputNodeExecutor().execute(_ctx(graph, "output", {"llm": {"response": "hello"}}))
    assert output == {"text": "hello"}


@pytest.mark.asyncio
async def test_output_attachments_are_normalized():
    graph = _graph(
        "output",
        {
            "label": "Out",
            "inputMappings": {
                "mode": "direct",
                "sources": [{"type": "static", "value": "see files"}],
                "attachments": [
                    {"value": "{{Input.files}}"},
                    {"value": "https://cdn.example.com/report.pdf"},
                    {"value": "{{Ghost.url}}"},
                ],
            },
        },
    )
    output = await OutputNodeExecutor().execute(_ctx(graph, "output", {"in": {"user_input": "", "files": FILES}}))
    assert output["text"] == "see files"
    assert output["attachments"] == FILES + [
        {"name": "report.pdf", "url": "https://cdn.example.com/report.pdf", "type": "application/pdf"}
    ]


def test_normalize_attachments_handles_data_urls_and_junk():
    attachments = normalize_attachments(["data:image/png;base64,AAAA", "not a url", None, [[{"url": "u"}]]])
    assert attachments == [
        {"name": "file", "url": "data:image/png;base64,AAAA", "type": "image/png"},
        {"url": "u"},
    ]


@pytest.mark.asyncio
async def test_branch_passes_upstream_fields_through():
    graph = _graph("branch", {"label": "Gate", "condition": "{{Writer.response}}.includes('REFUND')"}, upstream=("llm",))
    output = await BranchNodeExecutor().execute(
        _ctx(graph, "branch", {"in": {"user_input": "x"}, "llm": {"response": "REFUND now", "_internal": 1}})
    )
    assert output["response"] == "REFUND now"
    assert "_internal" not in output
    assert output["passed"] is True
    assert output["conditionResult"] is True
    assert output["condition"] == "{{Writer.response}}.includes('REFUND')"


@pytest.mark.asyncio
async def test_branch_only_sees_ancestor_outputs():
    # "in" is published but is not upstream of the branch
    graph = _graph("branch", {"label": "Gate", "condition": "{{Input.user_input}} === 'x'"}, upstream=("llm",))
    output = await BranchNodeExecutor().execute(
        _ctx(graph, "branch", {"in": {"user_input": "x"}, "llm": {"response": "r"}})
    )
    assert output["conditionResult"] is False


@pytest.mark.asyncio
async def test_tool_executor_resolves_structured_inputs():
    graph = _graph(
        "tool",
        {
            "label": "Run",
            "toolType": "code_interpreter",
            "inputs": {"code": "{{Ghost.code}}", "inputFiles": "{{Input.files}}", "limit": 3},
        },
    )
    tools = MockTools()
    output = await ToolNodeExecutor(tools).execute(_ctx(graph, "tool", {"in": {"user_input": "", "files": FILES}}))
    assert output == {"ok": True}
    assert tools.calls == [("code_interpreter", {"code": "{{Ghost.code}}", "inputFiles": FILES, "limit": 3})]


@pytest.mark.asyncio
async def test_rag_executor_variable_mode():
    graph = _graph(
        "rag",
        {"label": "Docs", "inputMappings": {"query": "{{Input.user_input}}", "files": "{{Input.files}}"}},
    )
    files = [{"name": "faq.txt", "content": "Refunds take five days. Shipping is free."}]
    output = await RAGNodeExecutor(RAGService(MemoryStore())).execute(
        _ctx(graph, "rag", {"in": {"user_input": "refunds", "files": files}})
    )
    assert output["mode"] == "variable"
    assert output["query"] == "refunds"
    assert output["documentCount"] == 1
    assert output["citations"][0]["source"] == "faq.txt"


@pytest.mark.asyncio
async def test_rag_executor_static_mode_and_empty_query():
    store = MemoryStore()
    rag = RAGService(store)
    await rag.ingest_text("kb", "Our refund window is thirty days.")
    graph = _graph(
        "rag",
        {"label": "Docs", "fileSearchStoreName": "kb", "inputMappings": {"query": "{{Input.user_input}}"}},
    )
    output = await RAGNodeExecutor(rag).execute(_ctx(graph, "rag", {"in": {"user_input": "refund window"}}))
    assert output["mode"] == "static"
    assert output["documents"][0]["content"] == "Our refund window is thirty days."

    with pytest.raises(NodeExecutionError, match="query is empty"):
        await RAGNodeExecutor(rag).execute(_ctx(graph, "rag", {"in": {"user_input": "  "}}))


@pytest.mark.asyncio
async def test_imagegen_executor_resolves_prompt_and_reference_images():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"imageUrl": "https://cdn.example.com/out.png"})

    image = ImageService(api_url="https://images.example.com", transport=httpx.MockTransport(handler))
    graph = _graph(
        "imagegen",
        {
            "label": "Draw",
            "prompt": "Poster for {{Writer.response}}",
            "referenceImageMode": "variable",
            "referenceImageVariable": "{{Input.files}}",
            "imageSize": "512x512",
        },
        upstream=("in", "llm"),
    )
    output = await ImageGenNodeExecutor(image).execute(
        _ctx(graph, "imagegen", {"in": {"user_input": "", "files": FILES}, "llm": {"response": "a bakery"}})
    )
    assert output == {"imageUrl": "https://cdn.example.com/out.png"}
    assert seen["prompt"] == "Poster for a bakery"
    assert seen["imageSize"] == "512x512"
    assert seen["referenceImages"] == ["https://cdn.example.com/policy.txt"]


@pytest.mark.asyncio
async def test_imagegen_falls_back_to_upstream_text():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"url": "u"})

    image = ImageService(api_url="https://images.example.com", transport=httpx.MockTransport(handler))
    graph = _graph("imagegen", {"label": "Draw"}, upstream=("llm",))
    await ImageGenNodeExecutor(image).execute(_ctx(graph, "imagegen", {"llm": {"response": "a lighthouse"}}))
    assert seen["prompt"] == "a lighthouse"
    assert "referenceImages" not in seen
