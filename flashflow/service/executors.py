from __future__ import annotations

import asyncio
import mimetypes
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from flashflow.logging import get_logger
from flashflow.service.conditions import evaluate_condition
from flashflow.service.context import RunContext, extract_text_from_upstream
from flashflow.service.errors import NodeExecutionError, StreamReadError
from flashflow.service.image import ImageService
from flashflow.service.llm import LLMService
from flashflow.service.memory import ConversationMemory
from flashflow.service.rag import RAGService, build_citations
from flashflow.service.tools import ToolService
from flashflow.service.variables import UNRESOLVED, resolve, resolve_detailed, resolve_raw, resolve_value
from flashflow.storage.models import (
    BranchNodeData,
    Graph,
    ImageGenNodeData,
    InputNodeData,
    LLMNodeData,
    Node,
    NodeKind,
    OutputNodeData,
    RAGNodeData,
    ToolNodeData,
)

logger = get_logger(__name__)

ChunkCallback = Callable[[str, str], None]


@dataclass
class ExecutionResult:
    output: Dict[str, Any]
    execution_time_ms: int


class StreamHandle:
    """Per-node buffer for streamed text with an abort switch.

    ``on_chunk(node_id, text)`` is called for every appended chunk while the
    handle is live. After ``abort()`` further chunks are dropped.
    """

    def __init__(self, node_id: str, on_chunk: Optional[ChunkCallback] = None) -> None:
        self.node_id = node_id
        self.on_chunk = on_chunk
        self._parts: List[str] = []
        self._aborted = False

    def append(self, text: str) -> None:
        if self._aborted or not text:
            return
        self._parts.append(text)
        if self.on_chunk is not None:
            self.on_chunk(self.node_id, text)

    def clear(self) -> None:
        self._parts.clear()

    def abort(self) -> None:
        self._aborted = True
        self.clear()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def text(self) -> str:
        return "".join(self._parts)


@dataclass
class NodeExecutionContext:
    run_id: str
    node: Node
    graph: Graph
    context: RunContext
    initial_input: Dict[str, Any] = field(default_factory=dict)
    flow_id: Optional[str] = None
    session_id: Optional[str] = None
    stream: Optional[StreamHandle] = None
    cancel_event: Optional[asyncio.Event] = None

    def upstream_outputs(self) -> List[Dict[str, Any]]:
        """Outputs of direct predecessors that have completed, in edge order."""
        outputs = []
        seen = set()
        for edge in self.graph.incoming(self.node.id):
            if edge.source in seen:
                continue
            seen.add(edge.source)
            output = self.context.output_of(edge.source)
            if output is not None:
                outputs.append(output)
        return outputs

    @property
    def cancelled(self) -> bool:
        return bool(self.cancel_event and self.cancel_event.is_set())


class BaseNodeExecutor:
    kind: NodeKind

    async def run(self, ctx: NodeExecutionContext) -> ExecutionResult:
        started = time.perf_counter()
        output = await self.execute(ctx)
        elapsed = int((time.perf_counter() - started) * 1000)
        return ExecutionResult(output=output, execution_time_ms=elapsed)

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        raise NotImplementedError


class InputNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.INPUT

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        initial = ctx.initial_input
        output: Dict[str, Any] = {"user_input": str(initial.get("user_input") or "")}
        files = initial.get("files")
        if isinstance(files, list) and files:
            output["files"] = files
        form: Dict[str, Any] = {}
        if isinstance(data, InputNodeData):
            for form_field in data.form_fields:
                name = form_field.get("name")
                if isinstance(name, str) and form_field.get("defaultValue") is not None:
                    form[name] = form_field["defaultValue"]
        if isinstance(initial.get("formData"), dict):
            form.update(initial["formData"])
        if form:
            output["formData"] = form
        return output


class LLMNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.LLM

    def __init__(self, llm: LLMService, memory: ConversationMemory) -> None:
        self.llm = llm
        self.memory = memory

    def _user_input(self, data: LLMNodeData, ctx: NodeExecutionContext) -> str:
        mapped = data.input_mappings.get("user_input")
        if isinstance(mapped, str) and mapped.strip():
            return resolve(mapped, ctx.context)
        for upstream in ctx.upstream_outputs():
            value = upstream.get("user_input")
            if isinstance(value, str) and value:
                return value
        return str(ctx.initial_input.get("user_input") or "")

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        if not isinstance(data, LLMNodeData):
            raise NodeExecutionError("llm node has invalid data", node_id=ctx.node.id)
        system_prompt = resolve(data.system_prompt, ctx.context) if data.system_prompt else ""
        user_input = self._user_input(data, ctx)

        use_memory = data.enable_memory and bool(ctx.flow_id) and bool(ctx.session_id)
        history: List[Dict[str, str]] = []
        if use_memory:
            history = await self.memory.get_history(
                ctx.flow_id, ctx.node.id, ctx.session_id, data.memory_max_turns
            )
            await self.memory.append(
                ctx.flow_id,
                ctx.node.id,
                ctx.session_id,
                "user",
                user_input,
                max_turns=data.memory_max_turns,
            )

        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(history)
        messages.append({"role": "user", "content": user_input})

        stream = ctx.stream or StreamHandle(ctx.node.id)
        reasoning: List[str] = []
        try:
            async for delta in self.llm.stream(
                messages,
                model=data.model,
                temperature=data.temperature,
                response_format=data.response_format,
            ):
                if ctx.cancelled or stream.aborted:
                    stream.clear()
                    raise asyncio.CancelledError()
                stream.append(delta.content)
                if delta.reasoning:
                    reasoning.append(delta.reasoning)
        except StreamReadError as exc:
            stream.clear()
            logger.warning("llm_stream_read_failed", node_id=ctx.node.id, error=exc.message)
            return {"error": f"Stream read failed: {exc.message}"}

        response = stream.text
        if use_memory and response:
            await self.memory.append(
                ctx.flow_id,
                ctx.node.id,
                ctx.session_id,
                "assistant",
                response,
                max_turns=data.memory_max_turns,
            )
        output: Dict[str, Any] = {"response": response}
        if reasoning:
            output["reasoning"] = "".join(reasoning)
        return output


def _collect_files(value: Any) -> List[Dict[str, Any]]:
    if value is UNRESOLVED or value is None:
        return []
    if isinstance(value, list):
        files: List[Dict[str, Any]] = []
        for item in value:
            files.extend(_collect_files(item))
        return files
    if isinstance(value, dict) and (value.get("url") or isinstance(value.get("content"), str)):
        return [value]
    if isinstance(value, str) and value.startswith(("http://", "https://", "data:")):
        return [{"name": _file_name(value), "url": value}]
    return []


class RAGNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.RAG

    def __init__(self, rag: RAGService) -> None:
        self.rag = rag

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        if not isinstance(data, RAGNodeData):
            raise NodeExecutionError("rag node has invalid data", node_id=ctx.node.id)
        query = resolve(data.input_mappings.get("query") or "", ctx.context).strip()
        if not query:
            raise NodeExecutionError("retrieval query is empty", node_id=ctx.node.id)

        mode = data.effective_mode()
        if mode == "static":
            if not data.file_search_store_name:
                raise NodeExecutionError("static retrieval needs fileSearchStoreName", node_id=ctx.node.id)
            documents = await self.rag.retrieve_static(
                data.file_search_store_name, query, top_k=data.top_k
            )
        elif mode == "variable":
            files: List[Dict[str, Any]] = []
            for slot in data.mapped_file_slots():
                files.extend(_collect_files(resolve_raw(data.input_mappings[slot], ctx.context)))
            if not files:
                raise NodeExecutionError("no files resolved for retrieval", node_id=ctx.node.id)
            documents = await self.rag.retrieve_from_files(
                files,
                query,
                top_k=data.top_k,
                max_tokens=data.max_tokens_per_chunk,
                overlap_tokens=data.max_overlap_tokens,
            )
        else:
            raise NodeExecutionError(
                "retrieval node has neither a knowledge store nor file variables",
                node_id=ctx.node.id,
            )
        return {
            "query": query,
            "documents": documents,
            "citations": build_citations(documents),
            "documentCount": len(documents),
            "mode": mode,
        }


class ToolNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.TOOL

    def __init__(self, tools: ToolService) -> None:
        self.tools = tools

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        if not isinstance(data, ToolNodeData):
            raise NodeExecutionError("tool node has invalid data", node_id=ctx.node.id)
        inputs: Dict[str, Any] = {}
        for key, value in data.inputs.items():
            resolved = resolve_raw(value, ctx.context) if isinstance(value, str) else value
            if resolved is UNRESOLVED:
                # leave the token visible so input validation reports it
                resolved = value
            inputs[key] = resolved
        return await self.tools.invoke(data.tool_type, inputs)


class BranchNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.BRANCH

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        condition = data.condition if isinstance(data, BranchNodeData) else ""
        view = ctx.context.restricted(ctx.graph.ancestors(ctx.node.id))
        result = evaluate_condition(condition, lambda ref: resolve_value(ref, view))
        output: Dict[str, Any] = {}
        for upstream in ctx.upstream_outputs():
            output.update({k: v for k, v in upstream.items() if not str(k).startswith("_")})
        output.update({"passed": True, "condition": condition, "conditionResult": result})
        logger.debug("branch_evaluated", node_id=ctx.node.id, result=result)
        return output


def _image_urls(value: Any) -> List[str]:
    return [str(f["url"]) for f in _collect_files(value) if f.get("url")]


class ImageGenNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.IMAGEGEN

    def __init__(self, image: ImageService) -> None:
        self.image = image

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        if not isinstance(data, ImageGenNodeData):
            raise NodeExecutionError("imagegen node has invalid data", node_id=ctx.node.id)
        prompt = resolve(data.prompt, ctx.context)
        if not prompt.strip():
            upstream = ctx.upstream_outputs()
            prompt = extract_text_from_upstream(upstream[0]) if upstream else ""
        references: List[str] = []
        if data.reference_image_mode == "variable":
            for ref in data.reference_image_variables:
                references.extend(_image_urls(resolve_raw(ref, ctx.context)))
        else:
            references = list(data.reference_image_urls)
        return await self.image.generate(
            prompt,
            model=data.model,
            negative_prompt=resolve(data.negative_prompt, ctx.context),
            image_size=data.image_size,
            cfg=data.cfg,
            num_inference_steps=data.num_inference_steps,
            reference_images=references or None,
        )


def _file_name(url: str) -> str:
    if url.startswith("data:"):
        return "file"
    name = urlparse(url).path.rsplit("/", 1)[-1]
    return name or "file"


def _attachment_from_url(url: str) -> Dict[str, Any]:
    if url.startswith("data:"):
        mime = url[5:].split(";", 1)[0].split(",", 1)[0] or "application/octet-stream"
    else:
        mime = mimetypes.guess_type(urlparse(url).path)[0] or "application/octet-stream"
    return {"name": _file_name(url), "url": url, "type": mime}


def normalize_attachments(values: List[Any]) -> List[Dict[str, Any]]:
    attachments: List[Dict[str, Any]] = []
    for value in values:
        if value is UNRESOLVED or value is None or value == "":
            continue
        if isinstance(value, list):
            attachments.extend(normalize_attachments(value))
        elif isinstance(value, dict) and value.get("url"):
            attachments.append(value)
        elif isinstance(value, str):
            url = value.strip()
            if url.startswith(("http://", "https://", "data:")):
                attachments.append(_attachment_from_url(url))
    return attachments


class OutputNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.OUTPUT

    @staticmethod
    def _source_value(source: Dict[str, Any], context: RunContext) -> Tuple[str, bool]:
        value = source.get("value")
        if source.get("type") in ("static", "text"):
            text = "" if value is None else str(value)
            return text, True
        resolution = resolve_detailed(value if isinstance(value, str) else "", context)
        return resolution.text, resolution.complete

    async def execute(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        data = ctx.node.data
        if not isinstance(data, OutputNodeData) or not data.has_mappings or not data.mode:
            upstream = ctx.upstream_outputs()
            return {"text": extract_text_from_upstream(upstream[0] if upstream else None)}

        values = [self._source_value(source, ctx.context) for source in data.sources]
        usable = [text for text, complete in values if complete and text.strip()]
        if data.mode == "direct":
            text = values[0][0] if values else ""
        elif data.mode == "select":
            text = usable[0] if usable else ""
        elif data.mode == "merge":
            text = "\n\n".join(usable)
        elif data.mode == "template":
            text = resolve(data.template or "", ctx.context)
        else:
            raise NodeExecutionError(f"unsupported output mode {data.mode!r}", node_id=ctx.node.id)

        output: Dict[str, Any] = {"text": text}
        if data.attachments:
            raw = [resolve_raw(a.get("value"), ctx.context) for a in data.attachments]
            attachments = normalize_attachments(raw)
            if attachments:
                output["attachments"] = attachments
        return output


def build_executor_registry(
    *,
    llm: LLMService,
    memory: ConversationMemory,
    rag: RAGService,
    tools: ToolService,
    image: ImageService,
) -> Dict[NodeKind, BaseNodeExecutor]:
    registry: Dict[NodeKind, BaseNodeExecutor] = {
        NodeKind.INPUT: InputNodeExecutor(),
        NodeKind.LLM: LLMNodeExecutor(llm, memory),
        NodeKind.RAG: RAGNodeExecutor(rag),
        NodeKind.TOOL: ToolNodeExecutor(tools),
        NodeKind.BRANCH: BranchNodeExecutor(),
        NodeKind.IMAGEGEN: ImageGenNodeExecutor(image),
        NodeKind.OUTPUT: OutputNodeExecutor(),
    }
    missing = set(NodeKind) - set(registry)
    if missing:
        raise RuntimeError(f"no executor for node kinds: {sorted(k.value for k in missing)}")
    return registry
