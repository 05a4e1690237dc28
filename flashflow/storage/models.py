from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Set, Type

from flashflow.service.errors import BadRequestError


class NodeKind(str, Enum):
    INPUT = "input"
    LLM = "llm"
    RAG = "rag"
    TOOL = "tool"
    BRANCH = "branch"
    IMAGEGEN = "imagegen"
    OUTPUT = "output"


# Legacy spellings accepted for the image generation node
KIND_ALIASES: Dict[str, NodeKind] = {
    "image_gen": NodeKind.IMAGEGEN,
    "image": NodeKind.IMAGEGEN,
}

BRANCH_HANDLES = ("true", "false")
OUTPUT_MODES = ("direct", "select", "merge", "template")
SUPPORTED_TOOLS = ("web_search", "calculator", "datetime", "url_reader", "code_interpreter")


def to_node_kind(value: Any) -> Optional[NodeKind]:
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered in KIND_ALIASES:
        return KIND_ALIASES[lowered]
    try:
        return NodeKind(lowered)
    except ValueError:
        return None


def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass
class NodeData:
    """Fields shared by every node kind; unknown keys stay in ``extra``."""

    label: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    _known_keys: ClassVar[frozenset] = frozenset({"label"})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeData":
        raise NotImplementedError

    @classmethod
    def _extra(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in data.items() if k not in cls._known_keys}


@dataclass
class InputNodeData(NodeData):
    enable_text_input: bool = True
    text_required: bool = False
    enable_file_input: bool = False
    enable_structured_form: bool = False
    form_fields: List[Dict[str, Any]] = field(default_factory=list)
    file_config: Dict[str, Any] = field(default_factory=dict)
    greeting: str = ""

    _known_keys = frozenset(
        {
            "label",
            "enableTextInput",
            "textRequired",
            "enableFileInput",
            "enableStructuredForm",
            "formFields",
            "fileConfig",
            "greeting",
        }
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InputNodeData":
        return cls(
            label=str(data.get("label") or ""),
            enable_text_input=data.get("enableTextInput") is not False,
            text_required=data.get("textRequired") is True,
            enable_file_input=bool(data.get("enableFileInput")),
            enable_structured_form=bool(data.get("enableStructuredForm")),
            form_fields=[f for f in _list(data.get("formFields")) if isinstance(f, dict)],
            file_config=_mapping(data.get("fileConfig")),
            greeting=str(data.get("greeting") or ""),
            extra=cls._extra(data),
        )


@dataclass
class LLMNodeData(NodeData):
    model: Optional[str] = None
    system_prompt: str = ""
    temperature: Optional[float] = None
    response_format: str = "text"
    input_mappings: Dict[str, Any] = field(default_factory=dict)
    enable_memory: bool = False
    memory_max_turns: int = 10

    _known_keys = frozenset(
        {
            "label",
            "model",
            "systemPrompt",
            "temperature",
            "responseFormat",
            "inputMappings",
            "enableMemory",
            "memoryMaxTurns",
        }
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMNodeData":
        temperature = data.get("temperature")
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            temperature = None
        max_turns = data.get("memoryMaxTurns")
        if isinstance(max_turns, bool) or not isinstance(max_turns, (int, float)):
            max_turns = 10
        return cls(
            label=str(data.get("label") or ""),
            model=_optional_str(data.get("model")),
            system_prompt=_optional_str(data.get("systemPrompt")) or "",
            temperature=float(temperature) if temperature is not None else None,
            response_format=_optional_str(data.get("responseFormat")) or "text",
            input_mappings=_mapping(data.get("inputMappings")),
            enable_memory=bool(data.get("enableMemory")),
            memory_max_turns=min(20, max(1, int(max_turns))),
            extra=cls._extra(data),
        )


@dataclass
class RAGNodeData(NodeData):
    input_mappings: Dict[str, Any] = field(default_factory=dict)
    file_mode: Optional[str] = None
    file_search_store_name: Optional[str] = None
    max_tokens_per_chunk: int = 200
    max_overlap_tokens: int = 20
    top_k: int = 5

    _known_keys = frozenset(
        {
            "label",
            "inputMappings",
            "fileMode",
            "fileSearchStoreName",
            "maxTokensPerChunk",
            "maxOverlapTokens",
            "topK",
        }
    )

    FILE_SLOTS = ("files", "files2", "files3")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RAGNodeData":
        def _int(key: str, default: int, low: int, high: int) -> int:
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return default
            return min(high, max(low, int(value)))

        return cls(
            label=str(data.get("label") or ""),
            input_mappings=_mapping(data.get("inputMappings")),
            file_mode=_optional_str(data.get("fileMode")),
            file_search_store_name=_optional_str(data.get("fileSearchStoreName")),
            max_tokens_per_chunk=_int("maxTokensPerChunk", 200, 50, 500),
            max_overlap_tokens=_int("maxOverlapTokens", 20, 0, 100),
            top_k=_int("topK", 5, 1, 50),
            extra=cls._extra(data),
        )

    def mapped_file_slots(self) -> List[str]:
        return [
            slot
            for slot in self.FILE_SLOTS
            if isinstance(self.input_mappings.get(slot), str)
            and self.input_mappings[slot].strip()
        ]

    def effective_mode(self) -> Optional[str]:
        if self.file_mode:
            return self.file_mode
        if self.file_search_store_name and self.file_search_store_name.strip():
            return "static"
        if self.mapped_file_slots():
            return "variable"
        return None


@dataclass
class ToolNodeData(NodeData):
    tool_type: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)

    _known_keys = frozenset({"label", "toolType", "inputs"})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolNodeData":
        return cls(
            label=str(data.get("label") or ""),
            tool_type=_optional_str(data.get("toolType")) or "",
            inputs=_mapping(data.get("inputs")),
            extra=cls._extra(data),
        )


@dataclass
class BranchNodeData(NodeData):
    condition: str = ""

    _known_keys = frozenset({"label", "condition"})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BranchNodeData":
        return cls(
            label=str(data.get("label") or ""),
            condition=_optional_str(data.get("condition")) or "",
            extra=cls._extra(data),
        )


@dataclass
class ImageGenNodeData(NodeData):
    model: Optional[str] = None
    prompt: str = ""
    negative_prompt: str = ""
    image_size: str = "1024x1024"
    cfg: float = 7.5
    num_inference_steps: int = 25
    reference_image_mode: str = "static"
    reference_image_variables: List[str] = field(default_factory=list)
    reference_image_urls: List[str] = field(default_factory=list)

    _known_keys = frozenset(
        {
            "label",
            "model",
            "prompt",
            "negativePrompt",
            "imageSize",
            "cfg",
            "numInferenceSteps",
            "referenceImageMode",
            "referenceImageVariable",
            "referenceImage2Variable",
            "referenceImage3Variable",
            "referenceImageUrl",
            "referenceImageUrl2",
            "referenceImageUrl3",
        }
    )

    VARIABLE_FIELDS = ("referenceImageVariable", "referenceImage2Variable", "referenceImage3Variable")
    URL_FIELDS = ("referenceImageUrl", "referenceImageUrl2", "referenceImageUrl3")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageGenNodeData":
        cfg = data.get("cfg")
        steps = data.get("numInferenceSteps")
        return cls(
            label=str(data.get("label") or ""),
            model=_optional_str(data.get("model")),
            prompt=_optional_str(data.get("prompt")) or "",
            negative_prompt=_optional_str(data.get("negativePrompt")) or "",
            image_size=_optional_str(data.get("imageSize")) or "1024x1024",
            cfg=float(cfg) if isinstance(cfg, (int, float)) and not isinstance(cfg, bool) else 7.5,
            num_inference_steps=(
                int(steps) if isinstance(steps, (int, float)) and not isinstance(steps, bool) else 25
            ),
            reference_image_mode=_optional_str(data.get("referenceImageMode")) or "static",
            reference_image_variables=[
                data[k] for k in cls.VARIABLE_FIELDS if isinstance(data.get(k), str) and data[k].strip()
            ],
            reference_image_urls=[
                data[k] for k in cls.URL_FIELDS if isinstance(data.get(k), str) and data[k].strip()
            ],
            extra=cls._extra(data),
        )


@dataclass
class OutputNodeData(NodeData):
    mode: Optional[str] = None
    sources: List[Dict[str, Any]] = field(default_factory=list)
    template: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    has_mappings: bool = False

    _known_keys = frozenset({"label", "inputMappings"})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutputNodeData":
        mappings = data.get("inputMappings")
        has_mappings = isinstance(mappings, dict)
        mappings = _mapping(mappings)
        return cls(
            label=str(data.get("label") or ""),
            mode=_optional_str(mappings.get("mode")),
            sources=[s for s in _list(mappings.get("sources")) if isinstance(s, dict)],
            template=_optional_str(mappings.get("template")),
            attachments=[a for a in _list(mappings.get("attachments")) if isinstance(a, dict)],
            has_mappings=has_mappings,
            extra=cls._extra(data),
        )


NODE_DATA_TYPES: Dict[NodeKind, Type[NodeData]] = {
    NodeKind.INPUT: InputNodeData,
    NodeKind.LLM: LLMNodeData,
    NodeKind.RAG: RAGNodeData,
    NodeKind.TOOL: ToolNodeData,
    NodeKind.BRANCH: BranchNodeData,
    NodeKind.IMAGEGEN: ImageGenNodeData,
    NodeKind.OUTPUT: OutputNodeData,
}

_missing_kinds = set(NodeKind) - set(NODE_DATA_TYPES)
if _missing_kinds:
    raise RuntimeError(f"node data types missing for kinds: {sorted(k.value for k in _missing_kinds)}")


def parse_node_data(kind: NodeKind, data: Any) -> NodeData:
    return NODE_DATA_TYPES[kind].from_dict(_mapping(data))


@dataclass
class Node:
    id: str
    kind: NodeKind
    data: NodeData

    @property
    def label(self) -> str:
        return self.data.label

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Node":
        if not isinstance(raw, dict):
            raise BadRequestError("node must be an object")
        node_id = raw.get("id")
        if not isinstance(node_id, str) or not node_id.strip():
            raise BadRequestError("node is missing an id")
        kind = to_node_kind(raw.get("type"))
        if kind is None:
            raise BadRequestError(
                f"node {node_id} has unsupported type {raw.get('type')!r}",
                detail={"node_id": node_id},
            )
        return cls(id=node_id, kind=kind, data=parse_node_data(kind, raw.get("data")))


@dataclass
class Edge:
    source: str
    target: str
    id: Optional[str] = None
    source_handle: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Edge":
        if not isinstance(raw, dict):
            raise BadRequestError("edge must be an object")
        source, target = raw.get("source"), raw.get("target")
        if not isinstance(source, str) or not isinstance(target, str):
            raise BadRequestError("edge requires source and target", detail={"edge_id": raw.get("id")})
        handle = raw.get("sourceHandle")
        return cls(
            source=source,
            target=target,
            id=_optional_str(raw.get("id")),
            source_handle=handle if isinstance(handle, str) and handle else None,
        )


@dataclass
class Graph:
    nodes: List[Node]
    edges: List[Edge]
    title: str = ""

    def __post_init__(self) -> None:
        self._node_map: Dict[str, Node] = {n.id: n for n in self.nodes}
        self._incoming: Dict[str, List[Edge]] = {n.id: [] for n in self.nodes}
        self._outgoing: Dict[str, List[Edge]] = {n.id: [] for n in self.nodes}
        for edge in self.edges:
            if edge.source in self._node_map and edge.target in self._node_map:
                self._outgoing[edge.source].append(edge)
                self._incoming[edge.target].append(edge)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Graph":
        if not isinstance(raw, dict):
            raise BadRequestError("graph must be an object")
        nodes = raw.get("nodes")
        edges = raw.get("edges", [])
        if not isinstance(nodes, list) or not isinstance(edges, list):
            raise BadRequestError("graph nodes and edges must be arrays")
        return cls(
            nodes=[Node.from_dict(n) for n in nodes],
            edges=[Edge.from_dict(e) for e in edges],
            title=str(raw.get("title") or ""),
        )

    def node(self, node_id: str) -> Node:
        return self._node_map[node_id]

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_map

    def incoming(self, node_id: str) -> List[Edge]:
        return self._incoming.get(node_id, [])

    def outgoing(self, node_id: str) -> List[Edge]:
        return self._outgoing.get(node_id, [])

    def roots(self) -> List[Node]:
        return [n for n in self.nodes if not self._incoming[n.id]]

    def ancestors(self, node_id: str) -> Set[str]:
        """All nodes with a directed path into ``node_id`` (excluding itself unless cyclic)."""
        seen: Set[str] = set()
        queue = deque(e.source for e in self.incoming(node_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(e.source for e in self.incoming(current))
        return seen

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [n for n in self.nodes if n.kind == kind]

    def node_ids(self) -> Iterable[str]:
        return self._node_map.keys()
