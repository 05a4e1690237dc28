"""Static analysis of workflow graphs.

``validate`` is a pure function over the raw ``nodes``/``edges`` payload: it
never raises on malformed input and never mutates it. Issues are reported in
discovery order (nodes, then edges, then graph-wide checks) so callers can
assert exact diagnostics.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from flashflow.service.conditions import iter_references, parse_condition, validate_condition
from flashflow.service.context import normalize_label
from flashflow.service.errors import UnsupportedConditionError
from flashflow.service.variables import extract_variables, split_reference
from flashflow.storage.models import (
    BRANCH_HANDLES,
    OUTPUT_MODES,
    SUPPORTED_TOOLS,
    ImageGenNodeData,
    NodeKind,
    to_node_kind,
)


class Severity(str, Enum):
    HARD = "hard"
    WARNING = "warning"


SCHEMA_EMPTY = "FFV-SCHEMA-001"
SCHEMA_SHAPE = "FFV-SCHEMA-002"
NODE_IDENTITY = "FFV-NODE-001"
NODE_DUPLICATE_ID = "FFV-NODE-002"
NODE_MISSING_LABEL = "FFV-NODE-003"
NODE_DUPLICATE_LABEL = "FFV-NODE-004"
NODE_RESERVED_LABEL = "FFV-NODE-005"
GRAPH_NO_INPUT = "FFV-GRAPH-001"
GRAPH_NO_OUTPUT = "FFV-GRAPH-002"
GRAPH_CYCLE = "FFV-GRAPH-003"
GRAPH_UNREACHABLE = "FFV-GRAPH-004"
EDGE_ENDPOINTS = "FFV-EDGE-001"
EDGE_UNKNOWN_NODE = "FFV-EDGE-002"
BRANCH_HANDLE = "FFV-BRANCH-001"
BRANCH_STRAY_HANDLE = "FFV-BRANCH-002"
BRANCH_DEADLOCK = "FFV-BRANCH-003"
BRANCH_SYNTAX = "FFV-BRANCH-004"
LLM_FIELD = "FFV-LLM-001"
LLM_USER_INPUT = "FFV-LLM-002"
TOOL_TYPE = "FFV-TOOL-001"
RAG_CONFIG = "FFV-RAG-001"
OUTPUT_MODE = "FFV-OUTPUT-001"
OUTPUT_SOURCES = "FFV-OUTPUT-002"
INPUT_CONFIG = "FFV-INPUT-001"
VAR_UNKNOWN = "FFV-VAR-001"
VAR_NOT_UPSTREAM = "FFV-VAR-002"
VAR_AMBIGUOUS = "FFV-VAR-003"

MESSAGES: Dict[str, str] = {
    SCHEMA_EMPTY: "The workflow has no nodes and cannot run.",
    SCHEMA_SHAPE: "The workflow structure is invalid (nodes and edges must be arrays).",
    NODE_IDENTITY: "A node is missing its id or type, or the type is unknown.",
    NODE_DUPLICATE_ID: "Duplicate node ids would make execution state collide.",
    NODE_MISSING_LABEL: "A node has no label; variable references and display will break.",
    NODE_DUPLICATE_LABEL: "Duplicate node labels make variable references ambiguous.",
    NODE_RESERVED_LABEL: "Node labels must not use system prefixes such as node_, edge_ or auto_.",
    GRAPH_NO_INPUT: "The workflow has no Input node and cannot receive user input.",
    GRAPH_NO_OUTPUT: "The workflow has no Output node and cannot produce a result.",
    GRAPH_CYCLE: "A cyclic dependency was detected; the workflow cannot run.",
    GRAPH_UNREACHABLE: "A node cannot be reached from any Input node and would never run.",
    EDGE_ENDPOINTS: "An edge is missing its source or target.",
    EDGE_UNKNOWN_NODE: "An edge points at a node that does not exist.",
    BRANCH_HANDLE: "A branch edge needs a true/false handle, and a branch needs a condition.",
    BRANCH_STRAY_HANDLE: "Only branch edges may carry a sourceHandle.",
    BRANCH_DEADLOCK: "Mutually exclusive branch paths converge on the same node, which would never run.",
    BRANCH_SYNTAX: "The branch condition uses unsupported syntax and will fail when the node runs.",
    LLM_FIELD: "The LLM node configuration is invalid (temperature, responseFormat or field types).",
    LLM_USER_INPUT: "The LLM node is missing inputMappings.user_input and would receive empty input.",
    TOOL_TYPE: "The tool node is missing a supported toolType.",
    RAG_CONFIG: "The retrieval node is missing its query or its static/variable file configuration.",
    OUTPUT_MODE: "The Output node is missing a valid inputMappings.mode.",
    OUTPUT_SOURCES: "The Output node configuration is incomplete (sources or template missing).",
    INPUT_CONFIG: "The Input node configuration is invalid.",
    VAR_UNKNOWN: "A variable reference points at a node that does not exist.",
    VAR_NOT_UPSTREAM: "A variable reference points at a node that is not upstream of this node.",
    VAR_AMBIGUOUS: "A variable prefix matches both a node kind and a different node's label or id.",
}

RESERVED_LABEL_PREFIXES = ("node_", "edge_", "auto_")
FORM_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class Issue:
    code: str
    severity: Severity
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    field_path: Optional[str] = None
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        location = {
            key: value
            for key, value in (
                ("nodeId", self.node_id),
                ("edgeId", self.edge_id),
                ("fieldPath", self.field_path),
            )
            if value is not None
        }
        payload: Dict[str, Any] = {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
        }
        if location:
            payload["location"] = location
        if self.hint:
            payload["hint"] = self.hint
        return payload


@dataclass
class ValidationResult:
    hard_errors: List[Issue]
    warnings: List[Issue]

    @property
    def ok(self) -> bool:
        return not self.hard_errors

    def codes(self) -> List[str]:
        return [issue.code for issue in self.hard_errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.ok,
            "hardErrors": [i.to_dict() for i in self.hard_errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _hard(code: str, *, node_id=None, edge_id=None, field_path=None, hint=None) -> Issue:
    return Issue(code, Severity.HARD, MESSAGES[code], node_id, edge_id, field_path, hint)


def _warning(code: str, *, node_id=None, edge_id=None, field_path=None, hint=None) -> Issue:
    return Issue(code, Severity.WARNING, MESSAGES[code], node_id, edge_id, field_path, hint)


def _data(node: Any) -> Dict[str, Any]:
    data = node.get("data") if isinstance(node, dict) else None
    return data if isinstance(data, dict) else {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _has_reference(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value and "}}" in value


def reference_fields(kind: NodeKind, data: Dict[str, Any]) -> List[Tuple[str, str]]:
    """``(field_path, value)`` for every string field that may hold references."""
    fields: List[Tuple[str, str]] = []

    def push(path: str, value: Any) -> None:
        if _has_reference(value):
            fields.append((path, value))

    def push_mapping(prefix: str, mapping: Any) -> None:
        if isinstance(mapping, dict):
            for key, value in mapping.items():
                push(f"{prefix}.{key}", value)

    if kind == NodeKind.LLM:
        push("data.systemPrompt", data.get("systemPrompt"))
        push_mapping("data.inputMappings", data.get("inputMappings"))
    elif kind == NodeKind.RAG:
        push_mapping("data.inputMappings", data.get("inputMappings"))
    elif kind == NodeKind.TOOL:
        push_mapping("data.inputs", data.get("inputs"))
    elif kind == NodeKind.OUTPUT:
        mappings = data.get("inputMappings")
        mappings = mappings if isinstance(mappings, dict) else {}
        push("data.inputMappings.template", mappings.get("template"))
        for key in ("sources", "attachments"):
            items = mappings.get(key)
            for i, item in enumerate(items if isinstance(items, list) else []):
                if isinstance(item, dict):
                    push(f"data.inputMappings.{key}[{i}].value", item.get("value"))
    elif kind == NodeKind.BRANCH:
        # bare Label.path references are legal here, so braces are not required
        if _non_empty_str(data.get("condition")):
            fields.append(("data.condition", data["condition"]))
    elif kind == NodeKind.IMAGEGEN:
        push("data.prompt", data.get("prompt"))
        push("data.negativePrompt", data.get("negativePrompt"))
        for key in ImageGenNodeData.VARIABLE_FIELDS:
            push(f"data.{key}", data.get(key))
    return fields


def field_references(kind: NodeKind, field_path: str, value: str) -> List[str]:
    """Distinct references in one field returned by ``reference_fields``."""
    if kind == NodeKind.BRANCH and field_path == "data.condition":
        try:
            return list(dict.fromkeys(iter_references(parse_condition(value))))
        except UnsupportedConditionError:
            # the syntax warning covers the rest; braced references are still checked
            pass
    return extract_variables(value)


class _GraphValidator:
    def __init__(self, nodes: List[Any], edges: List[Any]) -> None:
        self.raw_nodes = nodes
        self.raw_edges = edges
        self.hard_errors: List[Issue] = []
        self.warnings: List[Issue] = []
        self.node_ids: List[str] = []
        self.kind_by_id: Dict[str, NodeKind] = {}
        self.data_by_id: Dict[str, Dict[str, Any]] = {}
        self.label_by_id: Dict[str, str] = {}
        self.ids_by_label: Dict[str, List[str]] = {}
        self.edges: List[Dict[str, Any]] = []

    def run(self) -> ValidationResult:
        self._check_identity()
        self._check_graph_shape()
        self._check_edges()
        for node_id in self.node_ids:
            self._check_contract(node_id)
        if self.edges:
            self._check_cycles()
        self._check_deadlocks()
        self._check_reachability()
        self._check_references()
        return ValidationResult(self.hard_errors, self.warnings)

    # identity

    def _check_identity(self) -> None:
        for raw in self.raw_nodes:
            if not isinstance(raw, dict):
                self.hard_errors.append(_hard(NODE_IDENTITY))
                continue
            node_id = raw.get("id") if isinstance(raw.get("id"), str) else ""
            raw_type = raw.get("type") if isinstance(raw.get("type"), str) else ""
            if not node_id or not raw_type:
                self.hard_errors.append(_hard(NODE_IDENTITY, node_id=node_id or None))
                continue
            if _WHITESPACE.search(node_id):
                self.hard_errors.append(
                    _hard(NODE_IDENTITY, node_id=node_id, hint="node ids must not contain whitespace")
                )
                continue
            kind = to_node_kind(raw_type)
            if kind is None:
                self.hard_errors.append(
                    _hard(
                        NODE_IDENTITY,
                        node_id=node_id,
                        field_path="type",
                        hint=f"unknown node type {raw_type!r}",
                    )
                )
                continue
            if node_id in self.kind_by_id:
                self.hard_errors.append(_hard(NODE_DUPLICATE_ID, node_id=node_id))
                continue
            self.node_ids.append(node_id)
            self.kind_by_id[node_id] = kind
            self.data_by_id[node_id] = _data(raw)

            label = self.data_by_id[node_id].get("label")
            if not _non_empty_str(label):
                self.hard_errors.append(
                    _hard(NODE_MISSING_LABEL, node_id=node_id, field_path="data.label")
                )
                continue
            self.label_by_id[node_id] = label
            normalized = normalize_label(label)
            if normalized.startswith(RESERVED_LABEL_PREFIXES):
                self.hard_errors.append(
                    _hard(NODE_RESERVED_LABEL, node_id=node_id, field_path="data.label")
                )
            self.ids_by_label.setdefault(normalized, []).append(node_id)

        for label, ids in self.ids_by_label.items():
            if len(ids) > 1:
                self.hard_errors.append(
                    _hard(
                        NODE_DUPLICATE_LABEL,
                        node_id=ids[0],
                        field_path="data.label",
                        hint=f"label {label!r} is shared by nodes {', '.join(ids)}",
                    )
                )

    def _check_graph_shape(self) -> None:
        kinds = set(self.kind_by_id.values())
        if NodeKind.INPUT not in kinds:
            self.hard_errors.append(_hard(GRAPH_NO_INPUT))
        if NodeKind.OUTPUT not in kinds:
            self.hard_errors.append(_hard(GRAPH_NO_OUTPUT))

    # edges

    def _check_edges(self) -> None:
        for raw in self.raw_edges:
            if not isinstance(raw, dict):
                self.hard_errors.append(_hard(EDGE_ENDPOINTS))
                continue
            edge_id = raw.get("id") if isinstance(raw.get("id"), str) else None
            source = raw.get("source") if isinstance(raw.get("source"), str) else ""
            target = raw.get("target") if isinstance(raw.get("target"), str) else ""
            if not source or not target:
                self.hard_errors.append(_hard(EDGE_ENDPOINTS, edge_id=edge_id))
                continue
            if source not in self.kind_by_id or target not in self.kind_by_id:
                self.hard_errors.append(_hard(EDGE_UNKNOWN_NODE, edge_id=edge_id))
                continue
            handle = raw.get("sourceHandle")
            self.edges.append({"id": edge_id, "source": source, "target": target, "handle": handle})
            if self.kind_by_id[source] == NodeKind.BRANCH:
                if handle not in BRANCH_HANDLES:
                    self.hard_errors.append(
                        _hard(BRANCH_HANDLE, edge_id=edge_id, node_id=source, field_path="sourceHandle")
                    )
            elif handle is not None and handle != "":
                self.hard_errors.append(
                    _hard(BRANCH_STRAY_HANDLE, edge_id=edge_id, node_id=source, field_path="sourceHandle")
                )

    # per-kind contracts

    def _check_contract(self, node_id: str) -> None:
        kind = self.kind_by_id[node_id]
        data = self.data_by_id[node_id]
        if kind == NodeKind.INPUT:
            self._check_input(node_id, data)
        elif kind == NodeKind.LLM:
            self._check_llm(node_id, data)
        elif kind == NodeKind.RAG:
            self._check_rag(node_id, data)
        elif kind == NodeKind.TOOL:
            self._check_tool(node_id, data)
        elif kind == NodeKind.BRANCH:
            if not _non_empty_str(data.get("condition")):
                self.hard_errors.append(
                    _hard(
                        BRANCH_HANDLE,
                        node_id=node_id,
                        field_path="data.condition",
                        hint="branch nodes need a condition",
                    )
                )
            else:
                problem = validate_condition(data["condition"])
                if problem:
                    self.warnings.append(
                        _warning(BRANCH_SYNTAX, node_id=node_id, field_path="data.condition", hint=problem)
                    )
        elif kind == NodeKind.OUTPUT:
            self._check_output(node_id, data)
        elif kind == NodeKind.IMAGEGEN:
            # only reference checks apply
            pass
        else:
            raise AssertionError(f"no contract check for node kind {kind}")

    def _check_input(self, node_id: str, data: Dict[str, Any]) -> None:
        if data.get("enableStructuredForm") is True:
            fields = data.get("formFields")
            fields = fields if isinstance(fields, list) else []
            if not fields:
                self.hard_errors.append(
                    _hard(
                        INPUT_CONFIG,
                        node_id=node_id,
                        field_path="data.formFields",
                        hint="a structured form needs at least one field",
                    )
                )
            else:
                for i, form_field in enumerate(fields):
                    name = form_field.get("name") if isinstance(form_field, dict) else None
                    if not isinstance(name, str) or not FORM_FIELD_NAME.match(name):
                        self.hard_errors.append(
                            _hard(
                                INPUT_CONFIG,
                                node_id=node_id,
                                field_path=f"data.formFields[{i}].name",
                                hint="form field names must be identifiers",
                            )
                        )
                        break
        if data.get("enableFileInput") is True:
            if data.get("enableTextInput") is False:
                self.hard_errors.append(
                    _hard(
                        INPUT_CONFIG,
                        node_id=node_id,
                        field_path="data.enableTextInput",
                        hint="file input requires text input to be enabled",
                    )
                )
            if data.get("textRequired") is not True:
                self.hard_errors.append(
                    _hard(
                        INPUT_CONFIG,
                        node_id=node_id,
                        field_path="data.textRequired",
                        hint="file input requires textRequired=true",
                    )
                )
            config = data.get("fileConfig")
            config_ok = (
                isinstance(config, dict)
                and isinstance(config.get("allowedTypes"), list)
                and len(config["allowedTypes"]) > 0
                and _is_number(config.get("maxSizeMB"))
                and _is_number(config.get("maxCount"))
            )
            if not config_ok:
                self.hard_errors.append(
                    _hard(
                        INPUT_CONFIG,
                        node_id=node_id,
                        field_path="data.fileConfig",
                        hint="fileConfig needs allowedTypes, maxSizeMB and maxCount",
                    )
                )

    def _check_llm(self, node_id: str, data: Dict[str, Any]) -> None:
        for key in ("model", "systemPrompt"):
            if key in data and data[key] is not None and not isinstance(data[key], str):
                self.hard_errors.append(
                    _hard(LLM_FIELD, node_id=node_id, field_path=f"data.{key}", hint=f"{key} must be a string")
                )
        mappings = data.get("inputMappings")
        user_input = mappings.get("user_input") if isinstance(mappings, dict) else None
        if not _non_empty_str(user_input):
            self.hard_errors.append(
                _hard(LLM_USER_INPUT, node_id=node_id, field_path="data.inputMappings.user_input")
            )
        if "temperature" in data and data["temperature"] is not None:
            temperature = data["temperature"]
            if not _is_number(temperature) or not 0 <= temperature <= 1:
                self.hard_errors.append(
                    _hard(
                        LLM_FIELD,
                        node_id=node_id,
                        field_path="data.temperature",
                        hint="temperature must be a number between 0 and 1",
                    )
                )
        if "responseFormat" in data and data["responseFormat"] is not None:
            if data["responseFormat"] not in ("text", "json_object"):
                self.hard_errors.append(
                    _hard(
                        LLM_FIELD,
                        node_id=node_id,
                        field_path="data.responseFormat",
                        hint='responseFormat must be "text" or "json_object"',
                    )
                )

    def _check_rag(self, node_id: str, data: Dict[str, Any]) -> None:
        mappings = data.get("inputMappings")
        mappings = mappings if isinstance(mappings, dict) else {}
        query_ok = _non_empty_str(mappings.get("query"))
        has_files = any(_non_empty_str(mappings.get(slot)) for slot in ("files", "files2", "files3"))
        store = data.get("fileSearchStoreName")
        store = store.strip() if isinstance(store, str) else ""
        mode = data.get("fileMode") if isinstance(data.get("fileMode"), str) else ""
        mode = mode or ("static" if store else "variable" if has_files else "")
        if mode == "variable":
            source_ok = has_files
        elif mode == "static":
            source_ok = bool(store)
        else:
            source_ok = False
        if not (query_ok and source_ok):
            self.hard_errors.append(_hard(RAG_CONFIG, node_id=node_id))

    def _check_tool(self, node_id: str, data: Dict[str, Any]) -> None:
        tool_type = data.get("toolType")
        if not _non_empty_str(tool_type):
            self.hard_errors.append(_hard(TOOL_TYPE, node_id=node_id, field_path="data.toolType"))
        elif tool_type not in SUPPORTED_TOOLS:
            self.hard_errors.append(
                _hard(
                    TOOL_TYPE,
                    node_id=node_id,
                    field_path="data.toolType",
                    hint=f"supported tools: {', '.join(SUPPORTED_TOOLS)}",
                )
            )

    def _check_output(self, node_id: str, data: Dict[str, Any]) -> None:
        mappings = data.get("inputMappings")
        mode = mappings.get("mode") if isinstance(mappings, dict) else None
        if not isinstance(mappings, dict) or not mode:
            self.hard_errors.append(_hard(OUTPUT_MODE, node_id=node_id))
            return
        if mode not in OUTPUT_MODES:
            self.hard_errors.append(
                _hard(
                    OUTPUT_MODE,
                    node_id=node_id,
                    field_path="data.inputMappings.mode",
                    hint=f"mode must be one of {', '.join(OUTPUT_MODES)}",
                )
            )
            return
        sources = mappings.get("sources")
        sources = sources if isinstance(sources, list) else []
        if mode == "template":
            if not _non_empty_str(mappings.get("template")):
                self.hard_errors.append(
                    _hard(OUTPUT_SOURCES, node_id=node_id, field_path="data.inputMappings.template")
                )
        elif mode == "direct":
            if len(sources) != 1:
                self.hard_errors.append(
                    _hard(
                        OUTPUT_SOURCES,
                        node_id=node_id,
                        field_path="data.inputMappings.sources",
                        hint="direct mode needs exactly one source",
                    )
                )
        elif not sources:
            self.hard_errors.append(
                _hard(OUTPUT_SOURCES, node_id=node_id, field_path="data.inputMappings.sources")
            )

    # graph-wide checks

    def _adjacency(self) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in self.node_ids}
        for edge in self.edges:
            adjacency[edge["source"]].append(edge["target"])
        return adjacency

    def _check_cycles(self) -> None:
        adjacency = self._adjacency()
        visited: Set[str] = set()
        on_stack: Set[str] = set()
        for start in self.node_ids:
            if start in visited:
                continue
            visited.add(start)
            on_stack.add(start)
            stack = [(start, iter(adjacency[start]))]
            while stack:
                node_id, children = stack[-1]
                advanced = False
                for child in children:
                    if child in on_stack:
                        self.hard_errors.append(
                            _hard(GRAPH_CYCLE, node_id=child, hint=f"edge {node_id} -> {child} closes a cycle")
                        )
                    elif child not in visited:
                        visited.add(child)
                        on_stack.add(child)
                        stack.append((child, iter(adjacency[child])))
                        advanced = True
                        break
                if not advanced:
                    on_stack.discard(node_id)
                    stack.pop()

    def _check_deadlocks(self) -> None:
        incoming: Dict[str, List[Dict[str, Any]]] = {}
        for edge in self.edges:
            incoming.setdefault(edge["target"], []).append(edge)
        for target, edges in incoming.items():
            if self.kind_by_id[target] == NodeKind.OUTPUT:
                continue
            handles_by_branch: Dict[str, Set[str]] = {}
            for edge in edges:
                if self.kind_by_id[edge["source"]] != NodeKind.BRANCH:
                    continue
                handles = handles_by_branch.setdefault(edge["source"], set())
                if edge["handle"] in BRANCH_HANDLES:
                    handles.add(edge["handle"])
            exclusive = [b for b, handles in handles_by_branch.items() if handles == set(BRANCH_HANDLES)]
            if not exclusive:
                continue
            # an independent path into the target keeps it reachable
            if all(edge["source"] in exclusive for edge in edges):
                self.hard_errors.append(
                    _hard(
                        BRANCH_DEADLOCK,
                        node_id=target,
                        hint=f"true and false paths of branch {exclusive[0]} converge here",
                    )
                )

    def _check_reachability(self) -> None:
        roots = [i for i in self.node_ids if self.kind_by_id[i] == NodeKind.INPUT]
        if not roots:
            # already reported as a missing Input node
            return
        adjacency = self._adjacency()
        reached: Set[str] = set(roots)
        queue = deque(roots)
        while queue:
            for child in adjacency[queue.popleft()]:
                if child not in reached:
                    reached.add(child)
                    queue.append(child)
        for node_id in self.node_ids:
            if node_id not in reached:
                self.hard_errors.append(
                    _hard(GRAPH_UNREACHABLE, node_id=node_id, hint="connect it downstream of an Input node")
                )

    def _ancestors(self) -> Dict[str, Set[str]]:
        parents: Dict[str, List[str]] = {node_id: [] for node_id in self.node_ids}
        for edge in self.edges:
            parents[edge["target"]].append(edge["source"])
        result: Dict[str, Set[str]] = {}
        for node_id in self.node_ids:
            seen: Set[str] = set()
            queue = deque(parents[node_id])
            while queue:
                current = queue.popleft()
                if current not in seen:
                    seen.add(current)
                    queue.extend(parents[current])
            result[node_id] = seen
        return result

    def _resolve_prefix(self, prefix: str) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(explicit_match, unique_kind_match)`` node ids for a prefix."""
        explicit: Optional[str] = None
        if prefix in self.kind_by_id:
            explicit = prefix
        else:
            ids = self.ids_by_label.get(normalize_label(prefix))
            if ids:
                explicit = ids[0]
            else:
                lowered = prefix.lower()
                explicit = next((i for i in self.node_ids if i.lower() == lowered), None)
        by_kind: Optional[str] = None
        kind = to_node_kind(prefix)
        if kind is not None:
            matches = [i for i in self.node_ids if self.kind_by_id[i] == kind]
            if len(matches) == 1:
                by_kind = matches[0]
        return explicit, by_kind

    def _check_references(self) -> None:
        ancestors = self._ancestors()
        for node_id in self.node_ids:
            fields = reference_fields(self.kind_by_id[node_id], self.data_by_id[node_id])
            for field_path, value in fields:
                for ref in field_references(self.kind_by_id[node_id], field_path, value):
                    prefix, _ = split_reference(ref)
                    if not prefix:
                        continue
                    explicit, by_kind = self._resolve_prefix(prefix)
                    target = explicit or by_kind
                    if target is None:
                        self.hard_errors.append(
                            _hard(
                                VAR_UNKNOWN,
                                node_id=node_id,
                                field_path=field_path,
                                hint=f"no node matches {{{{{ref}}}}}",
                            )
                        )
                        continue
                    if explicit and by_kind and explicit != by_kind:
                        self.warnings.append(
                            _warning(
                                VAR_AMBIGUOUS,
                                node_id=node_id,
                                field_path=field_path,
                                hint=f"{prefix!r} resolves to node {explicit}, not the {prefix} node {by_kind}",
                            )
                        )
                    if target not in ancestors[node_id]:
                        self.hard_errors.append(
                            _hard(
                                VAR_NOT_UPSTREAM,
                                node_id=node_id,
                                field_path=field_path,
                                hint=f"add an edge path from {target} to {node_id}",
                            )
                        )


def validate(nodes: Any, edges: Any) -> ValidationResult:
    """Validate a raw workflow payload; see ``ValidationResult`` for the result."""
    if not isinstance(nodes, list) or not isinstance(edges, list):
        return ValidationResult([_hard(SCHEMA_SHAPE)], [])
    if not nodes:
        return ValidationResult([_hard(SCHEMA_EMPTY)], [])
    return _GraphValidator(nodes, edges).run()


__all__ = ["Issue", "Severity", "ValidationResult", "MESSAGES", "field_references", "reference_fields", "validate"]
