"""Run context: the per-run store of node outputs.

Each completed node publishes its output once, with convenience aliases
such as ``text`` added, before its dependents are released. Lookups go through
``NodeIndex`` so a prefix may name a node by id, label or unique kind. An
ancestor-restricted view keeps a node from reading outputs of nodes that
are not upstream of it.
"""
from __future__ import annotations

import copy
import json
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from flashflow.service.variables import UNRESOLVED
from flashflow.storage.models import InputNodeData, Node, NodeKind

_WHITESPACE = re.compile(r"\s+")

# Fields tried in order when a node output has to be read as plain text
TEXT_FIELD_PRIORITY = ("text", "response", "user_input", "query")


def normalize_label(label: str) -> str:
    return _WHITESPACE.sub(" ", (label or "").strip()).lower()


class NodeIndex:
    """Prefix lookup over a set of nodes.

    Precedence: exact id, exact label, normalized label, case-insensitive id,
    then a node kind that occurs exactly once.
    """

    def __init__(self, nodes: Iterable[Node]) -> None:
        self.nodes: Dict[str, Node] = {}
        self._by_label: Dict[str, str] = {}
        self._by_normalized: Dict[str, str] = {}
        self._by_lower_id: Dict[str, str] = {}
        kinds: Dict[str, List[str]] = {}
        for node in nodes:
            self.nodes[node.id] = node
            if node.label:
                self._by_label.setdefault(node.label, node.id)
                self._by_normalized.setdefault(normalize_label(node.label), node.id)
            self._by_lower_id.setdefault(node.id.lower(), node.id)
            kinds.setdefault(node.kind.value, []).append(node.id)
        self._unique_kind = {kind: ids[0] for kind, ids in kinds.items() if len(ids) == 1}

    def resolve(self, prefix: str) -> Optional[str]:
        if not prefix:
            return None
        if prefix in self.nodes:
            return prefix
        if prefix in self._by_label:
            return self._by_label[prefix]
        normalized = normalize_label(prefix)
        if normalized in self._by_normalized:
            return self._by_normalized[normalized]
        lowered = prefix.lower()
        if lowered in self._by_lower_id:
            return self._by_lower_id[lowered]
        return self._unique_kind.get(lowered)

    def resolve_explicit(self, prefix: str) -> Optional[str]:
        """Resolve by id or label only, ignoring the kind fallback."""
        if not prefix:
            return None
        if prefix in self.nodes:
            return prefix
        if prefix in self._by_label:
            return self._by_label[prefix]
        normalized = normalize_label(prefix)
        if normalized in self._by_normalized:
            return self._by_normalized[normalized]
        return self._by_lower_id.get(prefix.lower())

    def resolve_kind(self, prefix: str) -> Optional[str]:
        return self._unique_kind.get((prefix or "").lower())


def _enrich(node: Node, output: Dict[str, Any]) -> Dict[str, Any]:
    enriched = dict(output)
    if node.kind == NodeKind.INPUT:
        if "user_input" in enriched and "text" not in enriched:
            enriched["text"] = enriched["user_input"]
        data = node.data
        form = enriched.get("formData")
        if isinstance(data, InputNodeData) and data.enable_structured_form and isinstance(form, dict):
            aliased = dict(form)
            for form_field in data.form_fields:
                name, label = form_field.get("name"), form_field.get("label")
                if isinstance(name, str) and isinstance(label, str) and label and name in form:
                    aliased.setdefault(label, form[name])
            enriched["formData"] = aliased
    elif node.kind == NodeKind.LLM:
        if "response" in enriched and "answer" not in enriched:
            enriched["answer"] = enriched["response"]
    return enriched


class RunContext:
    """Outputs of completed nodes for one run, addressable by label, id or kind."""

    def __init__(self, nodes: Iterable[Node], *, allowed: Optional[Set[str]] = None) -> None:
        self.index = nodes if isinstance(nodes, NodeIndex) else NodeIndex(nodes)
        self._outputs: Dict[str, Dict[str, Any]] = {}
        self._allowed = allowed

    def publish(self, node_id: str, output: Dict[str, Any]) -> Dict[str, Any]:
        node = self.index.nodes[node_id]
        enriched = _enrich(node, output if isinstance(output, dict) else {"value": output})
        self._outputs[node_id] = enriched
        return enriched

    def has_output(self, node_id: str) -> bool:
        return node_id in self._outputs

    def output_of(self, node_id: str) -> Optional[Dict[str, Any]]:
        if self._allowed is not None and node_id not in self._allowed:
            return None
        return self._outputs.get(node_id)

    def resolve_node_id(self, prefix: str) -> Optional[str]:
        return self.index.resolve(prefix)

    def lookup(self, prefix: str) -> Any:
        node_id = self.resolve_node_id(prefix)
        if node_id is None:
            return UNRESOLVED
        output = self.output_of(node_id)
        return UNRESOLVED if output is None else output

    def restricted(self, node_ids: Iterable[str]) -> "RunContext":
        """A read-only view that only exposes outputs of ``node_ids``."""
        view = RunContext(self.index, allowed=set(node_ids))
        view._outputs = self._outputs
        return view

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Deep copy of all outputs keyed by label (primary) and id."""
        result: Dict[str, Dict[str, Any]] = {}
        for node_id, output in self._outputs.items():
            if self._allowed is not None and node_id not in self._allowed:
                continue
            copied = copy.deepcopy(output)
            result[node_id] = copied
            label = self.index.nodes[node_id].label
            if label:
                result.setdefault(label, copied)
        return result


def extract_text_from_upstream(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        for key in TEXT_FIELD_PRIORITY:
            value = output.get(key)
            if isinstance(value, str) and value:
                return value
        public = {k: v for k, v in output.items() if not str(k).startswith("_")}
        return json.dumps(public, ensure_ascii=False, default=str)
    return str(output)
