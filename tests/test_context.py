"""Tests for the run context: label/id/kind lookup and alias enrichment."""

from __future__ import annotations

from flashflow.service.context import NodeIndex, RunContext, extract_text_from_upstream, normalize_label
from flashflow.service.variables import UNRESOLVED, resolve
from flashflow.storage.models import Node


def _nodes():
    return [
        Node.from_dict(
            {
                "id": "in1",
                "type": "input",
                "data": {
                    "label": "User Input",
                    "enableStructuredForm": True,
                    "formFields": [{"name": "city", "label": "City"}],
                },
            }
        ),
        Node.from_dict({"id": "llm1", "type": "llm", "data": {"label": "Writer"}}),
        Node.from_dict({"id": "out1", "type": "output", "data": {"label": "Result"}}),
    ]


def test_normalize_label_collapses_case_and_whitespace():
    assert normalize_label("  Summarize   Text ") == "summarize text"


def test_index_precedence_id_label_kind():
    index = NodeIndex(_nodes())
    assert index.resolve("llm1") == "llm1"
    assert index.resolve("Writer") == "llm1"
    assert index.resolve("user  input") == "in1"
    assert index.resolve("LLM1") == "llm1"
    assert index.resolve("llm") == "llm1"
    assert index.resolve("missing") is None
    assert index.resolve_explicit("llm") is None
    assert index.resolve_kind("output") == "out1"


def test_kind_fallback_requires_a_unique_node():
    nodes = _nodes() + [Node.from_dict({"id": "llm2", "type": "llm", "data": {"label": "Critic"}})]
    assert NodeIndex(nodes).resolve("llm") is None


def test_publish_enriches_input_and_llm_outputs():
    context = RunContext(_nodes())
    published = context.publish("in1", {"user_input": "hi", "formData": {"city": "Oslo"}})
    assert published["text"] == "hi"
    assert published["formData"]["City"] == "Oslo"
    context.publish("llm1", {"response": "done"})
    assert resolve("{{Writer.answer}} {{User Input.formData.City}}", context) == "done Oslo"


def test_lookup_of_unpublished_node_is_unresolved():
    context = RunContext(_nodes())
    assert context.lookup("Writer") is UNRESOLVED
    assert resolve("{{Writer.response}}", context) == "{{Writer.response}}"


def test_restricted_view_hides_other_nodes_but_shares_outputs():
    context = RunContext(_nodes())
    view = context.restricted({"in1"})
    context.publish("in1", {"user_input": "a"})
    context.publish("llm1", {"response": "b"})
    assert view.lookup("in1")["user_input"] == "a"
    assert view.lookup("Writer") is UNRESOLVED


def test_snapshot_is_keyed_by_id_and_label():
    context = RunContext(_nodes())
    context.publish("llm1", {"response": "b"})
    snapshot = context.snapshot()
    assert snapshot["llm1"]["response"] == "b"
    assert snapshot["Writer"]["response"] == "b"
    snapshot["llm1"]["response"] = "changed"
    assert context.output_of("llm1")["response"] == "b"


def test_extract_text_from_upstream_priority():
    assert extract_text_from_upstream({"response": "r", "text": "t"}) == "t"
    assert extract_text_from_upstream({"query": "q"}) == "q"
    assert extract_text_from_upstream({"n": 1, "_hidden": 2}) == '{"n": 1}'
    assert extract_text_from_upstream(None) == ""
