"""Variable reference parsing and resolution.

A reference is a ``{{Prefix.path}}`` token inside any string field. The
prefix is everything before the first ``.`` or ``[`` and names a node by
label, id or unique kind; the path walks the node's output with dotted keys
and bracket indices (``files[0].url``).

Unresolvable references are never dropped: ``resolve`` leaves the original
``{{...}}`` token in place so the failure stays visible downstream.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Tuple, Union

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_PATH_TOKEN = re.compile(r"\[\s*(\d+)\s*\]|\[\s*['\"]([^'\"]*)['\"]\s*\]|([^.\[\]]+)")


class _Unresolved:
    """Marker for a reference or path segment that could not be resolved."""

    _instance: "_Unresolved | None" = None

    def __new__(cls) -> "_Unresolved":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unresolved>"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()

PathSegment = Union[str, int]
Lookup = Callable[[str], Any]


def extract_variables(text: Any) -> List[str]:
    """Return the distinct references in ``text`` in order of first appearance."""
    if not isinstance(text, str) or "{{" not in text:
        return []
    found: List[str] = []
    for match in VARIABLE_PATTERN.finditer(text):
        ref = match.group(1).strip()
        if ref and ref not in found:
            found.append(ref)
    return found


def split_reference(ref: str) -> Tuple[str, str]:
    """Split ``Prefix.path[0].x`` into ``("Prefix", "path[0].x")``."""
    ref = ref.strip()
    cut = len(ref)
    for sep in (".", "["):
        idx = ref.find(sep)
        if idx != -1 and idx < cut:
            cut = idx
    prefix = ref[:cut].strip()
    rest = ref[cut:]
    if rest.startswith("."):
        rest = rest[1:]
    return prefix, rest


def parse_path(path: str) -> List[PathSegment]:
    segments: List[PathSegment] = []
    for index, key, name in _PATH_TOKEN.findall(path or ""):
        if index:
            segments.append(int(index))
        elif key:
            segments.append(key)
        elif name.strip():
            segments.append(name.strip())
    return segments


def get_path(value: Any, path: Union[str, List[PathSegment]]) -> Any:
    """Walk ``path`` into ``value``; any missing step yields ``UNRESOLVED``."""
    segments = parse_path(path) if isinstance(path, str) else path
    current = value
    for segment in segments:
        if current is None or current is UNRESOLVED:
            return UNRESOLVED
        if isinstance(current, Mapping):
            key = segment if isinstance(segment, str) else str(segment)
            if key not in current:
                return UNRESOLVED
            current = current[key]
        elif isinstance(current, (list, tuple)):
            if isinstance(segment, str):
                if not segment.isdigit():
                    return UNRESOLVED
                segment = int(segment)
            if segment >= len(current):
                return UNRESOLVED
            current = current[segment]
        else:
            return UNRESOLVED
    return current


def _is_file(value: Any) -> bool:
    return isinstance(value, Mapping) and isinstance(value.get("url"), str)


def to_semantic_string(value: Any) -> str:
    """Render a resolved value the way it should appear inside text."""
    if value is None or value is UNRESOLVED:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, (list, tuple)) and value and all(_is_file(v) for v in value):
        return ", ".join(v["url"] for v in value)
    if _is_file(value):
        return value["url"]
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _as_lookup(context: Any) -> Lookup:
    lookup = getattr(context, "lookup", None)
    if callable(lookup):
        return lookup
    if isinstance(context, Mapping):
        lowered = {str(k).lower(): v for k, v in context.items()}

        def _mapping_lookup(prefix: str) -> Any:
            if prefix in context:
                return context[prefix]
            return lowered.get(prefix.lower(), UNRESOLVED)

        return _mapping_lookup
    raise TypeError(f"unsupported resolution context: {type(context).__name__}")


def resolve_value(ref: str, context: Any) -> Any:
    """Resolve a single reference (without braces) to its raw value."""
    prefix, path = split_reference(ref)
    if not prefix:
        return UNRESOLVED
    root = _as_lookup(context)(prefix)
    if root is UNRESOLVED:
        return UNRESOLVED
    if not path:
        return root
    return get_path(root, path)


@dataclass
class Resolution:
    text: str
    unresolved: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unresolved


def resolve_detailed(text: Any, context: Any) -> Resolution:
    if not isinstance(text, str):
        return Resolution(text=to_semantic_string(text))
    if "{{" not in text:
        return Resolution(text=text)

    unresolved: List[str] = []

    def _substitute(match: "re.Match[str]") -> str:
        ref = match.group(1).strip()
        value = resolve_value(ref, context)
        if value is UNRESOLVED:
            if ref not in unresolved:
                unresolved.append(ref)
            return match.group(0)
        return to_semantic_string(value)

    return Resolution(text=VARIABLE_PATTERN.sub(_substitute, text), unresolved=unresolved)


def resolve(text: Any, context: Any) -> str:
    """Substitute every resolvable reference; unresolvable ones keep their token."""
    return resolve_detailed(text, context).text


def resolve_raw(text: Any, context: Any) -> Any:
    """Resolve a field that is exactly one reference to its raw value.

    Anything else is resolved as text. Used where structure matters, such as
    file lists for attachments and retrieval.
    """
    if not isinstance(text, str):
        return text
    stripped = text.strip()
    match = VARIABLE_PATTERN.fullmatch(stripped)
    if match:
        return resolve_value(match.group(1).strip(), context)
    return resolve(text, context)
