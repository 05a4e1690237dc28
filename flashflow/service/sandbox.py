"""Expression evaluation and tool execution sandbox.

This module provides:
- Safe math evaluation for the calculator tool (no ``eval``)
- A network allowlist for every outbound tool fetch
- Resource limits (CPU, memory, file size) for code interpreter subprocesses
- The code interpreter runner itself
"""
from __future__ import annotations

import ast
import base64
import ipaddress
import json
import math
import mimetypes
import operator
import os
import resource
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote_to_bytes, urlparse

import httpx

from flashflow.logging import get_logger

logger = get_logger(__name__)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}

_UNARY_OPS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_MATH_NAMES: dict[str, Any] = {
    "pi": math.pi,
    "e": math.e,
    "tau": math.tau,
    "inf": math.inf,
}

_MATH_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "cbrt": lambda x: math.copysign(abs(x) ** (1 / 3), x),
    "pow": math.pow,
    "exp": math.exp,
    "log": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "atan2": math.atan2,
    "floor": math.floor,
    "ceil": math.ceil,
    "factorial": math.factorial,
}

_MAX_RECURSION_DEPTH = 100
# Largest exponent accepted, so "9**9**9" cannot stall a worker
_MAX_EXPONENT = 10_000


def _eval_math_node(node: ast.AST, _depth: int = 0) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_math_node(node.body, _depth + 1)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ValueError("only numeric literals are allowed")
        return node.value

    if isinstance(node, ast.Name):
        if node.id in _MATH_NAMES:
            return _MATH_NAMES[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.UnaryOp):
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported unary operator")
        return op(_eval_math_node(node.operand, _depth + 1))

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        left = _eval_math_node(node.left, _depth + 1)
        right = _eval_math_node(node.right, _depth + 1)
        if op is operator.pow and abs(right) > _MAX_EXPONENT:
            raise ValueError("exponent too large")
        return op(left, right)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _MATH_FUNCTIONS:
            raise ValueError("function is not permitted")
        if node.keywords:
            raise ValueError("keyword arguments are not permitted")
        args = [_eval_math_node(arg, _depth + 1) for arg in node.args]
        return _MATH_FUNCTIONS[node.func.id](*args)

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def safe_eval_math(expression: str) -> float | int:
    """Evaluate an arithmetic expression with a constrained AST allowlist.

    Supports numbers, ``+ - * / % // ** ^``, parentheses, the constants
    ``pi``/``e``/``tau`` and a fixed set of math functions. ``^`` is treated
    as exponentiation.
    """

    if not isinstance(expression, str) or not expression.strip():
        raise ValueError("expression is empty")
    try:
        parsed = ast.parse(expression.replace("^", "**"), mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc
    try:
        result = _eval_math_node(parsed)
    except ZeroDivisionError as exc:
        raise ValueError("division by zero") from exc
    except OverflowError as exc:
        raise ValueError("result is too large") from exc
    if isinstance(result, float) and result.is_integer() and abs(result) < 2**53:
        return int(result)
    return result


# =========================================================================
# Tool Execution Sandbox
# =========================================================================


class SandboxError(Exception):
    """Raised when sandbox constraints are violated."""


@dataclass
class SandboxConfig:
    """Configuration for code interpreter subprocesses.

    Attributes:
        max_memory_mb: Maximum address space in MB (default: 512)
        max_cpu_seconds: Maximum CPU time in seconds (default: 30)
        max_file_size_mb: Maximum file size the code can create (default: 100)
        scratch_dir: Parent directory for per-run scratch directories
    """

    max_memory_mb: int = 512
    max_cpu_seconds: int = 30
    max_file_size_mb: int = 100
    scratch_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.scratch_dir is None:
            self.scratch_dir = Path(tempfile.gettempdir()) / "flashflow_sandbox"


DEFAULT_SANDBOX_CONFIG = SandboxConfig()


@dataclass
class ToolNetworkPolicy:
    """Network egress policy for tool fetches.

    Attributes:
        allowlist: Allowed target host patterns (hostname, ``*.wildcard``,
            CIDR, or ``*`` for any host)
        proxy_url: Optional HTTP proxy all tool fetches must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 10.0
    total_timeout: float = 30.0


def _normalize_allowlist(entries: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    for entry in entries or []:
        stripped = entry.strip().lower()
        if stripped:
            normalized.append(stripped)
    return normalized


def build_tool_network_policy(
    *,
    allowlist: Sequence[str] | None,
    proxy_url: Optional[str],
    connect_timeout: float = 10.0,
    total_timeout: float = 30.0,
) -> ToolNetworkPolicy:
    """Create a normalized ToolNetworkPolicy from raw values."""

    return ToolNetworkPolicy(
        allowlist=_normalize_allowlist(list(allowlist or [])),
        proxy_url=proxy_url,
        connect_timeout=connect_timeout,
        total_timeout=total_timeout,
    )


def _host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate == "*":
            return True
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                net = ipaddress.ip_network(candidate, strict=False)
                ip_obj = ipaddress.ip_address(host)
                if ip_obj in net:
                    return True
            except ValueError:
                continue
    return False


class AllowlistedFetcher:
    """HTTP client enforcing tool network allowlist and proxy requirements."""

    def __init__(self, policy: ToolNetworkPolicy, *, transport: httpx.BaseTransport | None = None):
        self.policy = policy
        self._transport = transport

    def check_url(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise SandboxError(f"unsupported URL scheme '{parsed.scheme}' for tool fetch")
        host = parsed.hostname
        if not host:
            raise SandboxError("URL is missing host for tool fetch")
        if not self.policy.allowlist:
            raise SandboxError("Tool network allowlist is empty; outbound fetch blocked")
        if not _host_matches_allowlist(host, self.policy.allowlist):
            raise SandboxError(f"Target host '{host}' is not allowlisted for tool fetch")
        return host

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        data: Any = None,
        json: Any = None,
    ) -> httpx.Response:
        self.check_url(url)
        timeout = httpx.Timeout(self.policy.total_timeout, connect=self.policy.connect_timeout)
        client_kwargs: dict[str, Any] = {"timeout": timeout, "follow_redirects": False}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        elif self.policy.proxy_url:
            client_kwargs["proxy"] = self.policy.proxy_url
        try:
            with httpx.Client(**client_kwargs) as client:
                return client.request(method, url, headers=headers, data=data, json=json)
        except httpx.TimeoutException as exc:
            raise SandboxError("tool fetch timed out") from exc
        except httpx.HTTPError as exc:
            raise SandboxError(f"tool fetch failed: {exc}") from exc

    def get(self, url: str, *, headers: Optional[dict[str, str]] = None) -> httpx.Response:
        return self.request("GET", url, headers=headers)


def read_data_url(url: str) -> tuple[bytes, str]:
    """Decode a ``data:`` URL into ``(payload, mime_type)``."""
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:"):
        raise SandboxError("malformed data URL")
    meta = header[len("data:"):]
    is_base64 = meta.endswith(";base64")
    mime = (meta[: -len(";base64")] if is_base64 else meta).split(";")[0] or "text/plain"
    if is_base64:
        try:
            return base64.b64decode(payload, validate=False), mime
        except ValueError as exc:
            raise SandboxError("malformed base64 data URL") from exc
    return unquote_to_bytes(payload), mime


def to_data_url(content: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


def apply_resource_limits(config: SandboxConfig) -> dict[str, bool]:
    """Apply resource limits to the current process.

    Used as the ``preexec_fn`` of code interpreter subprocesses, so the
    limits apply to the child only.

    Returns:
        Dict indicating which limits were successfully applied
    """
    results = {}

    memory_bytes = config.max_memory_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        results["memory"] = True
    except (ValueError, OSError) as e:
        logger.warning("sandbox_memory_limit_failed", error=str(e))
        results["memory"] = False

    try:
        resource.setrlimit(
            resource.RLIMIT_CPU,
            (config.max_cpu_seconds, config.max_cpu_seconds + 5),
        )
        results["cpu"] = True
    except (ValueError, OSError) as e:
        logger.warning("sandbox_cpu_limit_failed", error=str(e))
        results["cpu"] = False

    file_size_bytes = config.max_file_size_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_FSIZE, (file_size_bytes, file_size_bytes))
        results["file_size"] = True
    except (ValueError, OSError) as e:
        logger.warning("sandbox_file_limit_failed", error=str(e))
        results["file_size"] = False

    try:
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
        results["core"] = True
    except (ValueError, OSError) as e:
        logger.warning("sandbox_core_limit_failed", error=str(e))
        results["core"] = False

    return results


def ensure_scratch_dir(config: SandboxConfig) -> Path:
    if config.scratch_dir is None:
        config.scratch_dir = Path(tempfile.gettempdir()) / "flashflow_sandbox"
    config.scratch_dir.mkdir(parents=True, exist_ok=True)
    return config.scratch_dir


_RESULT_FILE = ".flashflow_result.json"
_ERROR_FILE = ".flashflow_error.json"

# Executed with ``python -I``; evaluates a trailing expression like a notebook cell.
_RUNNER = f"""
import ast, json, sys, traceback
source = open("main.py", encoding="utf-8").read()
try:
    tree = ast.parse(source, "main.py")
    last = tree.body.pop() if tree.body and isinstance(tree.body[-1], ast.Expr) else None
    scope = {{"__name__": "__main__"}}
    exec(compile(tree, "main.py", "exec"), scope)
    if last is not None:
        value = eval(compile(ast.Expression(last.value), "main.py", "eval"), scope)
        if value is not None:
            with open({_RESULT_FILE!r}, "w", encoding="utf-8") as fh:
                json.dump(repr(value), fh)
except Exception as exc:
    with open({_ERROR_FILE!r}, "w", encoding="utf-8") as fh:
        json.dump({{"name": type(exc).__name__, "value": str(exc)}}, fh)
    traceback.print_exc()
    sys.exit(1)
"""


def _safe_file_name(name: str) -> str:
    cleaned = Path(name).name
    if not cleaned or cleaned in (".", ".."):
        raise SandboxError(f"invalid file name '{name}'")
    return cleaned


def _subprocess_env(workdir: Path) -> dict[str, str]:
    """Minimal environment for user code; nothing from the service process leaks in."""
    return {"PATH": os.defpath, "HOME": str(workdir), "LANG": "C.UTF-8"}


def run_python_code(
    code: str,
    *,
    input_files: Sequence[Mapping[str, Any]] | None = None,
    output_file_name: Optional[str] = None,
    fetcher: Optional[AllowlistedFetcher] = None,
    config: Optional[SandboxConfig] = None,
    timeout: float = 60.0,
) -> dict[str, Any]:
    """Run Python code in a resource-limited subprocess inside a scratch dir.

    Input files are downloaded (or decoded from data URLs) into the scratch
    directory first; a file named ``output_file_name`` written by the code is
    returned as a data URL. Execution errors are reported in the result under
    ``error`` together with the captured logs.
    """
    cfg = config or DEFAULT_SANDBOX_CONFIG
    workdir = Path(tempfile.mkdtemp(prefix="run-", dir=ensure_scratch_dir(cfg)))
    try:
        for item in input_files or []:
            name, url = item.get("name"), item.get("url")
            if not isinstance(name, str) or not isinstance(url, str):
                continue
            try:
                if url.startswith("data:"):
                    content, _ = read_data_url(url)
                elif fetcher is None:
                    raise SandboxError("no fetcher configured for input files")
                else:
                    response = fetcher.get(url)
                    if response.status_code >= 400:
                        raise SandboxError(f"fetch returned HTTP {response.status_code}")
                    content = response.content
                (workdir / _safe_file_name(name)).write_bytes(content)
            except SandboxError as exc:
                logger.warning("sandbox_input_file_failed", file=name, error=str(exc))

        (workdir / "main.py").write_text(code, encoding="utf-8")
        (workdir / "runner.py").write_text(_RUNNER, encoding="utf-8")
        try:
            completed = subprocess.run(
                [sys.executable, "-I", "runner.py"],
                cwd=workdir,
                env=_subprocess_env(workdir),
                capture_output=True,
                text=True,
                timeout=timeout,
                preexec_fn=lambda: apply_resource_limits(cfg),
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise SandboxError(f"code execution timed out after {timeout:g}s") from exc

        result: dict[str, Any] = {
            "logs": completed.stdout.rstrip("\n"),
            "errors": completed.stderr.rstrip("\n"),
        }
        error_path = workdir / _ERROR_FILE
        if error_path.exists():
            details = json.loads(error_path.read_text(encoding="utf-8"))
            result["error"] = f"Code execution error: {details['name']}: {details['value']}"
            return result
        if completed.returncode != 0:
            result["error"] = f"Code execution error: process exited with code {completed.returncode}"
            return result

        result_path = workdir / _RESULT_FILE
        result["result"] = (
            json.loads(result_path.read_text(encoding="utf-8")) if result_path.exists() else None
        )
        result["generatedFile"] = None
        if output_file_name:
            output_path = workdir / _safe_file_name(output_file_name)
            if output_path.exists():
                mime = mimetypes.guess_type(output_path.name)[0] or "application/octet-stream"
                result["generatedFile"] = {
                    "name": output_path.name,
                    "url": to_data_url(output_path.read_bytes(), mime),
                    "type": mime,
                }
            else:
                logger.info("sandbox_output_missing", file=output_file_name)
        return result
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
