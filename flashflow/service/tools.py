from __future__ import annotations

import asyncio
import calendar
import concurrent.futures
import html
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from flashflow.config import Settings
from flashflow.logging import get_logger
from flashflow.service.errors import ToolExecutionError
from flashflow.service.sandbox import (
    AllowlistedFetcher,
    SandboxConfig,
    SandboxError,
    build_tool_network_policy,
    run_python_code,
    safe_eval_math,
)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
DEFAULT_DATETIME_FORMAT = "YYYY-MM-DD HH:mm:ss"
CURRENT_TIME_LABEL = "current time"
DATETIME_UNITS = ("year", "month", "day", "hour", "minute", "second")

TOOL_INPUT_SCHEMAS: Dict[str, dict] = {
    "web_search": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 1},
            "maxResults": {"type": "integer", "minimum": 1, "maximum": 10},
        },
        "required": ["query"],
    },
    "calculator": {
        "type": "object",
        "properties": {"expression": {"type": "string", "minLength": 1}},
        "required": ["expression"],
    },
    "datetime": {
        "type": "object",
        "properties": {
            "operation": {"enum": ["now", "format", "diff", "add"]},
            "date": {"type": "string"},
            "targetDate": {"type": "string"},
            "format": {"type": "string"},
            "amount": {"type": "number"},
            "unit": {"enum": list(DATETIME_UNITS)},
        },
        "allOf": [
            {
                "if": {"properties": {"operation": {"const": "diff"}}, "required": ["operation"]},
                "then": {"required": ["targetDate"]},
            },
            {
                "if": {"properties": {"operation": {"const": "add"}}, "required": ["operation"]},
                "then": {"required": ["amount"]},
            },
        ],
    },
    "url_reader": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "pattern": "^https?://"},
            "maxLength": {"type": "integer", "minimum": 1},
        },
        "required": ["url"],
    },
    "code_interpreter": {
        "type": "object",
        "properties": {
            "code": {"type": "string", "minLength": 1},
            "inputFiles": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"name": {"type": "string"}, "url": {"type": "string"}},
                    "required": ["name", "url"],
                },
            },
            "outputFileName": {"type": "string"},
        },
        "required": ["code"],
    },
}

_HTML_BLOCKS = re.compile(r"<(script|style|nav|header|footer|aside)[^>]*>[\s\S]*?</\1>", re.IGNORECASE)
_HTML_COMMENT = re.compile(r"<!--[\s\S]*?-->")
_HTML_TAG = re.compile(r"<[^>]+>")
_HTML_TITLE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_HTML_DESCRIPTION = re.compile(
    r"<meta[^>]*name=[\"']description[\"'][^>]*content=[\"']([^\"']+)[\"']", re.IGNORECASE
)
_CODE_FENCE_OPEN = re.compile(r"^```\w*\n?", re.MULTILINE)
_CODE_FENCE_CLOSE = re.compile(r"\n?```$", re.MULTILINE)


def clean_html_content(raw: str) -> str:
    text = _HTML_BLOCKS.sub("", raw)
    text = _HTML_COMMENT.sub("", text)
    text = _HTML_TAG.sub(" ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def clean_code_input(code: str) -> str:
    cleaned = _CODE_FENCE_OPEN.sub("", code.strip(), count=1)
    cleaned = _CODE_FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def format_datetime(value: datetime, fmt: str) -> str:
    return (
        fmt.replace("YYYY", f"{value.year:04d}")
        .replace("MM", f"{value.month:02d}")
        .replace("DD", f"{value.day:02d}")
        .replace("HH", f"{value.hour:02d}")
        .replace("mm", f"{value.minute:02d}")
        .replace("ss", f"{value.second:02d}")
    )


def parse_datetime(value: Optional[str]) -> datetime:
    """Parse an ISO-like date; naive values are local time. Empty means now."""
    if not value:
        return datetime.now().astimezone()
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in ("%Y/%m/%d %H:%M:%S", "%Y/%m/%d %H:%M", "%Y/%m/%d"):
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            raise ToolExecutionError(f"cannot parse date: {value}", tool="datetime")
    return parsed.astimezone()


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _add_months(value: datetime, months: int) -> datetime:
    index = value.month - 1 + months
    year, month = value.year + index // 12, index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _coerce_numeric_strings(payload: Dict[str, Any], schema: dict) -> Dict[str, Any]:
    """Resolved references arrive as text; turn numeric text into numbers."""
    properties = schema.get("properties", {})
    coerced: Dict[str, Any] = {}
    for key, value in payload.items():
        expected = properties.get(key, {}).get("type")
        if isinstance(value, str) and expected in ("integer", "number"):
            stripped = value.strip()
            try:
                number = float(stripped)
            except ValueError:
                coerced[key] = value
                continue
            coerced[key] = int(number) if expected == "integer" and number.is_integer() else number
        else:
            coerced[key] = value
    return coerced


class ToolService:
    """Validates tool inputs and runs tool handlers on a bounded worker pool."""

    DEFAULT_TOOL_WORKERS = 8
    MAX_TOOL_WORKERS = 16

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        fetcher: Optional[AllowlistedFetcher] = None,
        search_client: Optional[httpx.Client] = None,
        sandbox_config: Optional[SandboxConfig] = None,
        tool_workers: int = DEFAULT_TOOL_WORKERS,
    ) -> None:
        self.logger = get_logger(__name__)
        self.settings = settings
        policy = build_tool_network_policy(
            allowlist=settings.tool_network_allowlist if settings else ["*"],
            proxy_url=settings.tool_network_proxy_url if settings else None,
            connect_timeout=settings.tool_fetch_connect_timeout if settings else 10.0,
            total_timeout=settings.tool_fetch_timeout if settings else 30.0,
        )
        self.fetcher = fetcher or AllowlistedFetcher(policy)
        self.search_client = search_client
        self.sandbox_config = sandbox_config or SandboxConfig()
        self.timeout = settings.tool_timeout_seconds if settings else 15.0
        self.code_timeout = settings.code_sandbox_timeout_seconds if settings else 60.0
        self.tavily_api_key = settings.tavily_api_key if settings else None
        workers = min(max(1, tool_workers), self.MAX_TOOL_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="flashflow-tool"
        )
        self._executor_shutdown = False
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "web_search": self._web_search,
            "calculator": self._calculator,
            "datetime": self._datetime,
            "url_reader": self._url_reader,
            "code_interpreter": self._code_interpreter,
        }

    def validate_payload(self, tool_name: str, payload: Any) -> Optional[List[str]]:
        schema = TOOL_INPUT_SCHEMAS.get(tool_name)
        if not schema:
            return None
        try:
            validator = Draft202012Validator(schema)
        except SchemaError as exc:
            self.logger.warning("tool_schema_invalid", tool=tool_name, error=str(exc))
            return [f"invalid input schema: {exc.message}"]
        errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
        if errors:
            return [
                f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
                for e in errors
            ]
        return None

    def prepare_payload(self, tool_name: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        payload = {k: v for k, v in inputs.items() if not (isinstance(v, str) and not v.strip())}
        schema = TOOL_INPUT_SCHEMAS.get(tool_name)
        return _coerce_numeric_strings(payload, schema) if schema else payload

    def timeout_for(self, tool_name: str) -> float:
        return self.code_timeout + 5 if tool_name == "code_interpreter" else self.timeout

    async def invoke(self, tool_name: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        handler = self.handlers.get(tool_name)
        if handler is None:
            raise ToolExecutionError(f"unknown tool type {tool_name!r}", tool=tool_name)
        payload = self.prepare_payload(tool_name, inputs)
        errors = self.validate_payload(tool_name, payload)
        if errors:
            raise ToolExecutionError(
                f"{tool_name} input validation failed: {'; '.join(errors)}",
                tool=tool_name,
                errors=errors,
            )
        if self._executor_shutdown:
            raise ToolExecutionError("tool executor is shut down", tool=tool_name)

        timeout = self.timeout_for(tool_name)
        started = time.perf_counter()
        future = self._executor.submit(handler, payload)
        try:
            result = await asyncio.wait_for(asyncio.wrap_future(future), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self.logger.warning("tool_timeout", tool=tool_name, timeout=timeout)
            if not future.cancel():
                self.logger.warning("tool_timeout_cancellation_failed", tool=tool_name)
            raise ToolExecutionError(f"{tool_name} timed out after {timeout:g}s", tool=tool_name) from exc
        except SandboxError as exc:
            raise ToolExecutionError(str(exc), tool=tool_name) from exc
        self.logger.info(
            "tool_completed",
            tool=tool_name,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return result

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.info("tool_executor_shutdown", wait=wait)

    # handlers

    def _web_search(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.tavily_api_key:
            raise ToolExecutionError("TAVILY_API_KEY is not configured", tool="web_search")
        body = {
            "api_key": self.tavily_api_key,
            "query": payload["query"],
            "max_results": payload.get("maxResults", 5),
            "search_depth": "basic",
            "include_answer": False,
        }
        client = self.search_client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(TAVILY_SEARCH_URL, json=body)
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"search request failed: {exc}", tool="web_search") from exc
        finally:
            if self.search_client is None:
                client.close()
        if response.status_code >= 400:
            raise ToolExecutionError(
                f"search API error: HTTP {response.status_code}", tool="web_search"
            )
        results = [
            {"title": r.get("title", ""), "url": r.get("url", ""), "content": r.get("content", "")}
            for r in response.json().get("results") or []
            if isinstance(r, dict)
        ]
        return {"query": payload["query"], "results": results, "count": len(results)}

    def _calculator(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        expression = payload["expression"]
        try:
            result = safe_eval_math(expression)
        except (ValueError, TypeError) as exc:
            raise ToolExecutionError(f"cannot evaluate {expression!r}: {exc}", tool="calculator") from exc
        return {"expression": expression, "result": result}

    def _datetime(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        operation = payload.get("operation") or "now"
        fmt = payload.get("format") or DEFAULT_DATETIME_FORMAT
        if operation == "now":
            now = datetime.now().astimezone()
            return {
                "operation": "now",
                "formatted": format_datetime(now, fmt),
                "timestamp": int(now.timestamp() * 1000),
                "iso": _iso_utc(now),
                "timezone": now.tzname() or "UTC",
            }
        if operation == "format":
            value = parse_datetime(payload.get("date"))
            return {
                "operation": "format",
                "input": payload.get("date") or CURRENT_TIME_LABEL,
                "formatted": format_datetime(value, fmt),
                "format": fmt,
            }
        if operation == "diff":
            start = parse_datetime(payload.get("date"))
            end = parse_datetime(payload["targetDate"])
            delta_ms = int((end - start).total_seconds() * 1000)
            days = delta_ms // 86_400_000
            return {
                "operation": "diff",
                "from": format_datetime(start, "YYYY-MM-DD"),
                "to": format_datetime(end, "YYYY-MM-DD"),
                "difference": {
                    "days": days,
                    "hours": delta_ms // 3_600_000,
                    "minutes": delta_ms // 60_000,
                    "milliseconds": delta_ms,
                },
                "humanReadable": f"{abs(days)} days",
            }
        # add
        amount = payload["amount"]
        unit = payload.get("unit") or "day"
        value = parse_datetime(payload.get("date"))
        if unit == "year":
            value = _add_months(value, int(amount) * 12)
        elif unit == "month":
            value = _add_months(value, int(amount))
        else:
            value = value + timedelta(**{f"{unit}s": amount})
        return {
            "operation": "add",
            "originalDate": payload.get("date") or CURRENT_TIME_LABEL,
            "amount": amount,
            "unit": unit,
            "result": format_datetime(value, fmt),
            "iso": _iso_utc(value),
        }

    def _url_reader(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = payload["url"]
        max_length = payload.get("maxLength", 5000)
        response = self.fetcher.get(
            url,
            headers={
                "User-Agent": "Mozilla/5.0 (compatible; FlashFlowBot/1.0)",
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
        )
        if response.status_code >= 400:
            raise ToolExecutionError(
                f"cannot read page: HTTP {response.status_code}", tool="url_reader"
            )
        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type and "text/plain" not in content_type:
            raise ToolExecutionError(
                f"unsupported content type: {content_type or 'unknown'}; only HTML and plain text pages are supported",
                tool="url_reader",
            )
        raw = response.text
        title_match = _HTML_TITLE.search(raw)
        description_match = _HTML_DESCRIPTION.search(raw)
        content = clean_html_content(raw)
        truncated = len(content) > max_length
        if truncated:
            content = content[:max_length] + "..."
        return {
            "url": url,
            "title": title_match.group(1).strip() if title_match else "Untitled",
            "description": description_match.group(1).strip() if description_match else "",
            "content": content,
            "contentLength": len(content),
            "truncated": truncated,
        }

    def _code_interpreter(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return run_python_code(
            clean_code_input(payload["code"]),
            input_files=payload.get("inputFiles"),
            output_file_name=payload.get("outputFileName"),
            fetcher=self.fetcher,
            config=self.sandbox_config,
            timeout=self.code_timeout,
        )
