"""Structured output events emitted by agents in stream-json mode.

Each line is parsed into one of a closed set of event types. Shapes we don't
recognise become :class:`UnknownEvent` instead of raising.
"""

import json
import os
from dataclasses import dataclass, field

_TOOL_KEYS = {
    "readToolCall": "read",
    "writeToolCall": "write",
    "editToolCall": "edit",
    "bashToolCall": "shell",
    "shellToolCall": "shell",
    "globToolCall": "glob",
    "grepToolCall": "grep",
    "listToolCall": "list",
}


@dataclass(frozen=True)
class SystemEvent:
    subtype: str | None
    model: str | None = None


@dataclass(frozen=True)
class ToolCallEvent:
    subtype: str | None
    tool: str
    path: str | None = None
    lines: int | None = None
    size: int | None = None


@dataclass(frozen=True)
class ResultEvent:
    duration_ms: float | None = None
    subtype: str | None = None


@dataclass(frozen=True)
class UnknownEvent:
    type: str | None
    raw: dict = field(default_factory=dict, compare=False)


StreamEvent = SystemEvent | ToolCallEvent | ResultEvent | UnknownEvent


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _parse_tool_call(subtype: str | None, payload: dict) -> ToolCallEvent:
    for key, tool in _TOOL_KEYS.items():
        if key not in payload:
            continue
        call = _as_dict(payload[key])
        path = _as_dict(call.get("args")).get("path")
        success = _as_dict(_as_dict(call.get("result")).get("success"))
        lines = _as_number(success.get("linesCreated")) or _as_number(success.get("totalLines"))
        return ToolCallEvent(
            subtype=subtype,
            tool=tool,
            path=path if isinstance(path, str) else None,
            lines=lines,
            size=_as_number(success.get("fileSize")),
        )
    return ToolCallEvent(subtype=subtype, tool="other")


def parse_stream_event(line: str) -> StreamEvent | None:
    """Parse one NDJSON line. Returns None if the line isn't a JSON object."""
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    event_type = data.get("type")
    subtype = data.get("subtype")
    if not isinstance(subtype, str):
        subtype = None

    if event_type == "system":
        model = data.get("model")
        return SystemEvent(subtype=subtype, model=model if isinstance(model, str) else None)
    if event_type == "tool_call":
        return _parse_tool_call(subtype, _as_dict(data.get("tool_call")))
    if event_type == "result":
        return ResultEvent(duration_ms=_as_number(data.get("duration_ms")), subtype=subtype)
    return UnknownEvent(type=event_type if isinstance(event_type, str) else None, raw=data)


def shorten_path(path: str | None, cwd: str) -> str:
    if not path:
        return "unknown"
    try:
        rel = os.path.relpath(path, cwd)
    except ValueError:
        return path
    return path if rel.startswith("..") else rel


def format_stream_event(event: StreamEvent, cwd: str, label: str | None = None) -> str | None:
    """Render an event as a one-line progress indicator, or None to show nothing."""
    tag = f"[{label}] " if label else ""

    if isinstance(event, SystemEvent):
        if event.subtype == "init":
            return f"    {tag}model: {event.model or 'unknown'}"
        return None

    if isinstance(event, ToolCallEvent):
        if event.subtype == "started":
            if event.tool in ("read", "write", "edit"):
                return f"    {tag}○ {event.tool:<5} {shorten_path(event.path, cwd)}"
            if event.tool == "shell":
                return f"    {tag}○ shell command"
            if event.tool in ("glob", "grep"):
                return f"    {tag}○ {event.tool} search"
            if event.tool == "list":
                return f"    {tag}○ list directory"
        elif event.subtype == "completed" and event.tool == "write":
            details = []
            if event.lines:
                details.append(f"{event.lines} lines")
            if event.size:
                details.append(f"{event.size} bytes")
            if details:
                return f"      {tag}✓ {', '.join(details)}"
        return None

    if isinstance(event, ResultEvent) and event.duration_ms:
        return f"    {tag}● done ({event.duration_ms / 1000:.1f}s)"
    return None
