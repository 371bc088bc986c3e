"""Structured frames from free-form stack trace text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

MAX_FRAMES = 50
ANONYMOUS = "<anonymous>"

_CALL_SITE_MARKER = "at "
_PYTHON_MARKER = 'File "'
_PYTHON_HEADER = "Traceback"
_GROUP_HEADER = "Exception Group Traceback"
_GROUP_SEPARATOR = "+-"

_CALL_RE = re.compile(r"^(.+?)\s+\((.+)\)$")
_LOCATION_RE = re.compile(r"^(.+):(\d+):(\d+)$")
_PYTHON_FRAME_RE = re.compile(r'^File "(.+)", line (\d+)(?:, in (.+))?$')
_PATH_SPLIT_RE = re.compile(r"[/\\]")
_MARGIN_RE = re.compile(r"^[|+](?=\s|$)")


@dataclass(frozen=True)
class StackFrame:
    """One parsed entry of a call stack."""

    method_name: str = ANONYMOUS
    file_name: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    column_number: int | None = None
    is_native: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"methodName": self.method_name}
        if self.file_name is not None:
            result["fileName"] = self.file_name
        if self.file_path is not None:
            result["filePath"] = self.file_path
        if self.line_number is not None:
            result["lineNumber"] = self.line_number
        if self.column_number is not None:
            result["columnNumber"] = self.column_number
        result["isNative"] = self.is_native
        return result


def file_name_of(file_path: str) -> str:
    """Final path segment, splitting on both slash styles."""
    return _PATH_SPLIT_RE.split(file_path)[-1]


def _is_native_location(location: str) -> bool:
    return location == "native" or "[native code]" in location


def _parse_location(method_name: str, location: str) -> StackFrame:
    if _is_native_location(location):
        return StackFrame(method_name=method_name, is_native=True)

    match = _LOCATION_RE.match(location)
    if match:
        return StackFrame(
            method_name=method_name,
            file_name=file_name_of(match.group(1)),
            file_path=match.group(1),
            line_number=int(match.group(2)),
            column_number=int(match.group(3)),
        )
    return StackFrame(method_name=method_name, file_name=file_name_of(location), file_path=location)


def _parse_call_site_line(content: str) -> StackFrame:
    call = _CALL_RE.match(content)
    if call:
        return _parse_location(call.group(1), call.group(2))

    if _LOCATION_RE.match(content):
        return _parse_location(ANONYMOUS, content)

    if "[native code]" in content or content.startswith("native"):
        return StackFrame(method_name=content.replace(" [native code]", ""), is_native=True)

    return StackFrame(method_name=content)


def _parse_call_site(lines: list[str]) -> list[StackFrame]:
    frames: list[StackFrame] = []
    for line in lines:
        trimmed = line.strip()
        if not trimmed.startswith(_CALL_SITE_MARKER):
            continue
        frames.append(_parse_call_site_line(trimmed[len(_CALL_SITE_MARKER):]))
        if len(frames) >= MAX_FRAMES:
            break
    return frames


def _parse_python_line(content: str) -> StackFrame:
    match = _PYTHON_FRAME_RE.match(content)
    if not match:
        return StackFrame(method_name=content)

    path, lineno, name = match.group(1), int(match.group(2)), match.group(3) or ANONYMOUS
    # <frozen importlib._bootstrap>, <string>, <stdin>: no source on disk
    if path.startswith("<") and path.endswith(">"):
        return StackFrame(method_name=name, is_native=True)
    return StackFrame(
        method_name=name,
        file_name=file_name_of(path),
        file_path=path,
        line_number=lineno,
    )


def _strip_margin(line: str) -> str:
    """Drop the "| " / "+ " margin exception groups are printed with."""
    return _MARGIN_RE.sub("", line.strip(), count=1).strip()


def _is_python_header(content: str) -> bool:
    return content.startswith(_PYTHON_HEADER) or content.startswith(_GROUP_HEADER)


def _parse_python(lines: list[str]) -> list[StackFrame]:
    frames: list[StackFrame] = []
    for line in lines:
        if line.strip().startswith(_GROUP_SEPARATOR):
            # Sub-exceptions follow; the group's own frames win when it has any.
            if frames:
                break
            continue
        content = _strip_margin(line)
        if _is_python_header(content):
            # Chained traceback: only the last block belongs to the raised exception.
            frames = []
            continue
        if not content.startswith(_PYTHON_MARKER):
            continue
        frames.append(_parse_python_line(content))

    # Python prints the crash site last; report it first.
    frames.reverse()
    return frames[:MAX_FRAMES]


def parse_stack_trace(trace_text: str) -> list[StackFrame]:
    """Parse trace text into at most MAX_FRAMES frames, crash site first.

    The first line is the exception header and is skipped. A header starting
    with "Traceback" (or an exception group's margin) selects the Python
    traceback format; anything else is read as
    "at <method> (<path>:<line>:<column>)" call-site lines.
    """
    if not trace_text:
        return []
    lines = trace_text.splitlines()
    if not lines:
        return []
    first = lines[0].strip()
    if _is_python_header(_strip_margin(first)) or first.startswith(("| ", "+ ")):
        return _parse_python(lines[1:])
    return _parse_call_site(lines[1:])
