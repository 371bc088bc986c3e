"""Tests for stack trace parsing."""

import sys
import traceback

import pytest

from crashwire.stacktrace import ANONYMOUS, MAX_FRAMES, StackFrame, file_name_of, parse_stack_trace

CALL_SITE_TRACE = """TypeError: x is null
    at foo (/app/src/handlers/user.js:42:13)
    at /app/src/index.js:7:3
    at Array.map ([native code])
    at native
    at processTicksAndRejections (node:internal/process/task_queues:95:5)
    some unrelated line
    at weird frame text
"""


def test_call_site_frames():
    """Test both '<method> (<location>)' and bare location lines."""
    frames = parse_stack_trace(CALL_SITE_TRACE)

    assert frames[0] == StackFrame(
        method_name="foo",
        file_name="user.js",
        file_path="/app/src/handlers/user.js",
        line_number=42,
        column_number=13,
        is_native=False,
    )
    assert frames[1].method_name == ANONYMOUS
    assert frames[1].file_name == "index.js"
    assert frames[1].line_number == 7
    assert frames[1].column_number == 3


def test_call_site_native_frames():
    """Test native markers produce location-less native frames."""
    frames = parse_stack_trace(CALL_SITE_TRACE)

    assert frames[2].method_name == "Array.map"
    assert frames[2].is_native is True
    assert frames[2].file_path is None

    assert frames[3].method_name == "native"
    assert frames[3].is_native is True
    assert frames[3].line_number is None


def test_call_site_unmatched_lines():
    """Test lines without the marker vanish and unparsable frames survive."""
    frames = parse_stack_trace(CALL_SITE_TRACE)

    assert len(frames) == 6
    assert frames[-1].method_name == "weird frame text"
    assert frames[-1].is_native is False
    assert all("unrelated" not in f.method_name for f in frames)


def test_header_line_is_skipped():
    """Test the first line is never parsed as a frame."""
    frames = parse_stack_trace("    at header (/a.js:1:1)\n    at body (/b.js:2:2)")
    assert [f.method_name for f in frames] == ["body"]


def test_frames_capped_at_fifty():
    """Test excess frames are dropped."""
    lines = ["Error: deep"] + [f"    at f{i} (/x.js:{i}:1)" for i in range(120)]
    frames = parse_stack_trace("\n".join(lines))
    assert len(frames) == MAX_FRAMES
    assert frames[0].method_name == "f0"


def test_empty_and_garbage_input():
    """Test parsing is total."""
    assert parse_stack_trace("") == []
    assert parse_stack_trace("just a header") == []
    assert parse_stack_trace("\n\n\n") == []


def test_windows_paths():
    """Test file names split on backslashes too."""
    frames = parse_stack_trace("Error\n    at run (C:\\app\\main.js:3:9)")
    assert frames[0].file_name == "main.js"
    assert frames[0].file_path == "C:\\app\\main.js"
    assert file_name_of("a/b\\c.py") == "c.py"


def _raise_inner():
    raise ValueError("inner")


def _raise_outer():
    _raise_inner()


def test_python_traceback_crash_site_first():
    """Test Python tracebacks are reversed so the raising frame is first."""
    try:
        _raise_outer()
    except ValueError as e:
        text = "".join(traceback.format_exception(type(e), e, e.__traceback__))

    frames = parse_stack_trace(text)
    names = [f.method_name for f in frames]
    assert names[:3] == ["_raise_inner", "_raise_outer", "test_python_traceback_crash_site_first"]
    assert frames[0].file_name == "test_stacktrace.py"
    assert frames[0].line_number is not None
    assert frames[0].column_number is None


def test_python_chained_traceback_uses_last_block():
    """Test only the final exception's frames are reported."""
    text = """Traceback (most recent call last):
  File "/app/a.py", line 3, in first
    boom()
KeyError: 'x'

During handling of the above exception, another exception occurred:

Traceback (most recent call last):
  File "/app/b.py", line 10, in second
    raise ValueError()
ValueError
"""
    frames = parse_stack_trace(text)
    assert [f.method_name for f in frames] == ["second"]
    assert frames[0].line_number == 10


def test_python_pseudo_files_are_native():
    """Test <frozen ...> and <string> frames are native."""
    text = """Traceback (most recent call last):
  File "<frozen importlib._bootstrap>", line 1, in _call_with_frames_removed
  File "/app/mod.py", line 5, in load
RuntimeError: x
"""
    frames = parse_stack_trace(text)
    assert frames[0].method_name == "load"
    assert frames[1].is_native is True
    assert frames[1].file_path is None


def test_to_dict_omits_missing_location():
    """Test the wire form of native frames has no location keys."""
    wire = StackFrame(method_name="native", is_native=True).to_dict()
    assert wire == {"methodName": "native", "isNative": True}


GROUP_TRACE = """  + Exception Group Traceback (most recent call last):
  |   File "/app/main.py", line 20, in run
  |     async with asyncio.TaskGroup() as tg:
  |   File "/usr/lib/python3.12/asyncio/taskgroups.py", line 145, in __aexit__
  |     raise me from None
  | ExceptionGroup: unhandled errors in a TaskGroup (1 sub-exception)
  +-+---------------- 1 ----------------
    | Traceback (most recent call last):
    |   File "/app/jobs.py", line 8, in fetch
    |     raise KeyError("k")
    | KeyError: 'k'
    +------------------------------------
"""

BARE_GROUP_TRACE = """  | ExceptionGroup: grp (1 sub-exception)
  +-+---------------- 1 ----------------
    | Traceback (most recent call last):
    |   File "/app/jobs.py", line 8, in fetch
    |     raise KeyError("k")
    | KeyError: 'k'
    +------------------------------------
"""


def test_exception_group_uses_group_frames():
    """Test a raised group reports its own frames, not its members'."""
    frames = parse_stack_trace(GROUP_TRACE)
    assert [f.method_name for f in frames] == ["__aexit__", "run"]
    assert frames[1].file_path == "/app/main.py"
    assert frames[1].line_number == 20


def test_unraised_exception_group_uses_first_member():
    """Test a group without a traceback falls back to its first member's frames."""
    frames = parse_stack_trace(BARE_GROUP_TRACE)
    assert [f.method_name for f in frames] == ["fetch"]
    assert frames[0].line_number == 8


@pytest.mark.skipif(sys.version_info < (3, 11), reason="exception groups need Python 3.11")
def test_formatted_exception_group_has_frames():
    """Test text from traceback.format_exception for a group parses to frames."""
    try:
        _raise_group()
    except Exception as e:  # noqa: BLE001
        text = "".join(traceback.format_exception(type(e), e, e.__traceback__, chain=False))

    frames = parse_stack_trace(text)
    assert frames[0].method_name == "_raise_group"
    assert frames[1].method_name == "test_formatted_exception_group_has_frames"


def _raise_group():
    raise ExceptionGroup("grp", [ValueError("member")])  # noqa: F821
