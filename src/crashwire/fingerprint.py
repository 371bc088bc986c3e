"""Stable grouping keys for captured errors."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable

from .stacktrace import StackFrame

FINGERPRINT_FRAMES = 5
FINGERPRINT_LENGTH = 16


def calculate_fingerprint(exception_type: str, stack_trace: Iterable[StackFrame]) -> str:
    """Hash the error type and its first non-native call sites.

    The message is not part of the key, so differently worded errors from
    the same call sites share a fingerprint.
    """
    parts = [exception_type or "Error"]

    added = 0
    for frame in stack_trace:
        if added >= FINGERPRINT_FRAMES:
            break
        if frame.is_native:
            continue
        parts.append(f"{frame.method_name}:{frame.line_number or 0}")
        added += 1

    digest = hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]
