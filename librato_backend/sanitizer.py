"""Metric name sanitizer."""

import re

MAX_NAME_LENGTH = 255

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_.:\-]+")


def sanitize(name: str) -> str:
    """Replace each run of disallowed characters with ``_`` and cap the length."""
    return _INVALID_CHARS.sub("_", name)[:MAX_NAME_LENGTH]
