"""Source extraction — split a raw metric name into (name, source)."""

import re
from typing import Callable, Optional

from librato_backend.config import LibratoConfig, strip_regex_slashes
from librato_backend.sanitizer import sanitize


class NoExtraction:
    """Sanitize the name, never set a source."""

    def extract(self, raw_name: str) -> tuple[str, Optional[str]]:
        return sanitize(raw_name), None


class RegexExtraction:
    """Take the source from the first capturing group of a regex and cut
    the whole match out of the metric name."""

    def __init__(self, pattern):
        if isinstance(pattern, str):
            pattern = re.compile(strip_regex_slashes(pattern))
        self.pattern = pattern

    def extract(self, raw_name: str) -> tuple[str, Optional[str]]:
        match = self.pattern.search(raw_name)
        if match is None or match.re.groups == 0 or not match.group(1):
            return sanitize(raw_name), None

        remainder = raw_name[: match.start()] + raw_name[match.end():]
        return sanitize(remainder), sanitize(match.group(1))


class FunctionExtraction:
    """Delegate to user supplied name and source functions."""

    def __init__(self, name_fn: Callable[[str], str], source_fn: Callable[[str], str]):
        self.name_fn = name_fn
        self.source_fn = source_fn

    def extract(self, raw_name: str) -> tuple[str, Optional[str]]:
        return sanitize(self.name_fn(raw_name)), sanitize(self.source_fn(raw_name))


def build_extractor(config: LibratoConfig):
    """Pick the extraction strategy once: functions, then regex, then none."""
    if config.measure_name and config.measure_source:
        return FunctionExtraction(config.measure_name, config.measure_source)
    if config.source_regex:
        return RegexExtraction(config.source_regex)
    return NoExtraction()
