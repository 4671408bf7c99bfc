import re
from typing import Iterable, Tuple


def compile_exclude_patterns(raw: str) -> Tuple[re.Pattern, ...]:
    """
    Compile a comma-separated list of regular expressions.

    Blank entries are ignored. A pattern that fails to compile raises
    ``ValueError`` naming the pattern, so a bad setting is caught at startup
    rather than on the first matching request.
    """
    patterns = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            patterns.append(re.compile(entry))
        except re.error as e:
            raise ValueError(f"Invalid exclusion pattern {entry!r}: {e}") from e
    return tuple(patterns)


def is_excluded_path(path: str, patterns: Iterable[re.Pattern]) -> bool:
    """True when any pattern matches anywhere in the request target."""
    return any(pattern.search(path) for pattern in patterns)
