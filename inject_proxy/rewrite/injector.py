from typing import NamedTuple

from inject_proxy.config import Occurrence, Placement, ProxyConfig


class InjectionResult(NamedTuple):
    output: str
    changed: bool


def inject_into_html(body: str, config: ProxyConfig) -> InjectionResult:
    """
    Insert the configured payload next to the marker.

    Matching is literal, not HTML-aware: a marker inside a comment or a
    script string is replaced like any other occurrence.
    """
    payload = config.inject_html
    marker = config.inject_target

    if not payload.strip() or not marker or marker not in body:
        return InjectionResult(body, False)

    if config.inject_mode is Placement.AFTER:
        replacement = f"{marker}{payload}"
    else:
        replacement = f"{payload}{marker}"

    if config.inject_once is Occurrence.FIRST_ONLY:
        output = body.replace(marker, replacement, 1)
    else:
        output = body.replace(marker, replacement)

    # A degenerate payload can leave the text untouched even though the marker matched
    return InjectionResult(output, output != body)
