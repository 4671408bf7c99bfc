"""
Two-phase response interception.

The request phase (``begin_request``) decides once whether the request is
excluded from injection and records it on a ``RequestContext``. The response
phase (``intercept_response``) receives that same context together with the
fully buffered upstream response and returns what should be sent to the
client. The context is an ordinary value handed from one phase to the other
by the coroutine serving the request, so concurrent requests never see each
other's state.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import httpx

from inject_proxy.config import ProxyConfig
from inject_proxy.rewrite.eligibility import is_eligible
from inject_proxy.rewrite.injector import inject_into_html
from inject_proxy.rewrite.path_matcher import is_excluded_path

logger = logging.getLogger("uvicorn.error")

HeaderList = List[Tuple[str, str]]

_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)


@dataclass
class RequestContext:
    path: str
    skip_injection: bool = False


@dataclass
class InterceptedResponse:
    body: bytes
    headers: HeaderList
    injected: bool = False


def begin_request(path: str, config: ProxyConfig) -> RequestContext:
    """Record the exclusion decision for a request as it is received."""
    skip = is_excluded_path(path, config.exclude_patterns)
    if skip:
        logger.debug(f"[Inject] Path excluded from injection: {path}")
    return RequestContext(path=path, skip_injection=skip)


def response_charset(content_type: Optional[str]) -> str:
    match = _CHARSET_RE.search(content_type or "")
    return match.group(1) if match else "utf-8"


def _with_content_length(headers: HeaderList, length: int) -> HeaderList:
    updated = [(k, v) for k, v in headers if k.lower() != "content-length"]
    updated.append(("content-length", str(length)))
    return updated


def intercept_response(
    context: RequestContext,
    headers: HeaderList,
    body: bytes,
    config: ProxyConfig,
) -> InterceptedResponse:
    """
    Apply injection to a buffered response when it is eligible.

    Headers and body come back untouched unless the injector actually changed
    the text; in that case the body is re-encoded and content-length is set to
    its byte length.
    """
    lookup = httpx.Headers(headers)
    if not is_eligible(lookup, config, context.skip_injection):
        return InterceptedResponse(body=body, headers=headers)

    charset = response_charset(lookup.get("content-type"))
    try:
        text = body.decode(charset)
    except (LookupError, UnicodeDecodeError) as e:
        logger.debug(
            f"[Inject] Passing through {context.path}, body not decodable as {charset}: {e}"
        )
        return InterceptedResponse(body=body, headers=headers)

    result = inject_into_html(text, config)
    if not result.changed:
        return InterceptedResponse(body=body, headers=headers)

    # Payload characters the page charset cannot hold become HTML character references
    encoded = result.output.encode(charset, errors="xmlcharrefreplace")
    logger.debug(
        f"[Inject] Injected into {context.path}: {len(body)} -> {len(encoded)} bytes"
    )
    return InterceptedResponse(
        body=encoded,
        headers=_with_content_length(headers, len(encoded)),
        injected=True,
    )
