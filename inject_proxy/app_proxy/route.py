import asyncio
import logging
from typing import Dict, List, Tuple

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from opentelemetry import trace

from inject_proxy.config import ProxyConfig
from inject_proxy.rewrite.interceptor import (
    HeaderList,
    begin_request,
    intercept_response,
)

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

DISCONNECT_POLL_INTERVAL = 0.5
# nginx convention for "client closed request"; never actually read by the client
CLIENT_CLOSED_REQUEST = 499

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Request headers the HTTP client recomputes for the upstream: Host follows the
# upstream URL, content-length follows the body, encoding is forced to identity
REWRITTEN_REQUEST_HEADERS = {"host", "content-length", "accept-encoding"}

BODYLESS_STATUS_CODES = {204, 304}

# Content codings httpx decodes while reading a body; anything else arrives as-is
DECODED_CONTENT_ENCODINGS = {"gzip", "deflate", "br", "zstd"}


def get_request_target(request: Request) -> str:
    """Path and query of the incoming request, as the client sent them."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path

    query_string = str(request.url.query)
    if query_string:
        path = f"{path}?{query_string}"
    return path


def get_target_url(request_target: str, config: ProxyConfig) -> str:
    if not request_target.startswith("/"):
        request_target = "/" + request_target
    return f"{config.upstream}{request_target}"


def prepare_headers(request: Request) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the upstream.

    Hop-by-hop headers are removed. The connecting client is appended to
    X-Forwarded-For; the other forwarded headers set by the trusted
    front-end tier are kept and only filled in when missing.
    """
    headers = {}

    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in REWRITTEN_REQUEST_HEADERS:
            continue
        headers[name_lower] = value

    # The rewriter only understands plain text bodies
    headers["accept-encoding"] = "identity"

    # X-Forwarded-For: append client IP
    client_ip = request.client.host if request.client else "unknown"
    existing_xff = headers.get("x-forwarded-for", "")
    headers["x-forwarded-for"] = f"{existing_xff}, {client_ip}".strip(", ")
    headers.setdefault("x-forwarded-host", request.headers.get("host", ""))
    headers.setdefault("x-forwarded-proto", request.url.scheme)
    headers.setdefault("x-real-ip", client_ip)

    return headers


def response_headers(response: httpx.Response) -> HeaderList:
    """Upstream response headers minus hop-by-hop ones, duplicates preserved."""
    return [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


def decoded_by_client(content_encoding: str) -> bool:
    """True when httpx has already undone every coding in the header value."""
    codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
    codings = [c for c in codings if c != "identity"]
    return bool(codings) and all(c in DECODED_CONTENT_ENCODINGS for c in codings)


def _drop_decoded_encoding(headers: HeaderList, body: bytes) -> HeaderList:
    # httpx transparently decodes these bodies, so the downstream copy is plain
    kept = [
        (name, value)
        for name, value in headers
        if name.lower() not in ("content-encoding", "content-length")
    ]
    kept.append(("content-length", str(len(body))))
    return kept


def build_response(
    status_code: int,
    headers: HeaderList,
    body: bytes,
    method: str = "GET",
    encoding: str = "latin-1",
) -> Response:
    """Assemble the downstream response with the exact header list given."""
    raw_headers: List[Tuple[bytes, bytes]] = [
        (name.lower().encode(encoding), value.encode(encoding))
        for name, value in headers
    ]
    has_length = any(name == b"content-length" for name, _ in raw_headers)
    if (
        not has_length
        and method != "HEAD"
        and status_code >= 200
        and status_code not in BODYLESS_STATUS_CODES
    ):
        raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))

    response = Response(content=body, status_code=status_code)
    response.raw_headers = raw_headers
    return response


async def _send_upstream(
    method: str,
    target_url: str,
    headers: Dict[str, str],
    body: bytes,
    config: ProxyConfig,
) -> httpx.Response:
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(config.proxy_timeout),
        follow_redirects=False,  # Redirects are relayed to the client as-is
    ) as client:
        # Non-streaming request: the whole body is read before this returns
        return await client.request(
            method=method,
            url=target_url,
            headers=headers,
            content=body,
        )


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


async def forward_to_target(request: Request, config: ProxyConfig) -> Response:
    """
    Forward one request to the upstream and relay its response.

    The response body is buffered in full, then handed to the interceptor
    together with the context recorded when the request arrived. Nothing is
    sent downstream until the final body is known, so a failure while
    reading the upstream never produces a partially rewritten page.
    """
    with tracer.start_as_current_span("proxy_request") as span:
        request_target = get_request_target(request)
        target_url = get_target_url(request_target, config)
        span.set_attribute("proxy.target_url", target_url)
        span.set_attribute("proxy.method", request.method)

        context = begin_request(request_target, config)

        logger.debug(f"Proxying {request.method} {request_target} -> {target_url}")

        headers = prepare_headers(request)
        body = await request.body()

        upstream = asyncio.ensure_future(
            _send_upstream(request.method, target_url, headers, body, config)
        )
        disconnect = asyncio.ensure_future(_wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait(
                {upstream, disconnect}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            disconnect.cancel()
            if not upstream.done():
                upstream.cancel()
        await asyncio.gather(disconnect, return_exceptions=True)

        if upstream not in done:
            await asyncio.wait({upstream})
            logger.info(
                f"Client disconnected, abandoned upstream request {request.method} {target_url}"
            )
            span.set_attribute("proxy.error", "client_disconnected")
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        try:
            response = upstream.result()

        except httpx.TimeoutException as e:
            logger.error(f"Proxy timeout for {target_url}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise HTTPException(status_code=504, detail="Gateway timeout")

        except httpx.ConnectError as e:
            logger.error(f"Failed to connect to upstream {target_url}: {e}")
            span.set_attribute("proxy.error", "connection_failed")
            raise HTTPException(
                status_code=502, detail="Bad gateway - cannot connect to upstream"
            )

        except httpx.HTTPError as e:
            logger.error(f"Proxy error for {target_url}: {e}", exc_info=True)
            span.set_attribute("proxy.error", str(e))
            raise HTTPException(status_code=502, detail=f"Bad gateway: {str(e)}")

        except ImportError as e:
            # httpx needs brotli / zstandard to decode those codings
            logger.error(f"Cannot decode upstream body for {target_url}: {e}")
            span.set_attribute("proxy.error", "undecodable_content_encoding")
            raise HTTPException(
                status_code=502, detail="Bad gateway - unsupported content-encoding"
            )

        span.set_attribute("proxy.status_code", response.status_code)

        upstream_body = response.content
        upstream_headers = response_headers(response)
        content_encoding = response.headers.get("content-encoding", "").strip().lower()
        if content_encoding not in ("", "identity") and request.method != "HEAD":
            if not decoded_by_client(content_encoding):
                logger.debug(
                    f"Relaying {target_url} untouched, unknown content-encoding: {content_encoding}"
                )
                span.set_attribute("proxy.injected", False)
                return build_response(
                    response.status_code,
                    upstream_headers,
                    upstream_body,
                    method=request.method,
                    encoding=response.headers.encoding,
                )
            logger.debug(
                f"Upstream ignored identity encoding for {target_url}: {content_encoding}"
            )
            upstream_headers = _drop_decoded_encoding(upstream_headers, upstream_body)

        intercepted = intercept_response(
            context, upstream_headers, upstream_body, config
        )
        span.set_attribute("proxy.injected", intercepted.injected)

        return build_response(
            response.status_code,
            intercepted.headers,
            intercepted.body,
            method=request.method,
            encoding=response.headers.encoding,
        )


# Register catch-all route for proxying
@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
)
async def proxy_all(request: Request, path: str):
    """Catch-all route that proxies all requests to the upstream."""
    return await forward_to_target(request, request.app.state.config)
