import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Info
from prometheus_fastapi_instrumentator import Instrumentator

from inject_proxy.app_proxy.route import router as proxy_router
from inject_proxy.config import ProxyConfig, load_config
from inject_proxy.vars import METRICS_PATH, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")

_tracing_configured = False


def configure_tracing() -> None:
    """Install the process-wide tracer provider, once."""
    global _tracing_configured
    if _tracing_configured:
        return
    _tracing_configured = True

    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(otlp_exporter)
        )


def _instrument_metrics(app: FastAPI, metrics_path: str) -> None:
    # Own registry per app so several apps can live in one process (tests)
    registry = CollectorRegistry()
    Instrumentator(registry=registry).instrument(app).expose(
        app, endpoint=metrics_path, include_in_schema=False
    )
    app_info = Info("fastapi_app_info", "Application Info", registry=registry)
    app_info.info({"app_name": SERVICE_NAME})


async def healthcheck() -> PlainTextResponse:
    return PlainTextResponse("ok", status_code=200)


def create_app(config: ProxyConfig, metrics_path: Optional[str] = None) -> FastAPI:
    """
    Build the proxy application around an already resolved configuration.

    Route order matters: the healthcheck and the optional metrics endpoint
    are registered before the catch-all proxy route.
    """
    if metrics_path is None:
        metrics_path = METRICS_PATH

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(json.dumps(config.describe(), indent=2))
        yield

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config = config

    app.add_api_route(
        config.health_path,
        healthcheck,
        methods=["GET", "HEAD"],
        response_class=PlainTextResponse,
        include_in_schema=False,
    )

    if metrics_path:
        _instrument_metrics(app, metrics_path)

    configure_tracing()
    FastAPIInstrumentor.instrument_app(app, excluded_urls=config.health_path)

    app.include_router(proxy_router)
    return app


def build_app() -> FastAPI:
    """Factory for ``uvicorn --factory inject_proxy.server:build_app``."""
    return create_app(load_config())
