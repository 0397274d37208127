import asyncio
import random
import sys

from fastapi import FastAPI
from loguru import logger
from opentelemetry import trace
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .alembic_helper import run_alembic_migrations
from .db.session import async_engine
from .settings import RelaySettings, relay_settings


def setup_logging(settings: RelaySettings | None = None) -> None:
    """Configure Loguru for consistent, structured service logs."""
    settings = settings or relay_settings()
    logger.remove()
    logger.add(
        sink=sys.stdout,
        level=settings.log_level.upper(),
        backtrace=False,
        diagnose=False,
        colorize=False,
        serialize=False,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
               "<level>{level: <8}</level> | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
               "<level>{message}</level>",
    )
    logger.info("🪵 Logging configured successfully.")


def setup_instrumentation(app: FastAPI, settings: RelaySettings | None = None) -> None:
    """Attach OpenTelemetry tracing when an OTLP endpoint is configured. Idempotent."""
    settings = settings or relay_settings()
    if not settings.otel_endpoint:
        return
    if trace.get_tracer_provider() and not isinstance(trace.get_tracer_provider(), trace.ProxyTracerProvider):
        logger.info("📈 OpenTelemetry instrumentation already initialized. Skipping reconfiguration.")
        return

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource(attributes={SERVICE_NAME: settings.service_name})
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_endpoint)))
    trace.set_tracer_provider(tracer_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)
    app.state.tracer_provider = tracer_provider
    logger.info("📈 OpenTelemetry instrumentation configured.")


async def _check_database_ready(max_retries: int = 5, base_delay: int = 2) -> None:
    """Poll the database connection until ready with exponential backoff and jitter."""
    for attempt in range(max_retries):
        try:
            async with async_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("✅ Database connection successful.")
            return
        except (SQLAlchemyError, OSError) as e:
            wait_time = base_delay * (2 ** attempt)
            jitter = random.uniform(0, 0.5)
            total_wait = wait_time + jitter
            logger.warning(f"Database not ready (attempt {attempt + 1}/{max_retries}): {e}. Retrying in {total_wait:.2f}s...")
            await asyncio.sleep(total_wait)
    raise RuntimeError("❌ Database not ready after multiple attempts.")


async def init_service_startup(app: FastAPI) -> None:
    """Check the database, apply migrations and mark the service ready."""
    app.state.is_ready = False
    settings = relay_settings()
    tracer = trace.get_tracer(__name__)
    logger.info(f"🚀 Initializing {settings.service_name} ({settings.environment})...")

    for key, value in settings.safe_dict().items():
        logger.info(f"    {key}: {value}")

    with tracer.start_as_current_span("db.readiness_check"):
        await _check_database_ready()

    if settings.auto_migrate:
        with tracer.start_as_current_span("db.run_migrations"):
            await run_alembic_migrations(settings.database_url)

    app.state.is_ready = True
    logger.info(f"✅ {settings.service_name} startup completed successfully.")


async def shutdown_service(app: FastAPI) -> None:
    """Close the shared upstream client, the engine and span processors."""
    components = getattr(app.state, "components", None)
    if components is not None:
        await components.upstream.aclose()
        logger.info("🔌 Upstream HTTP client closed.")
    await async_engine.dispose()

    tracer_provider = getattr(app.state, "tracer_provider", None)
    if tracer_provider:
        tracer_provider.shutdown()
        logger.info("🧹 OpenTelemetry instrumentation shut down gracefully.")
