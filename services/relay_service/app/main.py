from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from shared.errors import (
    ServiceError,
    http_exception_handler,
    request_validation_handler,
    service_error_handler,
    unhandled_exception_handler,
)

from .dependencies import build_components
from .middleware import setup_middleware
from .routes import register_routes
from .settings import relay_settings
from .startup import init_service_startup, setup_instrumentation, setup_logging, shutdown_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Perform async initialization tasks before the app starts serving requests
    await init_service_startup(app)
    yield
    # Release the upstream pool, database engine and tracing on shutdown
    await shutdown_service(app)


def create_app() -> FastAPI:
    # Missing required configuration raises here, before anything is served
    settings = relay_settings()
    setup_logging(settings)
    app = FastAPI(title="Chat Relay Service", version="0.1.0", lifespan=lifespan)
    # Key material and connection pools are built once and live for the process
    app.state.components = build_components(settings)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    setup_middleware(app, settings)
    setup_instrumentation(app, settings)
    register_routes(app)
    return app


# Explicitly create the FastAPI app instance to be used by ASGI servers
app = create_app()
