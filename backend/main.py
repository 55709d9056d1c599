import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api import ask, auth, conversations, profiles
from core.config import Settings
from core.errors import AssistantError
from core.logging_config import get_logger, setup_logging
from core.metrics import PrometheusMiddleware
from core.websocket_manager import ConversationEvents
from services.container import ServiceContainer

logger = get_logger(__name__)

ContainerFactory = Callable[[Settings, ConversationEvents], ServiceContainer]


def default_container_factory(settings: Settings, events: ConversationEvents) -> ServiceContainer:
    return ServiceContainer.build(settings, events=events)


def create_app(
    settings: Optional[Settings] = None,
    container_factory: ContainerFactory = default_container_factory,
) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    events = ConversationEvents(settings.cors_origins)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting risk assistant", extra={"log_level": settings.log_level})
        container = container_factory(settings, events)
        app.state.container = container
        logger.info("Application startup complete")
        try:
            yield
        finally:
            container.close()
            logger.info("Application shutdown complete")

    app = FastAPI(title="Risk Assistant", lifespan=lifespan)

    # Request timing middleware (log slow requests)
    @app.middleware("http")
    async def log_request_time(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        if duration > 1.0:
            logger.warning("Slow request detected", extra={
                "method": request.method,
                "path": request.url.path,
                "duration_seconds": round(duration, 3),
                "status_code": response.status_code
            })
        else:
            logger.info("Request completed", extra={
                "method": request.method,
                "path": request.url.path,
                "duration_seconds": round(duration, 3),
                "status_code": response.status_code
            })

        response.headers["X-Process-Time"] = str(round(duration, 3))
        return response

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error occurred", extra={
            "errors": exc.errors(),
            "path": request.url.path,
            "method": request.method
        })
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(AssistantError)
    async def assistant_error_handler(request: Request, exc: AssistantError):
        logger.error("Request failed", extra={
            "error_type": type(exc).__name__,
            "error": str(exc),
            "path": request.url.path,
            "method": request.method
        })
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    app.include_router(auth.router)
    app.include_router(ask.router)
    app.include_router(conversations.router)
    app.include_router(profiles.router)

    app.mount('/socket.io', events.asgi_app())

    @app.get("/")
    def root():
        return {"message": "Backend is running"}

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": "risk-assistant-backend",
            "timestamp": time.time()
        }

    return app


app = create_app()
