"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from usage_orders.api.routes import router
from usage_orders.config import load_settings
from usage_orders.database import Base, SessionLocal, engine
from usage_orders.logging_config import configure_logging
# Import models to register them with SQLAlchemy Base
from usage_orders.models import audit, domain  # noqa: F401
from usage_orders.services.container import Services, build_services, start_jobs
from usage_orders.services.errors import RefusalError, StaleOrderError

logger = structlog.get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the app. Without ``services`` the lifespan wires them from the
    environment and starts the periodic jobs when the scheduler is enabled.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            settings = load_settings()
            configure_logging(json_output=settings.log_json, level=settings.log_level)
            Base.metadata.create_all(bind=engine)
            app.state.services = build_services(settings, SessionLocal)
            if settings.scheduler_enabled:
                start_jobs(app.state.services)
        else:
            app.state.services = services
        logger.info("app_started", owned_services=owned)
        yield
        if owned:
            app.state.services.shutdown()
        logger.info("app_stopped")

    app = FastAPI(
        title="Usage Orders",
        description="Order lifecycle with timeout detection, exception classification and remediation workflows.",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Enable CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RefusalError)
    def refusal_handler(request: Request, exc: RefusalError):
        return JSONResponse(status_code=409, content={"detail": {"message": exc.message}})

    @app.exception_handler(StaleOrderError)
    def stale_handler(request: Request, exc: StaleOrderError):
        return JSONResponse(status_code=409, content={"detail": {"message": str(exc)}})

    @app.exception_handler(LookupError)
    def not_found_handler(request: Request, exc: LookupError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    def bad_request_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(router, prefix="/api", tags=["orders"])

    # Health check
    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": "usage-orders"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
