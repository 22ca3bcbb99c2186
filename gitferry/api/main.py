"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gitferry.api.routes import router
from gitferry.config import get_settings
from gitferry.database.session import close_db, init_db
from gitferry.errors import PipelineError
from gitferry.pipeline.service import PipelineService


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


def _error_response(status_code: int, error_type: str, message: str, details: dict | None = None) -> JSONResponse:
    error: dict = {"type": error_type, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    ]
    return _error_response(
        400,
        "VALIDATION_ERROR",
        "Invalid request: " + "; ".join(problems),
        {"errors": problems},
    )


def create_app(service: PipelineService | None = None) -> FastAPI:
    """Build the application; pass ``service`` to run against a prepared instance."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        owns_service = getattr(app.state, "service", None) is None
        if owns_service:
            if settings.environment == "development":
                await init_db()
                logger.info("Database initialized")
            app.state.service = PipelineService(settings=settings)

        yield

        # Shutdown
        logger.info("Shutting down...")
        if owns_service:
            await app.state.service.shutdown()
            await close_db()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="gitferry API - move code from GitHub into GitLab merge requests",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.service = service

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Include routes
    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gitferry.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
