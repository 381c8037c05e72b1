"""
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import settings
from .domain.refresh.models import RefreshPhase
from .wiring import bootstrap

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    configure_logging()
    logger.info("Starting trendkeeper API...")

    control = bootstrap.get_refresh_control()
    if settings.refresh_autostart:
        result = await control.start()
        logger.info(result.message)
    else:
        logger.info("Continuous refresh autostart disabled; use POST /api/v1/admin/refresh/start")

    yield

    # Shutdown
    logger.info("Shutting down trendkeeper API...")
    await bootstrap.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Trendkeeper API",
    description="Continuously refreshed popularity dataset per item and region",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Trendkeeper API",
        "version": __version__,
        "docs": "/docs",
        "status": "running",
    }


@app.get("/livez")
async def liveness():
    """Liveness probe - zero dependencies, confirms process is responsive."""
    return {"status": "ok"}


@app.get("/readyz")
async def readiness():
    """Readiness probe - checks the dataset location and reports the scheduler phase.

    A stopped scheduler is not unhealthy: the dataset is still served.
    """
    checks = {}
    healthy = True

    data_path = Path(settings.data_path)
    if data_path.exists():
        try:
            with data_path.open("rb") as stream:
                stream.read(1)
            checks["dataset"] = "ok"
        except OSError as e:
            checks["dataset"] = f"error: {type(e).__name__}"
            healthy = False
    elif data_path.parent.exists():
        checks["dataset"] = "ok: not created yet"
    else:
        checks["dataset"] = "warning: data directory missing"

    phase = bootstrap.get_refresh_scheduler().phase
    checks["scheduler"] = phase.value

    status_label = "ok" if healthy else "unhealthy"
    if healthy and phase is RefreshPhase.PAUSED:
        status_label = "degraded"

    return JSONResponse(
        content={"status": status_label, "checks": checks},
        status_code=200 if healthy else 503,
    )


# Include API routers
from .api.v1.router import router as api_router  # noqa: E402
app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "trendkeeper.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
