"""
FastAPI application entry point.

Admin server for the dilemma scheduler.
Optional API key authentication.
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI

from .. import __version__
from ..infra.config import SchedulerSettings
from ..infra.logging_config import setup_logging
from ._scheduler_state import (
    init_scheduler_service,
    shutdown_scheduler_service,
)
from .dependencies.auth import verify_api_key
from .routers import scheduler


# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


async def startup_scheduler() -> None:
    """Build the scheduler service from the environment; start it if configured."""
    settings = SchedulerSettings.from_env()
    setup_logging(settings.log_level, settings.log_dir)

    service = init_scheduler_service(settings)

    if settings.autostart:
        service.start()
    else:
        logger.info("Scheduler initialized, waiting for POST /scheduler/start")


async def shutdown_scheduler() -> None:
    shutdown_scheduler_service()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates the scheduler service on startup and stops it on shutdown.
    """
    await startup_scheduler()

    yield

    await shutdown_scheduler()


tags_metadata = [
    {
        "name": "scheduler",
        "description": "Scheduler control plane - workers, queue inspection, maintenance and item scheduling",
    },
]

app = FastAPI(
    title="Dilemma Scheduler API",
    lifespan=lifespan,
    description="""
## Dilemma Scheduler API

Admin API for the job scheduler that publishes each daily dilemma and
reveals its results.

### Authentication
When `API_AUTH_ENABLED=true`, all endpoints except `/health` require
an `X-API-Key` header matching the `API_KEY` environment variable.

### Usage
```bash
# Start server
uvicorn dilemma.api.main:app --host 127.0.0.1 --port 8000

# Schedule a dilemma (reveal defaults to 20:00 local time)
curl -X PUT http://localhost:8000/scheduler/items/abc123 \\
  -H "Content-Type: application/json" \\
  -H "X-API-Key: your-api-key" \\
  -d '{"publish_at": "2026-03-01T00:00:00+01:00"}'
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


# verify_api_key passes everything through while API_AUTH_ENABLED is off
app.include_router(
    scheduler.router,
    prefix="/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(verify_api_key)],
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
