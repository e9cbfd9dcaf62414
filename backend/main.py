"""FastAPI application entry point for the agent cluster backend.

This module initializes the FastAPI application with its middleware, routes
and cluster runtime.

Usage:
    uv run uvicorn main:app --reload
    uv run python main.py "Build a CLI that converts CSV files to JSON"
"""

import asyncio
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_cluster_runtime
from config import configure_logging, settings
from swarm.runtime import ClusterRuntime

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Creates the cluster runtime on startup and terminates every node on
    shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
        cluster_id=settings.cluster_id,
    )

    runtime = ClusterRuntime()
    await runtime.start()
    set_cluster_runtime(runtime)
    app.state.cluster_runtime = runtime

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await runtime.close()
    set_cluster_runtime(None)
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Agent Cluster",
    description="Control plane for a hierarchical cluster of LLM agents: "
    "coordinators decompose tasks, workers execute and self-test them.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["cluster"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points at the API documentation."""
    return {
        "message": "Agent Cluster API",
        "docs": "/docs",
        "health": "/health",
    }


async def run_once(description: str) -> str:
    """Run a single task on a fresh runtime and return its result as JSON."""
    runtime = ClusterRuntime()
    try:
        root_node, result = await runtime.submit_task(description)
        logger.info("cli_task_finished", root_id=root_node.id, success=result.success)
        return result.model_dump_json(indent=2)
    finally:
        await runtime.close()


if __name__ == "__main__":
    if len(sys.argv) > 1:
        print(asyncio.run(run_once(" ".join(sys.argv[1:]))))
    else:
        import uvicorn

        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.backend_port,
            reload=True,
            log_level=settings.log_level.lower(),
        )
