"""HTTP API routes for the agent cluster.

This module defines the endpoints for submitting tasks, inspecting the live
node tree, reading monitor and cluster events, terminating nodes, and
managing the guidance templates workers execute under.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, Body, HTTPException, Path, status

from events.types import ClusterEvent
from models.schemas import (
    HealthResponse,
    MonitorEventsResponse,
    MonitorStats,
    NodeDetailResponse,
    NodeSummary,
    SubmitTaskRequest,
    TaskResponse,
    TemplateRequest,
    TemplateResponse,
    TerminateNodeRequest,
)
from swarm.errors import ClusterError, PersistenceFailureError

if TYPE_CHECKING:
    from swarm.node import AgentNode
    from swarm.runtime import ClusterRuntime

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_summary(node: AgentNode) -> NodeSummary:
    """Project a live node onto the listing schema."""
    return NodeSummary(
        id=node.id,
        name=node.name,
        kind=node.kind,
        status=node.status,
        parent_id=node.parent_id,
        children_ids=list(node.children),
        error_count=node.error_count,
        last_error=node.last_error,
        updated_at=node.updated_at,
    )


def _require_node(runtime: ClusterRuntime, node_id: str) -> AgentNode:
    node = runtime.get_node(node_id)
    if node is None:
        logger.warning("node_not_found", node_id=node_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Node {node_id} not found",
        )
    return node


# Cluster runtime dependency (set during application startup)
_cluster_runtime: ClusterRuntime | None = None


def set_cluster_runtime(runtime: ClusterRuntime | None) -> None:
    """Set the cluster runtime instance for the routes.

    This should be called during application startup to inject the runtime
    dependency, and with ``None`` on shutdown.

    Args:
        runtime: The ClusterRuntime instance to use for all routes.
    """
    global _cluster_runtime
    _cluster_runtime = runtime
    logger.info("cluster_runtime_configured", configured=runtime is not None)


def get_cluster_runtime() -> ClusterRuntime:
    """Get the cluster runtime instance.

    Returns:
        The configured ClusterRuntime instance.

    Raises:
        RuntimeError: If the runtime has not been configured.
    """
    if _cluster_runtime is None:
        logger.error("cluster_runtime_not_configured")
        raise RuntimeError(
            "ClusterRuntime not configured. Call set_cluster_runtime() during startup."
        )
    return _cluster_runtime


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------


@router.post(
    "/api/tasks",
    response_model=TaskResponse,
    status_code=status.HTTP_200_OK,
    summary="Submit a task",
    description=(
        "Run a user-level task on an available root coordinator and return the "
        "aggregated result. Task failures are reported in the result, not as errors."
    ),
)
async def submit_task(request: SubmitTaskRequest) -> TaskResponse:
    """Submit a task and wait for its aggregated result.

    Args:
        request: The task description and optional root context.

    Returns:
        TaskResponse with the id of the root that ran it and its result.

    Raises:
        HTTPException: If the cluster could not run the task at all.
    """
    runtime = get_cluster_runtime()

    try:
        root, result = await runtime.submit_task(request.description, request.context)
    except ClusterError as e:
        logger.error("task_submission_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to run task: {e}",
        ) from e

    logger.info(
        "task_submission_finished",
        root_id=root.id,
        task_id=result.task_id,
        success=result.success,
    )
    return TaskResponse(root_id=root.id, result=result)


# -----------------------------------------------------------------------------
# Nodes
# -----------------------------------------------------------------------------


@router.get(
    "/api/nodes",
    response_model=list[NodeSummary],
    summary="List nodes",
    description="List every node in the live tree, roots first, depth first.",
)
async def list_nodes() -> list[NodeSummary]:
    runtime = get_cluster_runtime()
    return [_to_summary(node) for node in runtime.list_nodes()]


@router.get(
    "/api/nodes/{node_id}",
    response_model=NodeDetailResponse,
    summary="Get node details",
    description="Get the full snapshot of a node and its monitor statistics.",
)
async def get_node(
    node_id: Annotated[str, Path(description="The node ID")],
) -> NodeDetailResponse:
    """Get the snapshot of a single node.

    Raises:
        HTTPException: If the node is not in the live tree.
    """
    node = _require_node(get_cluster_runtime(), node_id)
    return NodeDetailResponse(
        state=node.get_state(),
        monitor=MonitorStats(**node.monitor.get_stats()),
    )


@router.get(
    "/api/nodes/{node_id}/monitor",
    response_model=MonitorEventsResponse,
    summary="Get monitor events",
    description="Get the most recent watchdog events of a node, oldest first.",
)
async def get_monitor_events(
    node_id: Annotated[str, Path(description="The node ID")],
) -> MonitorEventsResponse:
    node = _require_node(get_cluster_runtime(), node_id)
    return MonitorEventsResponse(node_id=node.id, events=node.monitor.get_event_history())


@router.post(
    "/api/nodes/{node_id}/terminate",
    response_model=NodeSummary,
    summary="Terminate a node",
    description="Terminate a node and all of its descendants. Repeated calls are no-ops.",
)
async def terminate_node(
    node_id: Annotated[str, Path(description="The node ID")],
    request: Annotated[TerminateNodeRequest | None, Body()] = None,
) -> NodeSummary:
    """Terminate a node.

    Raises:
        HTTPException: If the node is not in the live tree.
    """
    node = _require_node(get_cluster_runtime(), node_id)
    reason = request.reason if request is not None else TerminateNodeRequest().reason

    await node.terminate(reason)
    logger.info("node_terminated_via_api", node_id=node_id, reason=reason)
    return _to_summary(node)


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------


def _store_unavailable(e: PersistenceFailureError) -> HTTPException:
    logger.error("template_store_failed", error=str(e))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Template store unavailable: {e}",
    )


@router.get(
    "/api/templates",
    response_model=list[str],
    summary="List templates",
    description="List the names of stored worker guidance templates.",
)
async def list_templates() -> list[str]:
    try:
        return await get_cluster_runtime().store.list_templates()
    except PersistenceFailureError as e:
        raise _store_unavailable(e) from e


@router.get(
    "/api/templates/{name}",
    response_model=TemplateResponse,
    summary="Get a template",
)
async def get_template(
    name: Annotated[str, Path(description="The template name")],
) -> TemplateResponse:
    try:
        content = await get_cluster_runtime().store.load_template(name)
    except PersistenceFailureError as e:
        raise _store_unavailable(e) from e
    if content is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Template {name} not found",
        )
    return TemplateResponse(name=name, content=content)


@router.put(
    "/api/templates/{name}",
    response_model=TemplateResponse,
    summary="Store a template",
    description=(
        "Create or replace a guidance template. Workers configured with this "
        "template load it when they are initialized."
    ),
)
async def save_template(
    name: Annotated[str, Path(description="The template name", max_length=100)],
    request: TemplateRequest,
) -> TemplateResponse:
    try:
        await get_cluster_runtime().store.save_template(name, request.content)
    except PersistenceFailureError as e:
        raise _store_unavailable(e) from e
    logger.info("template_saved", name=name, length=len(request.content))
    return TemplateResponse(name=name, content=request.content)


@router.delete(
    "/api/templates/{name}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a template",
)
async def delete_template(
    name: Annotated[str, Path(description="The template name")],
) -> None:
    try:
        await get_cluster_runtime().store.delete_template(name)
    except PersistenceFailureError as e:
        raise _store_unavailable(e) from e
    logger.info("template_deleted", name=name)


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@router.get(
    "/api/events",
    response_model=list[ClusterEvent],
    summary="Get cluster events",
    description="Get the buffered event history of this cluster, oldest first.",
)
async def get_cluster_events() -> list[ClusterEvent]:
    runtime = get_cluster_runtime()
    return runtime.event_bus.get_event_history(runtime.cluster_id)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check if the service is healthy and its store is initialized.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns:
        HealthResponse with status, timestamp and cluster details.
    """
    runtime = get_cluster_runtime()
    return HealthResponse(
        status="healthy" if runtime.started else "unhealthy",
        timestamp=time.time(),
        cluster_id=runtime.cluster_id,
        oracle=type(runtime.oracle).__name__,
        node_count=len(runtime.list_nodes()),
    )
