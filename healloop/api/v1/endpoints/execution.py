"""
Agent Execution API - streamed generation turns

POST /execution/stream          run a task, NDJSON progress events
POST /execution/{project}/heal  run the project's pending heal request

While a turn streams, the project's sandbox is marked as generating, so no
build cycle or heal fires mid-write. Overlapping turns are counted and the
flag clears only when the last one ends. When a stream ends the workspace
files are handed to the sandbox pipeline as a background task.
"""

import asyncio
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from healloop.api.deps import ExecutorFactory, get_executor_factory, get_sandbox_registry
from healloop.core.logging_config import logger, set_project_id
from healloop.modules.sandbox.lifecycle import SandboxRegistry
from healloop.schemas.execution import CheckpointReference, ExecutionRequest
from healloop.services.execution_retry import ExecutionRetryEngine
from healloop.services.progress_stream import ProgressChannel, encode_event


router = APIRouter(prefix="/execution", tags=["Execution"])

NDJSON_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _rebuild_after_generation(registry: SandboxRegistry, project_id: str) -> None:
    manager = registry.get_or_create(project_id)
    files = registry.workspace_files(project_id)
    await manager.on_files_changed(files, is_generating=False)


def _stream_execution(
    registry: SandboxRegistry,
    executor_factory: ExecutorFactory,
    project_id: str,
    agent_id: str,
    task: str,
    checkpoint: Optional[CheckpointReference] = None,
) -> StreamingResponse:
    set_project_id(project_id)
    manager = registry.get_or_create(project_id)
    manager.begin_generation()

    channel = ProgressChannel()
    engine = ExecutionRetryEngine(executor_factory(registry.workspace(project_id)))

    async def event_stream() -> AsyncIterator[str]:
        runner = asyncio.create_task(engine.run(channel, agent_id, task, checkpoint=checkpoint))
        try:
            async for event in channel:
                yield encode_event(event)
        finally:
            if not runner.done():
                runner.cancel()
            channel.close()
            manager.end_generation()

    logger.info(f"[Execution:{project_id}] Streaming agent {agent_id}, task_len={len(task)}")
    return StreamingResponse(
        event_stream(),
        media_type="application/x-ndjson",
        headers=NDJSON_HEADERS,
        background=BackgroundTask(_rebuild_after_generation, registry, project_id),
    )


@router.post("/stream")
async def stream_execution(
    request: ExecutionRequest,
    registry: SandboxRegistry = Depends(get_sandbox_registry),
    executor_factory: ExecutorFactory = Depends(get_executor_factory),
):
    """Run one agent turn with retries, streaming progress as NDJSON"""
    return _stream_execution(
        registry,
        executor_factory,
        request.project_id,
        request.agent_id,
        request.task,
        checkpoint=request.checkpoint,
    )


@router.post("/{project_id}/heal")
async def stream_heal(
    project_id: str,
    agent_id: str = "architect",
    registry: SandboxRegistry = Depends(get_sandbox_registry),
    executor_factory: ExecutorFactory = Depends(get_executor_factory),
):
    """Run the pending heal request as the next generation turn"""
    manager = registry.get(project_id)
    if manager is None or manager.coordinator is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Project not found: {project_id}")

    heal = manager.coordinator.take_pending()
    if heal is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No pending heal request")

    logger.log_heal_event(project_id, True, reason="heal turn started", signal_id=heal.signal_id)
    return _stream_execution(registry, executor_factory, project_id, agent_id, heal.error)
