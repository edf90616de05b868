"""
Sandbox API - push generated files and inspect the preview sandbox

POST   /sandbox/{project_id}/files   replace the project's files and run a pipeline tick
GET    /sandbox/{project_id}/status  lifecycle state, preview URL, failure and heal info
DELETE /sandbox/{project_id}         destroy the sandbox
"""

from fastapi import APIRouter, Depends

from healloop.api.deps import get_sandbox_registry
from healloop.core.exceptions import ProjectNotFoundError
from healloop.core.logging_config import logger
from healloop.modules.sandbox.lifecycle import SandboxRegistry
from healloop.schemas.sandbox import FilesSyncRequest, SandboxStatusResponse


router = APIRouter(prefix="/sandbox", tags=["Sandbox"])


@router.post("/{project_id}/files", response_model=SandboxStatusResponse)
async def sync_files(
    project_id: str,
    request: FilesSyncRequest,
    registry: SandboxRegistry = Depends(get_sandbox_registry),
):
    """
    Replace the project's generated files and run one pipeline tick.

    The tick is skipped while generating, when nothing changed, or when a
    build is already in flight; the returned status says where things stand.
    """
    workspace = registry.workspace(project_id)
    workspace.clear()
    workspace.update({f.path: f.content for f in request.files})

    manager = registry.get_or_create(project_id)
    ran = await manager.on_files_changed(request.files, is_generating=request.is_generating)
    logger.info(
        f"[Sandbox:{project_id}] Received {len(request.files)} files, pipeline {'ran' if ran else 'skipped'}",
        extra={"file_count": len(request.files), "is_generating": request.is_generating}
    )
    return SandboxStatusResponse(**manager.get_status())


@router.get("/{project_id}/status", response_model=SandboxStatusResponse)
async def get_sandbox_status(
    project_id: str,
    registry: SandboxRegistry = Depends(get_sandbox_registry),
):
    """Current lifecycle state of the project's sandbox"""
    manager = registry.get(project_id)
    if manager is None:
        raise ProjectNotFoundError(project_id)
    return SandboxStatusResponse(**manager.get_status())


@router.delete("/{project_id}")
async def destroy_sandbox(
    project_id: str,
    registry: SandboxRegistry = Depends(get_sandbox_registry),
):
    """Destroy the project's sandbox and drop its files"""
    if not await registry.remove(project_id):
        raise ProjectNotFoundError(project_id)
    return {"success": True, "project_id": project_id}
