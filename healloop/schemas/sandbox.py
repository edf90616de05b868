from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ProjectFile(BaseModel):
    """A single materialized file produced by a generation cycle"""
    path: str = Field(..., min_length=1)
    content: str = ""


class FilesSyncRequest(BaseModel):
    files: List[ProjectFile] = Field(default_factory=list)
    is_generating: bool = False


class SandboxStatusResponse(BaseModel):
    project_id: str
    state: str
    server_url: Optional[str] = None
    framework: Optional[str] = None
    last_build_fingerprint: Optional[str] = None
    error: Optional[str] = None
    build_failure: Optional[Dict[str, Any]] = None
    verification: Dict[str, Any] = Field(default_factory=dict)
    pending_heal: Optional[Dict[str, Any]] = None
