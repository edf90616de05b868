from pydantic import BaseModel, Field
from typing import List, Optional


class CheckpointReference(BaseModel):
    """Opaque resumption marker handed over by the agent orchestrator"""
    id: str
    scopes: List[str] = Field(default_factory=list)


class ExecutionRequest(BaseModel):
    agent_id: str = "architect"
    task: str = Field(..., min_length=1)
    project_id: str = "default"
    checkpoint: Optional[CheckpointReference] = None
