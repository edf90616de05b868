from healloop.schemas.sandbox import ProjectFile, FilesSyncRequest, SandboxStatusResponse
from healloop.schemas.execution import CheckpointReference, ExecutionRequest
from healloop.schemas.pain import PainAnalyzeRequest, PainSignalResponse

__all__ = [
    "ProjectFile",
    "FilesSyncRequest",
    "SandboxStatusResponse",
    "CheckpointReference",
    "ExecutionRequest",
    "PainAnalyzeRequest",
    "PainSignalResponse",
]
