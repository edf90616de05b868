from pydantic import BaseModel, Field
from typing import List, Optional


class PainAnalyzeRequest(BaseModel):
    lines: List[str] = Field(default_factory=list)
    source: str = Field("terminal", pattern=r"^(terminal|browser)$")


class PainSignalResponse(BaseModel):
    id: str
    type: str
    severity: str
    message: str
    context: str
    file: Optional[str] = None
    line: Optional[int] = None
    suggestion: Optional[str] = None
    timestamp: int
    prompt: str
