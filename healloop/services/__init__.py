from healloop.services.pain_detector import PainDetector, PainSignal, format_for_ai
from healloop.services.auto_heal import AutoHealCoordinator, PendingHealRequest
from healloop.services.progress_stream import ProgressChannel
from healloop.services.execution_retry import ExecutionRetryEngine, AgentExecutor

__all__ = [
    "PainDetector",
    "PainSignal",
    "format_for_ai",
    "AutoHealCoordinator",
    "PendingHealRequest",
    "ProgressChannel",
    "ExecutionRetryEngine",
    "AgentExecutor",
]
