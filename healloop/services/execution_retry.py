"""
Execution Retry Engine

Runs one agent turn through an AgentExecutor, streaming its text and tool
activity into a ProgressChannel, and retries transient failures:

    attempt 1 ──fail──► classify ──retryable & attempt < max──► retry event, sleep, attempt 2 (+ strict directive)
                            └──────── otherwise ──────────────► error event, close

Classification is an ordered rule list over the lowercased error text; the
first rule that matches decides the type, retryability and delay.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from healloop.core.config import settings
from healloop.core.exceptions import AgentExecutionError, NoMutationError
from healloop.core.logging_config import logger
from healloop.schemas.execution import CheckpointReference
from healloop.services.progress_stream import (
    ProgressChannel,
    error_event,
    proof_event,
    retry_event,
    text_event,
    tool_call_event,
    tool_result_event,
    usage_event,
)


class ExecutionErrorType(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    CONTEXT_LENGTH = "context_length"
    TIMEOUT = "timeout"
    TOOL_ERROR = "tool_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedExecutionError:
    type: ExecutionErrorType
    message: str
    retryable: bool
    retry_after_ms: Optional[int] = None


@dataclass(frozen=True)
class ExecutionErrorRule:
    type: ExecutionErrorType
    markers: Tuple[str, ...]
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None


# First match wins
EXECUTION_ERROR_RULES: List[ExecutionErrorRule] = [
    ExecutionErrorRule(
        ExecutionErrorType.AUTH,
        ("credit balance", "billing", "purchase credits"),
        "API credits exhausted. Add credits to the model provider account and try again.",
    ),
    ExecutionErrorRule(
        ExecutionErrorType.AUTH,
        ("api key", "authentication", "unauthorized"),
        "API key not configured. Please add ANTHROPIC_API_KEY to the environment.",
    ),
    ExecutionErrorRule(
        ExecutionErrorType.RATE_LIMIT,
        ("rate limit", "429", "too many requests"),
        "Rate limited. Retrying in a moment...",
        retryable=True,
        retry_after_ms=settings.RATE_LIMIT_RETRY_DELAY_MS,
    ),
    ExecutionErrorRule(
        ExecutionErrorType.CONTEXT_LENGTH,
        ("context length", "too long", "maximum"),
        "Message too long. Try breaking your request into smaller parts.",
    ),
    ExecutionErrorRule(
        ExecutionErrorType.TIMEOUT,
        ("timeout", "timed out"),
        "Request timed out. Please try again.",
        retryable=True,
        retry_after_ms=settings.TIMEOUT_RETRY_DELAY_MS,
    ),
]

TOOL_ERROR_MESSAGE = "The agent planned but did not write any files. Retrying in strict execution mode."
DEFAULT_RETRY_DELAY_MS = 1000

STRICT_EXECUTION_DIRECTIVE = (
    "STRICT EXECUTION MODE: The previous attempt ended without completing the task. "
    "Do not restate the plan or ask questions. Use the file tools now to write the "
    "concrete changes, then stop."
)

MUTATING_TOOLS = frozenset({
    "create_file",
    "edit_file",
    "write_file",
    "delete_file",
    "apply_patch",
    "run_command",
    "install_package",
})

FILE_OUTPUT_PATTERN = re.compile(
    r"\b(build|create|make|implement|add|fix|update|generate|write|edit|change|refactor|scaffold)\b",
    re.IGNORECASE,
)


def classify_execution_error(error: BaseException) -> ClassifiedExecutionError:
    """Classify an exception raised by an agent turn"""
    # The message embeds the agent id, so marker matching must not see it
    if isinstance(error, NoMutationError):
        return ClassifiedExecutionError(
            ExecutionErrorType.TOOL_ERROR,
            TOOL_ERROR_MESSAGE,
            retryable=True,
            retry_after_ms=settings.TOOL_ERROR_RETRY_DELAY_MS,
        )

    raw_message = str(error) or type(error).__name__
    text = f"{type(error).__name__} {raw_message}".lower()

    for rule in EXECUTION_ERROR_RULES:
        if any(marker in text for marker in rule.markers):
            return ClassifiedExecutionError(rule.type, rule.message, rule.retryable, rule.retry_after_ms)

    return ClassifiedExecutionError(ExecutionErrorType.UNKNOWN, raw_message, retryable=False)


def task_requires_file_output(task: str) -> bool:
    return bool(FILE_OUTPUT_PATTERN.search(task or ""))


def with_strict_directive(task: str) -> str:
    return f"{task}\n\n{STRICT_EXECUTION_DIRECTIVE}"


# =============================================================================
# Agent executor protocol
# =============================================================================

@dataclass
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    success: bool
    output: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None


@dataclass
class AgentContextInfo:
    last_replayed_checkpoint_id: Optional[str] = None
    last_replayed_checkpoint_scopes: List[str] = field(default_factory=list)


TextDeltaCallback = Callable[[str], None]
ToolCallCallback = Callable[[ToolCall], None]
ToolResultCallback = Callable[[str, str, Any, float], None]


class AgentExecutor(ABC):
    """Runs one agent turn, reporting text and tool activity through callbacks"""

    @abstractmethod
    async def execute_agent(
        self,
        agent_id: str,
        task: str,
        *,
        on_text_delta: Optional[TextDeltaCallback] = None,
        on_tool_call: Optional[ToolCallCallback] = None,
        on_tool_result: Optional[ToolResultCallback] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AgentResult:
        pass

    def get_context(self) -> Optional[AgentContextInfo]:
        return None


@dataclass
class ExecutionAttempt:
    attempt_number: int
    classified_error: Optional[ExecutionErrorType] = None
    retryable: bool = False
    retry_after_ms: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.classified_error is None


@dataclass
class _TurnStats:
    sent_tool_calls: Set[str] = field(default_factory=set)
    failed_tool_results: int = 0


class ExecutionRetryEngine:
    """
    Bounded retry around a streamed agent turn.

    `sleep` is the only timing dependency; tests pass a recorder instead of
    asyncio.sleep.
    """

    def __init__(
        self,
        executor: AgentExecutor,
        max_retries: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executor = executor
        self.max_retries = max_retries if max_retries is not None else settings.EXECUTION_MAX_RETRIES
        self._sleep = sleep

    def _announce_checkpoint(self, channel: ProgressChannel, checkpoint: Optional[CheckpointReference]) -> None:
        checkpoint_id, scopes = None, []
        if checkpoint is not None:
            checkpoint_id, scopes = checkpoint.id, checkpoint.scopes
        else:
            context = self.executor.get_context()
            if context is not None and context.last_replayed_checkpoint_id:
                checkpoint_id = context.last_replayed_checkpoint_id
                scopes = context.last_replayed_checkpoint_scopes

        if checkpoint_id:
            scope_text = f" ({', '.join(scopes)})" if scopes else ""
            channel.send(text_event(f"Resuming from checkpoint {checkpoint_id}{scope_text}\n"))

    async def _execute_once(
        self,
        channel: ProgressChannel,
        agent_id: str,
        task: str,
        instructions: str,
        stats: _TurnStats,
    ) -> AgentResult:
        def on_text_delta(delta: str) -> None:
            channel.send(text_event(delta))

        def on_tool_call(call: ToolCall) -> None:
            if call.id in stats.sent_tool_calls:
                return
            stats.sent_tool_calls.add(call.id)
            channel.send(tool_call_event(call.id, call.name, call.args))

        def on_tool_result(call_id: str, name: str, result: Any, duration: float) -> None:
            output = result if isinstance(result, str) else str(result)
            success = not output.startswith("Error:")
            if not success:
                stats.failed_tool_results += 1
            channel.send(tool_result_event(call_id, success, output, duration))

        result = await self.executor.execute_agent(
            agent_id,
            instructions,
            on_text_delta=on_text_delta,
            on_tool_call=on_tool_call,
            on_tool_result=on_tool_result,
        )

        if not result.success:
            raise AgentExecutionError(agent_id, result.output or "Agent execution failed")

        mutations = [c for c in result.tool_calls if c.name in MUTATING_TOOLS]
        if not mutations and task_requires_file_output(task):
            raise NoMutationError(agent_id)
        return result

    def _proof(self, result: AgentResult, stats: _TurnStats) -> List[Dict[str, str]]:
        mutations = sum(1 for c in result.tool_calls if c.name in MUTATING_TOOLS)
        return [
            {"label": "Agent turn completed", "status": "verified"},
            {
                "label": f"{mutations} file change{'s' if mutations != 1 else ''} applied",
                "status": "verified" if mutations else "warning",
            },
            {
                "label": "Tool calls succeeded",
                "status": "failed" if stats.failed_tool_results else "verified",
            },
        ]

    async def run(
        self,
        channel: ProgressChannel,
        agent_id: str,
        task: str,
        checkpoint: Optional[CheckpointReference] = None,
    ) -> List[ExecutionAttempt]:
        """
        Execute the task, retrying retryable failures, and close the channel.

        Emits exactly one terminal outcome: an `error` event, or a normal
        close after `usage`/`proof`. Returns the attempt history.
        """
        attempts: List[ExecutionAttempt] = []
        attempt = 1
        instructions = task

        self._announce_checkpoint(channel, checkpoint)
        try:
            while True:
                stats = _TurnStats()
                try:
                    result = await self._execute_once(channel, agent_id, task, instructions, stats)
                except Exception as e:
                    classified = classify_execution_error(e)
                    retry_after_ms = classified.retry_after_ms or DEFAULT_RETRY_DELAY_MS
                    attempts.append(ExecutionAttempt(
                        attempt_number=attempt,
                        classified_error=classified.type,
                        retryable=classified.retryable,
                        retry_after_ms=classified.retry_after_ms,
                    ))

                    if classified.retryable and attempt < self.max_retries:
                        logger.log_retry(attempt, self.max_retries, classified.type.value, retry_after_ms,
                                         agent_id=agent_id)
                        channel.send(retry_event(attempt, self.max_retries, retry_after_ms))
                        await self._sleep(retry_after_ms / 1000)
                        attempt += 1
                        instructions = with_strict_directive(task)
                        continue

                    logger.error(
                        f"Execution failed [{classified.type.value}] after {attempt} attempt(s): {e}",
                        extra={
                            "event_type": "execution_error",
                            "error_type": classified.type.value,
                            "retryable": classified.retryable,
                            "attempt": attempt,
                            "agent_id": agent_id,
                        }
                    )
                    channel.send(error_event(classified.type.value, classified.message, classified.retryable))
                    return attempts

                attempts.append(ExecutionAttempt(attempt_number=attempt))
                if result.usage:
                    channel.send(usage_event(
                        result.usage.get("input_tokens", 0),
                        result.usage.get("output_tokens", 0),
                        result.usage.get("estimated_cost", 0.0),
                        result.usage.get("provider"),
                    ))
                channel.send(proof_event(self._proof(result, stats)))
                logger.log_agent_event(agent_id, f"completed in {attempt} attempt(s)",
                                       tokens_used=(result.usage or {}).get("output_tokens", 0))
                return attempts
        finally:
            channel.close()
