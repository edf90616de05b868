"""
HealLoop - Test Configuration and Fixtures

The sandbox backend and agent executor are replaced by in-memory fakes so the
lifecycle, retry and API layers can be exercised without Docker or the
Claude API.
"""
import os
import asyncio
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-api-key")

from healloop.modules.sandbox.backends import (
    CommandResult,
    SandboxBackend,
    SandboxHandle,
    SandboxProcess,
)
from healloop.core.exceptions import SandboxCommandError, SandboxError, SandboxOwnershipError
from healloop.modules.sandbox.runtime_validation import is_runtime_validation_command
from healloop.schemas.sandbox import ProjectFile
from healloop.services.execution_retry import AgentExecutor, AgentResult, ToolCall


# =============================================================================
# CLOCK
# =============================================================================

class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# SANDBOX BACKEND
# =============================================================================

class FakeProcess(SandboxProcess):
    """
    Scripted dev server.

    Emits `lines`, then exits with `exit_code`. With exit_code=None the
    process keeps running after its output until kill() is called.
    """

    def __init__(self, lines: Sequence[str] = (), exit_code: Optional[int] = None):
        self._lines = list(lines)
        self.exit_code = exit_code
        self.killed = False
        self._finished = asyncio.Event()

    async def lines(self):
        for line in self._lines:
            await asyncio.sleep(0)
            if self.killed:
                return
            yield line
        if self.exit_code is not None:
            self._finished.set()

    async def wait(self) -> Optional[int]:
        await self._finished.wait()
        return self.exit_code

    async def kill(self) -> None:
        self.killed = True
        self._finished.set()


class FakeSandboxBackend(SandboxBackend):
    """In-memory sandbox that records every call it receives"""

    def __init__(self):
        self.created: List[str] = []
        self.destroyed: List[str] = []
        self.files: Dict[str, Dict[str, str]] = {}
        self.dirs: Dict[str, Set[str]] = {}
        self.commands: List[str] = []
        self.terminated: List[str] = []
        self.started: List[str] = []
        self.host_lookups: List[int] = []
        self.processes: List[FakeProcess] = []
        self.validations: List[str] = []
        self.write_attempts: int = 0

        # Scripting knobs
        self.boot_error: Optional[str] = None
        self.command_results: Dict[str, CommandResult] = {}
        self.hang_commands: Set[str] = set()
        self.command_errors: Dict[str, str] = {}
        self.write_errors: List[str] = []
        self.validation_results: List[CommandResult] = []
        self.revoked: Set[str] = set()
        self.process_lines: List[str] = ["  ▲ Next.js 16.1.6", "   - Local:        http://localhost:3000"]
        self.process_exit_code: Optional[int] = None
        self.host_url: Optional[str] = "http://localhost:32768"

    def _check(self, sandbox_id: str) -> None:
        if sandbox_id in self.revoked or sandbox_id not in self.files:
            raise SandboxOwnershipError(sandbox_id)

    async def create(self, project_id: str) -> SandboxHandle:
        if self.boot_error:
            raise SandboxError(self.boot_error)
        sandbox_id = f"sbx-{len(self.created) + 1}"
        self.created.append(sandbox_id)
        self.files[sandbox_id] = {}
        self.dirs[sandbox_id] = set()
        return SandboxHandle(sandbox_id=sandbox_id, runtime_version="node:20-alpine")

    async def make_dir(self, sandbox_id: str, path: str) -> None:
        self._check(sandbox_id)
        self.dirs[sandbox_id].add(path)

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        self._check(sandbox_id)
        self.write_attempts += 1
        if self.write_errors:
            raise SandboxError(self.write_errors.pop(0))
        self.files[sandbox_id][path] = content

    async def run_command(self, sandbox_id: str, command: str) -> CommandResult:
        self._check(sandbox_id)
        if is_runtime_validation_command(command):
            self.validations.append(command)
            if self.validation_results:
                return self.validation_results.pop(0)
            return CommandResult(exit_code=0, output="RUNTIME_VALIDATION_OK status=200")

        self.commands.append(command)
        if command in self.command_errors:
            raise SandboxCommandError(command, self.command_errors[command])
        if command in self.hang_commands:
            await asyncio.Event().wait()
        return self.command_results.get(command, CommandResult(exit_code=0, output="added 312 packages"))

    async def terminate_command(self, sandbox_id: str, command: str) -> None:
        self.terminated.append(command)

    async def start_process(self, sandbox_id: str, command: str) -> SandboxProcess:
        self._check(sandbox_id)
        self.started.append(command)
        process = FakeProcess(self.process_lines, self.process_exit_code)
        self.processes.append(process)
        return process

    async def get_host(self, sandbox_id: str, port: int) -> Optional[str]:
        self.host_lookups.append(port)
        return self.host_url

    async def destroy(self, sandbox_id: str) -> None:
        self.destroyed.append(sandbox_id)
        self.files.pop(sandbox_id, None)


# =============================================================================
# AGENT EXECUTOR
# =============================================================================

Outcome = Union[AgentResult, BaseException]


class FakeExecutor(AgentExecutor):
    """
    Returns (or raises) scripted outcomes, one per execute_agent call.

    Tool calls on a returned AgentResult are replayed through the callbacks,
    and `text` is streamed as a single delta before returning.
    """

    def __init__(self, outcomes: Sequence[Outcome], text: str = "Working on it"):
        self.outcomes = list(outcomes)
        self.text = text
        self.tasks: List[str] = []

    async def execute_agent(self, agent_id, task, *, on_text_delta=None, on_tool_call=None,
                            on_tool_result=None, options=None) -> AgentResult:
        self.tasks.append(task)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome

        if on_text_delta and self.text:
            on_text_delta(self.text)
        for call in outcome.tool_calls:
            if on_tool_call:
                on_tool_call(call)
            if on_tool_result:
                on_tool_result(call.id, call.name, f"Created {call.args.get('path', '')}", 3.0)
        return outcome


def mutating_result(path: str = "app/page.tsx", usage: Optional[Dict[str, Any]] = None) -> AgentResult:
    return AgentResult(
        success=True,
        output="Done",
        tool_calls=[ToolCall(id="call-1", name="create_file", args={"path": path, "content": "x"})],
        usage=usage,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> FakeSandboxBackend:
    return FakeSandboxBackend()


@pytest.fixture
def nextjs_files() -> List[ProjectFile]:
    return [
        ProjectFile(
            path="package.json",
            content='{"scripts": {"dev": "next dev"}, "dependencies": {"next": "16.1.6", "react": "19.2.3"}}',
        ),
        ProjectFile(path="app/page.tsx", content="export default function Page() { return <main>Hi</main> }"),
    ]


@pytest.fixture
def vite_files() -> List[ProjectFile]:
    return [
        ProjectFile(
            path="package.json",
            content='{"scripts": {"dev": "vite"}, "devDependencies": {"vite": "^5.0.0"}}',
        ),
        ProjectFile(path="src/App.tsx", content="export default function App() { return null }"),
    ]
