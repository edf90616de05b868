from typing import Callable, Dict

from healloop.modules.sandbox.backends import DockerSandboxBackend
from healloop.modules.sandbox.lifecycle import SandboxRegistry
from healloop.services.execution_retry import AgentExecutor


ExecutorFactory = Callable[[Dict[str, str]], AgentExecutor]

sandbox_registry = SandboxRegistry(DockerSandboxBackend)


def get_sandbox_registry() -> SandboxRegistry:
    return sandbox_registry


def _claude_executor(files: Dict[str, str]) -> AgentExecutor:
    from healloop.utils.claude_client import ClaudeAgentExecutor
    return ClaudeAgentExecutor(files=files)


def get_executor_factory() -> ExecutorFactory:
    return _claude_executor
