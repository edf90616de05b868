from healloop.modules.sandbox.lifecycle import (
    SandboxLifecycleManager,
    SandboxRegistry,
    SandboxState,
)
from healloop.modules.sandbox.backends import SandboxBackend, DockerSandboxBackend

__all__ = [
    "SandboxLifecycleManager",
    "SandboxRegistry",
    "SandboxState",
    "SandboxBackend",
    "DockerSandboxBackend",
]
