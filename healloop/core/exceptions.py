"""
Custom Exceptions for HealLoop
==============================

Use these instead of generic Exception so that:
1. Sandbox failures and execution failures stay in separate families
2. The API layer can turn any HealLoopError into a structured JSON body
3. Retry/heal logic can branch on type instead of string matching

Usage:
    from healloop.core.exceptions import SandboxBootError

    try:
        await backend.create()
    except SandboxError as e:
        raise SandboxBootError(str(e)) from e
"""

from typing import Optional, Any, Dict


class HealLoopError(Exception):
    """Base exception for all HealLoop errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Sandbox Errors
# ============================================

class SandboxError(HealLoopError):
    """Generic sandbox backend failure"""

    def __init__(self, message: str, code: str = "SANDBOX_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class SandboxBootError(SandboxError):
    """Sandbox could not be created"""

    def __init__(self, message: str = "Sandbox failed to boot"):
        super().__init__(message, code="SANDBOX_BOOT_FAILED")


class SandboxOwnershipError(SandboxError):
    """Sandbox no longer belongs to this session (expired, reaped or reassigned)"""

    def __init__(self, sandbox_id: str):
        super().__init__(
            f"Sandbox ownership could not be verified: {sandbox_id}",
            code="SANDBOX_OWNERSHIP_UNVERIFIED",
            details={"sandbox_id": sandbox_id}
        )


class SandboxCommandError(SandboxError):
    """A command inside the sandbox could not be executed at all"""

    def __init__(self, command: str, reason: str):
        super().__init__(
            f"Command '{command}' failed to run: {reason}",
            code="SANDBOX_COMMAND_FAILED",
            details={"command": command}
        )


class DevServerExitedError(SandboxError):
    """Dev server process exited before announcing readiness"""

    def __init__(self, command: str, exit_code: Optional[int], early: bool = True, last_line: str = ""):
        reason = "exited early" if early else "failed to start"
        super().__init__(
            f"Dev server {reason} (exit code {exit_code})",
            code="DEV_SERVER_EXITED",
            details={"command": command, "exit_code": exit_code, "last_line": last_line}
        )
        self.command = command
        self.last_line = last_line


class RuntimeValidationError(SandboxError):
    """Dev server announced readiness but the app does not serve a page"""

    def __init__(self, command: str, details: str):
        super().__init__(
            f"Runtime validation failed: {details[:300]}",
            code="RUNTIME_VALIDATION_FAILED",
            details={"command": command}
        )
        self.command = command
        self.last_line = details


class InvalidStateTransitionError(HealLoopError):
    """Lifecycle state machine refused a transition"""

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            f"Invalid sandbox transition: {from_state} -> {to_state}",
            code="INVALID_STATE_TRANSITION",
            details={"from": from_state, "to": to_state}
        )


# ============================================
# Execution Errors
# ============================================

class ExecutionError(HealLoopError):
    """Agent execution failed"""

    def __init__(self, message: str, code: str = "EXECUTION_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class NoMutationError(ExecutionError):
    """Agent finished a build-style task without calling any file-mutating tool"""

    def __init__(self, agent_id: str):
        super().__init__(
            f"Agent {agent_id} produced no file changes for a task that requires them",
            code="NO_MUTATING_TOOL_CALLS",
            details={"agent_id": agent_id}
        )


class AgentExecutionError(ExecutionError):
    """Agent executor reported an unsuccessful turn"""

    def __init__(self, agent_id: str, message: str):
        super().__init__(message, code="AGENT_EXECUTION_FAILED", details={"agent_id": agent_id})


# ============================================
# Project Errors
# ============================================

class ProjectNotFoundError(HealLoopError):
    """No lifecycle manager exists for the project"""

    def __init__(self, project_id: str):
        super().__init__(
            f"Project not found: {project_id}",
            code="PROJECT_NOT_FOUND",
            details={"project_id": project_id}
        )
