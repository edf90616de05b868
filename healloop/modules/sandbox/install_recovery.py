"""
Install Recovery Escalator

Only npm dependency-resolution failures (ERESOLVE and peer conflicts) are
escalated. Network errors, timeouts and anything else return None and the
caller proceeds without a stricter install.
"""

from typing import List, Optional


PRIMARY_INSTALL_COMMAND = "npm install"

INSTALL_ESCALATION: List[str] = [
    PRIMARY_INSTALL_COMMAND,
    "npm install --legacy-peer-deps",
    "npm install --force",
]

RESOLUTION_FAILURE_MARKERS = (
    "eresolve",
    "unable to resolve dependency tree",
    "conflicting peer dependency",
    "peer dependency",
)


def is_dependency_resolution_failure(output: str) -> bool:
    normalized = (output or "").lower()
    return any(marker in normalized for marker in RESOLUTION_FAILURE_MARKERS)


def next_install_command(current_command: str, output: str) -> Optional[str]:
    """
    Return the next stricter install command after current_command failed.

    Stateless: the caller tracks how far it has escalated and stops on None.
    """
    if not is_dependency_resolution_failure(output):
        return None

    try:
        index = INSTALL_ESCALATION.index(current_command.strip())
    except ValueError:
        return None

    if index + 1 >= len(INSTALL_ESCALATION):
        return None
    return INSTALL_ESCALATION[index + 1]


def is_recovery_command(command: str) -> bool:
    return command.strip() != PRIMARY_INSTALL_COMMAND
