"""
Build failure diagnostics.

Turns a raw failure message from any pipeline stage into a BuildFailure with a
category, the stage it happened in and one actionable next step. Matching is
substring based and ordered: infra, then dependency, then code.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class BuildFailureCategory(str, Enum):
    INFRA = "infra"
    DEPENDENCY = "dependency"
    CODE = "code"
    UNKNOWN = "unknown"


class BuildFailureStage(str, Enum):
    BOOT = "boot"
    SYNC = "sync"
    INSTALL = "install"
    RUNTIME_START = "runtime_start"
    HOST_PROBE = "host_probe"
    RUNTIME_VALIDATION = "runtime_validation"
    UNKNOWN = "unknown"


OWNERSHIP_MARKERS: Tuple[str, ...] = (
    "sandbox ownership could not be verified",
    "sandbox_ownership_unverified",
    "sandbox does not belong to current user",
)

CATEGORY_MARKERS: Tuple[Tuple[BuildFailureCategory, Tuple[str, ...]], ...] = (
    (BuildFailureCategory.INFRA, OWNERSHIP_MARKERS + (
        "forbidden",
        "sandbox not found",
        "docker api error",
        "no such container",
    )),
    (BuildFailureCategory.DEPENDENCY, (
        "dependency install failed",
        "npm install",
        "unable to resolve dependency tree",
        "enoent",
        "lockfile",
    )),
    (BuildFailureCategory.CODE, (
        "dev server exited early",
        "dev server failed to start",
        "preview host not ready",
        "runtime validation failed",
        "build failed",
        "typescript",
        "eslint",
    )),
)

ACTIONABLE_FIXES: Dict[BuildFailureCategory, str] = {
    BuildFailureCategory.INFRA: "Retry runtime setup with a fresh sandbox.",
    BuildFailureCategory.DEPENDENCY: "Fix dependency issues in package.json/lockfile, then rerun `npm install`.",
    BuildFailureCategory.CODE: "Fix the runtime/build error in generated code, then rerun the dev server.",
    BuildFailureCategory.UNKNOWN: "Open the runtime log, capture the first failing line, and retry the build.",
}

OWNERSHIP_FIX = "Recreate the sandbox and retry once. If it repeats, start a fresh build session."

CATEGORY_LABELS: Dict[BuildFailureCategory, str] = {
    BuildFailureCategory.INFRA: "Infrastructure",
    BuildFailureCategory.DEPENDENCY: "Dependency",
    BuildFailureCategory.CODE: "Code",
    BuildFailureCategory.UNKNOWN: "Unknown",
}


@dataclass
class BuildFailure:
    category: BuildFailureCategory
    stage: BuildFailureStage
    command: Optional[str]
    message: str
    exact_log_line: str
    actionable_fix: str
    auto_recovery_attempted: bool = False
    auto_recovery_succeeded: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["stage"] = self.stage.value
        return data


def is_sandbox_ownership_failure(message: str) -> bool:
    normalized = message.lower()
    return any(marker in normalized for marker in OWNERSHIP_MARKERS)


def classify_build_failure(
    message: str,
    stage: BuildFailureStage = BuildFailureStage.UNKNOWN,
    command: Optional[str] = None,
    exact_log_line: Optional[str] = None,
    auto_recovery_attempted: bool = False,
    auto_recovery_succeeded: Optional[bool] = None,
    category: Optional[BuildFailureCategory] = None,
) -> BuildFailure:
    """Classify a pipeline failure by message markers unless the caller already knows the category"""
    normalized = message.lower()

    if category is None:
        category = BuildFailureCategory.UNKNOWN
        for candidate, markers in CATEGORY_MARKERS:
            if any(marker in normalized for marker in markers):
                category = candidate
                break

    if category == BuildFailureCategory.INFRA and is_sandbox_ownership_failure(message):
        actionable_fix = OWNERSHIP_FIX
    else:
        actionable_fix = ACTIONABLE_FIXES[category]

    return BuildFailure(
        category=category,
        stage=stage,
        command=command,
        message=message,
        exact_log_line=exact_log_line or message,
        actionable_fix=actionable_fix,
        auto_recovery_attempted=auto_recovery_attempted,
        auto_recovery_succeeded=auto_recovery_succeeded,
    )


def _auto_retry_line(failure: BuildFailure) -> str:
    if not failure.auto_recovery_attempted:
        return "No"
    if failure.auto_recovery_succeeded is True:
        return "Yes (succeeded)"
    if failure.auto_recovery_succeeded is False:
        return "Yes (failed)"
    return "Yes (in progress)"


def format_build_failure_summary(goal: str, file_count: int, failure: BuildFailure) -> str:
    """Markdown summary shown to the user when a build cycle fails"""
    file_label = "file" if file_count == 1 else "files"
    command_label = f"`{failure.command}`" if failure.command else "`n/a`"

    return "\n".join([
        "**Goal**",
        f"- {goal}",
        "",
        "**What changed**",
        f"- {file_count} {file_label} were generated for this build.",
        "",
        "**What passed**",
        "- File generation completed.",
        "",
        "**What failed**",
        f"- {CATEGORY_LABELS[failure.category]} failure during `{failure.stage.value}`.",
        f"- Command: {command_label}",
        f"- Exact log: `{failure.exact_log_line}`",
        "",
        "**Auto-retry done?**",
        f"- {_auto_retry_line(failure)}",
        "",
        "**Next action**",
        f"- {failure.actionable_fix}",
    ])
