"""
Sandbox Lifecycle Manager

Owns one execution sandbox per project session and drives it through

    IDLE → BOOTING → READY ─┐                     ┌──────── hot sync ────────┐
                 └→ BOOT_FAILED                   ▼                          │
                            └→ SYNCING → INSTALLING → STARTING → RUNNING ────┘
                                  any step ──► ERROR ──► SYNCING (next cycle)

Every writer (sync, install, start) runs under one asyncio.Lock. Dev server
output is consumed by a background task that feeds the pain detector and
never blocks the pipeline.

A rising edge on the "is generating" flag starts a new generation cycle: the
build flags, fingerprints and server URL are cleared so the next tick
re-evaluates from Sync. Processes from the previous cycle are left running
until replaced; their output is no longer acted upon, and a build still in
flight from that cycle records nothing when it finishes.

Once the dev server is up, the root page is requested from inside the
sandbox before the cycle counts as RUNNING.
"""

import asyncio
import posixpath
import re
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from healloop.core.config import settings
from healloop.core.exceptions import (
    DevServerExitedError,
    InvalidStateTransitionError,
    RuntimeValidationError,
    SandboxError,
    SandboxOwnershipError,
)
from healloop.core.logging_config import logger, set_cycle_id
from healloop.schemas.sandbox import ProjectFile
from healloop.modules.sandbox.backends import SandboxBackend, SandboxProcess
from healloop.modules.sandbox.diagnostics import (
    BuildFailure,
    BuildFailureCategory,
    BuildFailureStage,
    classify_build_failure,
)
from healloop.modules.sandbox.fingerprint import (
    FingerprintTracker,
    compute_files_fingerprint,
    hash_content,
)
from healloop.modules.sandbox.install_recovery import (
    PRIMARY_INSTALL_COMMAND,
    is_dependency_resolution_failure,
    is_recovery_command,
    next_install_command,
)
from healloop.modules.sandbox.runtime_profile import (
    RuntimeProfile,
    find_manifest,
    normalize_runtime_path,
    parse_manifest,
    resolve_runtime_profile,
)
from healloop.modules.sandbox.retry_budget import call_with_retry_budget
from healloop.modules.sandbox.runtime_validation import (
    RUNTIME_VALIDATION_OK,
    allow_soft_validation_failure,
    build_runtime_validation_command,
    is_retryable_validation_failure,
)
from healloop.modules.sandbox.scaffold import missing_scaffold_files
from healloop.services.auto_heal import AutoHealCoordinator
from healloop.services.pain_detector import PainDetector, PainSignal, build_failure_signal


class SandboxState(str, Enum):
    IDLE = "idle"
    BOOTING = "booting"
    READY = "ready"
    BOOT_FAILED = "boot_failed"
    SYNCING = "syncing"
    INSTALLING = "installing"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


SANDBOX_TRANSITIONS: Dict[SandboxState, Set[SandboxState]] = {
    SandboxState.IDLE: {SandboxState.BOOTING},
    SandboxState.BOOTING: {SandboxState.READY, SandboxState.BOOT_FAILED},
    SandboxState.BOOT_FAILED: {SandboxState.BOOTING},
    SandboxState.READY: {SandboxState.SYNCING, SandboxState.ERROR},
    SandboxState.SYNCING: {SandboxState.INSTALLING, SandboxState.RUNNING, SandboxState.ERROR},
    SandboxState.INSTALLING: {SandboxState.STARTING, SandboxState.ERROR},
    SandboxState.STARTING: {SandboxState.RUNNING, SandboxState.ERROR},
    SandboxState.RUNNING: {SandboxState.SYNCING, SandboxState.ERROR},
    SandboxState.ERROR: {SandboxState.SYNCING, SandboxState.BOOTING},
}

# Dev server lines that mean "listening"
READY_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"Local:\s*https?://",
        r"ready in \d+",
        r"ready - started server on",
        r"started server on",
        r"compiled client and server",
    )
]


class InstallOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RECOVERED = "recovered"
    TIMED_OUT = "timed_out"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass
class InstallResult:
    outcome: InstallOutcome
    command: str
    attempts: int
    output: str = ""

    @property
    def degraded(self) -> bool:
        return self.outcome not in (InstallOutcome.SUCCEEDED, InstallOutcome.RECOVERED)


@dataclass
class VerificationMetadata:
    environment_verified_at: Optional[str] = None
    runtime_version: Optional[str] = None
    container_hash: Optional[str] = None
    dependencies_locked_at: Optional[str] = None
    dependency_count: Optional[int] = None
    lockfile_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environmentVerifiedAt": self.environment_verified_at,
            "runtimeVersion": self.runtime_version,
            "containerHash": self.container_hash,
            "dependenciesLockedAt": self.dependencies_locked_at,
            "dependencyCount": self.dependency_count,
            "lockfileHash": self.lockfile_hash,
        }


@dataclass
class StateTransition:
    from_state: SandboxState
    to_state: SandboxState
    reason: Optional[str]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


class SandboxLifecycleManager:
    """Per-project sandbox pipeline: boot, sync, install, start, monitor"""

    def __init__(
        self,
        project_id: str,
        backend: SandboxBackend,
        detector: Optional[PainDetector] = None,
        coordinator: Optional[AutoHealCoordinator] = None,
        clock: Callable[[], float] = time.time,
        install_timeout: Optional[float] = None,
        recovery_install_timeout: Optional[float] = None,
        early_exit_seconds: Optional[float] = None,
        startup_timeout: Optional[float] = None,
        runtime_validation: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_history: int = 50,
    ):
        self.project_id = project_id
        self.backend = backend
        self.detector = detector or PainDetector(clock=clock)
        self.coordinator = coordinator
        self._clock = clock

        self.install_timeout = install_timeout if install_timeout is not None else settings.INSTALL_TIMEOUT_SECONDS
        self.recovery_install_timeout = (
            recovery_install_timeout if recovery_install_timeout is not None
            else settings.RECOVERY_INSTALL_TIMEOUT_SECONDS
        )
        self.early_exit_seconds = (
            early_exit_seconds if early_exit_seconds is not None else settings.DEV_SERVER_EARLY_EXIT_SECONDS
        )
        self.startup_timeout = (
            startup_timeout if startup_timeout is not None else settings.RUNTIME_STARTUP_TIMEOUT_SECONDS
        )
        self.runtime_validation = (
            runtime_validation if runtime_validation is not None else settings.RUNTIME_VALIDATION_ENABLED
        )
        self.validation_attempts = max(1, settings.RUNTIME_VALIDATION_ATTEMPTS)
        self.validation_retry_delay = settings.RUNTIME_VALIDATION_RETRY_DELAY_SECONDS
        self.validation_command_timeout = settings.RUNTIME_VALIDATION_COMMAND_TIMEOUT_SECONDS
        self._sleep = sleep

        self._state = SandboxState.IDLE
        self._history: Deque[StateTransition] = deque(maxlen=max_history)
        self._lock = asyncio.Lock()

        # Session state
        self.sandbox_id: Optional[str] = None
        self.verification = VerificationMetadata()
        self.fingerprints = FingerprintTracker()
        self.profile: Optional[RuntimeProfile] = None
        self.server_url: Optional[str] = None
        self.error: Optional[str] = None
        self.build_failure: Optional[BuildFailure] = None
        self.last_install: Optional[InstallResult] = None
        self.is_generating = False
        self.active_generations = 0
        self.build_in_flight = False
        self.cycle = 0
        self.signals: List[PainSignal] = []
        self.output_tail: Deque[str] = deque(maxlen=200)

        self._stage = BuildFailureStage.UNKNOWN
        self._process: Optional[SandboxProcess] = None
        self._monitor_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def can_transition(self, to_state: SandboxState) -> bool:
        return to_state in SANDBOX_TRANSITIONS.get(self._state, set())

    def _transition(self, to_state: SandboxState, reason: Optional[str] = None) -> None:
        if not self.can_transition(to_state):
            raise InvalidStateTransitionError(self._state.value, to_state.value)

        self._history.append(StateTransition(self._state, to_state, reason, self._clock()))
        old_state = self._state
        self._state = to_state
        logger.debug(
            f"[Sandbox:{self.project_id}] {old_state.value} → {to_state.value}"
            + (f" ({reason})" if reason else "")
        )

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Generation cycle tracking
    # ------------------------------------------------------------------

    def set_generating(self, is_generating: bool) -> None:
        """Track the generation flag; a rising edge starts a new cycle"""
        # A caller's False cannot end another caller's generation
        is_generating = is_generating or self.active_generations > 0
        if is_generating and not self.is_generating:
            self.start_new_generation_cycle()
        self.is_generating = is_generating

    def begin_generation(self) -> None:
        self.active_generations += 1
        self.set_generating(True)

    def end_generation(self) -> None:
        """The flag falls only when the last overlapping generation finishes"""
        self.active_generations = max(0, self.active_generations - 1)
        self.set_generating(False)

    def start_new_generation_cycle(self) -> None:
        self.cycle += 1
        set_cycle_id(f"{self.project_id}:{self.cycle}")
        self.build_in_flight = False
        self.fingerprints.reset()
        self.server_url = None
        self.error = None
        self.build_failure = None
        logger.log_sandbox_event(self.project_id, f"new generation cycle #{self.cycle}", self._state.value)

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    async def boot(self) -> bool:
        """Create the sandbox. Failure leaves BOOT_FAILED and is not retried here."""
        self._transition(SandboxState.BOOTING)
        self._stage = BuildFailureStage.BOOT
        try:
            handle = await self.backend.create(self.project_id)
        except SandboxError as e:
            self.error = e.message
            self.build_failure = classify_build_failure(e.message, stage=BuildFailureStage.BOOT)
            self._transition(SandboxState.BOOT_FAILED, reason=e.message)
            logger.error(f"[Sandbox:{self.project_id}] Boot failed: {e.message}")
            return False

        self.sandbox_id = handle.sandbox_id
        self.error = None
        self.verification.environment_verified_at = self._now_iso()
        self.verification.runtime_version = handle.runtime_version
        self.verification.container_hash = handle.sandbox_id
        self._transition(SandboxState.READY)
        logger.log_sandbox_event(self.project_id, "sandbox ready", SandboxState.READY.value,
                                 sandbox_id=handle.sandbox_id)
        return True

    async def _recreate_sandbox(self) -> bool:
        old_id = self.sandbox_id
        await self._stop_dev_server()
        if old_id:
            try:
                await self.backend.destroy(old_id)
            except SandboxError as e:
                logger.warning(f"[Sandbox:{self.project_id}] Could not destroy {old_id}: {e.message}")
        self.sandbox_id = None
        self.fingerprints.last_synced_fingerprint = None
        logger.log_sandbox_event(self.project_id, "recreating sandbox", self._state.value, old_sandbox_id=old_id)
        return await self.boot()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _write_files(self, files: List[ProjectFile]) -> None:
        normalized = [(normalize_runtime_path(f.path), f.content) for f in files]
        parents = sorted({posixpath.dirname(path) for path, _ in normalized if posixpath.dirname(path)})
        for directory in parents:
            await call_with_retry_budget(
                "make_dir", lambda: self.backend.make_dir(self.sandbox_id, directory), sleep=self._sleep
            )
        for path, content in normalized:
            await call_with_retry_budget(
                "write_file", lambda: self.backend.write_file(self.sandbox_id, path, content), sleep=self._sleep
            )

    async def _get_host(self, port: int) -> Optional[str]:
        return await call_with_retry_budget(
            "get_host", lambda: self.backend.get_host(self.sandbox_id, port), sleep=self._sleep
        )

    async def sync(self, files: List[ProjectFile]) -> List[ProjectFile]:
        """
        Write the generated files, then any missing scaffold files.

        Returns the effective file set (generated + scaffold).
        """
        self._stage = BuildFailureStage.SYNC
        profile = resolve_runtime_profile(files)
        scaffold = missing_scaffold_files(profile.framework, files)

        await self._write_files(files)
        if scaffold:
            logger.info(
                f"[Sandbox:{self.project_id}] Adding {len(scaffold)} {profile.framework.value} baseline files",
                extra={"scaffold_files": [f.path for f in scaffold]}
            )
            await self._write_files(scaffold)

        return list(files) + scaffold

    async def hot_sync(self, files: List[ProjectFile], fingerprint: str) -> None:
        """Push changed files into a live sandbox without reinstalling or restarting"""
        cycle = self.cycle
        self._transition(SandboxState.SYNCING, reason="hot sync")
        try:
            await self.sync(files)
        except SandboxError as e:
            self._fail(e.message, category=BuildFailureCategory.INFRA, cycle=cycle)
            return
        if cycle == self.cycle:
            self.fingerprints.mark_synced(fingerprint)
        self._transition(SandboxState.RUNNING, reason="hot sync")
        logger.log_sandbox_event(self.project_id, f"hot synced {len(files)} files", self._state.value)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def _record_dependency_lock(self, files: List[ProjectFile]) -> None:
        manifest_file = find_manifest(files)
        manifest = parse_manifest(manifest_file.content) if manifest_file else None
        count = 0
        if manifest:
            for section in ("dependencies", "devDependencies"):
                if isinstance(manifest.get(section), dict):
                    count += len(manifest[section])

        self.verification.dependencies_locked_at = self._now_iso()
        self.verification.dependency_count = count
        self.verification.lockfile_hash = hash_content(manifest_file.content if manifest_file else "")

    async def install(self, files: List[ProjectFile]) -> InstallResult:
        """
        Install dependencies, escalating only on dependency-resolution failures.

        Never raises for a failed or hung install: timeouts kill the command and
        every outcome proceeds to Start. Backend errors propagate after the
        dependency lock metadata is recorded.
        """
        self._stage = BuildFailureStage.INSTALL
        command = PRIMARY_INSTALL_COMMAND
        attempts = 0
        output = ""
        try:
            while True:
                attempts += 1
                timeout = self.recovery_install_timeout if is_recovery_command(command) else self.install_timeout
                logger.log_sandbox_event(self.project_id, f"running {command}", self._state.value, attempt=attempts)

                try:
                    result = await asyncio.wait_for(self.backend.run_command(self.sandbox_id, command), timeout)
                except asyncio.TimeoutError:
                    await self.backend.terminate_command(self.sandbox_id, command)
                    logger.warning(
                        f"[Sandbox:{self.project_id}] {command} timed out after {timeout}s, continuing without it"
                    )
                    outcome = InstallOutcome.TIMED_OUT
                    break

                output = result.output
                if result.ok:
                    outcome = InstallOutcome.SUCCEEDED if attempts == 1 else InstallOutcome.RECOVERED
                    break

                next_command = next_install_command(command, output)
                if next_command is None:
                    outcome = (
                        InstallOutcome.EXHAUSTED if is_dependency_resolution_failure(output)
                        else InstallOutcome.FAILED
                    )
                    logger.warning(
                        f"[Sandbox:{self.project_id}] {command} failed ({outcome.value}), continuing degraded",
                        extra={"exit_code": result.exit_code}
                    )
                    break

                logger.warning(
                    f"[Sandbox:{self.project_id}] Dependency resolution failed, retrying with {next_command}"
                )
                command = next_command
        finally:
            # Recorded even when the backend fails mid-install
            self._record_dependency_lock(files)
        self.last_install = InstallResult(outcome=outcome, command=command, attempts=attempts, output=output)
        return self.last_install

    # ------------------------------------------------------------------
    # Start & monitor
    # ------------------------------------------------------------------

    async def _stop_dev_server(self) -> None:
        process, self._process = self._process, None
        if process is not None:
            try:
                await process.kill()
            except SandboxError as e:
                logger.warning(f"[Sandbox:{self.project_id}] Could not stop dev server: {e.message}")
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
        self._monitor_task = None

    async def start(self, profile: RuntimeProfile, cycle: Optional[int] = None) -> None:
        """
        Spawn the dev server and wait for it to announce readiness.

        Raises DevServerExitedError if the process dies first and
        RuntimeValidationError if it is ready but serves a broken page.
        Hitting the startup timeout is not an error: the host is probed once
        and the sandbox stays RUNNING either way.

        If a new generation cycle began while waiting, nothing from this
        start is recorded and the sandbox is left without a server URL so
        the next tick rebuilds.
        """
        self._stage = BuildFailureStage.RUNTIME_START
        await self._stop_dev_server()

        cycle = self.cycle if cycle is None else cycle
        ready = asyncio.Event()
        process = await self.backend.start_process(self.sandbox_id, profile.start_command)
        self._process = process
        self._monitor_task = asyncio.create_task(self._consume_output(process, profile, cycle, ready))

        loop = asyncio.get_running_loop()
        started_at = loop.time()
        exit_task = asyncio.ensure_future(process.wait())
        ready_task = asyncio.ensure_future(ready.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, ready_task},
                timeout=self.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (exit_task, ready_task):
                if not task.done():
                    task.cancel()

        if cycle != self.cycle:
            self._supersede(cycle)
            return

        if ready_task in done:
            await self.validate_runtime(profile)
            self._transition(SandboxState.RUNNING, reason="dev server ready")
            logger.log_sandbox_event(self.project_id, f"dev server ready at {self.server_url}", self._state.value)
            return

        if exit_task in done:
            elapsed = loop.time() - started_at
            last_line = self.output_tail[-1] if self.output_tail else ""
            raise DevServerExitedError(
                profile.start_command,
                exit_task.result(),
                early=elapsed < self.early_exit_seconds,
                last_line=last_line,
            )

        self._stage = BuildFailureStage.HOST_PROBE
        server_url = await self._get_host(profile.port)
        if cycle != self.cycle:
            self._supersede(cycle)
            return

        self.server_url = server_url
        if server_url is None:
            self.build_failure = classify_build_failure(
                "Preview host not ready",
                stage=BuildFailureStage.HOST_PROBE,
                command=profile.start_command,
            )
            logger.warning(
                f"[Sandbox:{self.project_id}] No readiness after {self.startup_timeout}s, running without preview URL"
            )
        else:
            await self.validate_runtime(profile)
        self._transition(SandboxState.RUNNING, reason="startup timeout")

    def _supersede(self, cycle: int) -> None:
        self._transition(SandboxState.RUNNING, reason="superseded")
        logger.log_sandbox_event(
            self.project_id, f"build from cycle #{cycle} superseded by cycle #{self.cycle}", self._state.value
        )

    async def validate_runtime(self, profile: RuntimeProfile) -> None:
        """
        Request the root page from inside the sandbox.

        Warm-up failures are retried and, if they persist, accepted with a
        warning. A 5xx page or a code error raises RuntimeValidationError.
        """
        if not self.runtime_validation:
            return

        self._stage = BuildFailureStage.RUNTIME_VALIDATION
        command = build_runtime_validation_command(profile.port, settings.RUNTIME_VALIDATION_FETCH_TIMEOUT_MS)
        details = ""

        for attempt in range(1, self.validation_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self.backend.run_command(self.sandbox_id, command), self.validation_command_timeout
                )
            except asyncio.TimeoutError:
                await self.backend.terminate_command(self.sandbox_id, command)
                details = f"Runtime check timed out after {self.validation_command_timeout}s"
            else:
                if result.ok and RUNTIME_VALIDATION_OK in result.output:
                    logger.log_sandbox_event(self.project_id, "runtime validated", self._state.value,
                                             attempt=attempt)
                    return
                details = result.output.strip() or f"exit code {result.exit_code}"

            if not is_retryable_validation_failure(details):
                break
            if attempt < self.validation_attempts:
                await self._sleep(self.validation_retry_delay)

        if allow_soft_validation_failure(details):
            logger.warning(
                f"[Sandbox:{self.project_id}] Runtime check still failing, treating as warm-up: {details[:200]}"
            )
            return
        raise RuntimeValidationError(command, details)

    async def _consume_output(
        self,
        process: SandboxProcess,
        profile: RuntimeProfile,
        cycle: int,
        ready: asyncio.Event,
    ) -> None:
        try:
            async for line in process.lines():
                self.output_tail.append(line)
                if cycle != self.cycle:
                    continue

                if not ready.is_set() and any(p.search(line) for p in READY_PATTERNS):
                    server_url = await self._get_host(profile.port)
                    if cycle != self.cycle:
                        continue
                    self.server_url = server_url
                    ready.set()

                signal = self.detector.analyze_log(line)
                if signal is not None:
                    self._dispatch_signal(signal, cycle)
        except SandboxError as e:
            logger.warning(f"[Sandbox:{self.project_id}] Output monitor stopped: {e.message}")

    def _dispatch_signal(self, signal: PainSignal, cycle: int) -> None:
        if cycle != self.cycle:
            return
        self.signals.append(signal)
        if self.coordinator is not None:
            self.coordinator.submit(signal, is_generating=self.is_generating)

    # ------------------------------------------------------------------
    # Build cycle
    # ------------------------------------------------------------------

    def _fail(
        self,
        message: str,
        command: Optional[str] = None,
        exact_log_line: Optional[str] = None,
        auto_recovery_attempted: bool = False,
        category: Optional[BuildFailureCategory] = None,
        cycle: Optional[int] = None,
    ) -> None:
        cycle = self.cycle if cycle is None else cycle
        failure = classify_build_failure(
            message,
            stage=self._stage,
            command=command,
            exact_log_line=exact_log_line,
            auto_recovery_attempted=auto_recovery_attempted,
            auto_recovery_succeeded=False if auto_recovery_attempted else None,
            category=category,
        )
        # A failure from a superseded cycle must not overwrite the fresh cycle's state
        if cycle == self.cycle:
            self.error = message
            self.build_failure = failure
        if self.can_transition(SandboxState.ERROR):
            self._transition(SandboxState.ERROR, reason=message)

        logger.error(
            f"[Sandbox:{self.project_id}] Build failed during {failure.stage.value}: {message}",
            extra={"failure_category": failure.category.value}
        )

        # A new generation cannot repair the infrastructure
        if failure.category != BuildFailureCategory.INFRA:
            signal = build_failure_signal(
                message,
                context=failure.exact_log_line,
                suggestion=failure.actionable_fix,
                clock=self._clock,
            )
            self._dispatch_signal(signal, cycle)

    async def _run_pipeline(self, files: List[ProjectFile], fingerprint: str, cycle: int) -> None:
        self._transition(SandboxState.SYNCING)
        effective = await self.sync(files)
        if cycle == self.cycle:
            self.fingerprints.mark_synced(fingerprint)

        self.profile = resolve_runtime_profile(effective)
        self._transition(SandboxState.INSTALLING)
        await self.install(effective)

        self._transition(SandboxState.STARTING)
        await self.start(self.profile, cycle)

    async def run_build_cycle(self, files: List[ProjectFile], fingerprint: Optional[str] = None) -> bool:
        """
        Full Sync → Install → Start. Returns True if the sandbox ends up RUNNING
        for the generation cycle the build started in.
        """
        fingerprint = fingerprint or compute_files_fingerprint(files)
        cycle = self.cycle
        self.fingerprints.mark_build_attempt(fingerprint)
        self.error = None
        self.build_failure = None
        started_at = self._clock()
        recreated = False

        while True:
            try:
                await self._run_pipeline(files, fingerprint, cycle)
                if cycle != self.cycle:
                    return False
                logger.log_performance(
                    f"build cycle {self.project_id}", (self._clock() - started_at) * 1000,
                    threshold_ms=self.startup_timeout * 1000,
                )
                return True
            except SandboxOwnershipError as e:
                if recreated:
                    self._fail(e.message, auto_recovery_attempted=True, cycle=cycle)
                    return False
                recreated = True
                if self.can_transition(SandboxState.ERROR):
                    self._transition(SandboxState.ERROR, reason=e.message)
                if not await self._recreate_sandbox():
                    return False
            except (DevServerExitedError, RuntimeValidationError) as e:
                self._fail(e.message, command=e.command, exact_log_line=e.last_line or None,
                           auto_recovery_attempted=recreated, cycle=cycle)
                return False
            except SandboxError as e:
                # Raised by the backend itself, never by the generated code
                self._fail(e.message, auto_recovery_attempted=recreated, category=BuildFailureCategory.INFRA,
                           cycle=cycle)
                return False

    async def on_files_changed(self, files: List[ProjectFile], is_generating: bool = False) -> bool:
        """
        Pipeline tick. Returns True if a build cycle or hot sync ran.

        Skips while generating, while a build is in flight, on an empty file
        set, after a failed boot, and when the fingerprint has not changed.
        """
        self.set_generating(is_generating)
        if self.is_generating or not files or self.build_in_flight:
            return False
        if self._state == SandboxState.BOOT_FAILED:
            return False

        fingerprint = compute_files_fingerprint(files)
        live = self._state == SandboxState.RUNNING and self.server_url is not None
        if live and not self.fingerprints.needs_sync(fingerprint):
            return False
        if not live and not self.fingerprints.needs_rebuild(fingerprint):
            return False

        self.build_in_flight = True
        try:
            async with self._lock:
                if self._state == SandboxState.IDLE and not await self.boot():
                    return False
                if live:
                    await self.hot_sync(files, fingerprint)
                else:
                    await self.run_build_cycle(files, fingerprint)
            return True
        finally:
            self.build_in_flight = False

    async def shutdown(self) -> None:
        await self._stop_dev_server()
        if self.sandbox_id:
            await self.backend.destroy(self.sandbox_id)
            logger.log_sandbox_event(self.project_id, "sandbox destroyed", self._state.value)
        self.sandbox_id = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "state": self._state.value,
            "server_url": self.server_url,
            "framework": self.profile.framework.value if self.profile else None,
            "last_build_fingerprint": self.fingerprints.last_build_fingerprint,
            "error": self.error,
            "build_failure": self.build_failure.to_dict() if self.build_failure else None,
            "verification": self.verification.to_dict(),
            "pending_heal": (
                self.coordinator.pending.to_dict()
                if self.coordinator is not None and self.coordinator.pending else None
            ),
        }


class SandboxRegistry:
    """One lifecycle manager per project for the API layer"""

    def __init__(self, backend_factory: Callable[[], SandboxBackend]):
        self._backend_factory = backend_factory
        self._backend: Optional[SandboxBackend] = None
        self._managers: Dict[str, SandboxLifecycleManager] = {}
        self._workspaces: Dict[str, Dict[str, str]] = {}

    def workspace(self, project_id: str) -> Dict[str, str]:
        """Mutable path -> content map holding the project's current generated files"""
        return self._workspaces.setdefault(project_id, {})

    def workspace_files(self, project_id: str) -> List[ProjectFile]:
        return [ProjectFile(path=path, content=content) for path, content in self.workspace(project_id).items()]

    @property
    def backend(self) -> SandboxBackend:
        if self._backend is None:
            self._backend = self._backend_factory()
        return self._backend

    def get(self, project_id: str) -> Optional[SandboxLifecycleManager]:
        return self._managers.get(project_id)

    def get_or_create(self, project_id: str) -> SandboxLifecycleManager:
        manager = self._managers.get(project_id)
        if manager is None:
            manager = SandboxLifecycleManager(
                project_id,
                self.backend,
                coordinator=AutoHealCoordinator(project_id),
            )
            self._managers[project_id] = manager
        return manager

    async def remove(self, project_id: str) -> bool:
        """Destroy the project's sandbox and forget its workspace"""
        manager = self._managers.pop(project_id, None)
        self._workspaces.pop(project_id, None)
        if manager is None:
            return False
        await manager.shutdown()
        return True

    async def shutdown_all(self) -> None:
        for project_id, manager in list(self._managers.items()):
            try:
                await manager.shutdown()
            except SandboxError as e:
                logger.warning(f"[SandboxRegistry] Shutdown failed for {project_id}: {e.message}")
        self._managers.clear()
        self._workspaces.clear()
