"""
Unit Tests for the Sandbox Lifecycle Manager

Comprehensive tests covering:
1. State machine transitions and boot
2. Full Sync -> Install -> Start cycles for both frameworks
3. Pipeline guards (generating, in flight, unchanged fingerprint, failed boot)
4. Hot sync and generation-cycle resets
5. Install timeout, escalation and degraded modes
6. Dev server exits, startup timeouts and ownership recreation
7. Post-readiness runtime validation and backend retry budgets
"""
import asyncio

import pytest

from healloop.core.exceptions import InvalidStateTransitionError
from healloop.modules.sandbox.backends import CommandResult
from healloop.modules.sandbox.diagnostics import BuildFailureCategory, BuildFailureStage
from healloop.modules.sandbox.fingerprint import hash_content
from healloop.modules.sandbox.lifecycle import (
    InstallOutcome,
    SandboxLifecycleManager,
    SandboxRegistry,
    SandboxState,
)
from healloop.modules.sandbox.runtime_profile import NEXTJS_PROFILE, VITE_PROFILE
from healloop.schemas.sandbox import ProjectFile
from healloop.services.auto_heal import AutoHealConfig, AutoHealCoordinator
from healloop.services.pain_detector import PainType, build_failure_signal


ERESOLVE = "npm ERR! code ERESOLVE\nnpm ERR! ERESOLVE unable to resolve dependency tree"


async def no_sleep(seconds: float) -> None:
    return None


def make_manager(backend, clock, **kwargs) -> SandboxLifecycleManager:
    coordinator = AutoHealCoordinator(
        "proj-1", config=AutoHealConfig(enabled=True, cooldown_seconds=30), clock=clock
    )
    options = {
        "install_timeout": 1.0,
        "recovery_install_timeout": 1.0,
        "early_exit_seconds": 7.0,
        "startup_timeout": 1.0,
        "sleep": no_sleep,
    }
    options.update(kwargs)
    return SandboxLifecycleManager("proj-1", backend, coordinator=coordinator, clock=clock, **options)


def states(manager):
    return [t.to_state for t in manager.history]


# =============================================================================
# STATE MACHINE & BOOT
# =============================================================================
class TestStateMachine:
    """Test transition rules and boot"""

    async def test_initial_state_is_idle(self, backend, clock):
        """Test a new manager starts IDLE and may only boot"""
        manager = make_manager(backend, clock)
        assert manager.state == SandboxState.IDLE
        assert manager.can_transition(SandboxState.BOOTING)
        assert not manager.can_transition(SandboxState.RUNNING)

    async def test_invalid_transition_raises(self, backend, clock):
        """Test an illegal transition raises and leaves the state alone"""
        manager = make_manager(backend, clock)
        with pytest.raises(InvalidStateTransitionError):
            manager._transition(SandboxState.RUNNING)
        assert manager.state == SandboxState.IDLE

    async def test_boot_success_records_environment(self, backend, clock):
        """Test a successful boot goes READY and stamps verification metadata"""
        manager = make_manager(backend, clock)
        assert await manager.boot() is True

        assert manager.state == SandboxState.READY
        assert manager.sandbox_id == "sbx-1"
        assert manager.verification.environment_verified_at is not None
        assert manager.verification.runtime_version == "node:20-alpine"
        assert manager.verification.container_hash == "sbx-1"
        assert states(manager) == [SandboxState.BOOTING, SandboxState.READY]

    async def test_boot_failure_is_terminal_for_the_session(self, backend, clock, nextjs_files):
        """Test a failed boot goes BOOT_FAILED and later ticks do nothing"""
        backend.boot_error = "Docker API error: daemon not running"
        manager = make_manager(backend, clock)

        assert await manager.on_files_changed(nextjs_files) is False
        assert manager.state == SandboxState.BOOT_FAILED
        assert manager.build_failure.stage == BuildFailureStage.BOOT
        assert manager.build_failure.category == BuildFailureCategory.INFRA

        backend.boot_error = None
        assert await manager.on_files_changed(nextjs_files + [ProjectFile(path="x.ts")]) is False
        assert backend.created == []


# =============================================================================
# BUILD CYCLE
# =============================================================================
class TestBuildCycle:
    """Test the full Sync -> Install -> Start pipeline"""

    async def test_nextjs_cycle_reaches_running(self, backend, clock, nextjs_files):
        """Test a Next.js project is synced, installed and started"""
        manager = make_manager(backend, clock)

        assert await manager.on_files_changed(nextjs_files) is True

        assert manager.state == SandboxState.RUNNING
        assert manager.server_url == "http://localhost:32768"
        assert manager.profile == NEXTJS_PROFILE
        assert backend.commands == ["npm install"]
        assert backend.started == [NEXTJS_PROFILE.start_command]
        assert states(manager) == [
            SandboxState.BOOTING, SandboxState.READY, SandboxState.SYNCING,
            SandboxState.INSTALLING, SandboxState.STARTING, SandboxState.RUNNING,
        ]

    async def test_vite_cycle_uses_vite_profile(self, backend, clock, vite_files):
        """Test a Vite project starts the Vite dev server and looks up port 5173"""
        backend.process_lines = ["  VITE v6.0.0  ready in 312 ms", "  ➜  Local:   http://localhost:5173/"]
        manager = make_manager(backend, clock)

        await manager.on_files_changed(vite_files)

        assert manager.state == SandboxState.RUNNING
        assert backend.started == [VITE_PROFILE.start_command]
        assert backend.host_lookups == [5173]

    async def test_sync_adds_scaffold_without_overwriting(self, backend, clock, nextjs_files):
        """Test missing baseline files are written and generated files are kept"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        written = backend.files["sbx-1"]
        assert written["package.json"] == nextjs_files[0].content
        assert written["app/page.tsx"] == nextjs_files[1].content
        assert "app/layout.tsx" in written
        assert "tsconfig.json" in written
        assert "app" in backend.dirs["sbx-1"]

    async def test_dependency_lock_is_recorded(self, backend, clock, nextjs_files):
        """Test install records the dependency count and manifest hash"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        assert manager.verification.dependencies_locked_at is not None
        assert manager.verification.dependency_count == 2
        assert manager.verification.lockfile_hash == hash_content(nextjs_files[0].content)
        assert manager.fingerprints.last_build_fingerprint == manager.fingerprints.last_synced_fingerprint

    async def test_status_snapshot(self, backend, clock, nextjs_files):
        """Test get_status exposes state, URL, framework and camelCase verification"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        status = manager.get_status()
        assert status["state"] == "running"
        assert status["framework"] == "nextjs"
        assert status["server_url"] == "http://localhost:32768"
        assert status["verification"]["dependencyCount"] == 2
        assert status["build_failure"] is None
        assert status["pending_heal"] is None

    async def test_failed_cycle_recovers_on_next_change(self, backend, clock, nextjs_files):
        """Test a project in ERROR rebuilds once its files change"""
        backend.process_lines = ["> next dev"]
        backend.process_exit_code = 1
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)
        assert manager.state == SandboxState.ERROR

        backend.process_lines = ["   - Local:        http://localhost:3000"]
        backend.process_exit_code = None
        fixed = nextjs_files + [ProjectFile(path="app/layout.tsx", content="export default 1")]
        assert await manager.on_files_changed(fixed) is True
        assert manager.state == SandboxState.RUNNING
        assert manager.error is None


# =============================================================================
# GUARDS
# =============================================================================
class TestPipelineGuards:
    """Test when a pipeline tick is skipped"""

    async def test_skips_while_generating(self, backend, clock, nextjs_files):
        """Test no work happens while a generation is in flight"""
        manager = make_manager(backend, clock)
        assert await manager.on_files_changed(nextjs_files, is_generating=True) is False
        assert backend.created == []

    async def test_skips_empty_file_set(self, backend, clock):
        """Test an empty file set never boots a sandbox"""
        manager = make_manager(backend, clock)
        assert await manager.on_files_changed([]) is False
        assert manager.state == SandboxState.IDLE

    async def test_skips_when_build_in_flight(self, backend, clock, nextjs_files):
        """Test a tick during an in-flight build is ignored"""
        manager = make_manager(backend, clock)
        manager.build_in_flight = True
        assert await manager.on_files_changed(nextjs_files) is False
        assert backend.created == []

    async def test_same_fingerprint_is_built_once(self, backend, clock, nextjs_files):
        """Test unchanged files do not trigger a second cycle"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)
        assert await manager.on_files_changed(list(reversed(nextjs_files))) is False

        assert backend.created == ["sbx-1"]
        assert len(backend.started) == 1

    async def test_failed_fingerprint_is_not_retried(self, backend, clock, nextjs_files):
        """Test a failed build is not retried until the files change"""
        backend.process_exit_code = 1
        backend.process_lines = ["> next dev"]
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)
        assert await manager.on_files_changed(nextjs_files) is False
        assert len(backend.started) == 1


# =============================================================================
# HOT SYNC & GENERATION CYCLES
# =============================================================================
class TestHotSyncAndCycles:
    """Test live updates and the generation rising edge"""

    async def test_changed_files_hot_sync_into_running_sandbox(self, backend, clock, nextjs_files):
        """Test a change to a live sandbox is synced without reinstalling or restarting"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        edited = [nextjs_files[0], ProjectFile(path="app/page.tsx", content="export default () => 'v2'")]
        assert await manager.on_files_changed(edited) is True

        assert manager.state == SandboxState.RUNNING
        assert backend.files["sbx-1"]["app/page.tsx"] == "export default () => 'v2'"
        assert backend.commands == ["npm install"]
        assert len(backend.started) == 1
        assert manager.history[-2].reason == "hot sync"

    async def test_rising_edge_resets_cycle_state(self, backend, clock, nextjs_files):
        """Test a new generation clears fingerprints, URL and failure"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        manager.set_generating(True)

        assert manager.cycle == 1
        assert manager.server_url is None
        assert manager.fingerprints.last_build_fingerprint is None
        assert manager.fingerprints.last_synced_fingerprint is None

    async def test_holding_generating_does_not_start_new_cycles(self, backend, clock):
        """Test only the rising edge increments the cycle"""
        manager = make_manager(backend, clock)
        manager.set_generating(True)
        manager.set_generating(True)
        manager.set_generating(False)
        assert manager.cycle == 1

    async def test_same_files_rebuild_after_new_generation(self, backend, clock, nextjs_files):
        """Test the same files get a full cycle again after a generation"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        manager.set_generating(True)
        assert await manager.on_files_changed(nextjs_files, is_generating=False) is True

        assert len(backend.started) == 2
        assert backend.commands == ["npm install", "npm install"]
        assert backend.processes[0].killed is True
        assert manager.state == SandboxState.RUNNING

    async def test_build_superseded_by_new_generation_is_rebuilt(self, backend, clock, nextjs_files):
        """Test a build overtaken by a new generation leaves nothing live, so the next tick reinstalls"""
        backend.process_lines = ["> next dev"]
        manager = make_manager(backend, clock, startup_timeout=0.1)

        build = asyncio.create_task(manager.on_files_changed(nextjs_files))
        while not backend.started:
            await asyncio.sleep(0)
        manager.set_generating(True)
        manager.set_generating(False)
        await build

        assert manager.state == SandboxState.RUNNING
        assert manager.history[-1].reason == "superseded"
        assert manager.server_url is None
        assert manager.fingerprints.last_synced_fingerprint is None
        assert backend.host_lookups == []

        with_zod = [
            ProjectFile(
                path="package.json",
                content='{"scripts": {"dev": "next dev"}, '
                        '"dependencies": {"next": "16.1.6", "react": "19.2.3", "zod": "^3.23.0"}}',
            ),
            nextjs_files[1],
        ]
        assert await manager.on_files_changed(with_zod) is True

        assert backend.commands == ["npm install", "npm install"]
        assert len(backend.started) == 2
        assert manager.server_url == "http://localhost:32768"

    async def test_overlapping_generations_hold_the_flag(self, backend, clock, nextjs_files):
        """Test the flag stays up until the last of several overlapping generations ends"""
        manager = make_manager(backend, clock)
        manager.begin_generation()
        manager.begin_generation()
        manager.end_generation()

        assert manager.is_generating is True
        assert await manager.on_files_changed(nextjs_files, is_generating=False) is False
        assert backend.created == []

        manager.end_generation()
        assert manager.is_generating is False
        assert manager.cycle == 1
        assert await manager.on_files_changed(nextjs_files) is True
        assert manager.state == SandboxState.RUNNING

    async def test_stale_cycle_signals_are_dropped(self, backend, clock):
        """Test signals tagged with a previous cycle are not dispatched"""
        manager = make_manager(backend, clock)
        manager.set_generating(True)
        manager.set_generating(False)

        manager._dispatch_signal(build_failure_signal("old", "old", clock=clock), cycle=0)
        assert manager.signals == []
        assert manager.coordinator.pending is None


# =============================================================================
# INSTALL
# =============================================================================
class TestInstall:
    """Test install outcomes; every outcome proceeds to Start"""

    async def test_install_timeout_degrades_and_continues(self, backend, clock, nextjs_files):
        """Test a hung install is killed and the dev server still starts"""
        backend.hang_commands = {"npm install"}
        manager = make_manager(backend, clock, install_timeout=0.05)

        await manager.on_files_changed(nextjs_files)

        assert manager.last_install.outcome == InstallOutcome.TIMED_OUT
        assert manager.last_install.degraded
        assert backend.terminated == ["npm install"]
        assert manager.state == SandboxState.RUNNING
        assert manager.verification.dependencies_locked_at is not None

    async def test_resolution_failure_escalates(self, backend, clock, nextjs_files):
        """Test ERESOLVE retries with --legacy-peer-deps"""
        backend.command_results["npm install"] = CommandResult(exit_code=1, output=ERESOLVE)
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert backend.commands == ["npm install", "npm install --legacy-peer-deps"]
        assert manager.last_install.outcome == InstallOutcome.RECOVERED
        assert manager.last_install.attempts == 2
        assert not manager.last_install.degraded

    async def test_escalation_exhausted_still_starts(self, backend, clock, nextjs_files):
        """Test exhausting the ladder proceeds to Start in degraded mode"""
        for command in ("npm install", "npm install --legacy-peer-deps", "npm install --force"):
            backend.command_results[command] = CommandResult(exit_code=1, output=ERESOLVE)
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert manager.last_install.outcome == InstallOutcome.EXHAUSTED
        assert manager.last_install.attempts == 3
        assert manager.state == SandboxState.RUNNING

    async def test_other_install_failure_does_not_escalate(self, backend, clock, nextjs_files):
        """Test a network failure is not retried with stricter flags"""
        backend.command_results["npm install"] = CommandResult(exit_code=1, output="npm ERR! code ETIMEDOUT")
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert backend.commands == ["npm install"]
        assert manager.last_install.outcome == InstallOutcome.FAILED
        assert manager.state == SandboxState.RUNNING

    async def test_recovery_command_timeout(self, backend, clock, nextjs_files):
        """Test a hung recovery install uses its own timeout and is killed"""
        backend.command_results["npm install"] = CommandResult(exit_code=1, output=ERESOLVE)
        backend.hang_commands = {"npm install --legacy-peer-deps"}
        manager = make_manager(backend, clock, recovery_install_timeout=0.05)

        await manager.on_files_changed(nextjs_files)

        assert manager.last_install.outcome == InstallOutcome.TIMED_OUT
        assert backend.terminated == ["npm install --legacy-peer-deps"]


# =============================================================================
# START & FAILURES
# =============================================================================
class TestStartAndFailures:
    """Test dev server exits, timeouts and sandbox recreation"""

    async def test_early_exit_fails_cycle_and_heals(self, backend, clock, nextjs_files):
        """Test an early exit puts the sandbox in ERROR and queues a heal"""
        backend.process_lines = ["SyntaxError: Unexpected token (3:4) in app/page.tsx:3"]
        backend.process_exit_code = 1
        manager = make_manager(backend, clock)

        assert await manager.on_files_changed(nextjs_files) is True

        assert manager.state == SandboxState.ERROR
        assert manager.error == "Dev server exited early (exit code 1)"
        assert manager.build_failure.category == BuildFailureCategory.CODE
        assert manager.build_failure.stage == BuildFailureStage.RUNTIME_START
        assert manager.build_failure.exact_log_line == backend.process_lines[0]

        pending = manager.coordinator.pending
        assert pending is not None
        assert pending.signal_type == PainType.SYNTAX.value
        assert [s.type for s in manager.signals] == [PainType.SYNTAX, PainType.BUILD]

    async def test_exit_after_threshold_is_failed_start(self, backend, clock, nextjs_files):
        """Test an exit after the early window is reported as a failed start"""
        backend.process_lines = ["> next dev"]
        backend.process_exit_code = 137
        manager = make_manager(backend, clock, early_exit_seconds=0)

        await manager.on_files_changed(nextjs_files)

        assert manager.error == "Dev server failed to start (exit code 137)"

    async def test_startup_timeout_without_host_is_degraded_running(self, backend, clock, nextjs_files):
        """Test no readiness and no host leaves RUNNING without a preview URL"""
        backend.process_lines = ["> next dev"]
        backend.host_url = None
        manager = make_manager(backend, clock, startup_timeout=0.05)

        await manager.on_files_changed(nextjs_files)

        assert manager.state == SandboxState.RUNNING
        assert manager.server_url is None
        assert manager.build_failure.stage == BuildFailureStage.HOST_PROBE
        assert manager.coordinator.pending is None

    async def test_startup_timeout_with_host_is_running(self, backend, clock, nextjs_files):
        """Test a silent dev server still gets its preview URL after the timeout"""
        backend.process_lines = ["> next dev"]
        manager = make_manager(backend, clock, startup_timeout=0.05)

        await manager.on_files_changed(nextjs_files)

        assert manager.state == SandboxState.RUNNING
        assert manager.server_url == "http://localhost:32768"
        assert manager.build_failure is None

    async def test_ownership_failure_recreates_once(self, backend, clock, nextjs_files):
        """Test a revoked sandbox is destroyed, recreated and the cycle retried"""
        manager = make_manager(backend, clock)
        await manager.boot()
        backend.revoked.add("sbx-1")

        assert await manager.on_files_changed(nextjs_files) is True

        assert backend.created == ["sbx-1", "sbx-2"]
        assert backend.destroyed == ["sbx-1"]
        assert manager.sandbox_id == "sbx-2"
        assert manager.state == SandboxState.RUNNING
        assert SandboxState.ERROR in states(manager)

    async def test_repeated_ownership_failure_is_infra_without_heal(self, backend, clock, nextjs_files):
        """Test a second ownership failure stops with an infra failure and no heal"""
        create = backend.create

        async def create_revoked(project_id):
            handle = await create(project_id)
            backend.revoked.add(handle.sandbox_id)
            return handle

        backend.create = create_revoked
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert len(backend.created) == 2
        assert manager.state == SandboxState.ERROR
        assert manager.build_failure.category == BuildFailureCategory.INFRA
        assert manager.build_failure.auto_recovery_attempted is True
        assert manager.signals == []
        assert manager.coordinator.pending is None

    async def test_sandbox_error_during_sync_is_infra_without_heal(self, backend, clock, nextjs_files):
        """Test a backend write failure ends the cycle as an infra failure and requests no heal"""
        backend.write_errors = ["Failed to write package.json: disk full"]
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert manager.state == SandboxState.ERROR
        assert manager.build_failure.stage == BuildFailureStage.SYNC
        assert manager.build_failure.category == BuildFailureCategory.INFRA
        assert backend.write_attempts == 1
        assert backend.started == []
        assert manager.signals == []
        assert manager.coordinator.pending is None

    async def test_command_error_during_install_is_infra_without_heal(self, backend, clock, nextjs_files):
        """Test an install command the backend cannot run is infra, and lock metadata is still recorded"""
        backend.command_errors["npm install"] = "500 Server Error: Internal Server Error"
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert manager.state == SandboxState.ERROR
        assert manager.build_failure.stage == BuildFailureStage.INSTALL
        assert manager.build_failure.category == BuildFailureCategory.INFRA
        assert manager.verification.dependencies_locked_at is not None
        assert manager.verification.dependency_count == 2
        assert backend.started == []
        assert manager.signals == []
        assert manager.coordinator.pending is None

    async def test_hot_sync_backend_error_is_infra_without_heal(self, backend, clock, nextjs_files):
        """Test a failed hot sync is not turned into a heal request"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)
        backend.write_errors = ["Failed to write app/page.tsx: read-only file system"]

        edited = [nextjs_files[0], ProjectFile(path="app/page.tsx", content="export default () => 'v2'")]
        await manager.on_files_changed(edited)

        assert manager.state == SandboxState.ERROR
        assert manager.build_failure.category == BuildFailureCategory.INFRA
        assert manager.coordinator.pending is None

    async def test_shutdown_destroys_sandbox(self, backend, clock, nextjs_files):
        """Test shutdown kills the dev server and destroys the sandbox"""
        manager = make_manager(backend, clock)
        await manager.on_files_changed(nextjs_files)

        await manager.shutdown()

        assert backend.destroyed == ["sbx-1"]
        assert backend.processes[0].killed is True
        assert manager.sandbox_id is None


# =============================================================================
# RUNTIME VALIDATION & RETRY BUDGETS
# =============================================================================
class TestRuntimeValidation:
    """Test the page check after readiness and retries around backend writes"""

    async def test_page_checked_after_readiness(self, backend, clock, nextjs_files):
        """Test a ready dev server is validated once before RUNNING"""
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert len(backend.validations) == 1
        assert "port:3000" in backend.validations[0]
        assert manager.state == SandboxState.RUNNING

    async def test_server_error_page_fails_and_heals(self, backend, clock, nextjs_files):
        """Test a 5xx root page fails the cycle as a code failure and queues a heal"""
        backend.validation_results = [CommandResult(exit_code=1, output="status 500: Internal Server Error")]
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert len(backend.validations) == 1
        assert manager.state == SandboxState.ERROR
        assert manager.error == "Runtime validation failed: status 500: Internal Server Error"
        assert manager.build_failure.stage == BuildFailureStage.RUNTIME_VALIDATION
        assert manager.build_failure.category == BuildFailureCategory.CODE
        assert manager.coordinator.pending.signal_type == PainType.BUILD.value

    async def test_warm_up_failure_is_retried(self, backend, clock, nextjs_files):
        """Test a refused connection is retried until the page answers"""
        backend.validation_results = [
            CommandResult(exit_code=1, output="connect ECONNREFUSED 127.0.0.1:3000"),
            CommandResult(exit_code=0, output="RUNTIME_VALIDATION_OK status=200"),
        ]
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert len(backend.validations) == 2
        assert manager.state == SandboxState.RUNNING
        assert manager.build_failure is None

    async def test_persistent_warm_up_failure_is_accepted(self, backend, clock, nextjs_files):
        """Test a page that never answers is accepted after the attempts run out"""
        backend.validation_results = [CommandResult(exit_code=1, output="empty-runtime-html")] * 3
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert len(backend.validations) == 3
        assert manager.state == SandboxState.RUNNING
        assert manager.coordinator.pending is None

    async def test_module_error_is_never_accepted(self, backend, clock, nextjs_files):
        """Test a missing module fails the cycle even when it also looks like a timeout"""
        backend.validation_results = [
            CommandResult(exit_code=1, output="Module not found: Can't resolve 'zod' (request timed out)")
        ] * 3
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert len(backend.validations) == 3
        assert manager.state == SandboxState.ERROR
        assert manager.build_failure.stage == BuildFailureStage.RUNTIME_VALIDATION
        assert manager.coordinator.pending is not None

    async def test_validation_can_be_disabled(self, backend, clock, nextjs_files):
        """Test no page check runs when validation is off"""
        manager = make_manager(backend, clock, runtime_validation=False)

        await manager.on_files_changed(nextjs_files)

        assert backend.validations == []
        assert manager.state == SandboxState.RUNNING

    async def test_transient_write_failure_is_retried(self, backend, clock, nextjs_files):
        """Test a 503 from the daemon is retried within the write budget"""
        backend.write_errors = ["Docker API error: failed to write package.json: 503 Service Unavailable"] * 2
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert manager.state == SandboxState.RUNNING
        assert backend.files["sbx-1"]["package.json"] == nextjs_files[0].content

    async def test_write_budget_exhausted_is_infra(self, backend, clock, nextjs_files):
        """Test a write that keeps timing out gives up after five retries without a heal"""
        backend.write_errors = ["Failed to write package.json: Read timed out"] * 6
        manager = make_manager(backend, clock)

        await manager.on_files_changed(nextjs_files)

        assert backend.write_attempts == 6
        assert manager.state == SandboxState.ERROR
        assert manager.build_failure.category == BuildFailureCategory.INFRA
        assert manager.coordinator.pending is None


# =============================================================================
# REGISTRY
# =============================================================================
class TestSandboxRegistry:
    """Test the per-project registry used by the API"""

    async def test_get_or_create_is_idempotent(self, backend):
        """Test one manager per project, sharing one backend"""
        registry = SandboxRegistry(lambda: backend)
        first = registry.get_or_create("a")
        assert registry.get_or_create("a") is first
        assert registry.get_or_create("b") is not first
        assert first.backend is backend
        assert first.coordinator is not None

    async def test_workspace_files(self, backend):
        """Test workspace contents are exposed as ProjectFiles"""
        registry = SandboxRegistry(lambda: backend)
        registry.workspace("a")["app/page.tsx"] = "x"
        assert registry.workspace_files("a") == [ProjectFile(path="app/page.tsx", content="x")]
        assert registry.workspace_files("b") == []

    async def test_remove_and_shutdown_all(self, backend, nextjs_files):
        """Test removing a project destroys its sandbox"""
        registry = SandboxRegistry(lambda: backend)
        await registry.get_or_create("a").on_files_changed(nextjs_files)

        assert await registry.remove("a") is True
        assert await registry.remove("a") is False
        assert backend.destroyed == ["sbx-1"]

        registry.get_or_create("b")
        await registry.shutdown_all()
        assert registry.get("b") is None
