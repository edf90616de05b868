#!/usr/bin/env python3
"""
HealLoop CLI - Main Entry Point

Usage:
    healloop analyze build.log            # Detect failures in a log file
    healloop analyze - --source browser   # Read browser console lines from stdin
    healloop fingerprint ./my-app         # Content fingerprint of a project
    healloop profile ./my-app             # Which dev server the project needs
    healloop run ./my-app                 # Sync, install and start in a Docker sandbox
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markdown import Markdown

from cli.renderer import HealLoopRenderer
from healloop.core.config import settings
from healloop.modules.sandbox.diagnostics import format_build_failure_summary
from healloop.modules.sandbox.fingerprint import compute_files_fingerprint
from healloop.modules.sandbox.runtime_profile import resolve_runtime_profile
from healloop.schemas.sandbox import ProjectFile
from healloop.services.pain_detector import PainDetector, format_for_ai


# Directories that are build output or dependencies, never generated source
IGNORED_DIRS = {"node_modules", ".git", ".next", "dist", "build", ".turbo", ".cache"}
MAX_FILE_BYTES = 1024 * 1024


def load_project_files(directory: str) -> List[ProjectFile]:
    """Read every text file under `directory` as a ProjectFile with a relative path"""
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Not a directory: {directory}")

    files = []
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if any(part in IGNORED_DIRS for part in relative.parts) or not path.is_file():
            continue
        if path.stat().st_size > MAX_FILE_BYTES:
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            continue
        files.append(ProjectFile(path=relative.as_posix(), content=content))
    return files


def read_lines(source: str) -> List[str]:
    if source == "-":
        return sys.stdin.read().splitlines()
    return Path(source).read_text(encoding="utf-8", errors="ignore").splitlines()


def cmd_analyze(args, renderer: HealLoopRenderer) -> int:
    detector = PainDetector()
    analyze = detector.analyze_browser_error if args.source == "browser" else detector.analyze_log

    signals = [s for s in (analyze(line) for line in read_lines(args.logfile)) if s is not None]
    renderer.render_signals([s.to_dict() for s in signals])

    critical = [s for s in signals if s.is_critical]
    if critical and args.prompt:
        renderer.render_heal_prompt(format_for_ai(critical[0]))
    return 1 if critical else 0


def cmd_fingerprint(args, renderer: HealLoopRenderer) -> int:
    files = load_project_files(args.directory)
    renderer.render_fingerprint(compute_files_fingerprint(files), len(files))
    return 0


def cmd_profile(args, renderer: HealLoopRenderer) -> int:
    files = load_project_files(args.directory)
    renderer.render_profile(resolve_runtime_profile(files).to_dict(), len(files))
    return 0


async def run_sandbox(directory: str, project_id: str, watch: Optional[float],
                      renderer: HealLoopRenderer) -> int:
    from healloop.modules.sandbox.backends import DockerSandboxBackend
    from healloop.modules.sandbox.lifecycle import SandboxLifecycleManager, SandboxState
    from healloop.services.auto_heal import AutoHealCoordinator

    coordinator = AutoHealCoordinator(project_id, on_heal=lambda req: renderer.render_heal_prompt(req.error))
    manager = SandboxLifecycleManager(project_id, DockerSandboxBackend(), coordinator=coordinator)

    try:
        files = load_project_files(directory)
        with renderer.console.status(f"[bold cyan]Building {len(files)} files...[/bold cyan]", spinner="dots"):
            await manager.on_files_changed(files)
        renderer.render_status(manager.get_status())

        if manager.build_failure is not None and manager.state == SandboxState.ERROR:
            renderer.console.print(Markdown(
                format_build_failure_summary(f"Run {directory}", len(files), manager.build_failure)
            ))

        # Re-sync on change until interrupted
        while watch:
            await asyncio.sleep(watch)
            if await manager.on_files_changed(load_project_files(directory)):
                renderer.render_status(manager.get_status())
    finally:
        await manager.shutdown()

    return 0 if manager.state == SandboxState.RUNNING else 1


def cmd_run(args, renderer: HealLoopRenderer) -> int:
    return asyncio.run(run_sandbox(args.directory, args.project_id, args.watch, renderer))


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="healloop",
        description="HealLoop - run generated web projects and detect what breaks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  healloop analyze npm-debug.log               List failures found in a log
  healloop analyze - --source browser < out    Analyze browser console output
  healloop analyze dev.log --prompt            Also print the heal prompt
  healloop profile ./app                       Show framework, start command and port
  healloop run ./app --watch 2                 Build in Docker, re-sync every 2s
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {settings.APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show tracebacks on errors")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    analyze_parser = subparsers.add_parser("analyze", help="Detect failures in a log file")
    analyze_parser.add_argument("logfile", help="Log file to scan, or - for stdin")
    analyze_parser.add_argument("--source", choices=["terminal", "browser"], default="terminal",
                                help="Kind of output being analyzed (default: terminal)")
    analyze_parser.add_argument("--prompt", action="store_true",
                                help="Print the heal prompt for the first critical failure")

    fingerprint_parser = subparsers.add_parser("fingerprint", help="Print a project's content fingerprint")
    fingerprint_parser.add_argument("directory", help="Project directory")

    profile_parser = subparsers.add_parser("profile", help="Resolve a project's runtime profile")
    profile_parser.add_argument("directory", help="Project directory")

    run_parser = subparsers.add_parser("run", help="Sync, install and start a project in a sandbox")
    run_parser.add_argument("directory", help="Project directory")
    run_parser.add_argument("--project-id", default="cli", help="Sandbox project id (default: cli)")
    run_parser.add_argument("--watch", type=float, default=None, metavar="SECONDS",
                            help="Keep running and re-sync changed files at this interval")

    return parser


COMMANDS = {
    "analyze": cmd_analyze,
    "fingerprint": cmd_fingerprint,
    "profile": cmd_profile,
    "run": cmd_run,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 2

    renderer = HealLoopRenderer(Console())
    try:
        return COMMANDS[args.command](args, renderer)
    except KeyboardInterrupt:
        renderer.render_info("Stopped")
        return 130
    except (FileNotFoundError, NotADirectoryError) as e:
        renderer.render_error(str(e))
        return 1
    except Exception as e:
        if args.verbose:
            renderer.console.print_exception()
        else:
            renderer.render_error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
