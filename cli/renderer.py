"""
Terminal renderer for the HealLoop CLI

Rich tables and panels for pain signals, runtime profiles, fingerprints and
sandbox status.
"""

from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.box import ROUNDED


SEVERITY_STYLES = {
    "critical": "bold red",
    "warning": "yellow",
    "info": "blue",
}

STATE_STYLES = {
    "running": "green",
    "error": "red",
    "boot_failed": "red",
    "idle": "dim",
}


class HealLoopRenderer:
    """Renders HealLoop results in the terminal"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def render_error(self, message: str, details: Optional[str] = None):
        """Render an error message"""
        error_panel = Panel(
            f"[bold red]{message}[/bold red]" +
            (f"\n\n[dim]{details}[/dim]" if details else ""),
            title="[red]Error[/red]",
            border_style="red"
        )
        self.console.print(error_panel)

    def render_warning(self, message: str):
        self.console.print(f"[yellow]⚠️  {message}[/yellow]")

    def render_success(self, message: str):
        self.console.print(f"[green]✅ {message}[/green]")

    def render_info(self, message: str):
        self.console.print(f"[blue]ℹ️  {message}[/blue]")

    def render_signals(self, signals: List[Dict[str, Any]], title: str = "Pain Signals"):
        """Render detected pain signals as a table"""
        if not signals:
            self.render_success("No failures detected")
            return

        table = Table(title=title, show_header=True, header_style="bold cyan", box=ROUNDED)
        table.add_column("Severity", width=10)
        table.add_column("Type", style="cyan")
        table.add_column("Message")
        table.add_column("Location", style="dim")

        for signal in signals:
            severity = signal["severity"]
            style = SEVERITY_STYLES.get(severity, "")
            location = ""
            if signal.get("file"):
                location = f"{signal['file']}:{signal['line']}" if signal.get("line") else signal["file"]
            table.add_row(f"[{style}]{severity}[/{style}]", signal["type"], signal["message"], location)

        self.console.print(table)

    def render_heal_prompt(self, prompt: str):
        self.console.print(Panel(prompt, title="[magenta]Heal prompt[/magenta]", border_style="magenta"))

    def render_profile(self, profile: Dict[str, Any], file_count: int):
        table = Table(title="Runtime Profile", show_header=False, box=None)
        table.add_column("Key", style="dim")
        table.add_column("Value", style="cyan")
        table.add_row("Framework", profile["framework"])
        table.add_row("Start command", profile["start_command"])
        table.add_row("Port", str(profile["port"]))
        table.add_row("Files", str(file_count))
        self.console.print(table)

    def render_fingerprint(self, fingerprint: str, file_count: int):
        self.console.print(f"[bold]{fingerprint or '(empty project)'}[/bold]  [dim]{file_count} files[/dim]")

    def render_status(self, status: Dict[str, Any]):
        """Render a sandbox status snapshot"""
        state = status["state"]
        style = STATE_STYLES.get(state, "yellow")

        lines = [f"State: [{style}]{state}[/{style}]"]
        if status.get("framework"):
            lines.append(f"Framework: {status['framework']}")
        if status.get("server_url"):
            lines.append(f"Preview: [link={status['server_url']}]{status['server_url']}[/link]")
        if status.get("error"):
            lines.append(f"Error: [red]{status['error']}[/red]")

        verification = status.get("verification") or {}
        if verification.get("dependencyCount") is not None:
            lines.append(f"Dependencies: {verification['dependencyCount']}")
        if verification.get("runtimeVersion"):
            lines.append(f"Runtime: {verification['runtimeVersion']}")

        failure = status.get("build_failure")
        if failure:
            lines.append("")
            lines.append(f"[bold]{failure['category']}[/bold] failure during {failure['stage']}")
            lines.append(f"[dim]Next step:[/dim] {failure['actionable_fix']}")

        self.console.print(Panel(
            "\n".join(lines),
            title=f"[bold]Sandbox {status['project_id']}[/bold]",
            border_style=style,
        ))

        pending = status.get("pending_heal")
        if pending:
            self.render_heal_prompt(pending["error"])
