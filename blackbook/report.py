"""Rich renderings of classification results for terminal front ends."""

from __future__ import annotations

from io import StringIO
import shutil
from typing import Callable, Dict, Sequence

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from .sync.conflict import Conflict, ConflictAction
from .sync.modules import ModuleStatus
from .sync.status import FileStatus, summarize

STATUS_STYLES: Dict[ModuleStatus, str] = {
    ModuleStatus.OK: "green",
    ModuleStatus.MISSING: "yellow",
    ModuleStatus.DRIFTED: "magenta",
    ModuleStatus.FAILED: "red",
}


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(100, 24))
    # Clamp to a reasonable minimum so Rich does not choke on ultra-small widths.
    width = max(20, terminal_size.columns)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


def render_status_table(statuses: Sequence[FileStatus]) -> str:
    """One row per (asset, instance) with its status and drift kind."""

    def _render(console: Console) -> None:
        table = Table(title="Sync Status", show_header=True, header_style="bold cyan")
        table.add_column("File", style="bold", no_wrap=True)
        table.add_column("Instance")
        table.add_column("Status")
        table.add_column("Drift")
        table.add_column("Detail")

        for file_status in statuses:
            if not file_status.instances:
                table.add_row(file_status.name, "(none)", "-", "-", "No enabled instances")
                continue
            for inst in file_status.instances:
                style = STATUS_STYLES[inst.status]
                table.add_row(
                    file_status.name,
                    inst.instance_name,
                    f"[{style}]{inst.status.value}[/{style}]",
                    inst.drift_kind.value if inst.drift_kind else "-",
                    inst.message,
                )

        console.print(table)
        counts = summarize(statuses)
        console.print(
            "ok={ok} missing={missing} drifted={drifted} failed={failed} conflicts={conflicts}".format(**counts),
            highlight=False,
        )

    return render_rich(_render)


def render_conflict(conflict: Conflict) -> str:
    """Show a conflict's diff and the choices a user can make."""

    def _render(console: Console) -> None:
        console.print(
            f"[bold yellow]Conflict:[/bold yellow] {conflict.file_name} ({conflict.instance})",
            highlight=False,
        )
        if conflict.diff:
            console.print(Syntax(conflict.diff, "diff", theme="ansi_dark", word_wrap=True))
        else:
            console.print("[dim](no diff available)[/dim]")
        choices = ", ".join(action.value for action in ConflictAction)
        console.print(f"Choose one of: {choices}", highlight=False)

    return render_rich(_render)


__all__ = ["STATUS_STYLES", "render_conflict", "render_rich", "render_status_table"]
