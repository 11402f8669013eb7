"""Rich console progress display for the Chargebee sync."""

import time

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .coordinator import BatchResult
from .messages import Message, MessageLevel
from .sync_state import BatchProgress

_MESSAGE_STYLES = {
    MessageLevel.STATUS: "dim",
    MessageLevel.WARNING: "yellow",
    MessageLevel.ERROR: "bold red",
}


class ProgressTracker:
    """Tracks and displays sync progress using Rich.

    ``on_progress`` is wired to the coordinator and ``on_message`` to the
    message log. Status messages are only echoed in verbose mode; warnings
    and errors are always printed above the live table.
    """

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose
        self._progress = BatchProgress()
        self._warnings = 0
        self._errors = 0
        self._start_time: float = 0.0
        self._live: Live | None = None

    @property
    def warnings(self) -> int:
        return self._warnings

    @property
    def errors(self) -> int:
        return self._errors

    def start(self) -> None:
        self._start_time = time.monotonic()
        self._live = Live(
            self._build_table(),
            console=self.console,
            refresh_per_second=4,
        )
        self._live.start()

    def stop(self) -> None:
        if self._live:
            self._live.stop()
            self._live = None

    def _build_table(self) -> Table:
        elapsed = time.monotonic() - self._start_time if self._start_time else 0
        progress = self._progress

        table = Table(
            title=f"Chargebee Sync  |  {elapsed:.0f}s elapsed",
            show_header=False,
            pad_edge=True,
            expand=False,
        )
        table.add_column("Metric", style="cyan", min_width=12)
        table.add_column("Value", justify="right", min_width=14)

        table.add_row("Accounts", f"{progress.processed:,} / {progress.total:,}")
        table.add_row("Chunk", f"{min(progress.next_chunk + 1, progress.chunk_count)} / {progress.chunk_count}")
        table.add_row("Warnings", Text(str(self._warnings), style="yellow" if self._warnings else "dim"))
        table.add_row("Errors", Text(str(self._errors), style="bold red" if self._errors else "dim"))
        return table

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._build_table())

    def on_progress(self, progress: BatchProgress) -> None:
        self._progress = progress
        self._refresh()

    def on_message(self, message: Message) -> None:
        if message.level == MessageLevel.WARNING:
            self._warnings += 1
        elif message.level == MessageLevel.ERROR:
            self._errors += 1
        elif not self.verbose:
            return
        self.console.print(Text(message.text, style=_MESSAGE_STYLES[message.level]))
        self._refresh()

    def print_summary(self, result: BatchResult, elapsed: float) -> None:
        """Print final summary after the run has finished."""
        progress = result.progress
        self.console.print()
        self.console.rule("[bold]Sync Summary")
        self.console.print()
        self.console.print(f"  Accounts processed: [bold]{progress.processed:,}[/bold] of {progress.total:,}")
        self.console.print(f"  Accounts w/ errors: [bold]{progress.errors:,}[/bold]")
        self.console.print(f"  Time elapsed:       [bold]{elapsed:.1f}s[/bold]")
        self.console.print(f"  Warnings: [yellow]{self._warnings}[/yellow]  |  Errors: [red]{self._errors}[/red]")
        status = "[bold green]success[/bold green]" if result.success else "[bold red]failed[/bold red]"
        self.console.print(f"  Result:             {status}")
        self.console.print()
