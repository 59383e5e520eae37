"""
Per-round probe progress display.

StatsPrinter consumes LatencyResult events from an asyncio.Queue and
shows running / succeeded / failed / total counts, either on a rich
progress bar or as a single carriage-return line.
"""

import asyncio
import sys
from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from proxysieve.core.models import LatencyResult

STATS_LINE = "\rRunning: {running:<4d} | Succeeded: {succeeded:<4d} | Failed: {failed:<4d} | Total: {total}"


def _safe_write(stream, text: str):
    """Write text to stream, replacing unencodable chars."""
    try:
        stream.write(text)
        stream.flush()
    except UnicodeEncodeError:
        stream.write(text.encode("ascii", errors="replace").decode("ascii"))
        stream.flush()


def _make_rich_progress() -> Progress:
    return Progress(
        SpinnerColumn("dots", style="cyan"),
        TextColumn("[bold blue]{task.description}[/]", justify="left"),
        BarColumn(bar_width=28, style="grey37", complete_style="green", finished_style="bold green"),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TextColumn("[dim]{task.fields[extra]}[/]"),
        TimeElapsedColumn(),
        console=Console(stderr=True),
        transient=False,
        expand=False,
    )


class StatsPrinter:
    """Counts probe results for one round and renders them."""

    def __init__(self, total: int, use_rich: bool = True, description: str = "Probing",
                 stream=None):
        self.total = total
        self.description = description
        self.queue: "asyncio.Queue[LatencyResult]" = asyncio.Queue()
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self._use_rich = use_rich
        self._stream = stream or sys.stderr
        self._progress: Optional[Progress] = None
        self._task_id = None

    @property
    def running(self) -> int:
        return self.total - self.completed

    def stats_line(self) -> str:
        return STATS_LINE.format(
            running=self.running, succeeded=self.succeeded, failed=self.failed, total=self.total,
        )

    def record(self, result: LatencyResult):
        self.completed += 1
        if result.succeeded:
            self.succeeded += 1
        else:
            self.failed += 1
        self._render()

    def _render(self):
        if self._progress is not None:
            extra = f"ok {self.succeeded} | failed {self.failed}"
            self._progress.update(self._task_id, completed=self.completed, extra=extra)
        else:
            _safe_write(self._stream, self.stats_line())

    def _start(self):
        if self._use_rich:
            self._progress = _make_rich_progress()
            self._progress.start()
            self._task_id = self._progress.add_task(self.description, total=self.total, extra="starting...")

    def _finish(self):
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
        else:
            _safe_write(self._stream, "\n")

    async def run(self):
        """Consume results until `total` have been seen."""
        self._start()
        try:
            while self.completed < self.total:
                result = await self.queue.get()
                self.record(result)
        finally:
            self._finish()
