"""Terminal progress helpers with Rich-based rendering."""

from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console
from rich.errors import LiveError
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    Task,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.text import Text

from ..jobs.models import JobCounts


@dataclass
class ProgressState:
    total: int
    succeeded: int = 0
    failed: int = 0
    had_attorney: int = 0
    status: str = "pending"

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed


class RateColumn(ProgressColumn):
    """Render records per minute, the unit the API quota is expressed in."""

    def render(self, task: Task) -> Text:
        speed = task.finished_speed or task.speed
        if speed is None:
            return Text("", style="progress.percentage")
        return Text(f"{speed * 60:.1f} rec/min", style="progress.percentage")


class ProgressReporter:
    """Render a job's polled counts as a progress bar."""

    def __init__(self, enabled: bool = True, console: Console | None = None) -> None:
        self.enabled = enabled
        self._console = console
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None
        self.state: ProgressState | None = None
        self._label = "job"

    def start(self, total: int, label: str | None = None) -> None:
        self.state = ProgressState(total=total)
        if label:
            self._label = label
        if not self.enabled:
            return
        if self._console is None:
            self._console = Console()
        if not self._console.is_terminal:
            # Non-interactive output stays quiet.
            self.enabled = False
            return
        self._progress = Progress(
            SpinnerColumn(style="cyan"),
            TextColumn("[bold blue]{task.fields[label]:<12}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="green"),
            TaskProgressColumn(show_speed=False),
            TimeElapsedColumn(),
            RateColumn(),
            TextColumn("[green]✓{task.fields[succeeded]:>4}", justify="right"),
            TextColumn("[red]✗{task.fields[failed]:>4}", justify="right"),
            TextColumn("[yellow]⚖{task.fields[had_attorney]:>4}", justify="right"),
            TextColumn("[dim]{task.fields[status]}", justify="left"),
            refresh_per_second=8,
            expand=True,
            transient=True,
            console=self._console,
        )
        try:
            self._progress.start()
        except LiveError:
            self.enabled = False
            self._progress = None
            return
        self._task_id = self._progress.add_task(
            "job",
            total=total,
            label=self._label,
            succeeded=0,
            failed=0,
            had_attorney=0,
            status="pending",
        )

    def update(self, counts: JobCounts, status: str) -> None:
        if not self.state:
            raise RuntimeError("ProgressReporter.start must be called before update")
        self.state.total = counts.total
        self.state.succeeded = counts.succeeded
        self.state.failed = counts.failed
        self.state.had_attorney = counts.had_attorney
        self.state.status = status
        if self._progress is not None and self._task_id is not None:
            self._progress.update(
                self._task_id,
                completed=counts.processed,
                total=counts.total,
                succeeded=counts.succeeded,
                failed=counts.failed,
                had_attorney=counts.had_attorney,
                status=status,
            )

    def close(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
        self._task_id = None

    def summary(self) -> dict[str, int]:
        if not self.state:
            return {"processed": 0, "succeeded": 0, "failed": 0, "had_attorney": 0}
        return {
            "processed": self.state.processed,
            "succeeded": self.state.succeeded,
            "failed": self.state.failed,
            "had_attorney": self.state.had_attorney,
        }


__all__ = ["ProgressReporter", "ProgressState", "RateColumn"]
