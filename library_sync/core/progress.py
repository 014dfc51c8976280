"""
Progress bar handling for library-sync using Rich library.

This module provides styled progress bars for the phases of a sync run.
All progress bars share a common base class and theming.

Phases:
    - Tracks:    PhaseProgressBar("Tracks")
    - Artists:   PhaseProgressBar("Artists")
    - Albums:    PhaseProgressBar("Albums")
    - Playlists: PhaseProgressBar("Playlists")

The orchestrator does not know about Rich. It reports ProgressEvents to a
plain callable; RichProgressSink is the callable the CLI passes in, and it
opens one bar per phase as events arrive.

Usage:
    from library_sync.core.progress import PhaseProgressBar, RichProgressSink

    # As context manager
    with PhaseProgressBar(total=130, description="Tracks") as progress:
        progress.update(current=50, message="Processed 50 tracks")

    # As orchestrator progress sink
    with RichProgressSink() as sink:
        orchestrator.start_run(RunKind.FULL, progress=sink)
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from rich import get_console
from rich.console import JustifyMethod, OverflowMethod
from rich.highlighter import Highlighter
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    Task,
    TaskID,
)
from rich.style import StyleType
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Common Theme
# =============================================================================

PROGRESS_THEME = Theme({
    "bar.back": "grey23",
    "bar.complete": "rgb(165,66,129)",  # Magenta/purple
    "bar.finished": "rgb(114,156,31)",  # Green when done
    "bar.pulse": "rgb(165,66,129)",
    "progress.percentage": "white",
})


# =============================================================================
# Custom Column
# =============================================================================

class SizedTextColumn(ProgressColumn):
    """
    Custom sized text column based on the Rich library.

    Allows text to be truncated with ellipsis if it exceeds
    the specified width.
    """

    def __init__(
        self,
        text_format: str,
        style: StyleType = "none",
        justify: JustifyMethod = "left",
        markup: bool = True,
        highlighter: Optional[Highlighter] = None,
        overflow: Optional[OverflowMethod] = None,
        width: int = 20,
    ) -> None:
        self.text_format = text_format
        self.justify: JustifyMethod = justify
        self.style = style
        self.markup = markup
        self.highlighter = highlighter
        self.overflow: Optional[OverflowMethod] = overflow
        self.width = width
        super().__init__()

    def render(self, task: Task) -> Text:
        """Render the column."""
        _text = self.text_format.format(task=task)
        if self.markup:
            text = Text.from_markup(_text, style=self.style, justify=self.justify)
        else:
            text = Text(_text, style=self.style, justify=self.justify)
        if self.highlighter:
            self.highlighter.highlight(text)

        text.truncate(max_width=self.width, overflow=self.overflow, pad=True)
        return text


# =============================================================================
# Base Progress Bar
# =============================================================================

class BaseProgressBar(ABC):
    """
    Shared Rich plumbing for sync progress bars.

    Owns the Progress instance and its single task. It can be used as a
    context manager or started and stopped by hand (RichProgressSink starts
    each bar when its phase first reports).

    Subclasses provide _get_status_text() and update().
    """

    def __init__(
        self,
        total: Optional[int],
        description: str,
        status_width: int = 35
    ):
        """
        Initialize the progress bar.

        Args:
            total: Total number of items, or None while still unknown
                   (the bar pulses until a total arrives).
            description: Description to show on the left (e.g., "Tracks").
            status_width: Width of the status column.
        """
        self.total = total
        self.description = description
        self.completed = 0

        self.console = get_console()

        self.progress = Progress(
            SizedTextColumn(
                "[white]{task.description}",
                overflow="ellipsis",
                width=15,
            ),
            SizedTextColumn(
                "{task.fields[status]}",
                width=status_width,
                style="white",
            ),
            BarColumn(bar_width=40, finished_style="green"),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=self.console,
            transient=False,
            refresh_per_second=10,
        )

        self.task_id: Optional[TaskID] = None
        self._started = False

    def __enter__(self) -> "BaseProgressBar":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def start(self) -> None:
        """Start the progress bar (can be called manually)."""
        if not self._started:
            self.console.push_theme(PROGRESS_THEME)
            self.progress.start()
            self.task_id = self.progress.add_task(
                description=self.description,
                total=self.total,
                status=self._get_status_text(),
            )
            self._started = True

    def stop(self) -> None:
        """Stop the progress bar."""
        if self._started:
            self.progress.stop()
            self.console.pop_theme()
            self._started = False

    def log(self, message: str) -> None:
        """
        Print a log message above the progress bar.

        Args:
            message: The message to print.
        """
        self.progress.console.print(message, highlight=False)

    def _update_progress(self) -> None:
        """Update the Rich progress bar with current state."""
        if self.task_id is not None:
            self.progress.update(
                self.task_id,
                total=self.total,
                completed=self.completed,
                status=self._get_status_text(),
            )

    @abstractmethod
    def _get_status_text(self) -> str:
        """
        Get the status text for the progress bar.

        Returns:
            Formatted status string with Rich markup.
        """
        pass

    @abstractmethod
    def update(self, *args, **kwargs) -> None:
        """
        Move the bar to a new position.
        """
        pass


# =============================================================================
# Sync Phase Progress Bar
# =============================================================================

class PhaseProgressBar(BaseProgressBar):
    """
    Progress bar for one sync phase.

    Displays:
    - Description (e.g., "Artists")
    - Status: position in the phase, or the last message while paused
    - Progress bar
    - Percentage

    Example:
        Artists         ✓ 300/1240                ━━━━━━━━━━━━━━━━━  24%
        Tracks          ⏸ Rate limited. Will r…   ━━━━━━━━━━━━━━━━━  38%
    """

    def __init__(self, total: Optional[int], description: str):
        super().__init__(total=total, description=description)
        self.paused_message: Optional[str] = None

    def _get_status_text(self) -> str:
        if self.paused_message:
            return f"[yellow]⏸ {escape(self.paused_message)}[/yellow]"
        total = "?" if self.total is None else str(self.total)
        return f"[green]✓ {self.completed}[/green]/{total}"

    def update(
        self,
        current: int,
        total: Optional[int] = None,
        message: Optional[str] = None
    ) -> None:
        """
        Move the bar to an absolute position.

        Args:
            current: Items done in this phase so far.
            total: New total if it changed (None keeps the old one).
            message: Message from the orchestrator. Messages reporting a
                     pause stay visible until the next position change and
                     are printed in full above the bar.
        """
        if total is not None:
            self.total = total
        if current != self.completed:
            self.paused_message = None
        self.completed = current
        if message and message.startswith("Rate limited"):
            if message != self.paused_message:
                self.log(f"[yellow]{escape(self.description)}: {escape(message)}[/yellow]")
            self.paused_message = message

        self._update_progress()


# =============================================================================
# Orchestrator Progress Sink
# =============================================================================

class RichProgressSink:
    """
    Progress sink rendering orchestrator events as Rich progress bars.

    Callable with any object exposing phase, current, total and message
    (the orchestrator's ProgressEvent). A new PhaseProgressBar is opened
    the first time a phase reports and the previous one is closed.
    """

    def __init__(self) -> None:
        self._bars: dict[str, PhaseProgressBar] = {}
        self._active: Optional[PhaseProgressBar] = None

    def __enter__(self) -> "RichProgressSink":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __call__(self, event: Any) -> None:
        bar = self._bars.get(event.phase)
        if bar is None:
            if self._active is not None:
                self._active.stop()
            bar = PhaseProgressBar(total=event.total, description=event.phase.capitalize())
            self._bars[event.phase] = bar
            self._active = bar
            bar.start()

        bar.update(current=event.current, total=event.total, message=event.message)

    def close(self) -> None:
        """Stop the bar still on screen, if any."""
        if self._active is not None:
            self._active.stop()
            self._active = None
