"""Rich-based live progress display for the build pipeline.

Renders one line per build instance, transitioning through:

    Waiting -> Building (spinner) -> Built (checkmark) 3.2s
                                  -> Failed (cross) diagnostic
    Waiting -> Cached | Skipped | Cancelled

Thread-safe: on_progress() may be called from any thread while the display
renders in the main thread.
"""

import threading
import time
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .models import InstancePhase

# Braille spinner frames for the BUILDING phase animation
_SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")

_PHASE_LABELS = {
    InstancePhase.WAITING: ("Waiting", "dim"),
    InstancePhase.BUILDING: ("Building", "magenta"),
    InstancePhase.BUILT: ("Built", "green"),
    InstancePhase.CACHED: ("Cached", "cyan"),
    InstancePhase.FAILED: ("Failed", "red bold"),
    InstancePhase.SKIPPED: ("Skipped", "yellow"),
    InstancePhase.CANCELLED: ("Cancelled", "dim"),
    InstancePhase.REJECTED: ("Rejected", "red"),
}


class _InstanceDisplayState:
    """Internal state for a single instance's display line.

    Attributes:
        name: Instance label.
        key: Short cache key prefix.
        phase: Current pipeline phase.
        detail: Human-readable status text.
        elapsed: Elapsed build time in seconds.
        start_time: Monotonic timestamp when the instance started building.
    """

    __slots__ = ("name", "key", "phase", "detail", "elapsed", "start_time")

    def __init__(self, name: str, key: str) -> None:
        self.name = name
        self.key = key
        self.phase = InstancePhase.WAITING
        self.detail: str = ""
        self.elapsed: float = 0.0
        self.start_time: float | None = None


class PipelineProgressDisplay:
    """Live build table using Rich.

    Implements ProgressCallback.

    Args:
        console: Rich Console instance for rendering. If None, creates a new one.
        project_name: Project name for the header line.
        refresh_per_second: Display refresh rate.
        verbose: Show cache key prefixes under each instance.
    """

    def __init__(self, console: Console | None, project_name: str, refresh_per_second: int = 10, verbose: bool = False) -> None:
        self._console = console if console is not None else Console()
        self._project_name = project_name
        self._refresh_per_second = refresh_per_second
        self._verbose = verbose
        self._states: dict[str, _InstanceDisplayState] = {}
        self._lock = threading.Lock()
        self._live: Live | None = None
        self._order: list[str] = []

    def register_instance(self, name: str, key: str = "") -> None:
        """Register an instance for display before the pipeline starts."""
        with self._lock:
            if name not in self._states:
                self._states[name] = _InstanceDisplayState(name, key[:12])
                self._order.append(name)

    def on_progress(self, instance_id: str, phase: InstancePhase, elapsed: float, detail: str) -> None:
        """Update the display state for an instance. Thread-safe."""
        with self._lock:
            state = self._states.get(instance_id)
            if state is None:
                state = _InstanceDisplayState(instance_id, "")
                self._states[instance_id] = state
                self._order.append(instance_id)

            if phase == InstancePhase.BUILDING and state.start_time is None:
                state.start_time = time.monotonic()

            state.phase = phase
            state.detail = detail
            if elapsed > 0:
                state.elapsed = elapsed
            elif state.start_time is not None:
                state.elapsed = time.monotonic() - state.start_time

    def start(self) -> None:
        """Start the live display. Call before pipeline.run()."""
        self._live = Live(
            self._render_display(),
            console=self._console,
            refresh_per_second=self._refresh_per_second,
            transient=False,
            get_renderable=self._render_display,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the live display. Call after pipeline.run()."""
        if self._live is not None:
            self._live.update(self._render_display())
            self._live.stop()
            self._live = None

    def _render_display(self) -> Group:
        header = Text(f"\nBuilding {self._project_name}...\n", style="bold")
        return Group(header, self._render_table(), self._render_footer())

    def _render_table(self) -> Table:
        table = Table(
            show_header=False,
            show_edge=False,
            show_lines=False,
            box=None,
            padding=(0, 1),
            expand=False,
        )
        table.add_column("Instance", style="bold", no_wrap=True, min_width=28)
        table.add_column("Phase", no_wrap=True, min_width=10)
        table.add_column("Status", no_wrap=True, min_width=30)

        with self._lock:
            for name in self._order:
                state = self._states[name]
                table.add_row(self._format_name(state), self._format_phase(state), self._format_status(state))
                if self._verbose and state.key:
                    table.add_row(Text(f"  └ {state.key}", style="dim"), Text(""), Text(""))
        return table

    def _render_footer(self) -> Text:
        with self._lock:
            total = len(self._states)
            counts: dict[InstancePhase, int] = {}
            for state in self._states.values():
                counts[state.phase] = counts.get(state.phase, 0) + 1

        footer_parts = [f"{total} instances"]
        for phase in (InstancePhase.BUILDING, InstancePhase.BUILT, InstancePhase.CACHED, InstancePhase.FAILED, InstancePhase.SKIPPED):
            if counts.get(phase):
                label = "active" if phase == InstancePhase.BUILDING else phase.value
                footer_parts.append(f"{counts[phase]} {label}")
        return Text(f"\n  {', '.join(footer_parts)}", style="dim")

    def _format_name(self, state: _InstanceDisplayState) -> Text:
        if state.phase.is_success:
            return Text(state.name, style="green")
        if state.phase in (InstancePhase.FAILED, InstancePhase.REJECTED):
            return Text(state.name, style="red")
        if state.phase == InstancePhase.BUILDING:
            return Text(state.name, style="bold cyan")
        return Text(state.name, style="dim")

    def _format_phase(self, state: _InstanceDisplayState) -> Text:
        label, style = _PHASE_LABELS.get(state.phase, ("Unknown", "dim"))
        return Text(label, style=style)

    def _format_status(self, state: _InstanceDisplayState) -> Text:
        """Spinner while building, checkmark or cross once finished."""
        if state.phase == InstancePhase.BUILDING:
            spinner = _SPINNER_FRAMES[int(time.monotonic() * 8) % len(_SPINNER_FRAMES)]
            return Text(f"{spinner} {state.detail or 'Compiling...'}", style="magenta")
        if state.phase == InstancePhase.BUILT:
            elapsed_str = f"{state.elapsed:.1f}s" if state.elapsed > 0 else ""
            return Text(f"✓ {elapsed_str}", style="green")
        if state.phase == InstancePhase.CACHED:
            return Text("✓ cache hit", style="cyan")
        if state.phase in (InstancePhase.FAILED, InstancePhase.REJECTED):
            first_line = state.detail.strip().splitlines()[0] if state.detail.strip() else "Error"
            return Text(f"✗ {first_line}", style="red")
        if state.phase in (InstancePhase.SKIPPED, InstancePhase.CANCELLED):
            return Text(state.detail, style="yellow" if state.phase == InstancePhase.SKIPPED else "dim")
        return Text("")

    def get_snapshot(self) -> list[dict[str, Any]]:
        """Get a snapshot of current display states for testing."""
        with self._lock:
            return [
                {
                    "name": state.name,
                    "key": state.key,
                    "phase": state.phase,
                    "detail": state.detail,
                    "elapsed": state.elapsed,
                }
                for state in (self._states[name] for name in self._order)
            ]

    def __enter__(self) -> "PipelineProgressDisplay":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()
