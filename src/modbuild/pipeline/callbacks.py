"""Progress callback protocol for the build pipeline.

Defines the callback interface the pipeline uses to report instance phase
changes to the display layer.
"""

from typing import Protocol, runtime_checkable

from .models import InstancePhase


@runtime_checkable
class ProgressCallback(Protocol):
    """Protocol for receiving progress updates from the pipeline.

    Implementations receive an update every time an instance changes phase.
    The TUI display layer implements this protocol to render a live table.
    """

    def on_progress(self, instance_id: str, phase: InstancePhase, elapsed: float, detail: str) -> None:
        """Called when an instance enters a phase.

        Args:
            instance_id: Label of the instance (e.g. "core@debug").
            phase: Phase the instance just entered.
            elapsed: Seconds spent building so far (0 if it never started).
            detail: Human-readable status detail (e.g. "dependency 'core@debug' failed").
        """
        ...


class NullCallback:
    """No-op callback implementation for testing and non-interactive use."""

    def on_progress(self, instance_id: str, phase: InstancePhase, elapsed: float, detail: str) -> None:
        """Discard progress update."""
        pass
