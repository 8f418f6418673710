"""Parallel build pipeline with a live Rich TUI.

Public API:
    ParallelPipeline: Runs resolved BuildInstances on a worker pool, consulting
                      the artifact cache before every dispatch.
    PipelineProgressDisplay: Live table implementing ProgressCallback.
    VerboseCallback: Plain line-per-phase printer for non-TTY verbose runs.
"""

import sys

from .callbacks import NullCallback, ProgressCallback
from .models import BuildInstance, InstancePhase, PipelineResult
from .pipeline import ParallelPipeline, PipelineCancelledError
from .pool import BuildPool, WorkerResult
from .progress_display import PipelineProgressDisplay
from .scheduler import CyclicDependencyError, DependencyScheduler


class VerboseCallback:
    """Simple text-based callback for non-TUI verbose mode."""

    def __init__(self, stream=None) -> None:
        self._stream = stream

    def on_progress(self, instance_id: str, phase: InstancePhase, elapsed: float, detail: str) -> None:
        """Print one line per terminal phase change."""
        if not phase.is_terminal and phase != InstancePhase.BUILDING:
            return
        stream = self._stream or (sys.stderr if phase == InstancePhase.FAILED else sys.stdout)
        phase_str = phase.value.capitalize()
        suffix = f" - {detail.strip().splitlines()[0]}" if detail.strip() else ""
        print(f"  {instance_id}: {phase_str}{suffix}", file=stream)


def is_tty() -> bool:
    """Check if stdout is a terminal (TTY)."""
    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


__all__ = [
    "BuildInstance",
    "BuildPool",
    "CyclicDependencyError",
    "DependencyScheduler",
    "InstancePhase",
    "NullCallback",
    "ParallelPipeline",
    "PipelineCancelledError",
    "PipelineProgressDisplay",
    "PipelineResult",
    "ProgressCallback",
    "VerboseCallback",
    "WorkerResult",
    "is_tty",
]
