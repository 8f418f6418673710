"""
Timestamped user-facing output for modbuild.

Every line written by the CLI is prefixed with the time elapsed since the
program started, in MM:SS.cc format, so a slow scan or a long-running
compile shows up directly in the log.

Example output:
    00:00.02 modbuild v0.1.0
    00:00.03 [1/4] Scanning 12 units...
    00:00.05       core.cppm -> core
    00:01.40 [4/4] Building 9 instances (4 workers)...
    00:01.41       [built] core@release
    00:01.41       [cached] util@release

Usage:
    from modbuild.output import log, log_phase, log_detail

    log_phase(1, 4, "Scanning units...")
    log_detail("core.cppm -> core")
"""

import sys
import time
from types import TracebackType
from typing import Optional, TextIO

_start_time: Optional[float] = None
_output_stream: TextIO = sys.stdout
_verbose: bool = False


def init_timer(output_stream: Optional[TextIO] = None) -> None:
    """
    Initialize the program timer.

    Called automatically on first use; call it explicitly at CLI start so
    timestamps measure from process launch rather than from the first log.

    Args:
        output_stream: Optional output stream (defaults to sys.stdout)
    """
    global _start_time, _output_stream
    _start_time = time.time()
    if output_stream is not None:
        _output_stream = output_stream


def set_verbose(verbose: bool) -> None:
    """
    Set verbose mode.

    Args:
        verbose: If True, verbose_only messages are printed too.
    """
    global _verbose
    _verbose = verbose


def get_elapsed() -> float:
    """Return seconds elapsed since timer initialization."""
    if _start_time is None:
        init_timer()
    return time.time() - _start_time  # type: ignore[operator]


def format_timestamp() -> str:
    """Format the elapsed time as MM:SS.cc."""
    elapsed = get_elapsed()
    minutes = int(elapsed // 60)
    seconds = elapsed % 60
    return f"{minutes:02d}:{seconds:05.2f}"


def _print(message: str, end: str = "\n") -> None:
    timestamp = format_timestamp()
    line = f"{timestamp} {message}{end}"
    _output_stream.write(line)
    _output_stream.flush()


def log(message: str, verbose_only: bool = False) -> None:
    """
    Log a message with timestamp.

    Args:
        message: Message to log
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(message)


def log_phase(phase: int, total: int, message: str, verbose_only: bool = False) -> None:
    """
    Log an invocation phase message as ``[N/M] message``.

    Args:
        phase: Current phase number
        total: Total number of phases
        message: Phase description
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(f"[{phase}/{total}] {message}")


def log_detail(message: str, indent: int = 6, verbose_only: bool = False) -> None:
    """
    Log an indented detail line.

    Args:
        message: Detail message
        indent: Number of spaces to indent (default 6)
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(f"{' ' * indent}{message}")


def log_instance(status: str, label: str, verbose_only: bool = True) -> None:
    """
    Log a build instance status line as ``[status] label``.

    Args:
        status: Short status word (e.g. 'built', 'cached', 'failed')
        label: Instance label (e.g. 'core@debug')
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(f"      [{status}] {label}")


def log_header(title: str, version: str) -> None:
    """Log the program banner."""
    _print(f"{title} v{version}")
    _print("")


def log_counts(counts: dict[str, int], verbose_only: bool = False) -> None:
    """
    Log the per-invocation instance counts on one line.

    Args:
        counts: Mapping of outcome name to count (insertion order is kept)
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    parts = [f"{name}={value}" for name, value in counts.items()]
    _print(f"Instances: {', '.join(parts)}")


def log_build_complete(build_time: float, verbose_only: bool = False) -> None:
    """
    Log the invocation wall time.

    Args:
        build_time: Total time in seconds
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print("")
    _print(f"Build time: {build_time:.2f}s")


def log_error(message: str) -> None:
    """Log an error message."""
    _print(f"ERROR: {message}")


def log_warning(message: str) -> None:
    """Log a warning message."""
    _print(f"WARNING: {message}")


def log_success(message: str) -> None:
    """Log a success message."""
    _print(message)


class TimedLogger:
    """
    Context manager that logs an operation and its elapsed time.

    Usage:
        with TimedLogger("Scanning units", phase=(1, 4)) as timed:
            timed.detail("12 units")
        # logs "Done (0.02s)" on success
    """

    def __init__(self, operation: str, phase: Optional[tuple[int, int]] = None, verbose_only: bool = False):
        self.operation = operation
        self.phase = phase
        self.verbose_only = verbose_only
        self.start_time = 0.0

    def __enter__(self) -> "TimedLogger":
        self.start_time = time.time()
        if self.phase:
            log_phase(self.phase[0], self.phase[1], f"{self.operation}...", self.verbose_only)
        else:
            log(f"{self.operation}...", self.verbose_only)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        del exc_val, exc_tb
        elapsed = time.time() - self.start_time
        if exc_type is None:
            log_detail(f"Done ({elapsed:.2f}s)", verbose_only=self.verbose_only)
        return None

    def detail(self, message: str) -> None:
        """Log a detail message within this operation."""
        log_detail(message, verbose_only=self.verbose_only)
