"""
Error Collector - Structured error aggregation for one invocation.

Every problem found while scanning, building the graph, resolving variants,
running build steps or touching the cache is recorded here as a BuildError
instead of being raised, so the final report can enumerate all of them.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity level of a build error."""

    WARNING = "warning"
    ERROR = "error"


class ErrorPhase(Enum):
    """Where in the invocation an error was detected."""

    SCAN = "scan"
    GRAPH = "graph"
    VARIANT = "variant"
    BUILD = "build"
    CACHE = "cache"


@dataclass
class BuildError:
    """Single error or warning.

    Attributes:
        severity: WARNING or ERROR
        phase: Taxonomy bucket (scan, graph, variant, build, cache)
        message: One-line description naming every unit/artifact involved
        node: Unit path, artifact name or instance label the error is attached to
        nodes: Every node the error makes unbuildable (e.g. all members of a cycle)
        diagnostic: Verbatim text from an external step, if any
    """

    severity: ErrorSeverity
    phase: ErrorPhase
    message: str
    node: Optional[str] = None
    nodes: tuple[str, ...] = ()
    diagnostic: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def format(self) -> str:
        """Format error as human-readable text."""
        lines = [f"[{self.severity.value.upper()}] {self.phase.value}: {self.message}"]
        if self.node:
            lines.append(f"  at: {self.node}")
        if self.diagnostic:
            lines.append("  " + self.diagnostic.rstrip().replace("\n", "\n  "))
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "severity": self.severity.value,
            "phase": self.phase.value,
            "message": self.message,
            "node": self.node,
            "nodes": list(self.nodes),
            "diagnostic": self.diagnostic,
        }


class ErrorCollector:
    """Collects errors from every phase of an invocation. Thread-safe."""

    def __init__(self) -> None:
        self.errors: list[BuildError] = []
        self.lock = threading.Lock()

    def add_error(self, error: BuildError) -> None:
        """Add an error to the collection."""
        with self.lock:
            self.errors.append(error)
        logger.debug(f"Added {error.severity.value} {error.phase.value} error: {error.message}")

    def error(
        self,
        phase: ErrorPhase,
        message: str,
        node: Optional[str] = None,
        nodes: tuple[str, ...] = (),
        diagnostic: Optional[str] = None,
    ) -> BuildError:
        """Record an ERROR and return it."""
        err = BuildError(ErrorSeverity.ERROR, phase, message, node=node, nodes=nodes, diagnostic=diagnostic)
        self.add_error(err)
        return err

    def warning(self, phase: ErrorPhase, message: str, node: Optional[str] = None) -> BuildError:
        """Record a WARNING and return it."""
        err = BuildError(ErrorSeverity.WARNING, phase, message, node=node)
        self.add_error(err)
        return err

    def extend(self, errors: list[BuildError]) -> None:
        """Add several errors, keeping their order."""
        with self.lock:
            self.errors.extend(errors)

    def get_errors(self, severity: Optional[ErrorSeverity] = None) -> list[BuildError]:
        """Get all errors, optionally filtered by severity."""
        with self.lock:
            if severity:
                return [e for e in self.errors if e.severity == severity]
            return self.errors.copy()

    def get_errors_by_phase(self, phase: ErrorPhase) -> list[BuildError]:
        """Get errors for a specific phase."""
        with self.lock:
            return [e for e in self.errors if e.phase == phase]

    def has_errors(self) -> bool:
        """Check if any non-warning error was recorded."""
        with self.lock:
            return any(e.severity == ErrorSeverity.ERROR for e in self.errors)

    def get_error_count(self) -> dict[str, int]:
        """Get count of errors by severity."""
        with self.lock:
            return {
                "warnings": sum(1 for e in self.errors if e.severity == ErrorSeverity.WARNING),
                "errors": sum(1 for e in self.errors if e.severity == ErrorSeverity.ERROR),
                "total": len(self.errors),
            }

    def format_errors(self, max_errors: Optional[int] = None) -> str:
        """Format all errors as a human-readable report."""
        with self.lock:
            if not self.errors:
                return "No errors"
            errors_to_show = self.errors if max_errors is None else self.errors[:max_errors]
            lines = [err.format() for err in errors_to_show]
            hidden = len(self.errors) - len(errors_to_show)

        if hidden > 0:
            lines.append(f"... and {hidden} more errors")
        counts = self.get_error_count()
        lines.append(f"Summary: {counts['errors']} errors, {counts['warnings']} warnings")
        return "\n\n".join(lines)
