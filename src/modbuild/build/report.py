"""Per-invocation report.

Collects everything a user needs to tell "my code is broken" apart from "a
dependency broke" without re-running: outcome counts, every scan, graph and
variant error, and for each failed instance the verbatim step diagnostic plus
the consumers it caused to be skipped.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from modbuild.pipeline.models import BuildInstance, InstancePhase

from .error_collector import BuildError, ErrorSeverity
from .variants import UnbuildableInstance

COUNT_KEYS = ("built", "cache-hit", "failed", "skipped", "cancelled", "rejected")

_PHASE_COUNT_KEY = {
    InstancePhase.BUILT: "built",
    InstancePhase.CACHED: "cache-hit",
    InstancePhase.FAILED: "failed",
    InstancePhase.SKIPPED: "skipped",
    InstancePhase.CANCELLED: "cancelled",
    InstancePhase.REJECTED: "rejected",
}


@dataclass
class FailureRecord:
    """One failed instance and the consumers it took down."""

    instance_id: str
    diagnostic: str
    from_cache: bool
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "diagnostic": self.diagnostic,
            "from_cache": self.from_cache,
            "skipped": list(self.skipped),
        }


@dataclass
class InvocationReport:
    """Summary of one orchestrator invocation.

    Attributes:
        project: Project name
        variants: Requested variant names
        instances: Scheduled instances in their final phase
        unbuildable: (node, variant) pairs rejected or blocked before scheduling
        errors: Scan, graph and variant errors and warnings
        cache_errors: Cache failures that were degraded to forced builds
        dispatch_order: instance ids in the order they were started or resolved
        removed: Instance ids present last invocation but not in this one
        elapsed: Wall-clock seconds
    """

    project: str
    variants: list[str]
    instances: list[BuildInstance] = field(default_factory=list)
    unbuildable: list[UnbuildableInstance] = field(default_factory=list)
    errors: list[BuildError] = field(default_factory=list)
    cache_errors: list[str] = field(default_factory=list)
    dispatch_order: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def counts(self) -> dict[str, int]:
        """Outcome counts keyed by built, cache-hit, failed, skipped, cancelled, rejected."""
        counts = {key: 0 for key in COUNT_KEYS}
        for instance in self.instances:
            key = _PHASE_COUNT_KEY.get(instance.phase)
            if key is not None:
                counts[key] += 1
        for entry in self.unbuildable:
            counts[_PHASE_COUNT_KEY[entry.phase]] += 1
        return counts

    @property
    def build_invocations(self) -> int:
        """Number of external build steps actually run."""
        return self.counts["built"] + sum(1 for i in self.instances if i.phase == InstancePhase.FAILED and not i.from_cache)

    def failures(self) -> list[FailureRecord]:
        """Each failed instance with every consumer skipped because of it."""
        records = []
        for instance in self.instances:
            if instance.phase != InstancePhase.FAILED:
                continue
            skipped = [i.instance_id for i in self.instances if i.phase == InstancePhase.SKIPPED and i.blocked_by == instance.instance_id]
            records.append(FailureRecord(instance.instance_id, instance.diagnostic, instance.from_cache, skipped))
        return records

    def rejections(self) -> list[tuple[UnbuildableInstance, list[str]]]:
        """Each rejected (node, variant) pair with the pairs it blocked."""
        result = []
        for entry in self.unbuildable:
            if entry.phase != InstancePhase.REJECTED:
                continue
            blocked = [u.label for u in self.unbuildable if u.phase == InstancePhase.SKIPPED and u.blocked_by == entry.label]
            result.append((entry, blocked))
        return result

    @property
    def has_errors(self) -> bool:
        return any(e.severity == ErrorSeverity.ERROR for e in self.errors)

    @property
    def success(self) -> bool:
        counts = self.counts
        return not self.has_errors and not any(counts[k] for k in ("failed", "skipped", "cancelled", "rejected"))

    @property
    def exit_code(self) -> int:
        """0 iff nothing failed, was skipped, cancelled or rejected."""
        return 0 if self.success else 1

    def get_instance(self, instance_id: str) -> Optional[BuildInstance]:
        return next((i for i in self.instances if i.instance_id == instance_id), None)

    def phase_of(self, label: str) -> Optional[InstancePhase]:
        """Phase of an instance id or an unbuildable ``node@variant`` label."""
        instance = self.get_instance(label)
        if instance is not None:
            return instance.phase
        entry = next((u for u in self.unbuildable if u.label == label), None)
        return entry.phase if entry is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "project": self.project,
            "variants": list(self.variants),
            "success": self.success,
            "exit_code": self.exit_code,
            "counts": self.counts,
            "errors": [e.to_dict() for e in self.errors],
            "failures": [f.to_dict() for f in self.failures()],
            "unbuildable": [u.to_dict() for u in self.unbuildable],
            "cache_errors": list(self.cache_errors),
            "dispatch_order": list(self.dispatch_order),
            "removed": list(self.removed),
            "instances": [i.to_dict() for i in self.instances],
            "elapsed": self.elapsed,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def render(self, console: Console) -> None:
        """Print the human-readable report."""
        counts = self.counts
        summary = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        for key in COUNT_KEYS:
            summary.add_column(key, justify="right")
        summary.add_row(*(Text(str(counts[k]), style=_count_style(k, counts[k])) for k in COUNT_KEYS))
        console.print(summary)

        for error in self.errors:
            style = "red" if error.severity == ErrorSeverity.ERROR else "yellow"
            console.print(Text(f"{error.severity.value}: {error.phase.value}: {error.message}", style=style))

        for entry, blocked in self.rejections():
            console.print(Text(f"rejected: {entry.label}: {entry.reason}", style="red"))
            for label in blocked:
                console.print(Text(f"  skipped: {label}", style="yellow"))

        for failure in self.failures():
            origin = " (cached failure)" if failure.from_cache else ""
            console.print(Text(f"failed: {failure.instance_id}{origin}", style="red bold"))
            if failure.diagnostic.strip():
                console.print(Text("  " + failure.diagnostic.rstrip().replace("\n", "\n  ")))
            for label in failure.skipped:
                console.print(Text(f"  skipped: {label} (dependency failed)", style="yellow"))

        for message in self.cache_errors:
            console.print(Text(f"cache error (forced build): {message}", style="yellow"))

        status = Text("SUCCESS", style="green bold") if self.success else Text("FAILED", style="red bold")
        console.print(Text.assemble(status, f" in {self.elapsed:.2f}s"))


def _count_style(key: str, value: int) -> str:
    if value == 0:
        return "dim"
    if key in ("built", "cache-hit"):
        return "green"
    return "red" if key in ("failed", "rejected") else "yellow"
