"""Data models for the build pipeline.

Defines the core dataclasses used throughout the pipeline:
- InstancePhase: Enum tracking where a build instance is in its lifecycle
- BuildInstance: One (node, effective variant) pair to build
- PipelineResult: Aggregated result of running the pipeline
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from modbuild.build.variants import ConfigVariant


class InstancePhase(Enum):
    """Phase of a build instance in the pipeline."""

    WAITING = "waiting"
    BUILDING = "building"
    BUILT = "built"
    CACHED = "cached"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self not in (InstancePhase.WAITING, InstancePhase.BUILDING)

    @property
    def is_success(self) -> bool:
        return self in (InstancePhase.BUILT, InstancePhase.CACHED)


@dataclass
class BuildInstance:
    """A single (node, effective variant) pair to be built.

    Attributes:
        instance_id: Stable label, ``<node>@<variant names>`` (e.g. "core@debug+release")
        node_id: Artifact name, or ``unit:<path>`` for units that export nothing
        unit: Identity of the source unit
        source_path: Path to the unit on disk (None for in-memory units)
        content_hash: SHA-256 of the unit's raw bytes
        variant: Effective ConfigVariant (defines restricted to the node's macro surface)
        variant_names: Requested variant names that share this instance
        dependencies: instance_ids that must complete successfully first
        key: Content-derived cache key
        depth: Longest dependency chain below this instance (leaves are 0)
        order: Insertion order, the second scheduling tie-breaker
        phase: Current pipeline phase
        diagnostic: Build step output (or failure reason)
        blocked_by: instance_id of the failed dependency (SKIPPED instances)
        from_cache: True if the outcome came from the artifact cache
        artifact_path: Cached artifact location once BUILT or CACHED
        start_time: Monotonic start timestamp
        elapsed: Seconds spent building
    """

    instance_id: str
    node_id: str
    unit: str
    source_path: Optional[Path]
    content_hash: str
    variant: "ConfigVariant"
    variant_names: tuple[str, ...]
    dependencies: list[str] = field(default_factory=list)
    key: str = ""
    depth: int = 0
    order: int = 0
    phase: InstancePhase = InstancePhase.WAITING
    diagnostic: str = ""
    blocked_by: Optional[str] = None
    from_cache: bool = False
    artifact_path: Optional[str] = None
    start_time: Optional[float] = None
    elapsed: float = 0.0

    @property
    def artifact(self) -> Optional[str]:
        """Artifact name, or None for plain and implementation units."""
        return None if self.node_id.startswith("unit:") else self.node_id

    @property
    def priority(self) -> tuple[int, int]:
        """Dispatch priority: shallower first, then insertion order."""
        return (self.depth, self.order)

    def mark_started(self) -> None:
        """Record the start time for elapsed time tracking."""
        self.start_time = time.monotonic()

    def update_elapsed(self) -> None:
        """Update elapsed time from start_time."""
        if self.start_time is not None:
            self.elapsed = time.monotonic() - self.start_time

    def fail(self, diagnostic: str) -> None:
        """Mark this instance as failed with a diagnostic."""
        self.phase = InstancePhase.FAILED
        self.diagnostic = diagnostic
        self.update_elapsed()

    def skip(self, blocked_by: str) -> None:
        """Mark this instance as skipped because a dependency failed."""
        self.phase = InstancePhase.SKIPPED
        self.blocked_by = blocked_by
        self.diagnostic = f"dependency '{blocked_by}' failed"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "unit": self.unit,
            "variant": self.variant.to_dict(),
            "variant_names": list(self.variant_names),
            "dependencies": list(self.dependencies),
            "key": self.key,
            "depth": self.depth,
            "phase": self.phase.value,
            "diagnostic": self.diagnostic,
            "blocked_by": self.blocked_by,
            "from_cache": self.from_cache,
            "artifact_path": self.artifact_path,
            "elapsed": self.elapsed,
        }


@dataclass
class PipelineResult:
    """Aggregated result of running the pipeline.

    Attributes:
        instances: Final state of all instances after the pipeline completes
        total_elapsed: Total wall-clock time in seconds
        success: True if every instance was BUILT or CACHED
        dispatch_order: instance_ids in the order their builds started
            (cache hits included, in the order they were resolved)
        cache_errors: Cache lookup/store failures (each degraded to a build)
    """

    instances: list[BuildInstance]
    total_elapsed: float
    success: bool
    dispatch_order: list[str] = field(default_factory=list)
    cache_errors: list[str] = field(default_factory=list)

    def count(self, phase: InstancePhase) -> int:
        """Number of instances in the given phase."""
        return sum(1 for i in self.instances if i.phase == phase)
