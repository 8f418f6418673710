"""DAG-based dependency scheduler for the build pipeline.

Tracks the remaining in-degree of every instance and keeps a priority heap of
ready instances, ordered by (depth, insertion order), so the dispatch sequence
is deterministic for a given graph and completion sequence.
"""

import heapq
import threading
from typing import Optional

from .models import BuildInstance, InstancePhase


class CyclicDependencyError(ValueError):
    """Raised when the instance graph contains a cycle."""

    pass


class DependencyScheduler:
    """Schedules build instances based on their dependency DAG.

    Usage:
        scheduler = DependencyScheduler()
        scheduler.add_instance(core)
        scheduler.add_instance(app)
        scheduler.validate()  # raises CyclicDependencyError if cycle detected

        while (instance := scheduler.pop_ready()) is not None:
            ...
            scheduler.mark_succeeded(instance.instance_id)
    """

    def __init__(self) -> None:
        self._instances: dict[str, BuildInstance] = {}
        self._consumers: dict[str, list[str]] = {}
        self._remaining: dict[str, int] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._lock = threading.Lock()

    def add_instance(self, instance: BuildInstance) -> None:
        """Add an instance to the scheduler.

        Raises:
            ValueError: If an instance with the same id already exists.
        """
        with self._lock:
            if instance.instance_id in self._instances:
                raise ValueError(f"Duplicate instance: {instance.instance_id}")
            self._instances[instance.instance_id] = instance

    def validate(self) -> None:
        """Validate the graph and seed the ready heap.

        Raises:
            ValueError: If a dependency references a non-existent instance.
            CyclicDependencyError: If the dependency graph contains a cycle.
        """
        with self._lock:
            self._validate_references()
            self._detect_cycles()
            self._consumers = {i: [] for i in self._instances}
            self._remaining = {}
            self._ready = []
            for instance in self._instances.values():
                for dep in instance.dependencies:
                    self._consumers[dep].append(instance.instance_id)
                self._remaining[instance.instance_id] = len(instance.dependencies)
                if not instance.dependencies and instance.phase == InstancePhase.WAITING:
                    self._push(instance)

    def _validate_references(self) -> None:
        for instance in self._instances.values():
            for dep in instance.dependencies:
                if dep not in self._instances:
                    raise ValueError(f"Instance '{instance.instance_id}' depends on unknown instance '{dep}'")

    def _detect_cycles(self) -> None:
        """Iterative DFS with coloring (white/gray/black)."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color: dict[str, int] = {name: WHITE for name in self._instances}

        for root in self._instances:
            if color[root] != WHITE:
                continue
            path: list[str] = [root]
            stack: list[tuple[str, int]] = [(root, 0)]
            color[root] = GRAY
            while stack:
                name, idx = stack.pop()
                deps = self._instances[name].dependencies
                if idx < len(deps):
                    stack.append((name, idx + 1))
                    dep = deps[idx]
                    if color[dep] == GRAY:
                        cycle = path[path.index(dep) :] + [dep]
                        raise CyclicDependencyError(f"Cyclic dependency detected: {' -> '.join(cycle)}")
                    if color[dep] == WHITE:
                        color[dep] = GRAY
                        path.append(dep)
                        stack.append((dep, 0))
                else:
                    color[name] = BLACK
                    path.pop()

    def _push(self, instance: BuildInstance) -> None:
        heapq.heappush(self._ready, (instance.depth, instance.order, instance.instance_id))

    def pop_ready(self) -> Optional[BuildInstance]:
        """Remove and return the highest-priority ready instance, or None."""
        with self._lock:
            while self._ready:
                _, _, instance_id = heapq.heappop(self._ready)
                instance = self._instances[instance_id]
                if instance.phase == InstancePhase.WAITING:
                    return instance
            return None

    def mark_phase(self, instance_id: str, phase: InstancePhase) -> None:
        """Update an instance's phase.

        Raises:
            KeyError: If the instance doesn't exist.
        """
        with self._lock:
            if instance_id not in self._instances:
                raise KeyError(f"Unknown instance: {instance_id}")
            self._instances[instance_id].phase = phase

    def mark_succeeded(self, instance_id: str) -> list[BuildInstance]:
        """Release consumers of a BUILT or CACHED instance.

        Returns:
            Consumers that became ready, in priority order.
        """
        released = []
        with self._lock:
            for consumer_id in self._consumers.get(instance_id, []):
                self._remaining[consumer_id] -= 1
                consumer = self._instances[consumer_id]
                if self._remaining[consumer_id] == 0 and consumer.phase == InstancePhase.WAITING:
                    self._push(consumer)
                    released.append(consumer)
        return sorted(released, key=lambda i: i.priority)

    def mark_failed(self, instance_id: str) -> list[BuildInstance]:
        """Transitively skip every not-yet-started consumer of a failed instance.

        Returns:
            The instances marked SKIPPED, in priority order.
        """
        skipped = []
        with self._lock:
            pending = list(self._consumers.get(instance_id, []))
            while pending:
                consumer = self._instances[pending.pop()]
                if consumer.phase != InstancePhase.WAITING:
                    continue
                consumer.skip(instance_id)
                skipped.append(consumer)
                pending.extend(self._consumers.get(consumer.instance_id, []))
        return sorted(skipped, key=lambda i: i.priority)

    def cancel_pending(self) -> list[BuildInstance]:
        """Mark every WAITING instance CANCELLED."""
        cancelled = []
        with self._lock:
            for instance in self._instances.values():
                if instance.phase == InstancePhase.WAITING:
                    instance.phase = InstancePhase.CANCELLED
                    instance.diagnostic = "cancelled before start"
                    cancelled.append(instance)
            self._ready = []
        return cancelled

    def get_instance(self, instance_id: str) -> BuildInstance:
        """Get an instance by id.

        Raises:
            KeyError: If the instance doesn't exist.
        """
        with self._lock:
            if instance_id not in self._instances:
                raise KeyError(f"Unknown instance: {instance_id}")
            return self._instances[instance_id]

    def get_all_instances(self) -> list[BuildInstance]:
        """Return all instances, in insertion order."""
        with self._lock:
            return list(self._instances.values())
