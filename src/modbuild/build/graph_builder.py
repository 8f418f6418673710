"""Dependency graph construction over scanned units.

Turns the scanner's per-unit declarations into a frozen GraphSkeleton: one
node per unit (named after the artifact it exports, or ``unit:<path>`` when it
exports nothing), resolved producer edges, and every graph-construction error.

Errors never abort the whole graph. A node with a problem (scan error,
ambiguous producer, unknown dependency, mixed-mode conflict, cycle) is
*rejected*, every node that transitively depends on it is *blocked*, and the
rest of the graph stays buildable.
"""

import logging
import posixpath
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .error_collector import BuildError, ErrorCollector, ErrorPhase
from .source_scanner import Attachment, SourceUnit, UnitMode

logger = logging.getLogger(__name__)

UNIT_PREFIX = "unit:"
DEFAULT_EXTERNAL_ARTIFACTS = frozenset({"std", "std.compat"})


class MixedModePolicy(Enum):
    """How mixed import/include usage is treated at graph-build time."""

    STRICT = "strict"
    WARN = "warn"


@dataclass(frozen=True)
class Artifact:
    """A named, buildable interface product.

    Attributes:
        name: Globally unique artifact name (``core``, ``core:detail``)
        unit: Identity of the producing unit
        dependencies: Artifact names the producer imports
        attachment: NAMED or GLOBAL
    """

    name: str
    unit: str
    dependencies: frozenset[str]
    attachment: Attachment


@dataclass(frozen=True)
class GraphNode:
    """One buildable node: an artifact, or a unit that exports nothing."""

    node_id: str
    unit: SourceUnit
    dependencies: tuple[str, ...] = ()

    @property
    def artifact(self) -> Optional[str]:
        """Artifact name for artifact nodes, None for plain units."""
        return None if self.node_id.startswith(UNIT_PREFIX) else self.node_id


@dataclass(frozen=True)
class GraphSkeleton:
    """Frozen result of graph construction, consumed read-only downstream.

    Attributes:
        nodes: node id -> GraphNode, in manifest order
        artifacts: artifact name -> Artifact (ambiguous names excluded)
        errors: Scan and graph errors/warnings, in detection order
        rejected: node id -> reason the node itself cannot build
        blocked: node id -> rejected node id that blocks it
    """

    nodes: Mapping[str, GraphNode]
    artifacts: Mapping[str, Artifact]
    errors: tuple[BuildError, ...] = ()
    rejected: Mapping[str, str] = field(default_factory=dict)
    blocked: Mapping[str, str] = field(default_factory=dict)

    @property
    def order(self) -> tuple[str, ...]:
        """Node ids in manifest order."""
        return tuple(self.nodes)

    def is_buildable(self, node_id: str) -> bool:
        """True if the node is neither rejected nor blocked."""
        return node_id in self.nodes and node_id not in self.rejected and node_id not in self.blocked

    def buildable(self) -> list[GraphNode]:
        """Buildable nodes in manifest order."""
        return [n for n in self.nodes.values() if self.is_buildable(n.node_id)]

    def consumers_of(self, node_id: str) -> list[str]:
        """Direct consumers of a node, in manifest order."""
        return [n.node_id for n in self.nodes.values() if node_id in n.dependencies]


def node_id_for(unit: SourceUnit) -> str:
    """Node id for a unit: its artifact name, or ``unit:<identity>``."""
    return unit.exported if unit.exported is not None else UNIT_PREFIX + unit.identity


class GraphBuilder:
    """Builds a GraphSkeleton from scanned units.

    Args:
        mixed_mode: STRICT rejects mixed import/include usage, WARN only reports it.
        external_artifacts: Artifact names provided by the toolchain (e.g. ``std``);
            imports of these are not graph edges.
    """

    def __init__(
        self,
        mixed_mode: MixedModePolicy = MixedModePolicy.STRICT,
        external_artifacts: Iterable[str] = DEFAULT_EXTERNAL_ARTIFACTS,
    ) -> None:
        self.mixed_mode = mixed_mode
        self.external_artifacts = frozenset(external_artifacts)

    def build(self, units: Iterable[SourceUnit]) -> GraphSkeleton:
        """Construct the graph, collecting every error instead of raising."""
        units = list(units)
        errors = ErrorCollector()
        rejected: dict[str, str] = {}

        def reject(node_id: str, reason: str) -> None:
            rejected.setdefault(node_id, reason)

        # Scan errors
        for unit in units:
            for scan_error in unit.scan_errors:
                errors.error(ErrorPhase.SCAN, f"{unit.identity}: {scan_error}", node=unit.identity, nodes=(node_id_for(unit),))
            if unit.scan_errors:
                reject(node_id_for(unit), "scan error")

        # Artifact index
        producers: dict[str, list[SourceUnit]] = {}
        for unit in units:
            if unit.exported is not None:
                producers.setdefault(unit.exported, []).append(unit)
        ambiguous = {name for name, found in producers.items() if len(found) > 1}
        for name in sorted(ambiguous):
            identities = ", ".join(u.identity for u in producers[name])
            errors.error(ErrorPhase.GRAPH, f"ambiguous producer: artifact '{name}' is defined by {identities}", node=name, nodes=(name,))
            reject(name, "ambiguous producer")

        artifacts = {
            name: Artifact(
                name=name,
                unit=found[0].identity,
                dependencies=frozenset(found[0].dependencies),
                attachment=found[0].attachment,
            )
            for name, found in producers.items()
            if name not in ambiguous
        }

        # Nodes and dependency resolution
        nodes: dict[str, GraphNode] = {}
        for unit in units:
            node_id = node_id_for(unit)
            if node_id in nodes:
                continue
            deps: list[str] = []
            for name in unit.dependencies:
                if name in self.external_artifacts:
                    continue
                if name not in producers:
                    errors.error(
                        ErrorPhase.GRAPH,
                        f"unknown dependency: '{unit.identity}' imports '{name}', which no unit exports",
                        node=unit.identity,
                        nodes=(node_id,),
                    )
                    reject(node_id, f"unknown dependency '{name}'")
                    continue
                deps.append(name)
            nodes[node_id] = GraphNode(node_id=node_id, unit=unit, dependencies=tuple(deps))

        self._check_mixed_mode(units, nodes, artifacts, errors, reject)
        self._check_cycles(nodes, errors, reject)
        blocked = _propagate_blocked(nodes, rejected)

        if rejected or blocked:
            logger.info(f"Graph: {len(nodes)} nodes, {len(rejected)} rejected, {len(blocked)} blocked")

        return GraphSkeleton(
            nodes=MappingProxyType(nodes),
            artifacts=MappingProxyType(artifacts),
            errors=tuple(errors.get_errors()),
            rejected=MappingProxyType(rejected),
            blocked=MappingProxyType(blocked),
        )

    def _check_mixed_mode(self, units, nodes, artifacts, errors, reject) -> None:
        by_identity = {u.identity: u for u in units}

        def report(unit: SourceUnit, message: str) -> None:
            if self.mixed_mode == MixedModePolicy.STRICT:
                errors.error(ErrorPhase.GRAPH, f"mixed-mode: {message}", node=unit.identity, nodes=(node_id_for(unit),))
                reject(node_id_for(unit), "mixed-mode")
            else:
                errors.warning(ErrorPhase.GRAPH, f"mixed-mode: {message}", node=unit.identity)

        # artifacts each unit pulls in textually (named attachment only)
        textual: dict[str, set[str]] = {}
        for unit in units:
            seen: set[str] = set()
            for header in unit.fragment_includes + unit.purview_includes:
                target = _resolve_include(unit.identity, header, by_identity)
                if target is None:
                    continue
                if target.module is not None:
                    if target.exported is not None and target.attachment == Attachment.NAMED:
                        seen.add(target.exported)
                    if header in unit.purview_includes or target.is_interface:
                        report(unit, f"'{unit.identity}' textually includes module unit '{target.identity}'; import '{target.module_owner}' instead")
                elif unit.mode == UnitMode.IMPORTS and header in unit.purview_includes and target.mode == UnitMode.INCLUDES:
                    report(unit, f"'{unit.identity}' uses imports but textually includes '{target.identity}', which uses includes")
            textual[unit.identity] = seen

        for unit in units:
            direct = {d for d in unit.dependencies if d in artifacts}
            reachable_imports = set(direct)
            for dep in direct:
                reachable_imports.update(d for d in artifacts[dep].dependencies if d in artifacts)
            shared = textual[unit.identity] & reachable_imports
            for dep in direct:
                producer = by_identity.get(artifacts[dep].unit)
                if producer is not None:
                    shared |= textual.get(producer.identity, set()) & direct
            for name in sorted(shared):
                report(unit, f"'{unit.identity}' and its imports disagree on mode for artifact '{name}' (imported and textually included)")

    def _check_cycles(self, nodes: dict[str, GraphNode], errors: ErrorCollector, reject) -> None:
        for component in strongly_connected_components(nodes):
            if len(component) == 1 and component[0] not in nodes[component[0]].dependencies:
                continue
            cycle = _find_cycle(component, nodes)
            members = ", ".join(sorted(component))
            errors.error(
                ErrorPhase.GRAPH,
                f"cyclic dependency among {members}: {' -> '.join(cycle)}",
                node=cycle[0],
                nodes=tuple(sorted(component)),
            )
            for node_id in component:
                reject(node_id, "cyclic dependency")


def strongly_connected_components(nodes: Mapping[str, GraphNode]) -> list[list[str]]:
    """Tarjan's algorithm, iterative. Components come out in reverse topological order."""
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node_id, child_idx = work.pop()
            if child_idx == 0:
                index[node_id] = lowlink[node_id] = counter
                counter += 1
                stack.append(node_id)
                on_stack.add(node_id)
            deps = [d for d in nodes[node_id].dependencies if d in nodes]
            recursed = False
            for i in range(child_idx, len(deps)):
                dep = deps[i]
                if dep not in index:
                    work.append((node_id, i + 1))
                    work.append((dep, 0))
                    recursed = True
                    break
                if dep in on_stack:
                    lowlink[node_id] = min(lowlink[node_id], index[dep])
            if recursed:
                continue
            if lowlink[node_id] == index[node_id]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                components.append(component)
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node_id])
    return components


def _find_cycle(component: list[str], nodes: Mapping[str, GraphNode]) -> list[str]:
    """Return one closed path ``a -> ... -> a`` inside a strongly connected component."""
    members = set(component)
    start = min(component)
    parents: dict[str, str] = {}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for dep in nodes[current].dependencies:
            if dep not in members:
                continue
            if dep == start:
                path = [current]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                path.reverse()
                return path + [start]
            if dep not in parents:
                parents[dep] = current
                queue.append(dep)
    return [start, start]


def _resolve_include(identity: str, header: str, by_identity: Mapping[str, SourceUnit]) -> Optional[SourceUnit]:
    """Map an include target to a manifest unit, relative to the includer first."""
    relative = posixpath.normpath(posixpath.join(posixpath.dirname(identity), header))
    if relative in by_identity:
        return by_identity[relative]
    return by_identity.get(posixpath.normpath(header))


def _propagate_blocked(nodes: Mapping[str, GraphNode], rejected: Mapping[str, str]) -> dict[str, str]:
    """Every node that transitively depends on a rejected node, mapped to the root cause."""
    consumers: dict[str, list[str]] = {node_id: [] for node_id in nodes}
    for node in nodes.values():
        for dep in node.dependencies:
            if dep in consumers:
                consumers[dep].append(node.node_id)

    blocked: dict[str, str] = {}
    for root in nodes:
        if root not in rejected:
            continue
        queue = deque([root])
        while queue:
            current = queue.popleft()
            for consumer in consumers[current]:
                if consumer in rejected or consumer in blocked:
                    continue
                blocked[consumer] = root
                queue.append(consumer)
    return blocked
