"""Configuration variants and their expansion into build instances.

A ConfigVariant is a requested configuration (``debug``, ``release``...) made
of macro defines, toolchain flags and per-artifact macro overrides. The
VariantResolver expands every buildable graph node into one BuildInstance per
*effective* variant and computes each instance's cache key.

Design:
    A node only sees the defines its transitive macro surface can observe,
    plus all flags. Two requested variants that differ only in a macro a
    producer never tests therefore share the producer's instance, while a
    macro the producer does test splits it into distinct instances with
    distinct keys. Keys fold in the dependency keys, so the separation
    propagates to every consumer and two variants of one artifact can never
    share a cache slot.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from modbuild.pipeline.models import BuildInstance, InstancePhase

from .error_collector import BuildError, ErrorCollector, ErrorPhase, ErrorSeverity
from .graph_builder import GraphNode, GraphSkeleton

logger = logging.getLogger(__name__)

CACHE_KEY_SCHEMA = 1


class VariantCollisionError(RuntimeError):
    """Two distinct (node, variant) pairs resolved to the same cache key."""

    pass


def _normalize_pairs(values: Optional[Mapping[str, Any]], bare: str) -> tuple[tuple[str, str], ...]:
    if not values:
        return ()
    normalized = []
    for key, value in values.items():
        text = "" if value is None else str(value).strip()
        normalized.append((str(key).strip(), text if text else bare))
    return tuple(sorted(normalized))


@dataclass(frozen=True)
class ConfigVariant:
    """A named build configuration.

    Equality and hashing cover only the normalized option mappings; the name
    is a display label.

    Attributes:
        name: Display name (e.g. "debug")
        defines: Sorted (macro, value) pairs; a bare macro is encoded as "1"
        flags: Sorted (option, value) pairs applied to every node
        overrides: Sorted (artifact, ((macro, value), ...)) pairs
    """

    name: str = field(default="default", compare=False)
    defines: tuple[tuple[str, str], ...] = ()
    flags: tuple[tuple[str, str], ...] = ()
    overrides: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = ()

    @classmethod
    def create(
        cls,
        name: str = "default",
        defines: Optional[Mapping[str, Any]] = None,
        flags: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> "ConfigVariant":
        """Build a normalized variant from plain mappings."""
        normalized_overrides = tuple(
            sorted((str(artifact), _normalize_pairs(macros, "1")) for artifact, macros in (overrides or {}).items() if macros)
        )
        return cls(
            name=name,
            defines=_normalize_pairs(defines, "1"),
            flags=_normalize_pairs(flags, ""),
            overrides=normalized_overrides,
        )

    @property
    def define_map(self) -> dict[str, str]:
        return dict(self.defines)

    @property
    def flag_map(self) -> dict[str, str]:
        return dict(self.flags)

    def overrides_for(self, artifact: Optional[str]) -> dict[str, str]:
        """Macro overrides targeting one artifact."""
        for name, macros in self.overrides:
            if name == artifact:
                return dict(macros)
        return {}

    def canonical(self) -> str:
        """Canonical JSON encoding (sorted keys, no whitespace)."""
        return json.dumps(
            {"defines": self.defines, "flags": self.flags, "overrides": self.overrides},
            sort_keys=True,
            separators=(",", ":"),
        )

    @property
    def fingerprint(self) -> str:
        """Short stable digest of the normalized options."""
        return hashlib.sha256(self.canonical().encode("utf-8")).hexdigest()[:12]

    def restricted(self, macros: Iterable[str], extra: Optional[Mapping[str, str]] = None) -> "ConfigVariant":
        """Effective variant for a node: defines limited to ``macros`` plus overrides."""
        allowed = set(macros)
        defines = {k: v for k, v in self.defines if k in allowed}
        defines.update(extra or {})
        return ConfigVariant.create(name=self.name, defines=defines, flags=dict(self.flags))

    def describe(self) -> str:
        """Human readable ``name{A=1, opt=2}`` form."""
        parts = [f"{k}={v}" for k, v in self.defines] + [f"{k}={v}" for k, v in self.flags]
        return f"{self.name}{{{', '.join(parts)}}}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "defines": dict(self.defines),
            "flags": dict(self.flags),
            "overrides": {artifact: dict(macros) for artifact, macros in self.overrides},
        }


def compute_cache_key(
    node_id: str,
    content_hash: str,
    dependency_keys: Iterable[str],
    variant: ConfigVariant,
    toolchain_id: str,
) -> str:
    """Content-derived cache key; a pure function of transitive inputs.

    Dependency keys are hashed in the order given, which is the unit's
    declaration order and therefore itself an input.
    """
    document = json.dumps(
        {
            "schema": CACHE_KEY_SCHEMA,
            "node": node_id,
            "source": content_hash,
            "deps": list(dependency_keys),
            "variant": json.loads(variant.canonical()),
            "toolchain": toolchain_id,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class UnbuildableInstance:
    """A (node, requested variant) pair that will not be scheduled.

    Attributes:
        label: ``<node>@<variant>``
        node_id: Graph node id
        variant_name: Requested variant name
        phase: REJECTED (the node itself is broken) or SKIPPED (a producer is)
        reason: Why it cannot build
        blocked_by: Label of the rejected producer, for SKIPPED entries
    """

    label: str
    node_id: str
    variant_name: str
    phase: InstancePhase
    reason: str
    blocked_by: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "node_id": self.node_id,
            "variant": self.variant_name,
            "phase": self.phase.value,
            "reason": self.reason,
            "blocked_by": self.blocked_by,
        }


@dataclass
class ResolvedGraph:
    """Output of variant resolution.

    Attributes:
        instances: Schedulable instances, every dependency before its consumers
        unbuildable: Rejected/skipped (node, variant) pairs
        errors: Variant-resolution errors
        variants: Requested variants, in request order
    """

    instances: list[BuildInstance]
    unbuildable: list[UnbuildableInstance]
    errors: list[BuildError]
    variants: list[ConfigVariant]

    def get(self, instance_id: str) -> BuildInstance:
        for instance in self.instances:
            if instance.instance_id == instance_id:
                return instance
        raise KeyError(f"Unknown instance: {instance_id}")

    def for_node(self, node_id: str) -> list[BuildInstance]:
        """All instances of one node, in creation order."""
        return [i for i in self.instances if i.node_id == node_id]


@dataclass
class _Slot:
    node: GraphNode
    variant: ConfigVariant
    key: str
    dep_slots: list["_Slot"]
    depth: int
    order: int
    names: list[str] = field(default_factory=list)


class VariantResolver:
    """Expands a GraphSkeleton into BuildInstances for the requested variants.

    Args:
        toolchain_id: Toolchain identity folded into every cache key.
        declared_options: artifact -> {macro -> allowed values or None}; the
            artifact's declared configuration surface from the manifest.
    """

    def __init__(self, toolchain_id: str, declared_options: Optional[Mapping[str, Mapping[str, Optional[frozenset[str]]]]] = None) -> None:
        self.toolchain_id = toolchain_id
        self.declared_options = dict(declared_options or {})

    def resolve(self, skeleton: GraphSkeleton, variants: Iterable[ConfigVariant]) -> ResolvedGraph:
        """Create instances and keys for every buildable (node, variant) pair."""
        variants = list(variants) or [ConfigVariant.create("default")]
        errors = ErrorCollector()
        unbuildable: list[UnbuildableInstance] = []
        order = topological_order(skeleton)
        surfaces = self._transitive_surfaces(skeleton, order)

        slots: dict[tuple[str, str], _Slot] = {}
        slot_order: list[_Slot] = []

        for variant in variants:
            errors.extend(self._check_override_targets(skeleton, variant))

        for node_id in order:
            node = skeleton.nodes[node_id]
            for variant in variants:
                self._resolve_one(node, variant, skeleton, surfaces, slots, slot_order, errors, unbuildable)

        for variant in variants:
            for node_id in skeleton.order:
                if skeleton.is_buildable(node_id):
                    continue
                unbuildable.append(self._unbuildable_from_graph(skeleton, node_id, variant))

        instances = self._materialize(slot_order)
        _check_isolation(instances)
        unbuildable.sort(key=lambda u: (skeleton.order.index(u.node_id), [v.name for v in variants].index(u.variant_name)))
        logger.debug(f"Resolved {len(instances)} instances across {len(variants)} variants")
        return ResolvedGraph(instances=instances, unbuildable=unbuildable, errors=errors.get_errors(), variants=variants)

    def _transitive_surfaces(self, skeleton: GraphSkeleton, order: list[str]) -> dict[str, frozenset[str]]:
        surfaces: dict[str, frozenset[str]] = {}
        for node_id in order:
            node = skeleton.nodes[node_id]
            own = set(node.unit.macro_surface)
            own.update(self.declared_options.get(node_id, {}).keys())
            for dep in node.dependencies:
                own |= surfaces[dep]
            surfaces[node_id] = frozenset(own)
        return surfaces

    def _check_override_targets(self, skeleton: GraphSkeleton, variant: ConfigVariant) -> list[BuildError]:
        problems = []
        for artifact, _macros in variant.overrides:
            if artifact not in skeleton.nodes:
                problems.append(
                    BuildError(
                        severity=ErrorSeverity.ERROR,
                        phase=ErrorPhase.VARIANT,
                        message=f"variant incompatibility: variant '{variant.name}' overrides unknown artifact '{artifact}'",
                        node=artifact,
                    )
                )
        return problems

    def _resolve_one(self, node, variant, skeleton, surfaces, slots, slot_order, errors, unbuildable) -> None:
        label = f"{node.node_id}@{variant.name}"
        dep_slots: list[_Slot] = []
        for dep in node.dependencies:
            dep_slot = slots.get((dep, variant.name))
            if dep_slot is None:
                dep_label = f"{dep}@{variant.name}"
                root = next((u.blocked_by for u in unbuildable if u.label == dep_label and u.blocked_by), dep_label)
                unbuildable.append(
                    UnbuildableInstance(
                        label=label,
                        node_id=node.node_id,
                        variant_name=variant.name,
                        phase=InstancePhase.SKIPPED,
                        reason=f"dependency '{root}' cannot be built",
                        blocked_by=root,
                    )
                )
                return
            dep_slots.append(dep_slot)

        problem = self._incompatibility(node, variant, surfaces[node.node_id])
        if problem:
            errors.error(ErrorPhase.VARIANT, problem, node=label, nodes=(label,))
            unbuildable.append(
                UnbuildableInstance(label=label, node_id=node.node_id, variant_name=variant.name, phase=InstancePhase.REJECTED, reason=problem)
            )
            return

        effective = variant.restricted(surfaces[node.node_id], variant.overrides_for(node.artifact))
        key = compute_cache_key(node.node_id, node.unit.content_hash, [s.key for s in dep_slots], effective, self.toolchain_id)
        # The key already folds in the node id, so equal keys mean the same instance.
        slot = next((candidate for candidate in slot_order if candidate.key == key), None)
        if slot is None:
            depth = 1 + max((s.depth for s in dep_slots), default=-1)
            slot = _Slot(node=node, variant=effective, key=key, dep_slots=dep_slots, depth=depth, order=len(slot_order))
            slot_order.append(slot)
        slot.names.append(variant.name)
        slots[(node.node_id, variant.name)] = slot

    def _incompatibility(self, node: GraphNode, variant: ConfigVariant, surface: frozenset[str]) -> Optional[str]:
        overrides = variant.overrides_for(node.artifact)
        for macro in sorted(overrides):
            if macro not in surface:
                return (
                    f"variant incompatibility: variant '{variant.name}' sets '{macro}' for artifact "
                    f"'{node.node_id}', which does not recognize it"
                )

        requested = variant.define_map
        requested.update(overrides)
        for macro, allowed in sorted(self.declared_options.get(node.node_id, {}).items()):
            if allowed is None or macro not in requested:
                continue
            if requested[macro] not in allowed:
                choices = ", ".join(sorted(allowed))
                return (
                    f"variant incompatibility: variant '{variant.name}' sets {macro}={requested[macro]} but artifact "
                    f"'{node.node_id}' accepts {macro} in {{{choices}}}"
                )
        return None

    def _unbuildable_from_graph(self, skeleton: GraphSkeleton, node_id: str, variant: ConfigVariant) -> UnbuildableInstance:
        label = f"{node_id}@{variant.name}"
        if node_id in skeleton.rejected:
            return UnbuildableInstance(
                label=label, node_id=node_id, variant_name=variant.name, phase=InstancePhase.REJECTED, reason=skeleton.rejected[node_id]
            )
        root = skeleton.blocked[node_id]
        return UnbuildableInstance(
            label=label,
            node_id=node_id,
            variant_name=variant.name,
            phase=InstancePhase.SKIPPED,
            reason=f"dependency '{root}' cannot be built ({skeleton.rejected[root]})",
            blocked_by=f"{root}@{variant.name}",
        )

    def _materialize(self, slot_order: list[_Slot]) -> list[BuildInstance]:
        ids = {id(slot): f"{slot.node.node_id}@{'+'.join(slot.names)}" for slot in slot_order}
        instances = []
        for slot in slot_order:
            instances.append(
                BuildInstance(
                    instance_id=ids[id(slot)],
                    node_id=slot.node.node_id,
                    unit=slot.node.unit.identity,
                    source_path=slot.node.unit.path,
                    content_hash=slot.node.unit.content_hash,
                    variant=slot.variant,
                    variant_names=tuple(slot.names),
                    dependencies=[ids[id(dep)] for dep in slot.dep_slots],
                    key=slot.key,
                    depth=slot.depth,
                    order=slot.order,
                )
            )
        return instances


def topological_order(skeleton: GraphSkeleton) -> list[str]:
    """Buildable node ids, producers first, otherwise in manifest order."""
    visited: set[str] = set()
    result: list[str] = []
    for root in skeleton.order:
        if root in visited or not skeleton.is_buildable(root):
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        visited.add(root)
        while stack:
            node_id, idx = stack.pop()
            deps = skeleton.nodes[node_id].dependencies
            if idx < len(deps):
                stack.append((node_id, idx + 1))
                dep = deps[idx]
                if dep not in visited:
                    visited.add(dep)
                    stack.append((dep, 0))
            else:
                result.append(node_id)
    return result


def _check_isolation(instances: list[BuildInstance]) -> None:
    """Every key belongs to exactly one (node, variant); one instance per node per requested variant."""
    owners: dict[str, tuple[str, str]] = {}
    per_variant: set[tuple[str, str]] = set()
    for instance in instances:
        owner = (instance.node_id, instance.variant.canonical())
        previous = owners.setdefault(instance.key, owner)
        if previous != owner:
            raise VariantCollisionError(f"cache key {instance.key[:12]} shared by {previous[0]} and {owner[0]}")
        for name in instance.variant_names:
            slot = (instance.node_id, name)
            if slot in per_variant:
                raise VariantCollisionError(f"artifact '{instance.node_id}' resolved twice under variant '{name}'")
            per_variant.add(slot)
