"""
Invalidation Tracker - Decide which instances must build this invocation.

Keys already encode each instance's full transitive input state, so this is a
thin diffing layer: an instance is a cache hit when its key has an entry, and
must build otherwise. The previous invocation's ledger (instance id -> key) is
only consulted to explain *why* an instance must build.

The ledger lives next to the cache directory (``<cache_dir>/../ledger.json``)
and is rewritten atomically at the end of every invocation.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from modbuild.pipeline.models import BuildInstance

from .artifact_cache import ArtifactCache, CacheError

logger = logging.getLogger(__name__)

LEDGER_FILE = "ledger.json"


class InvalidationReason(Enum):
    """Why an instance is (or is not) rebuilt."""

    CACHED = "cache-hit"
    CACHED_FAILURE = "cached-failure"
    NEW = "new"
    CHANGED = "changed"
    EVICTED = "evicted"
    CACHE_ERROR = "cache-error"

    @property
    def must_build(self) -> bool:
        return self not in (InvalidationReason.CACHED, InvalidationReason.CACHED_FAILURE)


@dataclass
class InvalidationPlan:
    """Classification of one invocation's instances.

    Attributes:
        reasons: instance_id -> reason, in instance order
        previous_keys: instance_id -> key from the previous invocation
        removed: instance ids recorded last time that no longer exist
        cache_errors: Lookup errors (each forces a build)
    """

    reasons: dict[str, InvalidationReason] = field(default_factory=dict)
    previous_keys: dict[str, str] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    cache_errors: list[str] = field(default_factory=list)

    @property
    def cache_hits(self) -> list[str]:
        return [i for i, r in self.reasons.items() if not r.must_build]

    @property
    def must_build(self) -> list[str]:
        return [i for i, r in self.reasons.items() if r.must_build]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "cache_hit": self.cache_hits,
            "must_build": {i: self.reasons[i].value for i in self.must_build},
            "removed": list(self.removed),
            "cache_errors": list(self.cache_errors),
        }


class InvalidationTracker:
    """Classifies instances against the cache and the previous ledger.

    Args:
        cache: Artifact cache to consult
        ledger_path: Ledger file (defaults to ``<cache_dir>/../ledger.json``)
    """

    def __init__(self, cache: ArtifactCache, ledger_path: Optional[Path] = None):
        self.cache = cache
        self.ledger_path = ledger_path if ledger_path is not None else cache.cache_dir.parent / LEDGER_FILE

    def load_ledger(self) -> dict[str, str]:
        """Previous invocation's instance_id -> key mapping (empty if missing or corrupt)."""
        if not self.ledger_path.exists():
            return {}
        try:
            with open(self.ledger_path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable ledger {self.ledger_path}: {e}")
            return {}
        instances = data.get("instances") if isinstance(data, dict) else None
        if not isinstance(instances, dict):
            return {}
        return {str(k): str(v) for k, v in instances.items()}

    def classify(self, instances: Iterable[BuildInstance]) -> InvalidationPlan:
        """Classify every instance as a cache hit or a must-build with a reason."""
        previous = self.load_ledger()
        previous_key_set = set(previous.values())
        plan = InvalidationPlan(previous_keys=previous)
        current_ids = set()

        for instance in instances:
            current_ids.add(instance.instance_id)
            try:
                entry = self.cache.lookup(instance.key)
            except CacheError as e:
                plan.reasons[instance.instance_id] = InvalidationReason.CACHE_ERROR
                plan.cache_errors.append(f"{instance.instance_id}: {e}")
                continue

            if entry is not None:
                reason = InvalidationReason.CACHED if entry.success else InvalidationReason.CACHED_FAILURE
            elif instance.instance_id in previous and previous[instance.instance_id] != instance.key:
                reason = InvalidationReason.CHANGED
            elif instance.key in previous_key_set:
                reason = InvalidationReason.EVICTED
            else:
                reason = InvalidationReason.NEW
            plan.reasons[instance.instance_id] = reason

        plan.removed = sorted(i for i in previous if i not in current_ids)
        logger.debug(f"Invalidation: {len(plan.cache_hits)} hits, {len(plan.must_build)} must build, {len(plan.removed)} removed")
        return plan

    def record(self, instances: Iterable[BuildInstance]) -> None:
        """Persist the current instance_id -> key ledger atomically."""
        data = {"instances": {i.instance_id: i.key for i in instances}}
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.ledger_path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        temp_file.replace(self.ledger_path)
        logger.debug(f"Recorded {len(data['instances'])} instances to {self.ledger_path}")
