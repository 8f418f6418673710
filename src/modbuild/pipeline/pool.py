"""Worker pool for the build pipeline.

BuildPool wraps a ThreadPoolExecutor. Each worker runs one external build
step at a time and publishes the outcome to the artifact cache before the
future resolves, so a consumer is only released once its producer's artifact
is durable.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from modbuild.build.build_step import BuildOutcome, BuildRequest, BuildStep
from modbuild.cache.artifact_cache import ArtifactCache, CacheEntry, CacheError

from .models import BuildInstance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerResult:
    """What a worker hands back to the dispatch loop.

    Attributes:
        instance_id: Instance that was built
        outcome: Step outcome
        entry: Published cache entry (None if the store failed)
        cache_error: Store error text, if any
    """

    instance_id: str
    outcome: BuildOutcome
    entry: Optional[CacheEntry] = None
    cache_error: Optional[str] = None

    @property
    def artifact_path(self) -> Optional[Path]:
        if self.entry is not None and self.entry.artifact_path is not None:
            return self.entry.artifact_path
        return self.outcome.artifact_path


class BuildPool:
    """Thread pool that runs build steps and stores their outcomes.

    Args:
        max_workers: Maximum concurrent build steps.
        step: External build step.
        cache: Artifact cache receiving every outcome.
        scratch_dir: Directory for step outputs before they are cached.
    """

    def __init__(self, max_workers: int, step: BuildStep, cache: ArtifactCache, scratch_dir: Path) -> None:
        self._max_workers = max_workers
        self._step = step
        self._cache = cache
        self._scratch_dir = scratch_dir
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="build")
        self._shutdown = False
        self._lock = threading.Lock()

    def submit_build(self, instance: BuildInstance, module_refs: dict[str, Path]) -> "Future[WorkerResult]":
        """Submit a build for the given instance.

        Args:
            instance: Instance to build (not mutated by the worker).
            module_refs: Artifact name -> artifact path of every transitive dependency.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        with self._lock:
            if self._shutdown:
                raise RuntimeError("BuildPool has been shut down")
        request = BuildRequest(
            instance_id=instance.instance_id,
            node_id=instance.node_id,
            source_path=instance.source_path,
            output_path=self._scratch_dir / instance.key[:16] / "artifact",
            defines=instance.variant.define_map,
            flags=instance.variant.flag_map,
            module_refs=dict(module_refs),
        )
        return self._executor.submit(self._do_build, instance.key, instance.node_id, request)

    def _do_build(self, key: str, node_id: str, request: BuildRequest) -> WorkerResult:
        """Run the step in a worker thread, then publish the outcome."""
        try:
            request.output_path.parent.mkdir(parents=True, exist_ok=True)
            outcome = self._step.build(request)
        except Exception as e:
            logger.debug(f"Build step raised for {request.instance_id}", exc_info=True)
            outcome = BuildOutcome(success=False, diagnostic=f"build step raised {type(e).__name__}: {e}")

        try:
            entry = self._cache.store(key, outcome, node_id=node_id, instance_id=request.instance_id)
        except CacheError as e:
            logger.warning(f"Cache store failed for {request.instance_id}: {e}")
            return WorkerResult(request.instance_id, outcome, cache_error=str(e))
        return WorkerResult(request.instance_id, outcome, entry=entry)

    def shutdown(self, cancel_futures: bool = False) -> None:
        """Shut down the pool, waiting for in-flight builds to finish."""
        with self._lock:
            self._shutdown = True
        self._executor.shutdown(wait=True, cancel_futures=cancel_futures)

    @property
    def max_workers(self) -> int:
        """Maximum number of concurrent build workers."""
        return self._max_workers

    def __enter__(self) -> "BuildPool":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()
