"""Pipeline orchestrator connecting scheduler, cache and worker pool.

Runs a resolved graph of BuildInstances to completion by:
1. Using DependencyScheduler to track in-degrees and the ready heap
2. Consulting the ArtifactCache before dispatch (hits never reach a worker)
3. Submitting real builds to the BuildPool and reacting to completions
4. Skipping every not-yet-started consumer of a failed instance
5. Supporting stop-on-first-failure, cancel() and Ctrl-C, always letting
   in-flight build steps finish so no partial cache entry is left behind
"""

import logging
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from pathlib import Path
from typing import Optional

from modbuild.build.build_step import BuildStep
from modbuild.cache.artifact_cache import ArtifactCache, CacheError

from .callbacks import NullCallback, ProgressCallback
from .models import BuildInstance, InstancePhase, PipelineResult
from .pool import BuildPool, WorkerResult
from .scheduler import DependencyScheduler

logger = logging.getLogger(__name__)


class PipelineCancelledError(Exception):
    """Raised when the pipeline is cancelled via cancel().

    Attributes:
        result: Final pipeline state (in-flight builds completed, the rest cancelled)
    """

    def __init__(self, message: str, result: Optional[PipelineResult] = None) -> None:
        super().__init__(message)
        self.result = result


class ParallelPipeline:
    """Executes BuildInstances on a fixed-size worker pool.

    Args:
        max_workers: Number of concurrent build steps.
        step: External build step.
        cache: Artifact cache consulted before dispatch and written by workers.
        retry_failed: Rebuild instances whose cached outcome is a failure.
        stop_on_failure: Cancel every not-yet-started instance after the first failure.
        scratch_dir: Parent directory for step outputs (system temp by default).
    """

    def __init__(
        self,
        max_workers: int,
        step: BuildStep,
        cache: ArtifactCache,
        retry_failed: bool = False,
        stop_on_failure: bool = False,
        scratch_dir: Optional[Path] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self._max_workers = max_workers
        self._step = step
        self._cache = cache
        self._retry_failed = retry_failed
        self._stop_on_failure = stop_on_failure
        self._scratch_dir = scratch_dir
        self._cancelled = False
        self._cancel_signal: Future[None] = Future()
        self._lock = threading.Lock()

    def run(self, instances: list[BuildInstance], callback: Optional[ProgressCallback] = None) -> PipelineResult:
        """Execute the pipeline on the given instances.

        Returns when no instance is ready or running.

        Args:
            instances: Instances from variant resolution, dependencies first.
            callback: Progress callback for phase updates.

        Returns:
            PipelineResult with final instance states, timing and dispatch order.

        Raises:
            CyclicDependencyError: If the instances contain a cycle.
            PipelineCancelledError: If cancel() was called during the run.
        """
        callback = callback if callback is not None else NullCallback()
        start_time = time.monotonic()
        with self._lock:
            self._cancelled = False
            self._cancel_signal = Future()

        if not instances:
            return PipelineResult(instances=[], total_elapsed=0.0, success=True)

        scheduler = DependencyScheduler()
        for instance in instances:
            scheduler.add_instance(instance)
        scheduler.validate()

        dispatch_order: list[str] = []
        cache_errors: list[str] = []
        active: dict[Future[WorkerResult], str] = {}
        cancelled_by_request = False

        if self._scratch_dir is not None:
            self._scratch_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="modbuild-", dir=self._scratch_dir) as scratch:
            with BuildPool(self._max_workers, self._step, self._cache, Path(scratch)) as pool:
                try:
                    while True:
                        if self._is_cancelled() and not cancelled_by_request:
                            cancelled_by_request = True
                            self._cancel_pending(scheduler, callback, "Pipeline cancelled")

                        self._dispatch_ready(scheduler, pool, callback, active, dispatch_order, cache_errors)
                        if not active:
                            break

                        waiters = list(active) if cancelled_by_request else list(active) + [self._cancel_signal]
                        done, _ = wait(waiters, return_when=FIRST_COMPLETED)
                        completed = [f for f in done if f in active]
                        completed.sort(key=lambda f: scheduler.get_instance(active[f]).priority)
                        for future in completed:
                            instance = scheduler.get_instance(active.pop(future))
                            self._complete(instance, future, scheduler, callback, cache_errors)

                except KeyboardInterrupt:
                    for future in active:
                        future.cancel()
                    self._cancel_pending(scheduler, callback, "Interrupted by user")
                    raise

        all_instances = scheduler.get_all_instances()
        result = PipelineResult(
            instances=all_instances,
            total_elapsed=time.monotonic() - start_time,
            success=all(i.phase.is_success for i in all_instances),
            dispatch_order=dispatch_order,
            cache_errors=cache_errors,
        )
        if cancelled_by_request:
            raise PipelineCancelledError("Pipeline was cancelled", result)
        return result

    def cancel(self) -> None:
        """Request pipeline cancellation. Thread-safe."""
        with self._lock:
            self._cancelled = True
            if not self._cancel_signal.done():
                self._cancel_signal.set_result(None)

    def _is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def _dispatch_ready(
        self,
        scheduler: DependencyScheduler,
        pool: BuildPool,
        callback: ProgressCallback,
        active: dict["Future[WorkerResult]", str],
        dispatch_order: list[str],
        cache_errors: list[str],
    ) -> None:
        """Resolve cache hits and fill idle workers, in priority order."""
        while len(active) < self._max_workers:
            instance = scheduler.pop_ready()
            if instance is None:
                return

            entry = None
            try:
                entry = self._cache.lookup(instance.key)
            except CacheError as e:
                logger.warning(f"Cache lookup failed for {instance.instance_id}, building instead: {e}")
                cache_errors.append(f"{instance.instance_id}: {e}")

            if entry is not None and entry.success:
                dispatch_order.append(instance.instance_id)
                instance.phase = InstancePhase.CACHED
                instance.from_cache = True
                instance.diagnostic = entry.diagnostic
                instance.artifact_path = str(entry.artifact_path) if entry.artifact_path else None
                logger.debug(f"Cache hit: {instance.instance_id}")
                callback.on_progress(instance.instance_id, InstancePhase.CACHED, 0.0, "Cached")
                scheduler.mark_succeeded(instance.instance_id)
                continue

            if entry is not None and not self._retry_failed:
                dispatch_order.append(instance.instance_id)
                instance.from_cache = True
                instance.fail(entry.diagnostic)
                logger.debug(f"Cached failure: {instance.instance_id}")
                callback.on_progress(instance.instance_id, InstancePhase.FAILED, 0.0, "Failed (cached)")
                self._propagate_failure(instance, scheduler, callback)
                continue

            if entry is not None:
                try:
                    self._cache.remove(instance.key)
                except OSError as e:
                    cache_errors.append(f"{instance.instance_id}: cannot drop cached failure: {e}")

            dispatch_order.append(instance.instance_id)
            instance.mark_started()
            scheduler.mark_phase(instance.instance_id, InstancePhase.BUILDING)
            callback.on_progress(instance.instance_id, InstancePhase.BUILDING, 0.0, "Building")
            future = pool.submit_build(instance, self._module_refs(instance, scheduler))
            active[future] = instance.instance_id

    def _module_refs(self, instance: BuildInstance, scheduler: DependencyScheduler) -> dict[str, Path]:
        """Artifact paths of every producer reachable from the instance."""
        refs: dict[str, Path] = {}
        seen: set[str] = set()
        pending = list(instance.dependencies)
        while pending:
            dep_id = pending.pop(0)
            if dep_id in seen:
                continue
            seen.add(dep_id)
            dep = scheduler.get_instance(dep_id)
            if dep.artifact is not None and dep.artifact_path is not None:
                refs[dep.artifact] = Path(dep.artifact_path)
            pending.extend(dep.dependencies)
        return refs

    def _complete(
        self,
        instance: BuildInstance,
        future: "Future[WorkerResult]",
        scheduler: DependencyScheduler,
        callback: ProgressCallback,
        cache_errors: list[str],
    ) -> None:
        """Apply a finished worker's result to the instance and its consumers."""
        try:
            result = future.result()
        except KeyboardInterrupt:
            raise
        except Exception as e:
            instance.fail(f"build worker raised {type(e).__name__}: {e}")
            callback.on_progress(instance.instance_id, InstancePhase.FAILED, instance.elapsed, str(e))
            self._propagate_failure(instance, scheduler, callback)
            return

        if result.cache_error:
            cache_errors.append(f"{instance.instance_id}: {result.cache_error}")

        if not result.outcome.success:
            instance.fail(result.outcome.diagnostic)
            logger.info(f"Build failed: {instance.instance_id}")
            callback.on_progress(instance.instance_id, InstancePhase.FAILED, instance.elapsed, "Failed")
            self._propagate_failure(instance, scheduler, callback)
            return

        instance.update_elapsed()
        instance.phase = InstancePhase.BUILT
        instance.diagnostic = result.outcome.diagnostic
        instance.artifact_path = str(result.artifact_path) if result.artifact_path else None
        callback.on_progress(instance.instance_id, InstancePhase.BUILT, instance.elapsed, f"Built in {instance.elapsed:.1f}s")
        scheduler.mark_succeeded(instance.instance_id)

    def _propagate_failure(self, instance: BuildInstance, scheduler: DependencyScheduler, callback: ProgressCallback) -> None:
        for skipped in scheduler.mark_failed(instance.instance_id):
            callback.on_progress(skipped.instance_id, InstancePhase.SKIPPED, 0.0, skipped.diagnostic)
        if self._stop_on_failure:
            self._cancel_pending(scheduler, callback, f"Stopped after '{instance.instance_id}' failed")

    def _cancel_pending(self, scheduler: DependencyScheduler, callback: ProgressCallback, reason: str) -> None:
        for cancelled in scheduler.cancel_pending():
            cancelled.diagnostic = reason
            callback.on_progress(cancelled.instance_id, InstancePhase.CANCELLED, 0.0, reason)
