"""
Build orchestration for modbuild projects.

One invocation runs five phases:

    1. scan      every manifest source into a SourceUnit
    2. graph     units into a frozen GraphSkeleton (errors isolate subgraphs)
    3. variants  buildable nodes into keyed BuildInstances
    4. plan      instances against the cache and the previous ledger
    5. build     must-build instances on the worker pool

and ends with an InvocationReport. Nothing is raised for problems in the
project itself; they all land in the report.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from modbuild.cache.artifact_cache import ArtifactCache
from modbuild.cache.invalidation import InvalidationPlan, InvalidationTracker
from modbuild.config.manifest import ManifestError, ProjectManifest
from modbuild.pipeline.callbacks import ProgressCallback
from modbuild.pipeline.models import InstancePhase
from modbuild.pipeline.pipeline import ParallelPipeline, PipelineCancelledError
from modbuild.pipeline.progress_display import PipelineProgressDisplay

from .build_step import BuildStep, CommandBuildStep
from .error_collector import ErrorCollector
from .graph_builder import GraphBuilder, GraphSkeleton
from .report import InvocationReport
from .source_scanner import SourceScanner, SourceUnit
from .variants import ResolvedGraph, VariantResolver

logger = logging.getLogger(__name__)


@dataclass
class Analysis:
    """Everything known before any build step runs."""

    units: list[SourceUnit]
    skeleton: GraphSkeleton
    resolved: ResolvedGraph
    errors: ErrorCollector


class BuildOrchestrator:
    """Runs invocations for one project.

    Args:
        manifest: Loaded project manifest
        step: Build step (defaults to the manifest's command template)
    """

    def __init__(self, manifest: ProjectManifest, step: Optional[BuildStep] = None):
        self.manifest = manifest
        self._step = step
        self.cache = ArtifactCache(manifest.cache_dir)
        self.tracker = InvalidationTracker(self.cache, manifest.ledger_path)
        self._pipeline: Optional[ParallelPipeline] = None
        self._lock = threading.Lock()

    @property
    def step(self) -> BuildStep:
        """The build step, created from the manifest on first use.

        Raises:
            ManifestError: If the manifest has no command and no step was given
        """
        if self._step is None:
            if not self.manifest.command:
                raise ManifestError("[project] command is required to build")
            self._step = CommandBuildStep(
                self.manifest.command,
                toolchain=self.manifest.toolchain,
                cwd=self.manifest.project_dir,
                timeout=self.manifest.timeout,
            )
        return self._step

    @property
    def toolchain_id(self) -> str:
        if self._step is None and not self.manifest.command:
            return self.manifest.toolchain
        return self.step.identity

    def analyze(self, variant_names: Optional[Iterable[str]] = None) -> Analysis:
        """Scan, build the graph and resolve variants.

        Raises:
            ManifestError: If a requested variant is not declared
        """
        variants = self.manifest.select_variants(variant_names)
        errors = ErrorCollector()

        logger.info(f"[1/5] Scanning {len(self.manifest.sources)} sources...")
        scanner = SourceScanner(self.manifest.project_dir)
        units = scanner.scan_all(self.manifest.sources)

        logger.info("[2/5] Building dependency graph...")
        builder = GraphBuilder(mixed_mode=self.manifest.mixed_mode, external_artifacts=self.manifest.external_modules)
        skeleton = builder.build(units)
        errors.extend(list(skeleton.errors))

        logger.info(f"[3/5] Resolving {len(variants)} variant(s)...")
        resolver = VariantResolver(self.toolchain_id, self.manifest.module_options)
        resolved = resolver.resolve(skeleton, variants)
        errors.extend(resolved.errors)
        return Analysis(units=units, skeleton=skeleton, resolved=resolved, errors=errors)

    def plan(self, variant_names: Optional[Iterable[str]] = None) -> tuple[Analysis, InvalidationPlan]:
        """Analyze and classify instances without building anything."""
        analysis = self.analyze(variant_names)
        logger.info("[4/5] Checking cache...")
        return analysis, self.tracker.classify(analysis.resolved.instances)

    def build(
        self,
        variant_names: Optional[Iterable[str]] = None,
        jobs: Optional[int] = None,
        stop_on_failure: Optional[bool] = None,
        retry_failed: bool = False,
        callback: Optional[ProgressCallback] = None,
    ) -> InvocationReport:
        """Run one full invocation.

        Args:
            variant_names: Variants to build (manifest default when None)
            jobs: Worker count override
            stop_on_failure: Override the manifest's stop_on_failure
            retry_failed: Rebuild instances whose cached outcome is a failure
            callback: Progress callback for the pipeline

        Returns:
            InvocationReport for the invocation
        """
        start_time = time.monotonic()
        step = self.step
        analysis, plan = self.plan(variant_names)
        instances = analysis.resolved.instances

        for instance_id in plan.must_build:
            logger.debug(f"      must build {instance_id}: {plan.reasons[instance_id].value}")
        logger.info(f"      {len(plan.cache_hits)} cached, {len(plan.must_build)} to build")
        if isinstance(callback, PipelineProgressDisplay):
            for instance in instances:
                callback.register_instance(instance.instance_id, instance.key)

        pipeline = ParallelPipeline(
            max_workers=jobs or self.manifest.jobs,
            step=step,
            cache=self.cache,
            retry_failed=retry_failed,
            stop_on_failure=self.manifest.stop_on_failure if stop_on_failure is None else stop_on_failure,
            scratch_dir=self.manifest.cache_dir.parent / "tmp",
        )
        with self._lock:
            self._pipeline = pipeline

        logger.info(f"[5/5] Building with {jobs or self.manifest.jobs} worker(s)...")
        try:
            result = pipeline.run(instances, callback)
        except PipelineCancelledError as e:
            logger.warning("Build cancelled")
            result = e.result
        finally:
            with self._lock:
                self._pipeline = None

        if result is not None:
            logger.info(
                f"      {result.count(InstancePhase.BUILT)} built, {result.count(InstancePhase.CACHED)} cached, "
                f"{result.count(InstancePhase.FAILED)} failed in {result.total_elapsed:.2f}s"
            )

        self.tracker.record(instances)

        report = InvocationReport(
            project=self.manifest.name,
            variants=[v.name for v in analysis.resolved.variants],
            instances=result.instances if result is not None else instances,
            unbuildable=analysis.resolved.unbuildable,
            errors=analysis.errors.get_errors(),
            cache_errors=result.cache_errors if result is not None else plan.cache_errors,
            dispatch_order=result.dispatch_order if result is not None else [],
            removed=plan.removed,
            elapsed=time.monotonic() - start_time,
        )
        logger.info(f"Invocation finished: {report.counts}")
        return report

    def cancel(self) -> None:
        """Cancel the running invocation, if any. Thread-safe."""
        with self._lock:
            if self._pipeline is not None:
                self._pipeline.cancel()
