"""
Build system components for modbuild.

This package provides:
- Lexical scanning of module declarations, imports and includes
- Dependency graph construction with ambiguity, mixed-mode and cycle checks
- Variant resolution into keyed build instances
- Build orchestration and the per-invocation report

The orchestrator is imported from ``modbuild.build.orchestrator`` directly.
"""

from .error_collector import BuildError, ErrorCollector, ErrorPhase, ErrorSeverity
from .graph_builder import GraphBuilder, GraphSkeleton, MixedModePolicy
from .source_scanner import SourceScanner, SourceUnit

__all__ = [
    "BuildError",
    "ErrorCollector",
    "ErrorPhase",
    "ErrorSeverity",
    "GraphBuilder",
    "GraphSkeleton",
    "MixedModePolicy",
    "SourceScanner",
    "SourceUnit",
]
