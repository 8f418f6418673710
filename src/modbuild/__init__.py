"""modbuild - Module-aware incremental build orchestrator for C++20 modules."""

__version__ = "0.1.0"
