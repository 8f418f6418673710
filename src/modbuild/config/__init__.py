"""Configuration parsing modules for modbuild."""

from .manifest import ManifestError, ProjectManifest, load_manifest

__all__ = ["ManifestError", "ProjectManifest", "load_manifest"]
