"""Project manifest (``modbuild.ini``) loading.

Example::

    [project]
    name = demo
    sources = src/*.cppm
              src/*.cpp
    toolchain = clang-18
    command = clang++ -std=c++20 {defines} {flags} {module_refs} -c {source} -o {output}
    jobs = 4
    variants = release debug

    [variant:debug]
    define.DEBUG = 1
    flag.O = 0
    module.core.TRACE = 1

    [module:core]
    options = DEBUG:0|1, TRACE

Environment overrides: ``MODBUILD_CACHE_DIR`` (cache location),
``MODBUILD_JOBS`` (parallelism) and ``MODBUILD_DEV_MODE=1`` (default cache
under ``.modbuild/cache_dev`` so development runs never share artifacts with
regular ones).
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from modbuild.build.graph_builder import DEFAULT_EXTERNAL_ARTIFACTS, MixedModePolicy
from modbuild.build.variants import ConfigVariant

logger = logging.getLogger(__name__)

MANIFEST_NAME = "modbuild.ini"
PROJECT_SECTION = "project"
VARIANT_PREFIX = "variant:"
MODULE_PREFIX = "module:"
DEFAULT_VARIANT = "default"

_PROJECT_KEYS = frozenset(
    {"name", "sources", "toolchain", "command", "jobs", "cache_dir", "mixed_mode", "variants", "stop_on_failure", "external_modules", "timeout"}
)


class ManifestError(Exception):
    """Raised when the manifest is missing or invalid."""

    pass


def default_jobs() -> int:
    return os.cpu_count() or 1


def get_cache_dir(project_dir: Path, configured: Optional[str] = None) -> Path:
    """Cache directory respecting MODBUILD_CACHE_DIR and MODBUILD_DEV_MODE.

    Args:
        project_dir: Project root
        configured: ``cache_dir`` from the manifest, relative to the project

    Returns:
        Absolute cache directory
    """
    cache_env = os.environ.get("MODBUILD_CACHE_DIR")
    dev_mode = os.environ.get("MODBUILD_DEV_MODE") == "1"

    if cache_env:
        return Path(cache_env).resolve()
    elif configured:
        return (project_dir / configured).resolve()
    elif dev_mode:
        return (project_dir / ".modbuild" / "cache_dev").resolve()
    else:
        return (project_dir / ".modbuild" / "cache").resolve()


@dataclass
class ProjectManifest:
    """Parsed project configuration.

    Attributes:
        project_dir: Directory holding the manifest
        name: Project name
        sources: Unit paths in manifest order (globs expanded, duplicates removed)
        toolchain: Toolchain name folded into every cache key
        command: Build command template (None for scan-only use)
        jobs: Worker count
        cache_dir: Artifact cache directory
        mixed_mode: Strictness for mixed import/include usage
        declared_variants: Every ``[variant:NAME]`` section, in file order
        requested_variants: Variant names built by default
        module_options: artifact -> {macro -> allowed values or None}
        stop_on_failure: Cancel pending work after the first failure
        external_modules: Artifacts supplied by the toolchain
        timeout: Per-step timeout in seconds
    """

    project_dir: Path
    name: str
    sources: list[Path]
    toolchain: str = ""
    command: Optional[str] = None
    jobs: int = field(default_factory=default_jobs)
    cache_dir: Path = Path(".modbuild/cache")
    mixed_mode: MixedModePolicy = MixedModePolicy.STRICT
    declared_variants: dict[str, ConfigVariant] = field(default_factory=dict)
    requested_variants: list[str] = field(default_factory=list)
    module_options: dict[str, dict[str, Optional[frozenset[str]]]] = field(default_factory=dict)
    stop_on_failure: bool = False
    external_modules: frozenset[str] = DEFAULT_EXTERNAL_ARTIFACTS
    timeout: Optional[float] = None

    @property
    def ledger_path(self) -> Path:
        return self.cache_dir.parent / "ledger.json"

    def select_variants(self, names: Optional[Iterable[str]] = None) -> list[ConfigVariant]:
        """Variants to build: ``names`` if given, else the manifest's request.

        Raises:
            ManifestError: If a name has no ``[variant:NAME]`` section
        """
        selected = list(names) if names else list(self.requested_variants)
        if not selected:
            if self.declared_variants:
                return list(self.declared_variants.values())
            return [ConfigVariant.create(DEFAULT_VARIANT)]
        variants = []
        for name in dict.fromkeys(selected):
            if name in self.declared_variants:
                variants.append(self.declared_variants[name])
            elif name == DEFAULT_VARIANT and not self.declared_variants:
                variants.append(ConfigVariant.create(DEFAULT_VARIANT))
            else:
                known = ", ".join(self.declared_variants) or "none"
                raise ManifestError(f"unknown variant '{name}' (declared: {known})")
        return variants


def load_manifest(project_dir: Path, manifest_name: str = MANIFEST_NAME) -> ProjectManifest:
    """Read and validate ``<project_dir>/modbuild.ini``.

    Raises:
        ManifestError: If the file is missing, unparsable or has invalid values
    """
    project_dir = project_dir.resolve()
    manifest_path = project_dir / manifest_name
    if not manifest_path.is_file():
        raise ManifestError(f"{manifest_name} not found in {project_dir}")

    config = configparser.ConfigParser(delimiters=("=",), interpolation=None)
    config.optionxform = str  # type: ignore[assignment]
    try:
        config.read(manifest_path, encoding="utf-8")
    except configparser.Error as e:
        raise ManifestError(f"cannot parse {manifest_path}: {e}") from e

    return parse_manifest(config, project_dir)


def parse_manifest(config: configparser.ConfigParser, project_dir: Path) -> ProjectManifest:
    """Build a ProjectManifest from a loaded ConfigParser."""
    if not config.has_section(PROJECT_SECTION):
        raise ManifestError(f"missing [{PROJECT_SECTION}] section")
    project = config[PROJECT_SECTION]
    unknown = sorted(set(project) - _PROJECT_KEYS)
    if unknown:
        raise ManifestError(f"unknown key(s) in [{PROJECT_SECTION}]: {', '.join(unknown)}")

    patterns = project.get("sources", "").split()
    if not patterns:
        raise ManifestError("[project] sources must list at least one glob pattern")

    declared: dict[str, ConfigVariant] = {}
    module_options: dict[str, dict[str, Optional[frozenset[str]]]] = {}
    for section in config.sections():
        if section.startswith(VARIANT_PREFIX):
            name = section[len(VARIANT_PREFIX) :].strip()
            declared[name] = _parse_variant(name, config[section])
        elif section.startswith(MODULE_PREFIX):
            artifact = section[len(MODULE_PREFIX) :].strip()
            module_options[artifact] = _parse_options(artifact, config[section])
        elif section != PROJECT_SECTION:
            raise ManifestError(f"unknown section [{section}]")

    jobs_env = os.environ.get("MODBUILD_JOBS")
    manifest = ProjectManifest(
        project_dir=project_dir,
        name=project.get("name", project_dir.name).strip(),
        sources=expand_sources(project_dir, patterns),
        toolchain=project.get("toolchain", "").strip(),
        command=(project.get("command") or "").strip() or None,
        jobs=_parse_jobs(jobs_env if jobs_env else project.get("jobs"), "MODBUILD_JOBS" if jobs_env else "jobs"),
        cache_dir=get_cache_dir(project_dir, (project.get("cache_dir") or "").strip() or None),
        mixed_mode=_parse_mixed_mode(project.get("mixed_mode", MixedModePolicy.STRICT.value)),
        declared_variants=declared,
        requested_variants=project.get("variants", "").split(),
        module_options=module_options,
        stop_on_failure=_get_bool(project, "stop_on_failure"),
        external_modules=frozenset(project.get("external_modules", " ".join(sorted(DEFAULT_EXTERNAL_ARTIFACTS))).split()),
        timeout=_parse_timeout(project.get("timeout")),
    )
    manifest.select_variants()
    logger.debug(f"Loaded manifest '{manifest.name}': {len(manifest.sources)} sources, {len(declared)} variants")
    return manifest


def expand_sources(project_dir: Path, patterns: list[str]) -> list[Path]:
    """Expand glob patterns in order, dropping duplicates."""
    seen: dict[Path, None] = {}
    for pattern in patterns:
        if Path(pattern).is_absolute():
            raise ManifestError(f"source pattern must be relative to the project: {pattern}")
        matches = sorted(p for p in project_dir.glob(pattern) if p.is_file())
        if not matches:
            logger.warning(f"Source pattern matched no files: {pattern}")
        for path in matches:
            seen.setdefault(path.resolve(), None)
    return list(seen)


def _parse_variant(name: str, section: configparser.SectionProxy) -> ConfigVariant:
    defines: dict[str, str] = {}
    flags: dict[str, str] = {}
    overrides: dict[str, dict[str, str]] = {}
    for key, value in section.items():
        kind, _, rest = key.partition(".")
        if not rest:
            raise ManifestError(f"[variant:{name}] key '{key}' must be define.NAME, flag.NAME or module.ARTIFACT.NAME")
        if kind == "define":
            defines[rest] = value
        elif kind == "flag":
            flags[rest] = value
        elif kind == "module":
            artifact, _, macro = rest.rpartition(".")
            if not artifact or not macro:
                raise ManifestError(f"[variant:{name}] key '{key}' must be module.ARTIFACT.NAME")
            overrides.setdefault(artifact, {})[macro] = value
        else:
            raise ManifestError(f"[variant:{name}] unknown key kind '{kind}' in '{key}'")
    return ConfigVariant.create(name, defines=defines, flags=flags, overrides=overrides)


def _parse_options(artifact: str, section: configparser.SectionProxy) -> dict[str, Optional[frozenset[str]]]:
    unknown = sorted(set(section) - {"options"})
    if unknown:
        raise ManifestError(f"unknown key(s) in [module:{artifact}]: {', '.join(unknown)}")
    options: dict[str, Optional[frozenset[str]]] = {}
    for item in section.get("options", "").split(","):
        item = item.strip()
        if not item:
            continue
        macro, _, values = item.partition(":")
        macro = macro.strip()
        if not macro.isidentifier():
            raise ManifestError(f"[module:{artifact}] invalid macro name '{macro}'")
        allowed = frozenset(v.strip() for v in values.split("|") if v.strip()) if values else None
        options[macro] = allowed or None
    return options


def _parse_jobs(value: Optional[str], key: str) -> int:
    if value is None or not value.strip():
        return default_jobs()
    try:
        jobs = int(value)
    except ValueError:
        raise ManifestError(f"{key} must be an integer, got '{value}'")
    if jobs < 1:
        raise ManifestError(f"{key} must be at least 1, got {jobs}")
    return jobs


def _parse_timeout(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        timeout = float(value)
    except ValueError:
        raise ManifestError(f"timeout must be a number of seconds, got '{value}'")
    if timeout <= 0:
        raise ManifestError(f"timeout must be positive, got {value}")
    return timeout


def _parse_mixed_mode(value: str) -> MixedModePolicy:
    try:
        return MixedModePolicy(value.strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in MixedModePolicy)
        raise ManifestError(f"mixed_mode must be one of {choices}, got '{value}'")


def _get_bool(section: configparser.SectionProxy, key: str) -> bool:
    try:
        return section.getboolean(key, fallback=False)
    except ValueError:
        raise ManifestError(f"{key} must be a boolean, got '{section.get(key)}'")
