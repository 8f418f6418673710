"""Unit tests for project manifest loading.

Tests verify:
- Project keys, variant sections and module option sections
- Source globs keep manifest order and drop duplicates
- Invalid manifests raise ManifestError with the offending key named
- MODBUILD_* environment overrides
"""

from pathlib import Path

import pytest

from modbuild.build.graph_builder import MixedModePolicy
from modbuild.config.manifest import (
    ManifestError,
    get_cache_dir,
    load_manifest,
)


def _project(tmp_path: Path, manifest: str, files: tuple[str, ...] = ("src/core.cppm", "src/util.cppm", "src/main.cpp")) -> Path:
    for name in files:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("// unit\n")
    (tmp_path / "modbuild.ini").write_text(manifest)
    return tmp_path


MINIMAL = """\
[project]
sources = src/*.cppm src/*.cpp
"""

FULL = """\
[project]
name = demo
sources = src/*.cppm
          src/*.cpp
toolchain = clang-18
command = clang++ -std=c++20 {defines} {flags} {module_refs} -c {source} -o {output}
jobs = 3
cache_dir = build/cache
mixed_mode = warn
variants = debug
stop_on_failure = yes
external_modules = std vendor.json
timeout = 30

[variant:release]
flag.O = 2

[variant:debug]
define.DEBUG =
define.LEVEL = 2
flag.g =
module.core.io.TRACE = 1

[module:core.io]
options = DEBUG:0|1, TRACE
"""


class TestLoadManifest:
    """Valid manifests."""

    def test_minimal_defaults(self, tmp_path):
        project = _project(tmp_path, MINIMAL)
        manifest = load_manifest(project)
        assert manifest.name == project.resolve().name
        assert manifest.command is None
        assert manifest.toolchain == ""
        assert manifest.mixed_mode == MixedModePolicy.STRICT
        assert manifest.jobs >= 1
        assert manifest.cache_dir == project.resolve() / ".modbuild" / "cache"
        assert manifest.ledger_path == project.resolve() / ".modbuild" / "ledger.json"
        assert manifest.external_modules == frozenset({"std", "std.compat"})
        assert [v.name for v in manifest.select_variants()] == ["default"]

    def test_sources_in_manifest_order(self, tmp_path):
        project = _project(tmp_path, MINIMAL)
        manifest = load_manifest(project)
        root = project.resolve()
        assert manifest.sources == [root / "src/core.cppm", root / "src/util.cppm", root / "src/main.cpp"]

    def test_duplicate_sources_dropped(self, tmp_path):
        project = _project(tmp_path, "[project]\nsources = src/core.cppm src/*.cppm\n")
        manifest = load_manifest(project)
        root = project.resolve()
        assert manifest.sources == [root / "src/core.cppm", root / "src/util.cppm"]

    def test_full_manifest(self, tmp_path):
        project = _project(tmp_path, FULL)
        manifest = load_manifest(project)
        assert manifest.name == "demo"
        assert len(manifest.sources) == 3
        assert manifest.toolchain == "clang-18"
        assert manifest.command.startswith("clang++ -std=c++20")
        assert manifest.jobs == 3
        assert manifest.cache_dir == project.resolve() / "build" / "cache"
        assert manifest.mixed_mode == MixedModePolicy.WARN
        assert manifest.stop_on_failure is True
        assert manifest.external_modules == frozenset({"std", "vendor.json"})
        assert manifest.timeout == 30.0
        assert list(manifest.declared_variants) == ["release", "debug"]
        assert manifest.requested_variants == ["debug"]

    def test_variant_sections(self, tmp_path):
        manifest = load_manifest(_project(tmp_path, FULL))
        debug = manifest.declared_variants["debug"]
        assert debug.define_map == {"DEBUG": "1", "LEVEL": "2"}
        assert debug.flag_map == {"g": ""}
        assert debug.overrides_for("core.io") == {"TRACE": "1"}
        assert manifest.declared_variants["release"].flag_map == {"O": "2"}

    def test_module_options(self, tmp_path):
        manifest = load_manifest(_project(tmp_path, FULL))
        assert manifest.module_options == {"core.io": {"DEBUG": frozenset({"0", "1"}), "TRACE": None}}


class TestSelectVariants:
    """Variant selection."""

    def test_requested_by_manifest(self, tmp_path):
        manifest = load_manifest(_project(tmp_path, FULL))
        assert [v.name for v in manifest.select_variants()] == ["debug"]

    def test_explicit_names(self, tmp_path):
        manifest = load_manifest(_project(tmp_path, FULL))
        assert [v.name for v in manifest.select_variants(["release", "debug", "release"])] == ["release", "debug"]

    def test_all_declared_when_none_requested(self, tmp_path):
        manifest = load_manifest(_project(tmp_path, FULL.replace("variants = debug\n", "")))
        assert [v.name for v in manifest.select_variants()] == ["release", "debug"]

    def test_unknown_variant(self, tmp_path):
        manifest = load_manifest(_project(tmp_path, FULL))
        with pytest.raises(ManifestError, match="unknown variant 'profile'"):
            manifest.select_variants(["profile"])

    def test_unknown_requested_variant_fails_load(self, tmp_path):
        with pytest.raises(ManifestError, match="unknown variant"):
            load_manifest(_project(tmp_path, MINIMAL + "variants = nope\n"))


class TestInvalidManifests:
    """Every problem is a ManifestError."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError, match="not found"):
            load_manifest(tmp_path)

    def test_unparsable(self, tmp_path):
        with pytest.raises(ManifestError, match="cannot parse"):
            load_manifest(_project(tmp_path, "sources = x\n"))

    def test_missing_project_section(self, tmp_path):
        with pytest.raises(ManifestError, match=r"missing \[project\]"):
            load_manifest(_project(tmp_path, "[variant:debug]\ndefine.X = 1\n"))

    def test_missing_sources(self, tmp_path):
        with pytest.raises(ManifestError, match="sources"):
            load_manifest(_project(tmp_path, "[project]\nname = x\n"))

    @pytest.mark.parametrize(
        "extra,message",
        [
            ("colour = blue\n", "unknown key"),
            ("jobs = many\n", "jobs must be an integer"),
            ("jobs = 0\n", "jobs must be at least 1"),
            ("mixed_mode = lenient\n", "mixed_mode must be one of"),
            ("timeout = -1\n", "timeout must be positive"),
            ("timeout = soon\n", "timeout must be a number"),
            ("stop_on_failure = maybe\n", "stop_on_failure must be a boolean"),
        ],
    )
    def test_invalid_project_values(self, tmp_path, extra, message):
        with pytest.raises(ManifestError, match=message):
            load_manifest(_project(tmp_path, MINIMAL + extra))

    def test_absolute_source_pattern(self, tmp_path):
        with pytest.raises(ManifestError, match="relative"):
            load_manifest(_project(tmp_path, f"[project]\nsources = {tmp_path / 'src' / '*.cppm'}\n"))

    def test_unknown_section(self, tmp_path):
        with pytest.raises(ManifestError, match="unknown section"):
            load_manifest(_project(tmp_path, MINIMAL + "[toolchains]\nx = 1\n"))

    @pytest.mark.parametrize(
        "key,message",
        [
            ("DEBUG = 1", "must be define.NAME"),
            ("macro.DEBUG = 1", "unknown key kind 'macro'"),
            ("module.TRACE = 1", "must be module.ARTIFACT.NAME"),
        ],
    )
    def test_invalid_variant_keys(self, tmp_path, key, message):
        with pytest.raises(ManifestError, match=message):
            load_manifest(_project(tmp_path, MINIMAL + f"[variant:debug]\n{key}\n"))

    def test_invalid_option_macro(self, tmp_path):
        with pytest.raises(ManifestError, match="invalid macro name"):
            load_manifest(_project(tmp_path, MINIMAL + "[module:core]\noptions = 9LIVES\n"))


class TestEnvironment:
    """MODBUILD_* overrides."""

    def test_jobs_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MODBUILD_JOBS", "7")
        assert load_manifest(_project(tmp_path, MINIMAL + "jobs = 2\n")).jobs == 7

    def test_invalid_jobs_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MODBUILD_JOBS", "lots")
        with pytest.raises(ManifestError, match="MODBUILD_JOBS"):
            load_manifest(_project(tmp_path, MINIMAL))

    def test_cache_dir_precedence(self, tmp_path, monkeypatch):
        project = tmp_path.resolve()
        assert get_cache_dir(project) == project / ".modbuild" / "cache"
        monkeypatch.setenv("MODBUILD_DEV_MODE", "1")
        assert get_cache_dir(project) == project / ".modbuild" / "cache_dev"
        assert get_cache_dir(project, "out/cache") == project / "out" / "cache"
        monkeypatch.setenv("MODBUILD_CACHE_DIR", str(tmp_path / "shared"))
        assert get_cache_dir(project, "out/cache") == (tmp_path / "shared").resolve()
