"""Tests for the modbuild command-line interface.

Tests verify:
- build/plan/graph/purge subcommands end to end with a real command template
- Exit codes: 0 success, 1 build failure, 2 configuration error
- --json output is machine readable
"""

import json
import shlex
import sys
from pathlib import Path

import pytest

from modbuild import __version__
from modbuild.cli import EXIT_CONFIG_ERROR, create_parser, main

# ─── Helpers ──────────────────────────────────────────────────────────────────

WRITE_OBJECT = "import sys; open(sys.argv[1], 'w').write('obj')"
FAIL = "import sys; sys.exit('error: boom')"
MIXED_MAIN = '#include "core.cppm"\nimport core;\nint main() {}\n'


def _project(tmp_path: Path, code: str = WRITE_OBJECT) -> Path:
    command = f"{shlex.quote(sys.executable)} -c {shlex.quote(code)} {{output}}"
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "core.cppm").write_text("export module core;\n")
    (tmp_path / "src" / "main.cpp").write_text("import core;\nint main() {}\n")
    (tmp_path / "modbuild.ini").write_text(f"[project]\nname = demo\nsources = src/*.cppm src/*.cpp\ncommand = {command}\njobs = 2\n")
    return tmp_path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


# ─── Tests ───────────────────────────────────────────────────────────────────


class TestParser:
    def test_build_arguments(self, tmp_path):
        args = create_parser().parse_args(["build", str(tmp_path), "-j", "4", "--variant", "debug", "--variant", "release", "--stop-on-failure"])
        assert args.command == "build"
        assert args.jobs == 4
        assert args.variants == ["debug", "release"]
        assert args.stop_on_failure

    def test_inspection_commands_accept_mixed_mode(self, tmp_path):
        parser = create_parser()
        assert parser.parse_args(["plan", str(tmp_path), "--mixed-mode", "warn"]).mixed_mode == "warn"
        assert parser.parse_args(["graph", str(tmp_path), "--mixed-mode", "strict"]).mixed_mode == "strict"
        assert parser.parse_args(["graph", str(tmp_path)]).mixed_mode is None

    def test_jobs_must_be_positive(self, tmp_path, capsys):
        assert _run(["build", str(tmp_path), "-j", "0"]) == 2

    def test_version(self, capsys):
        assert _run(["--version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert _run([]) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestBuildCommand:
    def test_json_report(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["build", str(project), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["counts"]["built"] == 2
        assert data["exit_code"] == 0

    def test_second_build_is_cached(self, tmp_path, capsys):
        project = _project(tmp_path)
        _run(["build", str(project), "--json"])
        capsys.readouterr()
        assert _run(["build", str(project), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["counts"]["cache-hit"] == 2
        assert data["counts"]["built"] == 0

    def test_plain_output(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["build", str(project), "--no-tui"]) == 0
        out = capsys.readouterr().out
        assert "Building project: demo" in out
        assert "SUCCESS" in out

    def test_failing_build(self, tmp_path, capsys):
        project = _project(tmp_path, FAIL)
        assert _run(["build", str(project), "--no-tui"]) == 1
        out = capsys.readouterr().out
        assert "failed: core@default" in out
        assert "error: boom" in out
        assert "skipped: unit:src/main.cpp@default" in out

    def test_missing_manifest(self, tmp_path, capsys):
        assert _run(["build", str(tmp_path)]) == EXIT_CONFIG_ERROR
        assert "modbuild.ini not found" in capsys.readouterr().out

    def test_missing_directory(self, tmp_path):
        assert _run(["build", str(tmp_path / "nope")]) == EXIT_CONFIG_ERROR

    def test_unknown_variant(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["build", str(project), "--variant", "profile"]) == EXIT_CONFIG_ERROR


class TestInspectionCommands:
    def test_plan_json(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["plan", str(project), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["must_build"] == {"core@default": "new", "unit:src/main.cpp@default": "new"}
        assert data["cache_hit"] == []

    def test_plan_text(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["plan", str(project)]) == 0
        assert "[new] core@default" in capsys.readouterr().out

    def test_graph(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["graph", str(project)]) == 0
        out = capsys.readouterr().out
        assert "core@default" in out
        assert "-> core@default" in out

    def test_graph_reports_errors(self, tmp_path, capsys):
        project = _project(tmp_path)
        (project / "src" / "main.cpp").write_text("import missing;\n")
        assert _run(["graph", str(project)]) == 1
        assert "unknown dependency" in capsys.readouterr().out

    def test_mixed_mode_option(self, tmp_path, capsys):
        project = _project(tmp_path)
        (project / "src" / "main.cpp").write_text(MIXED_MAIN)

        assert _run(["graph", str(project)]) == 1
        assert "mixed-mode" in capsys.readouterr().out
        assert _run(["graph", str(project), "--mixed-mode", "warn"]) == 0
        capsys.readouterr()

        assert _run(["plan", str(project), "--json"]) == 0
        assert "unit:src/main.cpp@default" not in json.loads(capsys.readouterr().out)["must_build"]
        assert _run(["plan", str(project), "--json", "--mixed-mode", "warn"]) == 0
        assert "unit:src/main.cpp@default" in json.loads(capsys.readouterr().out)["must_build"]


class TestPurgeCommand:
    def test_purge(self, tmp_path, capsys):
        project = _project(tmp_path)
        _run(["build", str(project), "--json"])
        capsys.readouterr()

        assert _run(["purge", str(project), "--dry-run"]) == 0
        assert "Would delete" in capsys.readouterr().out

        assert _run(["purge", str(project)]) == 0
        assert "Purged 2 entries" in capsys.readouterr().out

        assert _run(["plan", str(project), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert set(data["must_build"].values()) == {"evicted"}

    def test_purge_empty(self, tmp_path, capsys):
        project = _project(tmp_path)
        assert _run(["purge", str(project)]) == 0
        assert "No cache entries" in capsys.readouterr().out
