"""Tests for the timestamped output helpers."""

import re
from io import StringIO

import pytest

from modbuild import output

TIMESTAMP = r"\d{2}:\d{2}\.\d{2}"


@pytest.fixture
def stream() -> StringIO:
    buffer = StringIO()
    output.init_timer(buffer)
    return buffer


def test_lines_are_timestamped(stream):
    output.log("Building project: demo")
    assert re.fullmatch(rf"{TIMESTAMP} Building project: demo\n", stream.getvalue())


def test_verbose_only_lines_hidden_by_default(stream):
    output.log("hidden", verbose_only=True)
    output.log_instance("built", "core@debug")
    assert stream.getvalue() == ""

    output.set_verbose(True)
    output.log_instance("built", "core@debug")
    assert "      [built] core@debug" in stream.getvalue()


def test_phase_and_detail(stream):
    output.log_phase(2, 5, "Building dependency graph...")
    output.log_detail("-> core@debug")
    lines = stream.getvalue().splitlines()
    assert lines[0].endswith("[2/5] Building dependency graph...")
    assert lines[1].endswith("      -> core@debug")


def test_counts_keep_order(stream):
    output.log_counts({"built": 2, "cache-hit": 1})
    assert stream.getvalue().rstrip().endswith("Instances: built=2, cache-hit=1")


def test_error_and_warning_prefixes(stream):
    output.log_error("modbuild.ini not found")
    output.log_warning("Build interrupted")
    text = stream.getvalue()
    assert "ERROR: modbuild.ini not found" in text
    assert "WARNING: Build interrupted" in text


def test_timed_logger(stream):
    with output.TimedLogger("Planning", phase=(1, 1)) as timed:
        timed.detail("3 instances, 1 to build")
    lines = stream.getvalue().splitlines()
    assert lines[0].endswith("[1/1] Planning...")
    assert lines[1].endswith("3 instances, 1 to build")
    assert re.search(r"Done \(\d+\.\d{2}s\)$", lines[2])


def test_timed_logger_silent_on_error(stream):
    with pytest.raises(RuntimeError):
        with output.TimedLogger("Planning"):
            raise RuntimeError("boom")
    assert "Done" not in stream.getvalue()
