"""Unit tests for the pipeline progress display (Rich-based TUI renderer).

Tests cover:
- PipelineProgressDisplay implements ProgressCallback
- Instance registration and ordering
- Phase transitions update display state correctly
- Status text formatting for all phases
- Footer summary counts
- Thread-safety: concurrent on_progress calls
- Console output capture with Rich StringIO
"""

import threading
from io import StringIO

from rich.console import Console

from modbuild.pipeline.callbacks import NullCallback, ProgressCallback
from modbuild.pipeline.models import InstancePhase
from modbuild.pipeline.progress_display import (
    PipelineProgressDisplay,
    _InstanceDisplayState,
)


def _display(verbose: bool = False) -> PipelineProgressDisplay:
    return PipelineProgressDisplay(
        console=Console(file=StringIO(), width=120),
        project_name="demo",
        refresh_per_second=4,
        verbose=verbose,
    )


class TestInstanceDisplayState:
    """Tests for the internal _InstanceDisplayState class."""

    def test_initial_state(self) -> None:
        """New state should be WAITING with no elapsed time."""
        state = _InstanceDisplayState("core@debug", "0123456789ab")
        assert state.name == "core@debug"
        assert state.key == "0123456789ab"
        assert state.phase == InstancePhase.WAITING
        assert state.detail == ""
        assert state.elapsed == 0.0
        assert state.start_time is None


class TestProgressDisplayProtocol:
    """Tests that PipelineProgressDisplay satisfies ProgressCallback."""

    def test_implements_protocol(self) -> None:
        assert isinstance(_display(), ProgressCallback)

    def test_null_callback_implements_protocol(self) -> None:
        callback = NullCallback()
        assert isinstance(callback, ProgressCallback)
        callback.on_progress("core@debug", InstancePhase.BUILT, 1.0, "done")


class TestRegistration:
    """Tests for instance registration and ordering."""

    def test_register_preserves_order(self) -> None:
        display = _display()
        display.register_instance("core@debug", "a" * 64)
        display.register_instance("util@debug", "b" * 64)
        snap = display.get_snapshot()
        assert [s["name"] for s in snap] == ["core@debug", "util@debug"]
        assert snap[0]["key"] == "a" * 12
        assert snap[0]["phase"] == InstancePhase.WAITING

    def test_register_duplicate_ignored(self) -> None:
        """First registration wins."""
        display = _display()
        display.register_instance("core@debug", "a" * 64)
        display.register_instance("core@debug", "b" * 64)
        snap = display.get_snapshot()
        assert len(snap) == 1
        assert snap[0]["key"] == "a" * 12

    def test_unregistered_instance_auto_registered(self) -> None:
        display = _display()
        display.on_progress("new@debug", InstancePhase.BUILDING, 0.0, "Building")
        snap = display.get_snapshot()
        assert snap[0]["name"] == "new@debug"
        assert snap[0]["phase"] == InstancePhase.BUILDING


class TestPhaseTransitions:
    """Tests for phase transition handling."""

    def test_building_to_built(self) -> None:
        display = _display()
        display.register_instance("core@debug")
        display.on_progress("core@debug", InstancePhase.BUILDING, 0.0, "Building")
        display.on_progress("core@debug", InstancePhase.BUILT, 2.5, "Built in 2.5s")
        snap = display.get_snapshot()
        assert snap[0]["phase"] == InstancePhase.BUILT
        assert snap[0]["elapsed"] == 2.5

    def test_failed_keeps_detail(self) -> None:
        display = _display()
        display.on_progress("core@debug", InstancePhase.FAILED, 0.0, "error: boom")
        assert display.get_snapshot()[0]["detail"] == "error: boom"

    def test_skipped(self) -> None:
        display = _display()
        display.on_progress("util@debug", InstancePhase.SKIPPED, 0.0, "dependency 'core@debug' failed")
        snap = display.get_snapshot()
        assert snap[0]["phase"] == InstancePhase.SKIPPED


class TestFormatting:
    """Status text and footer."""

    def test_status_text_per_phase(self) -> None:
        display = _display()
        state = _InstanceDisplayState("core@debug", "")

        state.phase = InstancePhase.CACHED
        assert "cache hit" in display._format_status(state).plain

        state.phase = InstancePhase.BUILT
        state.elapsed = 1.5
        assert display._format_status(state).plain == "✓ 1.5s"

        state.phase = InstancePhase.FAILED
        state.detail = "first line\nsecond line"
        assert display._format_status(state).plain == "✗ first line"

        state.phase = InstancePhase.BUILDING
        state.detail = ""
        assert "Compiling..." in display._format_status(state).plain

        state.phase = InstancePhase.WAITING
        assert display._format_status(state).plain == ""

    def test_phase_labels(self) -> None:
        display = _display()
        state = _InstanceDisplayState("core@debug", "")
        state.phase = InstancePhase.SKIPPED
        assert display._format_phase(state).plain == "Skipped"
        state.phase = InstancePhase.CANCELLED
        assert display._format_phase(state).plain == "Cancelled"

    def test_footer_counts(self) -> None:
        display = _display()
        display.on_progress("a@x", InstancePhase.BUILT, 1.0, "")
        display.on_progress("b@x", InstancePhase.CACHED, 0.0, "")
        display.on_progress("c@x", InstancePhase.FAILED, 0.0, "")
        display.on_progress("d@x", InstancePhase.BUILDING, 0.0, "")
        footer = display._render_footer().plain
        assert "4 instances" in footer
        assert "1 active" in footer
        assert "1 built" in footer
        assert "1 cached" in footer
        assert "1 failed" in footer


class TestRendering:
    """Console output and lifecycle."""

    def test_context_manager_renders_to_console(self) -> None:
        output = StringIO()
        display = PipelineProgressDisplay(console=Console(file=output, width=120), project_name="demo", refresh_per_second=4)
        display.register_instance("core@debug")
        with display:
            display.on_progress("core@debug", InstancePhase.BUILT, 0.5, "")
        rendered = output.getvalue()
        assert "Building demo" in rendered
        assert "core@debug" in rendered

    def test_verbose_shows_key(self) -> None:
        output = StringIO()
        display = PipelineProgressDisplay(console=Console(file=output, width=120), project_name="demo", verbose=True)
        display.register_instance("core@debug", "0123456789abcdef")
        Console(file=output, width=120).print(display._render_table())
        assert "0123456789ab" in output.getvalue()

    def test_stop_without_start_is_safe(self) -> None:
        _display().stop()

    def test_concurrent_updates(self) -> None:
        display = _display()
        names = [f"m{i}@x" for i in range(20)]

        def worker(name: str) -> None:
            for phase in (InstancePhase.BUILDING, InstancePhase.BUILT):
                display.on_progress(name, phase, 0.1, "")

        threads = [threading.Thread(target=worker, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snap = display.get_snapshot()
        assert len(snap) == 20
        assert all(s["phase"] == InstancePhase.BUILT for s in snap)
