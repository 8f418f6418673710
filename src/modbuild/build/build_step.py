"""External build step contract.

The orchestrator treats the compiler as an opaque, fallible step:

    build(source, dependency artifacts, variant options) -> (artifact, diagnostic, success)

``CommandBuildStep`` is the stock implementation; it expands the manifest's
command template and runs it as a subprocess. Tests substitute any object with
the same ``identity`` attribute and ``build`` method.
"""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from modbuild.subprocess_utils import run_captured

logger = logging.getLogger(__name__)

TEMPLATE_LIST_FIELDS = ("defines", "flags", "module_refs")


@dataclass(frozen=True)
class BuildRequest:
    """Inputs for one build step invocation.

    Attributes:
        instance_id: Label of the instance being built
        node_id: Artifact name or ``unit:<identity>``
        source_path: Unit source on disk
        output_path: Where the step must write its artifact
        defines: Effective macro defines
        flags: Effective toolchain flags
        module_refs: Artifact name -> artifact path of every module the unit
            imports, directly or transitively
    """

    instance_id: str
    node_id: str
    source_path: Optional[Path]
    output_path: Path
    defines: dict[str, str] = field(default_factory=dict)
    flags: dict[str, str] = field(default_factory=dict)
    module_refs: dict[str, Path] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildOutcome:
    """Result of a build step.

    Attributes:
        success: True if the step produced an artifact
        diagnostic: Verbatim step output
        artifact_path: Produced artifact (None on failure or when nothing was written)
    """

    success: bool
    diagnostic: str = ""
    artifact_path: Optional[Path] = None


@runtime_checkable
class BuildStep(Protocol):
    """Protocol for external build steps."""

    identity: str

    def build(self, request: BuildRequest) -> BuildOutcome: ...


class CommandBuildStep:
    """Runs a command template for each instance.

    Placeholders: ``{source}``, ``{output}``, ``{node}``, ``{defines}``,
    ``{flags}`` and ``{module_refs}``. The three list placeholders expand to
    several arguments when they stand alone as a template word.

    Args:
        template: Command template from the manifest
        toolchain: Toolchain name folded into the step identity
        cwd: Working directory for the command
        timeout: Per-step timeout in seconds
    """

    def __init__(self, template: str, toolchain: str = "", cwd: Optional[Path] = None, timeout: Optional[float] = None) -> None:
        self.template = template
        self.toolchain = toolchain
        self.cwd = cwd
        self.timeout = timeout
        self.words = shlex.split(template)
        if not self.words:
            raise ValueError("build command template is empty")

    @property
    def identity(self) -> str:
        """Toolchain identity: changes to the template or toolchain change every key."""
        return f"{self.toolchain}|{self.template}"

    def command_for(self, request: BuildRequest) -> list[str]:
        """Expand the template for one request."""
        lists = {
            "defines": [f"-D{k}" if v == "1" else f"-D{k}={v}" for k, v in request.defines.items()],
            "flags": [_format_flag(k, v) for k, v in request.flags.items()],
            "module_refs": [f"-fmodule-file={name}={path}" for name, path in request.module_refs.items()],
        }
        scalars = {
            "source": str(request.source_path) if request.source_path else "",
            "output": str(request.output_path),
            "node": request.node_id,
        }
        scalars.update({k: " ".join(v) for k, v in lists.items()})

        cmd: list[str] = []
        for word in self.words:
            name = word[1:-1] if word.startswith("{") and word.endswith("}") else None
            if name in TEMPLATE_LIST_FIELDS:
                cmd.extend(lists[name])
            else:
                cmd.append(word.format(**scalars))
        return cmd

    def build(self, request: BuildRequest) -> BuildOutcome:
        """Run the command; success requires exit code 0."""
        cmd = self.command_for(request)
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"{request.instance_id}: {shlex.join(cmd)}")
        returncode, output = run_captured(cmd, cwd=self.cwd, timeout=self.timeout)
        if returncode != 0:
            return BuildOutcome(success=False, diagnostic=output or f"command exited with code {returncode}")
        artifact = request.output_path if request.output_path.exists() else None
        return BuildOutcome(success=True, diagnostic=output, artifact_path=artifact)


def _format_flag(name: str, value: str) -> str:
    if name.startswith("-"):
        return f"{name}{value}" if value else name
    if not value:
        return f"-f{name}"
    if len(name) == 1:
        return f"-{name}{value}"
    return f"--{name}={value}"
