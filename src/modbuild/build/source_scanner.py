"""Lexical scanner for module-aware source units.

Extracts what the dependency graph needs from a source file without parsing
it: the artifact the unit exports (``export module core;``), the artifacts it
imports, whether it uses named imports or textual inclusion, which macros its
conditionals test, and which files it includes.

The scan is deliberately conservative. Comments are blanked out, statements
are split at top-level semicolons and braces, and only the handful of
declaration forms that shape the module graph are recognized. Anything that
looks wrong is recorded as a ScanError on the unit; scanning never raises for
bad input, so one broken file cannot hide problems in the others.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_MODULE_NAME = rf"{_IDENT}(?:\.{_IDENT})*"
_MODULE_NAME_RE = re.compile(rf"^{_MODULE_NAME}(?::{_MODULE_NAME})?$")
_PARTITION_RE = re.compile(rf"^:{_MODULE_NAME}$")

_PRIVATE_FRAGMENT_RE = re.compile(r"^module\s*:\s*private$")
_MODULE_DECL_RE = re.compile(r"^(export\s+)?module(?![A-Za-z0-9_])\s*(.*?)\s*(\[\[.*\]\])?$", re.DOTALL)
_IMPORT_DECL_RE = re.compile(r"^(export\s+)?import(?![A-Za-z0-9_])\s*(.*?)\s*(\[\[.*\]\])?$", re.DOTALL)
_EXTERN_CXX_RE = re.compile(r'\bextern\s*"C\+\+"')

_DIRECTIVE_RE = re.compile(r"^\s*#\s*([A-Za-z_]+)\s*(.*)$", re.DOTALL)
_INCLUDE_RE = re.compile(r'^\s*(?:"([^"]+)"|<([^>]+)>)')
_CONDITIONAL_DIRECTIVES = frozenset({"if", "ifdef", "ifndef", "elif", "elifdef", "elifndef"})
_HAS_FEATURE_RE = re.compile(r"__has_(?:include|include_next|cpp_attribute|builtin)\s*\([^)]*\)")
_NUMBER_RE = re.compile(r"\b[0-9][A-Za-z0-9_.']*")
_NON_MACRO_WORDS = frozenset({"defined", "true", "false"})
_DECL_KEYWORDS = ("module", "import", "export module", "export import")


class UnitMode(Enum):
    """How a unit consumes other code: named imports or textual inclusion."""

    IMPORTS = "uses-imports"
    INCLUDES = "uses-includes"


class Attachment(Enum):
    """Attachment of an exported artifact's declarations.

    NAMED declarations belong exclusively to the artifact. GLOBAL declarations
    (``extern "C++"`` blocks) are usable under either mode.
    """

    NAMED = "named"
    GLOBAL = "global"


@dataclass(frozen=True)
class ScanError:
    """A malformed or ambiguous declaration found in a unit."""

    line: int
    message: str

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}"


@dataclass(frozen=True)
class SourceUnit:
    """Everything the scanner knows about one source file.

    Attributes:
        identity: Project-relative POSIX path (or a logical name)
        content_hash: SHA-256 hex digest of the raw bytes
        module: Module name declared by ``[export] module NAME;``, if any
        exported: Artifact the unit produces: the module name for interface
            units and partitions, None for plain and implementation units
        is_interface: True for ``export module`` units
        dependencies: Referenced artifact names, in first-seen order, deduplicated
        mode: IMPORTS if the unit declares a module or imports anything
        attachment: Attachment kind of the exported artifact
        macro_surface: Macro names tested by preprocessor conditionals
        fragment_includes: ``#include`` targets inside the global module fragment
        purview_includes: ``#include`` targets anywhere else
        header_imports: ``import <hdr>;`` / ``import "hdr";`` targets
        scan_errors: Problems found while scanning
        path: Filesystem path when scanned from disk
    """

    identity: str
    content_hash: str
    module: Optional[str] = None
    exported: Optional[str] = None
    is_interface: bool = False
    dependencies: tuple[str, ...] = ()
    mode: UnitMode = UnitMode.INCLUDES
    attachment: Attachment = Attachment.NAMED
    macro_surface: tuple[str, ...] = ()
    fragment_includes: tuple[str, ...] = ()
    purview_includes: tuple[str, ...] = ()
    header_imports: tuple[str, ...] = ()
    scan_errors: tuple[ScanError, ...] = ()
    path: Optional[Path] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        """True if the scan found no errors."""
        return not self.scan_errors

    @property
    def module_owner(self) -> Optional[str]:
        """Primary module name (the part before ``:`` for partitions)."""
        if self.module is None:
            return None
        return self.module.split(":", 1)[0]


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of raw source bytes."""
    return hashlib.sha256(data).hexdigest()


def strip_comments(text: str) -> str:
    """Blank out ``//`` and ``/* */`` comments, keeping line structure.

    String and character literals are copied through untouched so that
    ``"http://x"`` is not mistaken for a comment.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if c == "/" and nxt == "/":
            while i < n and text[i] != "\n":
                i += 1
        elif c == "/" and nxt == "*":
            i += 2
            out.append(" ")
            while i < n and not (text[i] == "*" and i + 1 < n and text[i + 1] == "/"):
                if text[i] == "\n":
                    out.append("\n")
                i += 1
            i += 2
        elif c in ('"', "'"):
            j = _skip_literal(text, i)
            out.append(text[i:j])
            i = j
        else:
            out.append(c)
            i += 1
    return "".join(out)


def _skip_literal(text: str, start: int) -> int:
    """Return the index just past the string/char literal opening at start."""
    quote = text[start]
    j = start + 1
    while j < len(text) and text[j] != quote and text[j] != "\n":
        j += 2 if text[j] == "\\" else 1
    return min(j + 1, len(text))


def _logical_lines(text: str) -> list[tuple[int, str]]:
    """Split into (line number, text) pairs with backslash continuations joined."""
    lines: list[tuple[int, str]] = []
    pending = ""
    start = 0
    for number, raw in enumerate(text.split("\n"), start=1):
        if not pending:
            start = number
        if raw.endswith("\\"):
            pending += raw[:-1] + " "
            continue
        lines.append((start, pending + raw))
        pending = ""
    if pending:
        lines.append((start, pending))
    return lines


def _conditional_macros(directive: str, body: str) -> list[str]:
    if directive in ("ifdef", "ifndef", "elifdef", "elifndef"):
        match = re.match(_IDENT, body.strip())
        names = [match.group(0)] if match else []
    else:
        expr = _HAS_FEATURE_RE.sub(" ", body)
        expr = re.sub(r"'[^']*'|\"[^\"]*\"", " ", expr)
        expr = _NUMBER_RE.sub(" ", expr)
        names = re.findall(_IDENT, expr)
    return [n for n in names if n not in _NON_MACRO_WORDS and not n.startswith("__")]


class _UnitState:
    """Mutable accumulator used while scanning a single unit."""

    def __init__(self) -> None:
        self.module: Optional[str] = None
        self.is_interface = False
        self.in_fragment = False
        self.decl_before_module = False
        self.decl_in_purview = False
        self.imports_seen = False
        self.extern_cxx = False
        self.dependencies: list[str] = []
        self.macros: list[str] = []
        self.fragment_includes: list[str] = []
        self.purview_includes: list[str] = []
        self.header_imports: list[str] = []
        self.errors: list[ScanError] = []

    def add_dependency(self, name: str) -> None:
        if name not in self.dependencies:
            self.dependencies.append(name)

    def error(self, line: int, message: str) -> None:
        self.errors.append(ScanError(line, message))


class SourceScanner:
    """Scans units for module declarations, imports, includes and macro use.

    This is the only place that understands source syntax; everything
    downstream works on SourceUnit values.

    Args:
        project_dir: Root directory; unit identities are relative to it.
    """

    def __init__(self, project_dir: Optional[Path] = None) -> None:
        self.project_dir = project_dir

    def identity_for(self, path: Path) -> str:
        """Return the project-relative POSIX identity for a path."""
        if self.project_dir is not None:
            try:
                return path.resolve().relative_to(self.project_dir.resolve()).as_posix()
            except ValueError:
                pass
        return path.as_posix()

    def scan_file(self, path: Path) -> SourceUnit:
        """Scan a unit from disk.

        Unreadable or undecodable files produce a unit carrying a scan error
        rather than an exception.
        """
        identity = self.identity_for(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Cannot read unit {path}: {e}")
            return SourceUnit(identity=identity, content_hash="", scan_errors=(ScanError(0, f"cannot read file: {e}"),), path=path)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            return SourceUnit(identity=identity, content_hash=hash_bytes(data), scan_errors=(ScanError(0, f"not valid UTF-8: {e}"),), path=path)
        return replace(self._scan(identity, text, hash_bytes(data)), path=path)

    def scan_text(self, identity: str, text: str) -> SourceUnit:
        """Scan a unit from its raw text."""
        return self._scan(identity, text, hash_bytes(text.encode("utf-8")))

    def scan_all(self, paths: Iterable[Path]) -> list[SourceUnit]:
        """Scan several files, keeping input order."""
        return [self.scan_file(p) for p in paths]

    def _scan(self, identity: str, text: str, content_hash: str) -> SourceUnit:
        state = _UnitState()
        depth = 0
        stmt: list[str] = []
        stmt_has_text = False
        stmt_line = 0

        for line_no, line in _logical_lines(strip_comments(text)):
            directive = _DIRECTIVE_RE.match(line)
            if directive and not stmt_has_text:
                self._on_directive(state, directive.group(1), directive.group(2))
                continue

            i = 0
            while i < len(line):
                c = line[i]
                if c in ('"', "'"):
                    j = _skip_literal(line, i)
                    if depth == 0:
                        if not stmt_has_text:
                            stmt_line = line_no
                            stmt_has_text = True
                        stmt.append(line[i:j])
                    i = j
                    continue
                if depth > 0:
                    if c == "{":
                        depth += 1
                    elif c == "}":
                        depth -= 1
                elif c == ";":
                    self._on_statement(state, stmt_line, "".join(stmt).strip())
                    stmt, stmt_has_text = [], False
                elif c == "{":
                    self._on_block(state, "".join(stmt).strip())
                    stmt, stmt_has_text = [], False
                    depth += 1
                elif c != "}":
                    if not stmt_has_text and not c.isspace():
                        stmt_line = line_no
                        stmt_has_text = True
                    stmt.append(c)
                i += 1
            if depth == 0 and stmt_has_text:
                stmt.append(" ")

        leftover = "".join(stmt).strip()
        if leftover.startswith(_DECL_KEYWORDS):
            state.error(stmt_line, f"unterminated declaration '{leftover}'")

        return self._finish(state, identity, content_hash)

    def _on_directive(self, state: _UnitState, name: str, body: str) -> None:
        if name == "include":
            target = _INCLUDE_RE.match(body)
            if not target:
                return
            header = target.group(1) or target.group(2)
            if state.in_fragment and state.module is None:
                state.fragment_includes.append(header)
            else:
                state.purview_includes.append(header)
        elif name in _CONDITIONAL_DIRECTIVES:
            for macro in _conditional_macros(name, body):
                if macro not in state.macros:
                    state.macros.append(macro)

    def _on_block(self, state: _UnitState, prefix: str) -> None:
        if state.module is not None and _EXTERN_CXX_RE.search(prefix):
            state.extern_cxx = True
        self._mark_declaration(state)

    def _mark_declaration(self, state: _UnitState) -> None:
        if state.module is not None:
            state.decl_in_purview = True
        elif not state.in_fragment:
            state.decl_before_module = True

    def _on_statement(self, state: _UnitState, line_no: int, text: str) -> None:
        if not text:
            return
        if text == "module":
            if state.module is not None or state.in_fragment or state.decl_before_module or state.imports_seen:
                state.error(line_no, "global module fragment 'module;' must begin the unit")
            state.in_fragment = True
            return
        if _PRIVATE_FRAGMENT_RE.match(text):
            if state.module is None:
                state.error(line_no, "private module fragment outside a module unit")
            state.decl_in_purview = True
            return

        module_match = _MODULE_DECL_RE.match(text)
        if module_match:
            self._on_module_decl(state, line_no, bool(module_match.group(1)), module_match.group(2))
            return

        import_match = _IMPORT_DECL_RE.match(text)
        if import_match:
            self._on_import(state, line_no, import_match.group(2))
            return

        if state.module is not None and _EXTERN_CXX_RE.search(text):
            state.extern_cxx = True
        self._mark_declaration(state)

    def _on_module_decl(self, state: _UnitState, line_no: int, exported: bool, name: str) -> None:
        if state.module is not None:
            state.error(line_no, f"multiple module declarations ('{state.module}' and '{name}')")
            return
        if not _MODULE_NAME_RE.match(name):
            state.error(line_no, f"malformed module name '{name}'")
            return
        if state.decl_before_module or state.imports_seen:
            state.error(line_no, f"module declaration for '{name}' must start the unit (use 'module;' for a global fragment)")
        state.module = name
        state.is_interface = exported
        if not exported and ":" not in name:
            # implementation unit: implicitly imports its primary interface
            state.add_dependency(name)

    def _on_import(self, state: _UnitState, line_no: int, target: str) -> None:
        state.imports_seen = True
        if state.module is not None and state.decl_in_purview:
            state.error(line_no, f"import of '{target}' appears after other declarations")
        if len(target) >= 2 and (target[0], target[-1]) in (("<", ">"), ('"', '"')):
            header = target[1:-1]
            if header not in state.header_imports:
                state.header_imports.append(header)
            return
        if _PARTITION_RE.match(target):
            if state.module is None:
                state.error(line_no, f"partition import '{target}' outside a module unit")
                return
            state.add_dependency(state.module.split(":", 1)[0] + target)
            return
        if ":" in target or not _MODULE_NAME_RE.match(target):
            state.error(line_no, f"malformed import '{target}'")
            return
        state.add_dependency(target)

    def _finish(self, state: _UnitState, identity: str, content_hash: str) -> SourceUnit:
        mode = UnitMode.IMPORTS if state.module is not None or state.imports_seen else UnitMode.INCLUDES
        attachment = Attachment.GLOBAL if state.extern_cxx else Attachment.NAMED
        exported = state.module
        if exported is not None and not state.is_interface and ":" not in exported:
            # implementation unit: contributes to its module, produces no artifact
            exported = None
        if state.errors:
            logger.debug(f"{identity}: {len(state.errors)} scan errors")
        return SourceUnit(
            identity=identity,
            content_hash=content_hash,
            module=state.module,
            exported=exported,
            is_interface=state.is_interface,
            dependencies=tuple(state.dependencies),
            mode=mode,
            attachment=attachment,
            macro_surface=tuple(state.macros),
            fragment_includes=tuple(state.fragment_includes),
            purview_includes=tuple(state.purview_includes),
            header_imports=tuple(state.header_imports),
            scan_errors=tuple(state.errors),
        )
