"""Unit tests for the lexical source scanner.

Tests verify:
- Module, partition and implementation declarations
- Named imports, partition imports and header-unit imports
- Global module fragment vs purview includes
- Macro surface extraction from preprocessor conditionals
- Comments and string literals never produce declarations
- Malformed declarations become scan errors instead of exceptions
"""

import hashlib

import pytest

from modbuild.build.source_scanner import (
    Attachment,
    SourceScanner,
    UnitMode,
    strip_comments,
)


@pytest.fixture
def scanner():
    return SourceScanner()


class TestModuleDeclarations:
    """Exported artifacts and interface/implementation units."""

    def test_interface_unit(self, scanner):
        """export module declares an interface artifact."""
        unit = scanner.scan_text("core.cppm", "export module core;\nexport int answer();\n")
        assert unit.exported == "core"
        assert unit.is_interface is True
        assert unit.mode == UnitMode.IMPORTS
        assert unit.dependencies == ()
        assert unit.ok

    def test_implementation_unit_imports_its_interface(self, scanner):
        """A module implementation unit implicitly depends on its primary interface."""
        unit = scanner.scan_text("core.cpp", "module core;\nint answer() { return 42; }\n")
        assert unit.module == "core"
        assert unit.module_owner == "core"
        assert unit.exported is None
        assert unit.mode == UnitMode.IMPORTS
        assert unit.is_interface is False
        assert unit.dependencies == ("core",)

    def test_dotted_module_name(self, scanner):
        unit = scanner.scan_text("net.cppm", "export module net.http;\n")
        assert unit.exported == "net.http"
        assert unit.module_owner == "net.http"

    def test_partition_unit(self, scanner):
        """Partitions export ``owner:part`` and belong to the owner module."""
        unit = scanner.scan_text("detail.cppm", "export module core:detail;\n")
        assert unit.exported == "core:detail"
        assert unit.module_owner == "core"

    def test_internal_partition_is_an_artifact(self, scanner):
        unit = scanner.scan_text("impl.cpp", "module core:impl;\nint helper();\n")
        assert unit.exported == "core:impl"
        assert unit.is_interface is False
        assert unit.dependencies == ()

    def test_plain_unit_exports_nothing(self, scanner):
        unit = scanner.scan_text("legacy.cpp", '#include "legacy.h"\nint legacy() { return 1; }\n')
        assert unit.exported is None
        assert unit.module_owner is None
        assert unit.mode == UnitMode.INCLUDES
        assert unit.purview_includes == ("legacy.h",)

    def test_extern_cxx_block_marks_global_attachment(self, scanner):
        text = 'export module core;\nextern "C++" {\nint legacy();\n}\n'
        unit = scanner.scan_text("core.cppm", text)
        assert unit.attachment == Attachment.GLOBAL

    def test_named_attachment_by_default(self, scanner):
        unit = scanner.scan_text("core.cppm", "export module core;\nnamespace core { int x; }\n")
        assert unit.attachment == Attachment.NAMED


class TestImports:
    """Named, partition and header-unit imports."""

    def test_named_imports_in_order(self, scanner):
        unit = scanner.scan_text("main.cpp", "import util;\nimport core;\nint main() { return 0; }\n")
        assert unit.dependencies == ("util", "core")
        assert unit.mode == UnitMode.IMPORTS
        assert unit.exported is None

    def test_duplicate_imports_are_deduplicated(self, scanner):
        unit = scanner.scan_text("main.cpp", "import core;\nimport core;\n")
        assert unit.dependencies == ("core",)

    def test_export_import(self, scanner):
        unit = scanner.scan_text("api.cppm", "export module api;\nexport import core;\n")
        assert unit.dependencies == ("core",)

    def test_partition_import_resolves_to_owner(self, scanner):
        unit = scanner.scan_text("core.cppm", "export module core;\nexport import :detail;\n")
        assert unit.dependencies == ("core:detail",)

    def test_header_unit_imports_are_not_dependencies(self, scanner):
        unit = scanner.scan_text("main.cpp", 'import <vector>;\nimport "config.h";\n')
        assert unit.header_imports == ("vector", "config.h")
        assert unit.dependencies == ()

    def test_multiline_import(self, scanner):
        unit = scanner.scan_text("main.cpp", "import\n    core\n;\n")
        assert unit.dependencies == ("core",)


class TestIncludes:
    """Global module fragment and purview includes."""

    def test_fragment_and_purview_includes(self, scanner):
        text = 'module;\n#include <cstdio>\n#include "legacy.h"\nexport module core;\n#include "inner.h"\n'
        unit = scanner.scan_text("core.cppm", text)
        assert unit.exported == "core"
        assert unit.fragment_includes == ("cstdio", "legacy.h")
        assert unit.purview_includes == ("inner.h",)
        assert unit.ok

    def test_misplaced_global_fragment(self, scanner):
        unit = scanner.scan_text("core.cppm", "int x;\nmodule;\nexport module core;\n")
        assert not unit.ok
        assert "must begin the unit" in str(unit.scan_errors[0])


class TestMacroSurface:
    """Macros tested by preprocessor conditionals."""

    def test_conditionals(self, scanner):
        text = (
            "#ifdef DEBUG\n#endif\n"
            "#if defined(TRACE) && LEVEL > 2\n#endif\n"
            "#if __has_include(<optional>)\n#endif\n"
            "#ifndef DEBUG\n#endif\n"
        )
        unit = scanner.scan_text("core.cppm", text)
        assert unit.macro_surface == ("DEBUG", "TRACE", "LEVEL")

    def test_reserved_names_are_ignored(self, scanner):
        unit = scanner.scan_text("core.cppm", "#if __cplusplus >= 202002L\n#endif\n")
        assert unit.macro_surface == ()

    def test_macro_use_outside_conditionals_is_not_surface(self, scanner):
        unit = scanner.scan_text("core.cppm", "#define LOCAL 1\nint x = LOCAL;\n")
        assert unit.macro_surface == ()


class TestCommentsAndLiterals:
    """Text that looks like a declaration but is not."""

    def test_commented_declarations_are_ignored(self, scanner):
        text = "// import fake;\n/* export module nope;\n import other; */\nexport module real;\n"
        unit = scanner.scan_text("real.cppm", text)
        assert unit.exported == "real"
        assert unit.dependencies == ()

    def test_string_literal_is_not_an_import(self, scanner):
        unit = scanner.scan_text("main.cpp", 'const char* text = "import fake;";\n')
        assert unit.dependencies == ()
        assert unit.ok

    def test_strip_comments_keeps_line_structure(self):
        text = 'const char* url = "http://x"; // trailing\n/* a\nb */int y;'
        stripped = strip_comments(text)
        assert '"http://x"' in stripped
        assert "trailing" not in stripped
        assert stripped.count("\n") == text.count("\n")

    def test_declarations_inside_blocks_are_ignored(self, scanner):
        unit = scanner.scan_text("main.cpp", "void f() {\n  import_thing();\n}\n")
        assert unit.dependencies == ()


class TestScanErrors:
    """Malformed declarations are reported, never raised."""

    def test_multiple_module_declarations(self, scanner):
        unit = scanner.scan_text("a.cppm", "export module a;\nexport module b;\n")
        assert unit.exported == "a"
        assert len(unit.scan_errors) == 1
        assert unit.scan_errors[0].line == 2
        assert "multiple module declarations" in unit.scan_errors[0].message

    def test_malformed_module_name(self, scanner):
        unit = scanner.scan_text("a.cppm", "export module 1abc;\n")
        assert unit.exported is None
        assert "malformed module name" in unit.scan_errors[0].message

    def test_module_declaration_after_code(self, scanner):
        unit = scanner.scan_text("a.cppm", "int x;\nexport module a;\n")
        assert unit.exported == "a"
        assert "must start the unit" in unit.scan_errors[0].message

    def test_import_after_declarations(self, scanner):
        unit = scanner.scan_text("a.cppm", "export module a;\nint x;\nimport b;\n")
        assert "appears after other declarations" in unit.scan_errors[0].message

    def test_unterminated_declaration(self, scanner):
        unit = scanner.scan_text("a.cppm", "export module a")
        assert "unterminated declaration" in unit.scan_errors[0].message

    def test_partition_import_outside_module(self, scanner):
        unit = scanner.scan_text("main.cpp", "import :detail;\n")
        assert "outside a module unit" in unit.scan_errors[0].message

    def test_malformed_import(self, scanner):
        unit = scanner.scan_text("main.cpp", "import a:b;\n")
        assert "malformed import" in unit.scan_errors[0].message


class TestScanFile:
    """Scanning from disk."""

    def test_identity_is_project_relative(self, tmp_path):
        src = tmp_path / "src"
        src.mkdir()
        path = src / "core.cppm"
        path.write_bytes(b"export module core;\n")
        unit = SourceScanner(tmp_path).scan_file(path)
        assert unit.identity == "src/core.cppm"
        assert unit.path == path
        assert unit.content_hash == hashlib.sha256(b"export module core;\n").hexdigest()

    def test_missing_file_is_a_scan_error(self, tmp_path):
        unit = SourceScanner(tmp_path).scan_file(tmp_path / "missing.cppm")
        assert not unit.ok
        assert "cannot read file" in unit.scan_errors[0].message

    def test_invalid_utf8_is_a_scan_error(self, tmp_path):
        path = tmp_path / "bad.cppm"
        path.write_bytes(b"export module \xff;\n")
        unit = SourceScanner(tmp_path).scan_file(path)
        assert not unit.ok
        assert unit.content_hash
        assert "UTF-8" in unit.scan_errors[0].message

    def test_whitespace_change_changes_hash(self, scanner):
        first = scanner.scan_text("a.cppm", "export module a;\n")
        second = scanner.scan_text("a.cppm", "export module a;\n\n")
        assert first.content_hash != second.content_hash
        assert first.exported == second.exported

    def test_scan_all_keeps_order(self, tmp_path):
        paths = []
        for name in ("b.cppm", "a.cppm", "c.cppm"):
            path = tmp_path / name
            path.write_text(f"export module {name[0]};\n")
            paths.append(path)
        units = SourceScanner(tmp_path).scan_all(paths)
        assert [u.exported for u in units] == ["b", "a", "c"]
