"""Tests for workspace-relative path validation."""

import pytest

from revive.core.errors import UnsafePathError
from revive.core.workspace import safe_relative_path


class TestSafeRelativePath:

    @pytest.mark.parametrize("path, expected", [
        ("src/app.ts", "src/app.ts"),
        ("./src//app.ts", "src/app.ts"),
        ("src\\components\\Nav.tsx", "src/components/Nav.tsx"),
        ("package.json", "package.json"),
    ])
    def test_normalizes_relative_paths(self, path, expected):
        assert safe_relative_path(path) == expected

    @pytest.mark.parametrize("path", [
        "/etc/passwd",
        "\\windows\\system32",
        "C:\\secrets.txt",
        "../outside.txt",
        "src/../../outside.txt",
        "src/..\\..\\outside.txt",
        "bad\x00name",
        "",
        "   ",
        ".",
    ])
    def test_rejects_unsafe_paths(self, path):
        with pytest.raises(UnsafePathError):
            safe_relative_path(path)

    def test_non_string_rejected(self):
        with pytest.raises(UnsafePathError):
            safe_relative_path(None)
