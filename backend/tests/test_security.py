"""Tests for sandbox/security.py -- command validation and path containment.

The container is the isolation boundary, so commands are only checked for
being well-formed. File paths must stay inside the sandbox working
directory; we test relative, absolute and traversal forms.
"""

import pytest

from sandbox.security import (
    sanitize_output,
    validate_command,
    validate_path,
)

# =========================================================================
# validate_command
# =========================================================================


class TestValidateCommand:
    """Any well-formed shell command is accepted."""

    @pytest.mark.parametrize(
        "cmd",
        [
            "npm install zod --yes",
            "npx shadcn@latest add dialog",
            "ls -la app",
            "cat app/page.tsx | head -n 20",
            "npm install && npm run lint",
        ],
    )
    def test_commands_allowed(self, cmd: str) -> None:
        ok, err = validate_command(cmd)
        assert ok is True, f"{cmd!r} should be allowed: {err}"
        assert err == ""

    def test_empty_string(self) -> None:
        ok, err = validate_command("")
        assert ok is False
        assert "empty" in err.lower()

    def test_whitespace_only(self) -> None:
        ok, err = validate_command("   ")
        assert ok is False
        assert "empty" in err.lower()

    def test_null_byte_blocked(self) -> None:
        ok, err = validate_command("echo hi\x00there")
        assert ok is False
        assert "null byte" in err.lower()


# =========================================================================
# validate_path
# =========================================================================


class TestValidatePath:
    """Path validation for sandbox file operations."""

    def test_valid_relative_path(self) -> None:
        ok, err, resolved = validate_path("/home/user", "app/page.tsx")
        assert ok is True
        assert err == ""
        assert resolved == "/home/user/app/page.tsx"

    def test_absolute_path_inside_root(self) -> None:
        ok, _, resolved = validate_path("/home/user", "/home/user/components/ui/button.tsx")
        assert ok is True
        assert resolved == "/home/user/components/ui/button.tsx"

    def test_dot_prefix_normalized(self) -> None:
        ok, _, resolved = validate_path("/home/user", "./app//footer.tsx")
        assert ok is True
        assert resolved == "/home/user/app/footer.tsx"

    def test_backslashes_normalized(self) -> None:
        ok, _, resolved = validate_path("/home/user", "app\\footer.tsx")
        assert ok is True
        assert resolved == "/home/user/app/footer.tsx"

    def test_empty_path(self) -> None:
        ok, err, resolved = validate_path("/home/user", "")
        assert ok is False
        assert "empty" in err.lower()
        assert resolved == ""

    def test_dotdot_traversal(self) -> None:
        ok, err, resolved = validate_path("/home/user", "../etc/passwd")
        assert ok is False
        assert "traversal" in err.lower()
        assert resolved == ""

    def test_sneaky_traversal(self) -> None:
        ok, err, _ = validate_path("/home/user", "app/../../etc/passwd")
        assert ok is False
        assert "traversal" in err.lower()

    def test_double_dots_in_filename_ok(self) -> None:
        ok, _, resolved = validate_path("/home/user", "notes..bak")
        assert ok is True
        assert resolved == "/home/user/notes..bak"

    def test_absolute_path_outside_root(self) -> None:
        ok, err, resolved = validate_path("/home/user", "/etc/passwd")
        assert ok is False
        assert "outside sandbox" in err
        assert resolved == ""

    def test_sibling_prefix_rejected(self) -> None:
        ok, _, _ = validate_path("/home/user", "/home/username/file.txt")
        assert ok is False

    def test_root_itself_rejected(self) -> None:
        ok, err, _ = validate_path("/home/user", "/home/user")
        assert ok is False
        assert "file" in err

    def test_null_byte_rejected(self) -> None:
        ok, err, _ = validate_path("/home/user", "app/page\x00.tsx")
        assert ok is False
        assert "null byte" in err.lower()


# =========================================================================
# sanitize_output
# =========================================================================


class TestSanitizeOutput:
    """Output sanitization."""

    def test_short_output_unchanged(self) -> None:
        assert sanitize_output("hello") == "hello"

    def test_empty_output(self) -> None:
        assert sanitize_output("") == ""

    def test_control_characters_removed(self) -> None:
        assert sanitize_output("ok\x1b[32m\x07 done") == "ok[32m done"

    def test_line_breaks_and_tabs_kept(self) -> None:
        assert sanitize_output("a\tb\r\nc") == "a\tb\r\nc"

    def test_truncation(self) -> None:
        long_text = "x" * 60000
        result = sanitize_output(long_text, max_length=50000)
        assert len(result) < 60000
        assert "10000 chars omitted" in result

    def test_exact_boundary(self) -> None:
        text = "z" * 100
        assert sanitize_output(text, max_length=100) == text
