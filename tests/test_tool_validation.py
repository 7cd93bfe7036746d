"""Tests for tool input validation and path checks."""

import pytest

from loopsmith.errors import ToolInputError
from loopsmith.tool import validate_tool_input
from loopsmith.tools.validation import find_banned_command, resolve_path, validate_path

SCHEMA = {
    "type": "object",
    "properties": {
        "path": {"type": "string"},
        "limit": {"type": "integer"},
        "ratio": {"type": "number"},
        "recursive": {"type": "boolean"},
    },
    "required": ["path"],
}


class TestValidateToolInput:
    def test_valid_input(self):
        assert validate_tool_input(SCHEMA, {"path": "a", "limit": 3, "ratio": 0.5}) == (True, "")

    def test_missing_required(self):
        valid, error = validate_tool_input(SCHEMA, {})
        assert valid is False
        assert error == "The required parameter `path` is missing"

    def test_wrong_type(self):
        valid, error = validate_tool_input(SCHEMA, {"path": 1})
        assert valid is False
        assert "`path` type is expected as `string`" in error

    def test_bool_is_not_a_number(self):
        assert validate_tool_input(SCHEMA, {"path": "a", "limit": True})[0] is False

    def test_int_is_a_number(self):
        assert validate_tool_input(SCHEMA, {"path": "a", "ratio": 2})[0] is True

    def test_unexpected_parameter(self):
        valid, error = validate_tool_input(SCHEMA, {"path": "a", "extra": 1})
        assert valid is False
        assert "`extra`" in error

    def test_additional_properties_allowed(self):
        schema = {**SCHEMA, "additionalProperties": True}
        assert validate_tool_input(schema, {"path": "a", "extra": 1})[0] is True

    def test_non_object_input(self):
        assert validate_tool_input(SCHEMA, ["a"])[0] is False


class TestValidatePath:
    """Paths must stay inside the project directory."""

    def test_relative_path_inside(self, tmp_project):
        is_safe, path, error = validate_path("src/main.py")
        assert is_safe is True
        assert path == tmp_project.resolve() / "src" / "main.py"
        assert error is None

    def test_parent_traversal_is_rejected(self, tmp_project):
        is_safe, _, error = validate_path("../outside.txt")
        assert is_safe is False
        assert "outside project directory" in error

    def test_absolute_path_outside_is_rejected(self, tmp_project):
        assert validate_path("/etc/passwd")[0] is False

    def test_empty_path(self, tmp_project):
        assert validate_path("") == (False, None, "Path cannot be empty")

    def test_explicit_cwd(self, tmp_path):
        assert validate_path("x.txt", cwd=tmp_path)[1] == tmp_path.resolve() / "x.txt"

    def test_resolve_path_raises(self, tmp_project):
        with pytest.raises(ToolInputError):
            resolve_path("../nope")


class TestBannedCommands:
    def test_plain_command_is_fine(self):
        assert find_banned_command("ls -la") is None

    def test_banned_program(self):
        sub_command, reason = find_banned_command("curl https://example.com")
        assert sub_command == "curl https://example.com"
        assert "curl" in reason

    def test_banned_program_after_operator(self):
        assert find_banned_command("echo hi && wget http://x")[0] == "wget http://x"

    def test_always_blocked_command(self):
        assert find_banned_command("rm -rf /") is not None

    def test_banned_name_inside_argument_is_fine(self):
        assert find_banned_command("grep curl notes.txt") is None
