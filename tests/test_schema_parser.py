"""Tests for tool schema parsing."""

import json

import pytest

from mcpexec.discovery.schema_parser import SchemaParser, load_tools_from_directory
from mcpexec.exceptions import SchemaError


@pytest.fixture
def parser():
    return SchemaParser()


class TestParseObject:
    def test_parameter_list(self, parser):
        tool = parser.parse_object({
            "name": "read_file",
            "description": "Read a file",
            "parameters": [
                {"name": "path", "type": "string"},
                {"name": "encoding", "type": "string", "required": False},
            ],
            "returns": "string",
        })
        assert tool.name == "read_file"
        assert [p.name for p in tool.parameters] == ["path", "encoding"]
        assert tool.parameters[0].required is True
        assert tool.parameters[1].required is False
        assert tool.output.type == "string"

    def test_parameter_object_with_optional_flag(self, parser):
        tool = parser.parse_object({
            "name": "http_get",
            "params": {"url": {"type": "string"}, "headers": {"type": "object", "optional": True}},
        })
        assert tool.parameters[0].required is True
        assert tool.parameters[1].required is False

    def test_type_shorthand(self, parser):
        tool = parser.parse_object({"name": "t", "parameters": {"count": "integer"}})
        assert tool.parameters[0].type == "integer"

    def test_mcp_input_schema(self, parser):
        tool = parser.parse_object({
            "name": "list_directory",
            "inputSchema": {
                "type": "object",
                "properties": {"path": {"type": "string"}, "recursive": {"type": "boolean", "default": False}},
                "required": ["path"],
            },
            "outputSchema": {"type": "array", "items": {"type": "string"}},
        })
        params = {p.name: p for p in tool.parameters}
        assert params["path"].required is True
        assert params["recursive"].required is False
        assert params["recursive"].default is False
        assert tool.output.type == "array"
        assert tool.output.items == "string"

    def test_nullable_type(self, parser):
        tool = parser.parse_object({"name": "t", "parameters": [{"name": "x", "type": ["string", "null"]}]})
        assert tool.parameters[0].type == "string"

    def test_missing_type_is_any(self, parser):
        tool = parser.parse_object({"name": "t", "parameters": [{"name": "x"}]})
        assert tool.parameters[0].type == "any"

    def test_defaults(self, parser):
        tool = parser.parse_object({"name": "  ping  "})
        assert tool.name == "ping"
        assert tool.category == "general"
        assert tool.parameters == ()
        assert tool.output.type == "object"

    def test_missing_name(self, parser):
        with pytest.raises(SchemaError):
            parser.parse_object({"description": "nameless"})

    def test_not_an_object(self, parser):
        with pytest.raises(SchemaError):
            parser.parse_object(["not", "a", "tool"])

    def test_bad_parameters(self, parser):
        with pytest.raises(SchemaError):
            parser.parse_object({"name": "t", "parameters": "path"})
        with pytest.raises(SchemaError):
            parser.parse_object({"name": "t", "parameters": [{"type": "string"}]})


class TestParseDocument:
    def test_single_object(self, parser):
        assert len(parser.parse_document({"name": "a"})) == 1

    def test_list(self, parser):
        assert [t.name for t in parser.parse_document([{"name": "a"}, {"name": "b"}])] == ["a", "b"]

    def test_tools_wrapper(self, parser):
        assert len(parser.parse_document({"tools": [{"name": "a"}, {"name": "b"}]})) == 2

    def test_default_category(self, parser):
        tools = parser.parse_document([{"name": "a"}, {"name": "b", "category": "web"}], default_category="fs")
        assert [t.category for t in tools] == ["fs", "web"]


class TestParseFile:
    def test_category_from_subdirectory(self, parser, tools_dir):
        tools = parser.parse_file(tools_dir / "filesystem" / "read_file.json", root=tools_dir)
        assert tools[0].category == "filesystem"
        assert tools[0].source.endswith("read_file.json")

    def test_top_level_file_keeps_own_category(self, parser, tools_dir):
        tools = parser.parse_file(tools_dir / "calendar.json", root=tools_dir)
        assert {t.category for t in tools} == {"calendar"}

    def test_invalid_json(self, parser, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(SchemaError) as exc:
            parser.parse_file(path)
        assert "invalid JSON" in str(exc.value)

    def test_missing_file(self, parser, tmp_path):
        with pytest.raises(SchemaError):
            parser.parse_file(tmp_path / "absent.json")


class TestValidateSchema:
    def test_problems(self, parser):
        tool = parser.parse_object({"name": "t", "parameters": [{"name": "x"}, {"name": "x"}]})
        problems = parser.validate_schema(tool)
        assert any("empty description" in p for p in problems)
        assert any("duplicate parameter" in p for p in problems)

    def test_clean(self, parser):
        assert parser.validate_schema(parser.parse_object({"name": "t", "description": "d"})) == []


class TestLoadDirectory:
    def test_loads_all(self, tools_dir):
        names = {t.name for t in load_tools_from_directory(tools_dir)}
        assert names == {
            "read_file", "write_file", "list_directory", "http_get", "search_web", "createEvent", "list_events",
        }

    def test_skips_bad_files(self, tools_dir):
        (tools_dir / "broken.json").write_text("[", encoding="utf-8")
        (tools_dir / "nameless.json").write_text(json.dumps({"description": "x"}), encoding="utf-8")
        assert len(load_tools_from_directory(tools_dir)) == 7

    def test_missing_directory(self, tmp_path):
        assert load_tools_from_directory(tmp_path / "nope") == []
