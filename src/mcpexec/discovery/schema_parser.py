"""
Tool schema parsing.

A schema source is a directory of JSON documents. Each document holds one
tool object or an array of them, in either of two shapes:

    {"name": ..., "description": ..., "parameters": [...], "returns": ...}
    {"name": ..., "description": ..., "inputSchema": {"properties": ..., "required": [...]}}

Parameters may also be given as an object keyed by parameter name, and
"returns" may be a bare type string. Parameters are required unless the
document says otherwise.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from mcpexec.core.models import Tool, ToolOutput, ToolParameter
from mcpexec.exceptions import SchemaError
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.discovery.schema")

DEFAULT_CATEGORY = "general"


class SchemaParser:
    """Turns raw schema documents into Tool models."""

    def parse_file(self, path: str | Path, root: str | Path | None = None) -> list[Tool]:
        """Parse one JSON file.

        When root is given and the file sits in a subdirectory of it, the
        first directory component becomes the default category.

        Raises:
            SchemaError: the file is not valid JSON or holds a malformed tool.
        """
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise SchemaError(f"cannot read file: {e}", source=str(path)) from e
        except json.JSONDecodeError as e:
            raise SchemaError(f"invalid JSON: {e}", source=str(path)) from e

        category = None
        if root is not None:
            relative = path.resolve().relative_to(Path(root).resolve())
            if len(relative.parts) > 1:
                category = relative.parts[0]

        return self.parse_document(data, source=str(path), default_category=category)

    def parse_document(
        self,
        data: Any,
        source: str | None = None,
        default_category: str | None = None,
    ) -> list[Tool]:
        """Parse a decoded document: a single tool object or a list of them."""
        if isinstance(data, dict) and isinstance(data.get("tools"), list):
            data = data["tools"]
        items = data if isinstance(data, list) else [data]
        return [self.parse_object(item, source, default_category) for item in items]

    def parse_object(
        self,
        obj: Any,
        source: str | None = None,
        default_category: str | None = None,
    ) -> Tool:
        if not isinstance(obj, dict):
            raise SchemaError("tool definition must be a JSON object", source=source)
        name = obj.get("name")
        if not isinstance(name, str) or not name.strip():
            raise SchemaError("tool definition has no name", source=source)

        if isinstance(obj.get("inputSchema"), dict):
            parameters = self._parse_json_schema(obj["inputSchema"])
        else:
            raw = obj.get("parameters", obj.get("params"))
            parameters = self._parse_parameters(raw, name, source)

        output_raw = obj.get("returns", obj.get("outputSchema", obj.get("output")))

        return Tool(
            name=name.strip(),
            description=str(obj.get("description") or "").strip(),
            category=str(obj.get("category") or default_category or DEFAULT_CATEGORY),
            parameters=tuple(parameters),
            output=self._parse_output(output_raw),
            source=source,
        )

    def validate_schema(self, tool: Tool) -> list[str]:
        """Return human-readable problems with an indexed tool (empty if none)."""
        problems: list[str] = []
        if not tool.name:
            problems.append("missing name")
        if not tool.description:
            problems.append(f"{tool.name}: empty description")
        seen: set[str] = set()
        for param in tool.parameters:
            if param.name in seen:
                problems.append(f"{tool.name}: duplicate parameter '{param.name}'")
            seen.add(param.name)
        return problems

    # ─── Internals ───────────────────────────────────────────

    def _parse_parameters(self, raw: Any, tool_name: str, source: str | None) -> list[ToolParameter]:
        if raw is None:
            return []
        if isinstance(raw, dict):
            return [self._parameter(name, spec) for name, spec in raw.items()]
        if isinstance(raw, list):
            params = []
            for spec in raw:
                if not isinstance(spec, dict) or not isinstance(spec.get("name"), str):
                    raise SchemaError(f"parameter of '{tool_name}' has no name", source=source)
                params.append(self._parameter(spec["name"], spec))
            return params
        raise SchemaError(f"parameters of '{tool_name}' must be a list or an object", source=source)

    def _parse_json_schema(self, schema: dict) -> list[ToolParameter]:
        required = set(schema.get("required") or [])
        properties = schema.get("properties") or {}
        return [
            self._parameter(name, spec, required=name in required)
            for name, spec in properties.items()
        ]

    def _parameter(self, name: str, spec: Any, required: bool | None = None) -> ToolParameter:
        if isinstance(spec, str):
            return ToolParameter(name=name, type=spec, required=True if required is None else required)
        spec = spec if isinstance(spec, dict) else {}
        if required is None:
            if "required" in spec:
                required = bool(spec["required"])
            else:
                required = not spec.get("optional", False)
        return ToolParameter(
            name=name,
            type=_type_name(spec.get("type")),
            required=required,
            default=spec.get("default"),
            description=str(spec.get("description") or ""),
        )

    def _parse_output(self, raw: Any) -> ToolOutput:
        if raw is None:
            return ToolOutput()
        if isinstance(raw, str):
            return ToolOutput(type=raw)
        if isinstance(raw, dict):
            items = raw.get("items")
            if isinstance(items, dict):
                items = _type_name(items.get("type"))
            return ToolOutput(
                type=_type_name(raw.get("type", "object")),
                description=str(raw.get("description") or ""),
                items=items if isinstance(items, str) else None,
            )
        return ToolOutput()


def _type_name(raw: Any) -> str:
    # JSON Schema allows ["string", "null"]
    if isinstance(raw, list):
        non_null = [t for t in raw if t != "null"]
        return str(non_null[0]) if non_null else "any"
    return str(raw) if raw else "any"


def load_tools_from_directory(root: str | Path, parser: SchemaParser | None = None) -> list[Tool]:
    """Parse every *.json file under root, skipping (and logging) bad files."""
    parser = parser or SchemaParser()
    root = Path(root)
    if not root.is_dir():
        logger.warning("Tool directory does not exist", extra={"phase": "discovery"})
        return []

    tools: list[Tool] = []
    for path in sorted(root.rglob("*.json")):
        try:
            tools.extend(parser.parse_file(path, root=root))
        except SchemaError as e:
            logger.warning(f"Skipping tool schema: {e}", extra={"phase": "discovery"})
    return tools
