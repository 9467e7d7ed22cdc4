"""
mcpexec Tool Indexer

In-memory index of tool schemas keyed by name. The index is rebuilt from the
schema directory at startup and never persisted.

Reads vastly outnumber writes, so every mutation swaps in a fresh dict
instead of editing the one concurrent readers may be iterating.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from mcpexec.core.models import Tool
from mcpexec.discovery.schema_parser import SchemaParser, load_tools_from_directory
from mcpexec.logging import get_logger

logger = get_logger("mcpexec.discovery.indexer")


class ToolIndexer:
    """Stores tool schemas and answers lookups against them."""

    def __init__(self, parser: SchemaParser | None = None) -> None:
        self._parser = parser or SchemaParser()
        self._tools: dict[str, Tool] = {}

    def index_tools(self, tools: list[Tool], merge: bool = False) -> int:
        """Replace the index with tools, or merge them in when merge=True.

        A later tool with the same name wins. Returns the index size.
        """
        index = dict(self._tools) if merge else {}
        for tool in tools:
            if tool.name in index and not merge:
                logger.warning(
                    "Duplicate tool name, keeping last definition",
                    extra={"tool_name": tool.name},
                )
            index[tool.name] = tool
        self._tools = index
        return len(index)

    def load_directory(self, root: str | Path, merge: bool = False) -> int:
        """Index every tool schema found under root. Returns the index size."""
        tools = load_tools_from_directory(root, self._parser)
        count = self.index_tools(tools, merge=merge)
        logger.info(f"Indexed {count} tools from {root}", extra={"phase": "discovery"})
        return count

    def get_tool(self, name: str) -> Tool | None:
        """Exact, case-sensitive lookup."""
        return self._tools.get(name)

    def get_tools_by_category(self, category: str) -> list[Tool]:
        return [t for t in self._tools.values() if t.category == category]

    def search(self, keyword: str) -> list[Tool]:
        """Case-insensitive substring search over name and description."""
        needle = keyword.lower().strip()
        if not needle:
            return self.all_tools()
        return [
            t for t in self._tools.values()
            if needle in t.name.lower() or needle in t.description.lower()
        ]

    def update_tool(self, name: str, updates: Tool | dict[str, Any]) -> bool:
        """Replace or patch an indexed tool.

        Returns False (and changes nothing) if no tool has that name.
        """
        current = self._tools.get(name)
        if current is None:
            return False

        if isinstance(updates, Tool):
            updated = updates
        else:
            updated = Tool.model_validate({**current.model_dump(), **updates})

        index = dict(self._tools)
        del index[name]
        index[updated.name] = updated
        self._tools = index
        return True

    def remove_tool(self, name: str) -> bool:
        if name not in self._tools:
            return False
        index = dict(self._tools)
        del index[name]
        self._tools = index
        return True

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def categories(self) -> list[str]:
        return sorted({t.category for t in self._tools.values()})

    def validate(self) -> list[str]:
        """Schema problems across the whole index."""
        problems: list[str] = []
        for tool in self._tools.values():
            problems.extend(self._parser.validate_schema(tool))
        return problems

    def get_stats(self) -> dict:
        by_category: dict[str, int] = {}
        for tool in self._tools.values():
            by_category[tool.category] = by_category.get(tool.category, 0) + 1
        return {
            "total_tools": len(self._tools),
            "categories": by_category,
            "tool_names": sorted(self._tools),
        }

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
