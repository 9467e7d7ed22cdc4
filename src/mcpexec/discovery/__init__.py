"""
mcpexec Tool Discovery

Loads tool schemas, keeps them in a queryable index, and ranks them
against free-text intents.

Components:
- SchemaParser: normalizes schema documents (internal and MCP formats) into Tool models
- ToolIndexer: in-memory index with lookup, category and keyword search
- RelevanceScorer: ranks indexed tools against a query
"""

from mcpexec.discovery.indexer import ToolIndexer
from mcpexec.discovery.schema_parser import SchemaParser
from mcpexec.discovery.scorer import RelevanceScorer

__all__ = [
    "RelevanceScorer",
    "SchemaParser",
    "ToolIndexer",
]
