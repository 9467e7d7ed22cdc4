"""
mcpexec Code API Generator

Synthesizes a typed wrapper module (TypeScript or Python) exposing a set of
indexed tools as direct function calls. Generation is purely templated from
the tool schemas.
"""

from mcpexec.codegen.generator import CodeGenerator

__all__ = ["CodeGenerator"]
