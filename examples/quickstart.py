"""mcpexec quickstart: run an intent against a small tool directory."""

import asyncio
import json
import tempfile
from pathlib import Path

from mcpexec import EngineConfig, ExecutionOptions, ExecutionOrchestrator, Language

TOOLS = [
    {
        "name": "read_file",
        "description": "Read the contents of a file",
        "parameters": [{"name": "path", "type": "string"}],
    },
    {
        "name": "search_web",
        "description": "Search the web and return matching pages",
        "parameters": [{"name": "query", "type": "string"}],
    },
]


async def main() -> None:
    root = Path(tempfile.mkdtemp(prefix="mcpexec-"))
    (root / "tools").mkdir()
    (root / "tools" / "tools.json").write_text(json.dumps(TOOLS), encoding="utf-8")

    config = EngineConfig(
        tools_dir=root / "tools",
        audit_log_path=root / "audit.log",
        workspace_dir=root / "workspaces",
    )
    async with ExecutionOrchestrator(config) as engine:
        result = await engine.execute(
            "read the project readme",
            Language.PYTHON,
            ExecutionOptions(script="read_file('README.md')\nprint('contact: ops@example.com')"),
        )

    print(f"Success: {result.success}  Sandbox: {result.sandbox_type}  Risk: {result.risk_score}")
    print(f"Tools: {', '.join(result.tools)}")
    print(result.summary if result.success else result.error)


if __name__ == "__main__":
    asyncio.run(main())
