"""
File tools: read and write files inside the agent's working directory.

Paths are resolved against the working directory and may not escape it;
absolute-looking paths are treated as relative to the working directory.
"""

from __future__ import annotations

import os
from pathlib import Path

from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runner.tool_results import ErrorResult, ReadResult, ToolCategory, WriteResult

MAX_READ_CHARS = 200_000


def resolve_workspace_path(path: str, workdir: str | Path) -> tuple[Path, str]:
    """Resolve ``path`` inside ``workdir``.

    Returns the absolute path and the normalised workspace-relative path.

    Raises:
        ValueError: If the path is empty or escapes the working directory.
    """
    root = os.path.abspath(workdir)
    path = path.strip()
    if not path:
        raise ValueError("path is required")

    rel = path[1:] if path[0] in ("/", "\\") else path
    final = os.path.abspath(os.path.join(root, rel))
    try:
        common = os.path.commonpath([final, root])
    except ValueError as err:
        raise ValueError(f"Access denied: Path '{path}' is outside the working directory.") from err
    if common != root:
        raise ValueError(f"Access denied: Path '{path}' is outside the working directory.")

    return Path(final), Path(os.path.relpath(final, root)).as_posix()


def register_tools(registry: ToolRegistry, workdir: str | Path) -> None:
    """Register readFile and writeFile bound to ``workdir``."""

    @registry.tool(name="readFile", category=ToolCategory.READ)
    def read_file(path: str) -> ReadResult | ErrorResult:
        """
        Read a text file from the working directory.

        Args:
            path: File path relative to the working directory
        """
        try:
            target, rel = resolve_workspace_path(path, workdir)
        except ValueError as e:
            return ErrorResult(error=str(e))
        if not target.is_file():
            return ErrorResult(error=f"File not found: {rel}")
        content = target.read_text(encoding="utf-8", errors="replace")
        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS] + f"\n... [truncated, {len(content)} total chars]"
        return ReadResult(path=rel, content=content)

    @registry.tool(name="writeFile", category=ToolCategory.WRITE)
    def write_file(path: str, content: str) -> WriteResult | ErrorResult:
        """
        Create or overwrite a file in the working directory.

        Parent directories are created as needed.

        Args:
            path: File path relative to the working directory
            content: Full new file content
        """
        try:
            target, rel = resolve_workspace_path(path, workdir)
        except ValueError as e:
            return ErrorResult(error=str(e))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return WriteResult(path=rel, bytes_written=len(content.encode("utf-8")))
