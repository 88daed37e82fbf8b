"""Built-in tools: bash, read_file, write_file, list_dir.

Every tool is confined to the configured workspace directory and reports
problems as an unsuccessful ToolOutput, which the coordinator turns into
an error tool result for the model.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from coda.config import Settings
from coda.engine.tools import LocalToolBackend, ToolOutput

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_DIR_ENTRIES = 1000


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve path_str inside workspace_dir.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(command: str, timeout: int = 30, *, workspace_dir: str) -> ToolOutput:
    """Run a shell command with the workspace as cwd.

    A non-zero exit code still counts as success; the exit code is part
    of the output so the model can react to it.
    """
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ToolOutput(
            success=False,
            error=f"Command timed out after {effective_timeout}s.\nCommand: {command}",
        )

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    return ToolOutput(success=True, data="\n".join(parts) if parts else "(no output)")


async def read_file_tool(
    path: str, offset: int = 0, limit: int = 0, *, workspace_dir: str
) -> ToolOutput:
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolOutput(success=False, error=str(e))

    if not target.exists():
        return ToolOutput(success=False, error=f"File not found: {path}")
    if not target.is_file():
        return ToolOutput(success=False, error=f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE and not (offset or limit):
        return ToolOutput(
            success=False,
            error=(
                f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
                "Use offset/limit to read portions."
            ),
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)

    return ToolOutput(success=True, data=content if content else "(empty file)")


async def write_file_tool(path: str, content: str, *, workspace_dir: str) -> ToolOutput:
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolOutput(success=False, error=str(e))

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return ToolOutput(
        success=True,
        data=f"File written successfully: {target}\nSize: {len(content):,} bytes",
    )


async def list_dir_tool(path: str = ".", *, workspace_dir: str) -> ToolOutput:
    """List a directory, one entry per line, directories suffixed with '/'."""
    try:
        target = _validate_path(path, workspace_dir)
    except ValueError as e:
        return ToolOutput(success=False, error=str(e))

    if not target.exists():
        return ToolOutput(success=False, error=f"Directory not found: {path}")
    if not target.is_dir():
        return ToolOutput(success=False, error=f"Not a directory: {path}")

    entries = await asyncio.to_thread(lambda: sorted(target.iterdir(), key=lambda p: p.name))
    lines = [f"{p.name}/" if p.is_dir() else p.name for p in entries[:_MAX_DIR_ENTRIES]]
    if len(entries) > _MAX_DIR_ENTRIES:
        lines.append(f"... [{len(entries) - _MAX_DIR_ENTRIES} more entries]")
    return ToolOutput(success=True, data="\n".join(lines) if lines else "(empty directory)")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file from the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "offset": {
            "type": "integer",
            "description": "Line offset to start reading from (0-indexed)",
            "default": 0,
            "minimum": 0,
        },
        "limit": {
            "type": "integer",
            "description": "Number of lines to read (0 = all)",
            "default": 0,
            "minimum": 0,
        },
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Write content to a file in the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}

_LIST_DIR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List the entries of a directory in the workspace",
    "properties": {
        "path": {
            "type": "string",
            "description": "Directory path (relative or absolute within workspace)",
            "default": ".",
        },
    },
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(backend: LocalToolBackend, settings: Settings) -> None:
    """Register bash, read_file, write_file and list_dir on backend.

    Closures bind workspace_dir from settings.
    """
    workspace = settings.workspace_dir

    async def _bash(command: str, timeout: int = 30) -> ToolOutput:
        return await bash_tool(command, timeout, workspace_dir=workspace)

    async def _read_file(path: str, offset: int = 0, limit: int = 0) -> ToolOutput:
        return await read_file_tool(path, offset, limit, workspace_dir=workspace)

    async def _write_file(path: str, content: str) -> ToolOutput:
        return await write_file_tool(path, content, workspace_dir=workspace)

    async def _list_dir(path: str = ".") -> ToolOutput:
        return await list_dir_tool(path, workspace_dir=workspace)

    backend.register_function("bash", _bash, _BASH_SCHEMA)
    backend.register_function("read_file", _read_file, _READ_FILE_SCHEMA)
    backend.register_function("write_file", _write_file, _WRITE_FILE_SCHEMA)
    backend.register_function("list_dir", _list_dir, _LIST_DIR_SCHEMA)
    logger.info("Registered built-in tools in workspace %s", workspace)
