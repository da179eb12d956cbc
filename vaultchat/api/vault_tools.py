"""Vault tools: file access for the agent over a directory of notes.

read_file, search_in_file, get_file_info, replace_in_file, write_file,
list_files, rename_file and delete_file. Every tool returns a plain
string; missing files and paths outside the vault come back as
"Error: ..." strings rather than exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from vaultchat.api.models import ToolSpec
from vaultchat.api.tools import ToolDispatcher
from vaultchat.config import Settings

logger = logging.getLogger(__name__)

TRASH_DIR = ".trash"
_DEFAULT_MAX_CHARS = 50_000
_INFO_LINES = 5


class VaultPathError(ValueError):
    """Path escapes the vault root."""


def _validate_path(path_str: str, vault_dir: str) -> Path:
    """Resolve a vault-relative path, refusing anything outside the vault."""
    vault = Path(vault_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (vault / candidate).resolve()
    if not target.is_relative_to(vault):
        raise VaultPathError(
            f"Error: Path '{path_str}' is outside the vault. "
            "Only paths within the vault are allowed."
        )
    return target


def _relative(target: Path, vault_dir: str) -> str:
    return target.relative_to(Path(vault_dir).resolve()).as_posix()


async def _read_text(target: Path) -> str:
    return await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")


async def _write_text(target: Path, content: str) -> None:
    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file_tool(
    path: str,
    *,
    _vault_dir: str,
    _max_chars: int = _DEFAULT_MAX_CHARS,
) -> str:
    """Read a file, truncating very large files with a warning."""
    try:
        target = _validate_path(path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if not target.is_file():
        return f"Error: File not found: {path}"

    content = await _read_text(target)
    if len(content) > _max_chars:
        return (
            f"[WARNING: File is very large ({len(content)} characters). "
            f"Showing first {_max_chars} characters to avoid rate limits. "
            "For large files, consider using search_in_file or get_file_info instead.]"
            f"\n\n{content[:_max_chars]}\n\n"
            f"[... {len(content) - _max_chars} characters truncated ...]"
        )
    return content


async def search_in_file_tool(path: str, pattern: str, *, _vault_dir: str) -> str:
    """Case-insensitive substring search, one result line per match."""
    try:
        target = _validate_path(path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if not target.is_file():
        return f"Error: File not found: {path}"

    content = await _read_text(target)
    needle = pattern.lower()
    matches = [
        f"Line {number}: {line}"
        for number, line in enumerate(content.split("\n"), start=1)
        if needle in line.lower()
    ]
    if not matches:
        return f'No matches found for "{pattern}" in {path}'
    return f"Found {len(matches)} matches in {path}:\n\n" + "\n".join(matches)


async def get_file_info_tool(path: str, *, _vault_dir: str) -> str:
    """Size, line count and first/last lines without the full content."""
    try:
        target = _validate_path(path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if not target.is_file():
        return f"Error: File not found: {path}"

    content = await _read_text(target)
    lines = content.split("\n")
    first = "\n".join(lines[:_INFO_LINES])
    last = "\n".join(lines[-_INFO_LINES:])
    return (
        f"File: {path}\n"
        f"Size: {len(content)} characters\n"
        f"Lines: {len(lines)}\n\n"
        f"First {_INFO_LINES} lines:\n{first}\n\n"
        f"Last {_INFO_LINES} lines:\n{last}"
    )


async def replace_in_file_tool(
    path: str, old_text: str, new_text: str, *, _vault_dir: str
) -> str:
    """Replace the first occurrence of old_text."""
    try:
        target = _validate_path(path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if not target.is_file():
        return f"Error: File not found: {path}"

    content = await _read_text(target)
    if old_text not in content:
        return f'Error: Text not found in file. Could not find: "{old_text}"'
    await _write_text(target, content.replace(old_text, new_text, 1))
    return f"Successfully replaced text in {path}"


async def write_file_tool(path: str, content: str, *, _vault_dir: str) -> str:
    """Create or overwrite a file."""
    try:
        target = _validate_path(path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if target.is_dir():
        return f"Error: Path is a folder: {path}"

    existed = target.is_file()
    await _write_text(target, content)
    if existed:
        return f"Successfully updated file: {path}"
    return f"Successfully created file: {path}"


async def list_files_tool(folder: str | None = None, *, _vault_dir: str) -> str:
    """List markdown files, optionally under a folder prefix."""
    vault = Path(_vault_dir).resolve()
    if not vault.is_dir():
        return f"Error: Vault folder not found: {_vault_dir}"

    def _scan() -> list[str]:
        return sorted(
            p.relative_to(vault).as_posix()
            for p in vault.rglob("*.md")
            if p.is_file() and TRASH_DIR not in p.relative_to(vault).parts
        )

    paths = await asyncio.to_thread(_scan)
    if folder:
        paths = [p for p in paths if p.startswith(folder)]
    if not paths:
        return "No markdown files found" + (f" in {folder}" if folder else "")
    return "\n".join(paths)


async def rename_file_tool(old_path: str, new_path: str, *, _vault_dir: str) -> str:
    """Rename or move a file; refuses to overwrite."""
    try:
        source = _validate_path(old_path, _vault_dir)
        destination = _validate_path(new_path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if not source.is_file():
        return f"Error: File not found: {old_path}"
    if destination.exists():
        return f"Error: A file already exists at: {new_path}"

    await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(source.rename, destination)
    return f'Successfully renamed "{old_path}" to "{new_path}"'


async def delete_file_tool(path: str, *, _vault_dir: str) -> str:
    """Move a file into the vault's trash folder."""
    try:
        target = _validate_path(path, _vault_dir)
    except VaultPathError as e:
        return str(e)
    if not target.is_file():
        return f"Error: File not found: {path}"

    relative = _relative(target, _vault_dir)
    trash_target = Path(_vault_dir).resolve() / TRASH_DIR / relative
    if trash_target.exists():
        trash_target = trash_target.with_name(
            f"{trash_target.stem}.{int(time.time())}{trash_target.suffix}"
        )
    await asyncio.to_thread(trash_target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.rename, trash_target)
    logger.info("Moved %s to trash", relative)
    return f"Successfully deleted: {path}"


# ---------------------------------------------------------------------------
# Tool specs
# ---------------------------------------------------------------------------

def _path_property(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


READ_FILE = ToolSpec(
    name="read_file",
    description=(
        "Read the contents of a file in the vault. Use this when you need to see what "
        "is in a file. For large files, consider using search_in_file or get_file_info first."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": _path_property(
                'The path to the file relative to the vault root (e.g., "workspace-guide.md" '
                'or "folder/note.md")'
            ),
        },
        "required": ["path"],
    },
)

SEARCH_IN_FILE = ToolSpec(
    name="search_in_file",
    description=(
        "Search for a specific text pattern in a file without reading the entire file. "
        "Returns matching lines with line numbers. Very efficient for large files."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": _path_property("The path to the file to search in"),
            "pattern": {
                "type": "string",
                "description": "The text pattern to search for (case-insensitive)",
            },
        },
        "required": ["path", "pattern"],
    },
)

GET_FILE_INFO = ToolSpec(
    name="get_file_info",
    description=(
        "Get metadata about a file (size, line count, first/last lines) without reading "
        "the full content. Use this to check if a file is large before reading it."
    ),
    input_schema={
        "type": "object",
        "properties": {"path": _path_property("The path to the file")},
        "required": ["path"],
    },
)

REPLACE_IN_FILE = ToolSpec(
    name="replace_in_file",
    description=(
        "Make a targeted replacement in a file without rewriting the entire file. "
        "More efficient than read+write for small edits."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": _path_property("The path to the file"),
            "old_text": {"type": "string", "description": "The exact text to find and replace"},
            "new_text": {"type": "string", "description": "The text to replace it with"},
        },
        "required": ["path", "old_text", "new_text"],
    },
)

WRITE_FILE = ToolSpec(
    name="write_file",
    description=(
        "Write content to a file, creating it if it does not exist or replacing its "
        "contents if it does. Use replace_in_file for small edits to large files."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": _path_property("The path where the file should be written"),
            "content": {"type": "string", "description": "The complete content to write to the file"},
        },
        "required": ["path", "content"],
    },
)

LIST_FILES = ToolSpec(
    name="list_files",
    description="List all markdown files in the vault or in a specific folder.",
    input_schema={
        "type": "object",
        "properties": {
            "folder": {
                "type": "string",
                "description": (
                    "Optional folder path to list files from. If not provided, "
                    "lists all files in the vault."
                ),
            },
        },
        "required": [],
    },
)

RENAME_FILE = ToolSpec(
    name="rename_file",
    description=(
        "Rename or move a file to a new path. Use this to rename files or move them "
        "to different folders."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "old_path": _path_property("The current path of the file"),
            "new_path": _path_property("The new path for the file (can be in a different folder)"),
        },
        "required": ["old_path", "new_path"],
    },
)

DELETE_FILE = ToolSpec(
    name="delete_file",
    description=(
        "Delete a file from the vault. The file is moved to the vault's .trash folder. "
        "Use with caution."
    ),
    input_schema={
        "type": "object",
        "properties": {"path": _path_property("The path to the file to delete")},
        "required": ["path"],
    },
)

VAULT_TOOL_SPECS: tuple[ToolSpec, ...] = (
    READ_FILE,
    SEARCH_IN_FILE,
    GET_FILE_INFO,
    REPLACE_IN_FILE,
    WRITE_FILE,
    LIST_FILES,
    RENAME_FILE,
    DELETE_FILE,
)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_vault_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register the vault tools with closures that inject the vault root."""
    vault = settings.vault_dir
    max_chars = settings.vault_max_file_chars

    async def _read_file(path: str) -> str:
        return await read_file_tool(path, _vault_dir=vault, _max_chars=max_chars)

    async def _search_in_file(path: str, pattern: str) -> str:
        return await search_in_file_tool(path, pattern, _vault_dir=vault)

    async def _get_file_info(path: str) -> str:
        return await get_file_info_tool(path, _vault_dir=vault)

    async def _replace_in_file(path: str, old_text: str, new_text: str) -> str:
        return await replace_in_file_tool(path, old_text, new_text, _vault_dir=vault)

    async def _write_file(path: str, content: str) -> str:
        return await write_file_tool(path, content, _vault_dir=vault)

    async def _list_files(folder: str | None = None) -> str:
        return await list_files_tool(folder, _vault_dir=vault)

    async def _rename_file(old_path: str, new_path: str) -> str:
        return await rename_file_tool(old_path, new_path, _vault_dir=vault)

    async def _delete_file(path: str) -> str:
        return await delete_file_tool(path, _vault_dir=vault)

    dispatcher.register(READ_FILE, _read_file)
    dispatcher.register(SEARCH_IN_FILE, _search_in_file)
    dispatcher.register(GET_FILE_INFO, _get_file_info)
    dispatcher.register(REPLACE_IN_FILE, _replace_in_file)
    dispatcher.register(WRITE_FILE, _write_file)
    dispatcher.register(LIST_FILES, _list_files)
    dispatcher.register(RENAME_FILE, _rename_file)
    dispatcher.register(DELETE_FILE, _delete_file)
