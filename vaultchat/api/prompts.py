"""Prompt text for the vault assistant."""

from __future__ import annotations

from pathlib import Path

from vaultchat.api.vault_tools import TRASH_DIR

MAX_LISTED_FILES = 100

NAMING_SYSTEM_PROMPT = (
    "You name conversations. Reply with a short title (at most 6 words) "
    "describing what the conversation is about. No quotes, no punctuation at the end."
)


def list_vault_files(vault_dir: str, limit: int = MAX_LISTED_FILES) -> list[str]:
    vault = Path(vault_dir).resolve()
    if not vault.is_dir():
        return []
    paths = sorted(
        p.relative_to(vault).as_posix()
        for p in vault.rglob("*.md")
        if p.is_file() and TRASH_DIR not in p.relative_to(vault).parts
    )
    return paths[:limit]


def build_system_prompt(vault_dir: str, active_file: str | None = None) -> str:
    """System prompt describing the vault and the available tools."""
    files = list_vault_files(vault_dir)
    file_list = "\n".join(files) if files else "(no markdown files yet)"
    if active_file:
        active_info = f"Currently active file: {active_file}"
    else:
        active_info = "No file is currently open."

    return f"""You are Claude, integrated into a notes vault to help the user with their notes.

Vault location: {Path(vault_dir).resolve()}
{active_info}

Files in the vault (first {MAX_LISTED_FILES}):
{file_list}

You have access to these tools to interact with the vault:
- read_file / get_file_info / search_in_file: inspect files (check size before reading large ones)
- write_file / replace_in_file: create files or edit them
- list_files / rename_file / delete_file: organize the vault

When the user asks you to make changes to files, use these tools directly to read and modify files. \
Always confirm what you've done after making changes.

Be helpful and proactive. When you need to see a file's contents or make edits, use the tools available to you."""


def quick_ask_prompt(file_content: str, question: str) -> str:
    return f"File content:\n\n{file_content}\n\nQuestion: {question}"


def naming_prompt(transcript: str) -> str:
    return f"Give this conversation a short title:\n\n{transcript}"
