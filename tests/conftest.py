"""Shared fixtures: isolated settings and a scratch vault."""

import pytest

from vaultchat.config import Settings


@pytest.fixture
def vault(tmp_path):
    """Vault directory with a couple of notes."""
    root = tmp_path / "vault"
    root.mkdir()
    (root / "ideas.md").write_text("# Ideas\n\nBuild a garden\nLearn Rust\n", encoding="utf-8")
    (root / "projects").mkdir()
    (root / "projects" / "garden.md").write_text("Tomatoes\nBasil\nGarden beds\n", encoding="utf-8")
    return root


@pytest.fixture
def settings(tmp_path, vault):
    """Settings that never touch the real environment's key or database."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        vault_dir=str(vault),
        db_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        retry_delays=[1.0, 2.0, 4.0],
    )
