"""Common test fixtures for the Typenote MCP server."""

import tempfile
from pathlib import Path

import pytest

from typenote_mcp.config import config
from typenote_mcp.services.link_service import LinkManager
from typenote_mcp.services.note_service import NoteService
from typenote_mcp.services.search_service import SearchService
from typenote_mcp.storage.note_repository import NoteRepository


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the vault and database."""
    with tempfile.TemporaryDirectory() as vault_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(vault_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    vault_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "vault_dir", vault_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_typenote.db")
    monkeypatch.setattr(config, "in_memory_db", True)
    monkeypatch.setattr(config, "default_note_type", "general")
    yield config


@pytest.fixture
def note_repository(test_config):
    """Create a test note repository backed by an in-memory index."""
    yield NoteRepository(vault_dir=test_config.vault_dir, in_memory_db=True)


@pytest.fixture
def note_service(note_repository):
    """Create an initialized NoteService."""
    service = NoteService(repository=note_repository)
    service.initialize()
    yield service


@pytest.fixture
def link_manager(note_service):
    yield LinkManager(note_service)


@pytest.fixture
def search_service(note_service):
    yield SearchService(note_service)
