"""Configuration module for the Typenote MCP server."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from typenote_mcp import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the logs
_USER_ENV = Path.home() / ".typenote" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


class TypenoteConfig(BaseModel):
    """Configuration for the Typenote server."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("TYPENOTE_BASE_DIR", "."))
    )
    # Vault root: one sub-directory per note type
    vault_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("TYPENOTE_VAULT_DIR", "data/vault"))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("TYPENOTE_DATABASE_PATH", "data/db/typenote.db")
        )
    )
    # When True the link index lives in memory and is rebuilt from the
    # markdown files on startup.
    in_memory_db: bool = Field(
        default_factory=lambda: os.getenv("TYPENOTE_IN_MEMORY_DB", "true").lower()
        in ("true", "1", "yes")
    )
    default_note_type: str = Field(
        default_factory=lambda: os.getenv("TYPENOTE_DEFAULT_NOTE_TYPE", "general")
    )
    # Search index location, relative paths resolve against the vault
    search_index_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("TYPENOTE_SEARCH_INDEX_PATH", ".typenote/search-index.json")
        )
    )
    snippet_length: int = Field(
        default_factory=lambda: int(os.getenv("TYPENOTE_SNIPPET_LENGTH", "250"))
    )
    similarity_threshold: float = Field(
        default_factory=lambda: float(
            os.getenv("TYPENOTE_SIMILARITY_THRESHOLD", "0.1")
        )
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("TYPENOTE_SERVER_NAME", "typenote-mcp"))
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_search_config(self) -> "TypenoteConfig":
        """Validate search tuning values."""
        if self.snippet_length < 20:
            raise ValueError("snippet_length must be >= 20")
        if not 0.0 <= self.similarity_threshold < 1.0:
            raise ValueError("similarity_threshold must be in [0, 1)")
        if not self.default_note_type or "/" in self.default_note_type:
            raise ValueError("default_note_type must be a single path segment")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_vault_path(self) -> Path:
        """Get the absolute vault path."""
        return self.get_absolute_path(self.vault_dir)

    def get_search_index_path(self) -> Path:
        """Get the absolute path of the persisted search index."""
        if self.search_index_path.is_absolute():
            return self.search_index_path
        return self.get_vault_path() / self.search_index_path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = TypenoteConfig()
