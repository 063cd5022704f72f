"""Persisted per-note search cache.

The index maps note identifiers to a :class:`SearchIndexEntry` and is kept
as a JSON file. Mutations write through to disk immediately; a missing
file is rebuilt from the vault the first time the index is used.
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from typenote_mcp.exceptions import ErrorCode, StorageError
from typenote_mcp.models.schema import Note, SearchIndexEntry, utc_timestamp

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = "1.0.0"


class SearchIndex:
    """Explicit cache of searchable note fields keyed by note identifier."""

    def __init__(
        self,
        index_path: Path,
        note_source: Callable[[], Iterable[Note]],
    ):
        """Initialize the index.

        Args:
            index_path: JSON file holding the persisted index.
            note_source: Callable yielding every note, used for rebuilds.
        """
        self.index_path = Path(index_path)
        self._note_source = note_source
        self._entries: Optional[Dict[str, SearchIndexEntry]] = None
        self.last_updated: Optional[str] = None

    @staticmethod
    def entry_for(note: Note) -> SearchIndexEntry:
        return SearchIndexEntry(
            content=note.content,
            title=note.title,
            type=note.type,
            tags=list(note.tags),
            updated=note.updated or note.created or utc_timestamp(),
        )

    @property
    def entries(self) -> Dict[str, SearchIndexEntry]:
        """The cached entries, loading or rebuilding them on first use."""
        if self._entries is None:
            if self.index_path.exists():
                self._load()
            else:
                logger.info(f"No search index at {self.index_path}, rebuilding")
                self.rebuild()
        return self._entries

    def get(self, note_id: str) -> Optional[SearchIndexEntry]:
        return self.entries.get(note_id)

    def update_note(self, note: Note) -> None:
        """Write-through update of one note's entry."""
        self.entries[note.id] = self.entry_for(note)
        self._save()

    def remove_note(self, note_id: str) -> None:
        """Write-through removal of one note's entry."""
        if self.entries.pop(note_id, None) is not None:
            self._save()

    def rebuild(self) -> int:
        """Rescan every note and replace the cache.

        Returns:
            Number of notes indexed.
        """
        self._entries = {note.id: self.entry_for(note) for note in self._note_source()}
        self._save()
        logger.info(f"Search index rebuilt with {len(self._entries)} notes")
        return len(self._entries)

    def _load(self) -> None:
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            entries = {
                note_id: SearchIndexEntry(**entry)
                for note_id, entry in data.get("notes", {}).items()
            }
        except (OSError, json.JSONDecodeError, AttributeError, TypeError,
                PydanticValidationError) as e:
            raise StorageError(
                "Search index is unreadable; rebuild it",
                operation="load_search_index",
                path=str(self.index_path),
                code=ErrorCode.SEARCH_INDEX_CORRUPTED,
                original_error=e,
            ) from e
        self._entries = entries
        self.last_updated = data.get("last_updated")
        logger.debug(f"Loaded search index with {len(entries)} notes")

    def _save(self) -> None:
        """Persist the index atomically via a temp file."""
        self.last_updated = datetime.now(timezone.utc).isoformat()
        data = {
            "version": INDEX_FORMAT_VERSION,
            "last_updated": self.last_updated,
            "notes": {
                note_id: entry.model_dump(mode="json")
                for note_id, entry in self._entries.items()
            },
        }
        temp_file = self.index_path.with_suffix(".tmp")
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self.index_path)
        except OSError as e:
            raise StorageError(
                "Failed to save search index",
                operation="save_search_index",
                path=str(self.index_path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
