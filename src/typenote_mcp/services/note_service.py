"""Service layer for note CRUD operations."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from typenote_mcp.config import config
from typenote_mcp.exceptions import ErrorCode, NoteNotFoundError, ValidationError
from typenote_mcp.models.schema import (
    LinkableText,
    LinkMigrationReport,
    Note,
    NoteLinksView,
    NoteMetadata,
    RenameResult,
    validate_safe_path_component,
)
from typenote_mcp.observability import traced
from typenote_mcp.storage.link_extractor import LinkExtractor
from typenote_mcp.storage.note_repository import NoteRepository
from typenote_mcp.storage.search_index import SearchIndex
from typenote_mcp.storage.wikilink_parser import find_linkable_text, generate_filename

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500


class NoteService:
    """Service for managing notes.

    Every mutation keeps the link index and the search index in step with
    the files: links are re-extracted after each write, broken links are
    repaired when a matching note appears, and the search cache is updated
    write-through.
    """

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        link_extractor: Optional[LinkExtractor] = None,
        search_index: Optional[SearchIndex] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the service.

        Args:
            repository: Note storage backend. Created with defaults if None.
            link_extractor: Link index. Bound to the repository's database
                if None.
            search_index: Search cache. Stored under the repository's vault
                if None.
            engine: Pre-configured SQLAlchemy engine for the default
                repository. Only used when repository is None.
        """
        if repository is not None:
            self.repository = repository
        elif engine is not None:
            self.repository = NoteRepository(engine=engine)
        else:
            self.repository = NoteRepository()
        self.link_extractor = link_extractor or LinkExtractor(
            self.repository.session_factory
        )
        if search_index is None:
            index_path = config.search_index_path
            if not index_path.is_absolute():
                index_path = self.repository.vault_dir / index_path
            search_index = SearchIndex(Path(index_path), self.repository.iter_notes)
        self.search_index = search_index

    def initialize(self) -> None:
        """Sync the database and the link index with the vault."""
        self.rebuild_index()
        logger.info("Note service initialized")

    @traced("rebuild_index")
    def rebuild_index(self) -> LinkMigrationReport:
        """Re-read every note file, then re-extract every note's links."""
        self.repository.rebuild_index()
        return self.migrate_links()

    @traced("migrate_links")
    def migrate_links(self) -> LinkMigrationReport:
        """Re-extract and store links for all notes."""
        return self.link_extractor.rebuild_links(
            (note.id, note.content) for note in self.repository.iter_notes()
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def normalize_id(self, note_id: str) -> str:
        return self.repository.normalize_id(note_id)

    def find_note(self, note_id: str) -> Optional[Note]:
        """Get a note, or None when it does not exist."""
        return self.repository.get(note_id)

    def get_note(self, note_id: str) -> Note:
        """Get a note.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ValidationError: If the identifier is malformed.
        """
        note = self.repository.get(note_id)
        if note is None:
            raise NoteNotFoundError(self.normalize_id(note_id))
        return note

    def list_notes(
        self, note_type: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Note]:
        return self.repository.list_notes(note_type=note_type, limit=limit)

    def get_note_links(self, note_id: str) -> NoteLinksView:
        """Link index view (outgoing, external, incoming) for a note."""
        note = self.get_note(note_id)
        return self.link_extractor.get_links_for_note(note.id)

    def suggest_links(self, note_id: str) -> List[LinkableText]:
        """Plain-text mentions of other notes' titles in a note's body."""
        note = self.get_note(note_id)
        lookups = [
            lookup for lookup in self.repository.list_lookups()
            if f"{lookup.type}/{lookup.filename}" != note.id
        ]
        return find_linkable_text(note.content, lookups)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_note(
        self,
        title: str,
        content: str = "",
        note_type: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Note:
        """Create a note in ``<vault>/<type>/<slug>.md``.

        Args:
            title: Note title, also used to derive the filename.
            content: Markdown body.
            note_type: Type directory. Defaults to config.default_note_type.
            tags: Tags for the frontmatter.
            metadata: Extra frontmatter keys.

        Returns:
            The created note.

        Raises:
            ValidationError: If the title, type or metadata is invalid.
        """
        title = self._validate_title(title)
        note_type = note_type or config.default_note_type
        validate_safe_path_component(note_type, "Note type")

        stem = generate_filename(title) or "untitled"
        stem = self.repository.unique_stem(note_type, stem)
        try:
            note_metadata = NoteMetadata(
                title=title,
                type=note_type,
                tags=tags or [],
                extra=metadata or {},
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid metadata: {e.errors()[0]['msg']}",
                field="metadata",
                code=ErrorCode.INVALID_METADATA,
            ) from e

        note = self.repository.save(f"{note_type}/{stem}", note_metadata, content)
        self.link_extractor.index_note(note.id, note.content)
        self.link_extractor.update_broken_links(note.id, note.title)
        self.search_index.update_note(note)
        logger.info(f"Created note {note.id}")
        return note

    def update_note(self, note_id: str, content: str) -> Note:
        """Replace a note's body, keeping its metadata."""
        note = self.get_note(note_id)
        return self._write(note.id, note.metadata, content)

    def update_note_with_metadata(
        self, note_id: str, content: str, metadata: NoteMetadata
    ) -> Note:
        """Replace a note's body and frontmatter.

        Title changes made here are not propagated to linking notes; use
        :meth:`rename_note` for that.
        """
        note = self.get_note(note_id)
        return self._write(note.id, metadata, content)

    @traced("rename_note")
    def rename_note(self, note_id: str, new_title: str) -> RenameResult:
        """Change a note's title and update every wikilink that used it.

        The filename is kept. Broken links that match the new title are
        repaired, then wikilinks in linking notes are rewritten.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ValidationError: If the new title is empty or too long.
            StorageError: If the linking notes cannot be looked up.
        """
        new_title = self._validate_title(new_title)
        note = self.get_note(note_id)
        old_title = note.title

        metadata = note.metadata.model_copy(deep=True)
        metadata.title = new_title
        note = self._write(note.id, metadata, note.content)

        resolved = self.link_extractor.update_broken_links(note.id, new_title)
        report = self.link_extractor.update_wikilinks_for_renamed_note(
            note.id, old_title, new_title
        )
        for updated_id in report.updated_note_ids:
            updated_note = self.repository.get(updated_id)
            if updated_note is not None:
                self.search_index.update_note(updated_note)

        logger.info(f"Renamed {note.id}: '{old_title}' -> '{new_title}'")
        return RenameResult(
            note_id=note.id,
            old_title=old_title,
            new_title=new_title,
            broken_links_resolved=resolved,
            report=report,
        )

    def delete_note(self, note_id: str) -> None:
        """Delete a note; wikilinks pointing at it become broken."""
        note = self.get_note(note_id)
        self.link_extractor.clear_links_for_note(note.id)
        self.repository.delete(note.id)
        self.search_index.remove_note(note.id)
        logger.info(f"Deleted note {note.id}")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _write(self, note_id: str, metadata: NoteMetadata, content: str) -> Note:
        note = self.repository.save(note_id, metadata, content)
        self.link_extractor.index_note(note.id, note.content)
        self.search_index.update_note(note)
        return note

    @staticmethod
    def _validate_title(title: str) -> str:
        if title is None or not title.strip():
            raise ValidationError("Title cannot be empty", field="title")
        title = title.strip()
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters",
                field="title",
            )
        return title
