"""Repository for note storage and retrieval."""

import datetime
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterator, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from typenote_mcp.config import config
from typenote_mcp.exceptions import ErrorCode, NoteNotFoundError, StorageError
from typenote_mcp.models.db_models import DBNote, get_session_factory, init_db
from typenote_mcp.models.schema import (
    Note,
    NoteLookup,
    NoteMetadata,
    normalize_note_id,
    utc_timestamp,
)
from typenote_mcp.storage.markdown_parser import MarkdownParser
from typenote_mcp.utils import generate_content_hash

logger = logging.getLogger(__name__)


def _isoformat(value: Any) -> str:
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class NoteRepository:
    """Repository for note storage and retrieval.

    Notes are markdown files at ``<vault>/<type>/<filename>.md``. The files
    are the source of truth; a SQLite table mirrors them so the link index
    can resolve titles and filenames. The table is rebuilt from the files
    on startup when the database lives in memory.
    """

    def __init__(
        self,
        vault_dir: Optional[Path] = None,
        in_memory_db: Optional[bool] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the repository.

        Args:
            vault_dir: Vault root directory. Defaults to config.vault_dir.
            in_memory_db: Use an in-memory SQLite database. Defaults to
                config.in_memory_db. Ignored when engine is provided.
            engine: Pre-configured SQLAlchemy engine shared with other
                components.
        """
        self.vault_dir = config.get_absolute_path(vault_dir or config.vault_dir)
        self.vault_dir.mkdir(parents=True, exist_ok=True)
        self.in_memory_db = (
            config.in_memory_db if in_memory_db is None else in_memory_db
        )

        if engine is not None:
            self.engine = engine
        else:
            self.engine = init_db(in_memory=self.in_memory_db)
        self.session_factory = get_session_factory(self.engine)
        self._parser = MarkdownParser()

        logger.info(
            f"NoteRepository initialized: vault_dir={self.vault_dir}, "
            f"in_memory_db={self.in_memory_db}"
        )

    # ------------------------------------------------------------------
    # Paths and identifiers
    # ------------------------------------------------------------------

    def normalize_id(self, identifier: str) -> str:
        """Normalize an identifier to ``type/stem`` using the default type."""
        return normalize_note_id(identifier, config.default_note_type)

    def note_path(self, note_id: str) -> Path:
        note_type, stem = self.normalize_id(note_id).split("/")
        return self.vault_dir / note_type / f"{stem}.md"

    def exists(self, note_id: str) -> bool:
        return self.note_path(note_id).is_file()

    def unique_stem(self, note_type: str, stem: str) -> str:
        """Return ``stem`` or the first ``stem-N`` not yet used in the type."""
        candidate = stem
        counter = 2
        while (self.vault_dir / note_type / f"{candidate}.md").exists():
            candidate = f"{stem}-{counter}"
            counter += 1
        return candidate

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def get(self, note_id: str) -> Optional[Note]:
        """Load a note from its file.

        Returns:
            The note, or None if no file exists for the identifier.

        Raises:
            ValidationError: If the identifier is malformed.
            StorageError: If the file exists but cannot be read or parsed.
        """
        file_path = self.note_path(note_id)
        if not file_path.is_file():
            return None
        try:
            return self._read_note(file_path)
        except (OSError, ValueError) as e:
            raise StorageError(
                f"Failed to read note {note_id}",
                operation="read",
                path=str(file_path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def save(self, note_id: str, metadata: NoteMetadata, body: str) -> Note:
        """Write a note file and mirror it into the database.

        ``updated`` is stamped with the current time; ``created`` is set
        when missing.

        Raises:
            StorageError: If the file or its database row cannot be written.
        """
        note_id = self.normalize_id(note_id)
        note_type = note_id.split("/")[0]
        metadata = metadata.model_copy(deep=True)
        now = utc_timestamp()
        metadata.type = note_type
        metadata.updated = now
        if not metadata.created:
            metadata.created = now

        file_path = self.note_path(note_id)
        markdown = self._parser.render(metadata, body)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "w", encoding="utf-8") as f:
                f.write(markdown)
        except OSError as e:
            raise StorageError(
                f"Failed to write note {note_id}",
                operation="write",
                path=str(file_path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        note = self._build_note(file_path, metadata, body)
        with self.session_factory() as session:
            try:
                self._sync_note_to_db(session, note)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(
                    f"Failed to index note {note_id}",
                    operation="write",
                    path=str(file_path),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        return note

    def delete(self, note_id: str) -> None:
        """Delete a note file and its database row.

        Raises:
            NoteNotFoundError: If the note does not exist.
            StorageError: If the file cannot be removed.
        """
        note_id = self.normalize_id(note_id)
        file_path = self.note_path(note_id)
        if not file_path.is_file():
            raise NoteNotFoundError(note_id)
        try:
            os.remove(file_path)
        except OSError as e:
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="delete",
                path=str(file_path),
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

        with self.session_factory() as session:
            session.execute(delete(DBNote).where(DBNote.id == note_id))
            session.commit()

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def iter_note_files(self) -> Iterator[Path]:
        """Yield every note file in the vault, skipping hidden directories."""
        for type_dir in sorted(self.vault_dir.iterdir()):
            if not type_dir.is_dir() or type_dir.name.startswith("."):
                continue
            for file_path in sorted(type_dir.glob("*.md")):
                if file_path.is_file():
                    yield file_path

    def iter_notes(self) -> Iterator[Note]:
        """Yield every readable note. Unreadable files are logged and skipped."""
        for file_path in self.iter_note_files():
            try:
                yield self._read_note(file_path)
            except (OSError, ValueError) as e:
                logger.error(f"Cannot load note file {file_path.name}: {e}")

    def list_notes(
        self, note_type: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Note]:
        """List notes, optionally restricted to one type."""
        notes = [
            note for note in self.iter_notes()
            if note_type is None or note.type == note_type
        ]
        if limit is not None:
            notes = notes[:limit]
        return notes

    def list_lookups(self) -> List[NoteLookup]:
        """Title, type and filename stem of every indexed note."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNote.title, DBNote.type, DBNote.filename).order_by(DBNote.id)
            ).all()
        return [
            NoteLookup(
                title=title,
                type=note_type,
                filename=filename[:-3] if filename.endswith(".md") else filename,
            )
            for title, note_type, filename in rows
        ]

    def rebuild_index(self) -> int:
        """Resynchronize the notes table with the vault.

        Rows without a file are removed and every readable file is upserted,
        all in one transaction. Files that fail to parse are logged and
        skipped.

        Returns:
            Number of notes indexed.
        """
        indexed = 0
        failed: List[str] = []
        with self.session_factory() as session:
            db_ids = set(session.scalars(select(DBNote.id)).all())
            file_ids = set()

            for file_path in self.iter_note_files():
                try:
                    note = self._read_note(file_path)
                except (OSError, ValueError) as e:
                    logger.error(f"Invalid note file {file_path.name}: {e}")
                    failed.append(file_path.name)
                    continue
                self._sync_note_to_db(session, note)
                file_ids.add(note.id)
                indexed += 1

            orphaned = db_ids - file_ids
            if orphaned:
                logger.info(f"Removing {len(orphaned)} orphaned database entries")
                session.execute(delete(DBNote).where(DBNote.id.in_(orphaned)))
            session.commit()

        if failed:
            logger.warning(
                f"Failed to index {len(failed)} files: "
                f"{failed[:5]}{'...' if len(failed) > 5 else ''}"
            )
        logger.info(f"Index rebuild complete: {indexed} notes indexed")
        return indexed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _read_note(self, file_path: Path) -> Note:
        with open(file_path, "r", encoding="utf-8") as f:
            text = f.read()
        metadata, body = self._parser.parse(text, file_path.parent.name, file_path.name)
        return self._build_note(file_path, metadata, body)

    @staticmethod
    def _build_note(file_path: Path, metadata: NoteMetadata, body: str) -> Note:
        note_type = file_path.parent.name
        return Note(
            id=f"{note_type}/{file_path.stem}",
            type=note_type,
            filename=file_path.name,
            title=metadata.title,
            content=body,
            metadata=metadata,
            path=str(file_path),
            created=metadata.created,
            updated=metadata.updated,
            size=len(body.encode("utf-8")),
            content_hash=generate_content_hash(body),
        )

    @staticmethod
    def _sync_note_to_db(session, note: Note) -> None:
        """Upsert the notes row for a note; the caller commits."""
        db_note = session.get(DBNote, note.id)
        if db_note is None:
            db_note = DBNote(id=note.id)
            session.add(db_note)
        db_note.title = note.title
        db_note.content = note.content
        db_note.type = note.type
        db_note.filename = note.filename
        db_note.path = note.path
        db_note.created = note.created
        db_note.updated = note.updated
        db_note.size = note.size
        db_note.content_hash = note.content_hash
        db_note.tags = list(note.metadata.tags)
        # YAML dates are stored as ISO strings
        db_note.extra = json.loads(json.dumps(note.metadata.extra, default=_isoformat))
        session.flush()
