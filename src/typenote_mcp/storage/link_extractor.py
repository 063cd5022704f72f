"""Link index: extraction, resolution and repair of links between notes.

Wikilinks and external links are extracted from note bodies line by line
and stored as rows in ``note_links`` and ``external_links``. A wikilink row
whose target cannot be resolved keeps ``target_note_id`` NULL (a broken
link) until a matching note appears.
"""
import logging
import re
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from typenote_mcp.exceptions import ErrorCode, StorageError, TypenoteError
from typenote_mcp.models.db_models import DBExternalLink, DBNote, DBNoteLink
from typenote_mcp.models.schema import (
    ExternalLink,
    ExternalLinkType,
    ExtractedWikilink,
    LinkExtractionResult,
    LinkMigrationReport,
    NoteLinksView,
    NoteRewriteOutcome,
    RenameReport,
    StoredExternalLink,
    StoredWikilink,
    utc_timestamp,
)
from typenote_mcp.storage.markdown_parser import MarkdownParser
from typenote_mcp.storage.wikilink_parser import TYPE_FILENAME_PATTERN, parse_wikilinks
from typenote_mcp.utils import generate_content_hash

logger = logging.getLogger(__name__)

IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]*)\]\(([^)]+)\)")
URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")

# Sentence punctuation that ends a bare URL rather than belonging to it
_URL_TRAILING_PUNCTUATION = ".,;:!?"


def _is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _clean_link_destination(destination: str) -> str:
    """Drop an optional ``"title"`` and angle brackets from a link destination."""
    destination = destination.strip()
    if destination.startswith("<") and ">" in destination:
        return destination[1:destination.index(">")]
    return destination.split()[0] if destination else destination


def _strip_md(filename: str) -> str:
    return filename[:-3] if filename.endswith(".md") else filename


class LinkExtractor:
    """Maintains the link index for notes stored in the database."""

    def __init__(self, session_factory, parser: Optional[MarkdownParser] = None):
        """Initialize the extractor.

        Args:
            session_factory: SQLAlchemy session factory for the link index.
            parser: Parser used when rewriting note files during renames.
        """
        self.session_factory = session_factory
        self._parser = parser or MarkdownParser()

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_links(self, content: str) -> LinkExtractionResult:
        """Extract wikilinks and external links from a note body.

        Line numbers are 1-based. Each external URL is reported once per
        note at its first occurrence; on a single line images are taken
        first, then markdown links, then bare URLs. Only http(s) URLs are
        accepted.
        """
        result = LinkExtractionResult()
        seen_urls: Set[str] = set()

        for line_number, line in enumerate(content.split("\n"), start=1):
            for link in parse_wikilinks(line).wikilinks:
                result.wikilinks.append(
                    ExtractedWikilink(
                        target_title=link.target,
                        link_text=link.display if link.display != link.target else None,
                        line_number=line_number,
                    )
                )

            covered: List[Tuple[int, int]] = []

            def _add(url: str, title: Optional[str], link_type: ExternalLinkType) -> None:
                if not url or url in seen_urls or not _is_valid_url(url):
                    return
                seen_urls.add(url)
                result.external_links.append(
                    ExternalLink(
                        url=url,
                        title=title or None,
                        line_number=line_number,
                        link_type=link_type,
                    )
                )

            for match in IMAGE_PATTERN.finditer(line):
                covered.append(match.span())
                _add(
                    _clean_link_destination(match.group(2)),
                    match.group(1).strip(),
                    ExternalLinkType.IMAGE,
                )

            for match in MARKDOWN_LINK_PATTERN.finditer(line):
                covered.append(match.span())
                if match.start() > 0 and line[match.start() - 1] == "!":
                    continue
                _add(
                    _clean_link_destination(match.group(2)),
                    match.group(1).strip(),
                    ExternalLinkType.URL,
                )

            for match in URL_PATTERN.finditer(line):
                if any(start <= match.start() < end for start, end in covered):
                    continue
                _add(
                    match.group(0).rstrip(_URL_TRAILING_PUNCTUATION),
                    None,
                    ExternalLinkType.URL,
                )

        return result

    # ------------------------------------------------------------------
    # Resolution and storage
    # ------------------------------------------------------------------

    def resolve_wikilinks(
        self, session: Session, wikilinks: Iterable[ExtractedWikilink]
    ) -> List[ExtractedWikilink]:
        """Attach ``target_note_id`` to each wikilink that resolves.

        Resolution order: exact title (case-insensitive), then
        ``type/filename``, then bare filename with or without ``.md``.
        """
        resolved = []
        for link in wikilinks:
            target_id = self._resolve_target(session, link.target_title)
            resolved.append(link.model_copy(update={"target_note_id": target_id}))
        return resolved

    @staticmethod
    def _resolve_target(session: Session, target: str) -> Optional[str]:
        note_id = session.scalars(
            select(DBNote.id)
            .where(DBNote.title.collate("NOCASE") == target)
            .order_by(DBNote.id)
            .limit(1)
        ).first()
        if note_id:
            return note_id

        match = TYPE_FILENAME_PATTERN.match(target)
        if match:
            note_type, filename = match.group(1), match.group(2)
            if not filename.endswith(".md"):
                filename = f"{filename}.md"
            note_id = session.scalars(
                select(DBNote.id)
                .where(DBNote.type == note_type, DBNote.filename == filename)
                .limit(1)
            ).first()
            if note_id:
                return note_id

        note_id = session.scalars(
            select(DBNote.id)
            .where(DBNote.filename.in_([target, f"{target}.md"]))
            .order_by(DBNote.id)
            .limit(1)
        ).first()
        return note_id

    def store_links(self, note_id: str, result: LinkExtractionResult) -> None:
        """Replace all link rows of a note in one transaction.

        Raises:
            StorageError: If the transaction fails; nothing is changed.
        """
        with self.session_factory() as session:
            try:
                session.execute(
                    delete(DBNoteLink).where(DBNoteLink.source_note_id == note_id)
                )
                session.execute(
                    delete(DBExternalLink).where(DBExternalLink.note_id == note_id)
                )
                for link in self.resolve_wikilinks(session, result.wikilinks):
                    session.add(
                        DBNoteLink(
                            source_note_id=note_id,
                            target_note_id=link.target_note_id,
                            target_title=link.target_title,
                            link_text=link.link_text,
                            line_number=link.line_number,
                        )
                    )
                for link in result.external_links:
                    session.add(
                        DBExternalLink(
                            note_id=note_id,
                            url=link.url,
                            title=link.title,
                            line_number=link.line_number,
                            link_type=link.link_type.value,
                        )
                    )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(
                    f"Failed to store links for note {note_id}",
                    operation="store_links",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        logger.debug(
            f"Stored {len(result.wikilinks)} wikilinks and "
            f"{len(result.external_links)} external links for {note_id}"
        )

    def index_note(self, note_id: str, content: str) -> LinkExtractionResult:
        """Extract links from ``content`` and store them for the note."""
        result = self.extract_links(content)
        self.store_links(note_id, result)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_broken_links(self) -> List[StoredWikilink]:
        """Every wikilink whose target does not resolve to a note."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNoteLink, DBNote.title)
                .join(DBNote, DBNote.id == DBNoteLink.source_note_id, isouter=True)
                .where(DBNoteLink.target_note_id.is_(None))
                .order_by(DBNoteLink.source_note_id, DBNoteLink.line_number)
            ).all()
            return [self._to_stored(link, source_title) for link, source_title in rows]

    def get_backlinks(self, note_id: str) -> List[StoredWikilink]:
        """Wikilinks in other notes that resolve to ``note_id``."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNoteLink, DBNote.title)
                .join(DBNote, DBNote.id == DBNoteLink.source_note_id, isouter=True)
                .where(DBNoteLink.target_note_id == note_id)
                .order_by(DBNoteLink.source_note_id, DBNoteLink.line_number)
            ).all()
            return [self._to_stored(link, source_title) for link, source_title in rows]

    def get_links_for_note(self, note_id: str) -> NoteLinksView:
        """Outgoing wikilinks, outgoing external links and incoming wikilinks."""
        with self.session_factory() as session:
            outgoing = session.scalars(
                select(DBNoteLink)
                .where(DBNoteLink.source_note_id == note_id)
                .order_by(DBNoteLink.line_number, DBNoteLink.id)
            ).all()
            external = session.scalars(
                select(DBExternalLink)
                .where(DBExternalLink.note_id == note_id)
                .order_by(DBExternalLink.line_number, DBExternalLink.id)
            ).all()
            view = NoteLinksView(
                outgoing_internal=[self._to_stored(link) for link in outgoing],
                outgoing_external=[
                    StoredExternalLink(
                        note_id=row.note_id,
                        url=row.url,
                        title=row.title,
                        line_number=row.line_number,
                        link_type=ExternalLinkType(row.link_type),
                    )
                    for row in external
                ],
            )
        view.incoming = self.get_backlinks(note_id)
        return view

    @staticmethod
    def _to_stored(link: DBNoteLink, source_title: Optional[str] = None) -> StoredWikilink:
        return StoredWikilink(
            source_note_id=link.source_note_id,
            target_note_id=link.target_note_id,
            target_title=link.target_title,
            link_text=link.link_text,
            line_number=link.line_number,
            source_title=source_title,
        )

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def update_broken_links(self, note_id: str, title: str) -> int:
        """Point broken wikilinks at a note that now matches them.

        A broken row matches when its target is the note's title
        (case-insensitive), its identifier or its filename.

        Returns:
            Number of rows repaired.
        """
        stem = note_id.split("/", 1)[-1]
        candidates = [note_id, f"{note_id}.md", stem, f"{stem}.md"]
        with self.session_factory() as session:
            try:
                result = session.execute(
                    update(DBNoteLink)
                    .where(DBNoteLink.target_note_id.is_(None))
                    .where(
                        or_(
                            DBNoteLink.target_title.collate("NOCASE") == title,
                            DBNoteLink.target_title.in_(candidates),
                        )
                    )
                    .values(target_note_id=note_id)
                    .execution_options(synchronize_session=False)
                )
                repaired = result.rowcount or 0
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(
                    f"Failed to repair broken links for {note_id}",
                    operation="update_broken_links",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        if repaired:
            logger.info(f"Resolved {repaired} broken links to {note_id}")
        return repaired

    def clear_links_for_note(self, note_id: str) -> None:
        """Drop a note's outgoing rows and mark inbound wikilinks broken."""
        with self.session_factory() as session:
            try:
                session.execute(
                    delete(DBNoteLink).where(DBNoteLink.source_note_id == note_id)
                )
                session.execute(
                    delete(DBExternalLink).where(DBExternalLink.note_id == note_id)
                )
                session.execute(
                    update(DBNoteLink)
                    .where(DBNoteLink.target_note_id == note_id)
                    .values(target_note_id=None)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(
                    f"Failed to clear links for {note_id}",
                    operation="clear_links",
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e

    # ------------------------------------------------------------------
    # Rename propagation
    # ------------------------------------------------------------------

    def update_wikilinks_for_renamed_note(
        self, renamed_id: str, old_title: str, new_title: str
    ) -> RenameReport:
        """Rewrite wikilinks in every note that links to a renamed note.

        In each linking note:

        * ``[[Old]]`` becomes ``[[New]]``
        * ``[[<renamed_id>|Old]]`` becomes ``[[<renamed_id>|New]]``
        * ``[[Old|Custom]]`` becomes ``[[New|Custom]]``

        Rewritten notes are saved to the database and to their file, and
        their links are re-extracted. A failure in one note is recorded in
        its outcome and the remaining notes are still processed.

        Raises:
            StorageError: If the linking notes cannot be looked up.
        """
        report = RenameReport()
        if old_title == new_title:
            return report

        try:
            with self.session_factory() as session:
                source_ids = session.scalars(
                    select(DBNoteLink.source_note_id)
                    .where(
                        or_(
                            DBNoteLink.target_note_id == renamed_id,
                            DBNoteLink.target_title == old_title,
                        )
                    )
                    .distinct()
                    .order_by(DBNoteLink.source_note_id)
                ).all()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to find notes linking to {renamed_id}",
                operation="rename_lookup",
                original_error=e,
            ) from e

        for source_id in source_ids:
            outcome = NoteRewriteOutcome(note_id=source_id)
            try:
                outcome.links_updated = self._rewrite_note(
                    source_id, renamed_id, old_title, new_title
                )
            except (TypenoteError, SQLAlchemyError, OSError, ValueError) as e:
                outcome.error = str(e)
                logger.warning(
                    f"Failed to update wikilinks in {source_id} "
                    f"after rename of {renamed_id}: {e}"
                )
            report.outcomes.append(outcome)
            if outcome.succeeded and outcome.links_updated:
                report.notes_updated += 1
                report.links_updated += outcome.links_updated

        logger.info(
            f"Rename of {renamed_id} updated {report.links_updated} wikilinks "
            f"in {report.notes_updated} notes ({len(report.failures)} failures)"
        )
        return report

    @staticmethod
    def rewrite_for_rename(
        content: str, renamed_id: str, old_title: str, new_title: str
    ) -> Tuple[str, int]:
        """Apply the rename rules to one body.

        Returns:
            The rewritten content and the number of wikilinks changed.
        """
        links = sorted(
            parse_wikilinks(content).wikilinks,
            key=lambda link: link.position.start,
            reverse=True,
        )
        changed = 0
        for link in links:
            # A bare [[Old]] parses with display == target
            replacement = None
            if link.target == old_title and link.display == old_title:
                replacement = f"[[{new_title}]]"
            elif _strip_md(link.target) == renamed_id and link.display == old_title:
                replacement = f"[[{link.target}|{new_title}]]"
            elif link.target == old_title:
                replacement = f"[[{new_title}|{link.display}]]"
            if replacement is None:
                continue
            content = (
                content[: link.position.start]
                + replacement
                + content[link.position.end:]
            )
            changed += 1
        return content, changed

    def _rewrite_note(
        self, note_id: str, renamed_id: str, old_title: str, new_title: str
    ) -> int:
        with self.session_factory() as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise StorageError(
                    f"Linking note {note_id} is not indexed",
                    operation="rename_rewrite",
                )
            new_content, changed = self.rewrite_for_rename(
                db_note.content, renamed_id, old_title, new_title
            )
            if not changed:
                return 0

            updated = utc_timestamp()
            self._write_body(db_note.path, note_id, new_content, updated)

            db_note.content = new_content
            db_note.content_hash = generate_content_hash(new_content)
            db_note.size = len(new_content.encode("utf-8"))
            db_note.updated = updated
            session.commit()

        self.index_note(note_id, new_content)
        return changed

    def _write_body(self, path: str, note_id: str, body: str, updated: str) -> None:
        """Replace the body of a note file, keeping its frontmatter."""
        note_type, filename = note_id.split("/", 1)
        try:
            with open(path, "r", encoding="utf-8") as f:
                metadata, _ = self._parser.parse(f.read(), note_type, f"{filename}.md")
            metadata.updated = updated
            with open(path, "w", encoding="utf-8") as f:
                f.write(self._parser.render(metadata, body))
        except OSError as e:
            raise StorageError(
                f"Failed to rewrite note {note_id}",
                operation="rename_rewrite",
                path=path,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def rebuild_links(self, notes: Iterable[Tuple[str, str]]) -> LinkMigrationReport:
        """Re-extract and store links for ``(note_id, content)`` pairs.

        Notes are processed independently; a failure is recorded in the
        report and does not stop the batch.
        """
        report = LinkMigrationReport()
        for note_id, content in notes:
            try:
                result = self.index_note(note_id, content)
            except StorageError as e:
                report.errors[note_id] = e.message
                logger.warning(f"Link migration failed for {note_id}: {e}")
                continue
            report.processed += 1
            report.wikilinks += len(result.wikilinks)
            report.external_links += len(result.external_links)
        logger.info(
            f"Link migration processed {report.processed} notes "
            f"({len(report.errors)} errors)"
        )
        return report
