"""Typed, optionally bidirectional links between notes.

Links live in the ``links`` frontmatter array of the note they start from.
Creating a link can also add the reverse link on the target note and a
``See also`` wikilink in the source body, so the relationship is visible
when reading the note.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from typenote_mcp.exceptions import ConflictError, ErrorCode, ValidationError
from typenote_mcp.models.schema import Note, NoteLink, Relationship, utc_timestamp
from typenote_mcp.services.note_service import NoteService

logger = logging.getLogger(__name__)

REVERSE_RELATIONSHIPS: Dict[Relationship, Relationship] = {
    Relationship.REFERENCES: Relationship.MENTIONS,
    Relationship.FOLLOWS_UP: Relationship.MENTIONS,
    Relationship.CONTRADICTS: Relationship.CONTRADICTS,
    Relationship.SUPPORTS: Relationship.SUPPORTS,
    Relationship.MENTIONS: Relationship.MENTIONS,
    Relationship.RELATED_TO: Relationship.RELATED_TO,
    Relationship.DEPENDS_ON: Relationship.BLOCKS,
    Relationship.BLOCKS: Relationship.DEPENDS_ON,
}

# Relationships that also get a "See also" wikilink in the source body
INLINE_REFERENCE_RELATIONSHIPS = frozenset(
    {Relationship.REFERENCES, Relationship.MENTIONS, Relationship.RELATED_TO}
)

REVERSE_CONTEXT_PREFIX = "Reverse of: "


@dataclass
class LinkCreated:
    """The forward link written by :meth:`LinkManager.link_notes`."""

    source: str
    target: str
    relationship: Relationship
    bidirectional: bool
    timestamp: str


@dataclass
class LinkResult:
    """Outcome of :meth:`LinkManager.link_notes`."""

    success: bool
    link_created: LinkCreated
    reverse_link_created: bool


def is_valid_relationship(value: str) -> bool:
    return value in Relationship._value2member_map_


def parse_relationship(value: Union[str, Relationship]) -> Relationship:
    """Convert a relationship string to the enum.

    Raises:
        ValidationError: If the value is not a known relationship.
    """
    if isinstance(value, Relationship):
        return value
    try:
        return Relationship(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(r.value for r in Relationship)
        raise ValidationError(
            f"Invalid relationship '{value}'. Valid relationships are: {valid}",
            field="relationship",
            value=value,
            code=ErrorCode.INVALID_RELATIONSHIP,
        ) from None


def get_reverse_relationship(relationship: Union[str, Relationship]) -> Relationship:
    """Relationship recorded on the target note for a bidirectional link."""
    return REVERSE_RELATIONSHIPS.get(
        parse_relationship(relationship), Relationship.RELATED_TO
    )


class LinkManager:
    """Creates, lists and removes typed links stored in note frontmatter."""

    def __init__(self, note_service: Optional[NoteService] = None):
        self.note_service = note_service or NoteService()

    def link_notes(
        self,
        source_id: str,
        target_id: str,
        relationship: Union[str, Relationship] = Relationship.REFERENCES,
        bidirectional: bool = True,
        context: Optional[str] = None,
    ) -> LinkResult:
        """Link two notes.

        Args:
            source_id: Identifier of the note the link starts from.
            target_id: Identifier of the linked note.
            relationship: One of the :class:`Relationship` values.
            bidirectional: Also record the reverse relationship on the target.
            context: Free-text note about why the notes are linked.

        Returns:
            What was written, including whether a reverse link was added.

        Raises:
            ValidationError: If the relationship is unknown.
            NoteNotFoundError: If either note does not exist.
            ConflictError: If the same link already exists on the source.
        """
        relationship = parse_relationship(relationship)
        source = self.note_service.get_note(source_id)
        target = self.note_service.get_note(target_id)

        if source.metadata.find_link(target.id, relationship) is not None:
            raise ConflictError(source.id, target.id, relationship.value)

        timestamp = utc_timestamp()
        metadata = source.metadata.model_copy(deep=True)
        metadata.links = metadata.links + [
            NoteLink(
                target=target.id,
                relationship=relationship,
                created=timestamp,
                context=context,
            )
        ]
        self.note_service.update_note_with_metadata(source.id, source.content, metadata)

        reverse_created = False
        if bidirectional:
            reverse_created = self._add_reverse_link(
                source.id, target.id, relationship, timestamp, context
            )

        if relationship in INLINE_REFERENCE_RELATIONSHIPS:
            self._add_inline_reference(source.id, target)

        logger.info(
            f"Linked {source.id} -[{relationship.value}]-> {target.id}"
            f"{' (with reverse)' if reverse_created else ''}"
        )
        return LinkResult(
            success=True,
            link_created=LinkCreated(
                source=source.id,
                target=target.id,
                relationship=relationship,
                bidirectional=bidirectional,
                timestamp=timestamp,
            ),
            reverse_link_created=reverse_created,
        )

    def get_links_for_note(self, note_id: str) -> List[NoteLink]:
        """Outbound frontmatter links of a note."""
        return list(self.note_service.get_note(note_id).metadata.links)

    def remove_link(
        self,
        source_id: str,
        target_id: str,
        relationship: Union[str, Relationship],
    ) -> bool:
        """Remove the first link matching target and relationship.

        Only the source note is changed; a reverse link on the target stays.

        Returns:
            True if a link was removed, False if none matched.

        Raises:
            ValidationError: If the relationship is unknown.
            NoteNotFoundError: If the source note does not exist.
        """
        relationship = parse_relationship(relationship)
        source = self.note_service.get_note(source_id)
        target = self.note_service.normalize_id(target_id)

        links = list(source.metadata.links)
        for index, link in enumerate(links):
            if link.target == target and link.relationship == relationship:
                del links[index]
                break
        else:
            return False

        metadata = source.metadata.model_copy(deep=True)
        metadata.links = links
        self.note_service.update_note_with_metadata(source.id, source.content, metadata)
        logger.info(f"Removed link {source.id} -[{relationship.value}]-> {target}")
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _add_reverse_link(
        self,
        source_id: str,
        target_id: str,
        relationship: Relationship,
        timestamp: str,
        context: Optional[str],
    ) -> bool:
        reverse = get_reverse_relationship(relationship)
        # Re-read: the target may be the source note that was just written
        target = self.note_service.get_note(target_id)
        if target.metadata.find_link(source_id, reverse) is not None:
            return False

        metadata = target.metadata.model_copy(deep=True)
        metadata.links = metadata.links + [
            NoteLink(
                target=source_id,
                relationship=reverse,
                created=timestamp,
                context=f"{REVERSE_CONTEXT_PREFIX}{context}" if context else None,
            )
        ]
        self.note_service.update_note_with_metadata(target.id, target.content, metadata)
        return True

    def _add_inline_reference(self, source_id: str, target: Note) -> None:
        """Append ``See also: [[stem|Title]]`` unless the body already links there."""
        source = self.note_service.get_note(source_id)
        if self._has_inline_link(source.content, target):
            return
        content = source.content.strip()
        content += f"\n\nSee also: [[{target.stem}|{target.title}]]"
        self.note_service.update_note_with_metadata(source.id, content, source.metadata)

    @staticmethod
    def _has_inline_link(content: str, target: Note) -> bool:
        stem = re.escape(target.stem)
        note_type = re.escape(target.type)
        wikilink = re.compile(
            rf"\[\[\s*(?:{note_type}/)?{stem}(?:\.md)?\s*(\|[^\]]*)?\]\]"
        )
        markdown_link = re.compile(rf"\[[^\]]*\]\([^)]*{stem}[^)]*\)")
        return bool(wikilink.search(content) or markdown_link.search(content))
