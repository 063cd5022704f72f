"""Markdown parsing and serialization for Typenote notes.

Handles conversion between note files (markdown with YAML frontmatter)
and the NoteMetadata + body pair used by the rest of the package.
"""
import logging
from typing import Any, Dict, List, Tuple

import frontmatter
import yaml
from pydantic import ValidationError as PydanticValidationError

from typenote_mcp.models.schema import (
    RESERVED_METADATA_KEYS,
    NoteLink,
    NoteMetadata,
)
from typenote_mcp.utils import title_from_filename

logger = logging.getLogger(__name__)


class MarkdownParser:
    """Parses and serializes notes as markdown with frontmatter."""

    def parse(self, text: str, note_type: str, filename: str) -> Tuple[NoteMetadata, str]:
        """Parse a note file.

        The directory a note lives in decides its type; a differing ``type``
        key in the frontmatter is logged and overridden.

        Args:
            text: Raw file contents.
            note_type: Type directory the file was read from.
            filename: File name, used for the fallback title.

        Returns:
            The parsed metadata and the markdown body.

        Raises:
            ValueError: If the frontmatter is not valid YAML or not a mapping.
        """
        try:
            post = frontmatter.loads(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid frontmatter in {filename}: {e}") from e
        raw: Dict[str, Any] = dict(post.metadata)
        body = post.content

        title = raw.get("title")
        if not title:
            title = self._title_from_body(body) or title_from_filename(filename)

        declared_type = raw.get("type")
        if declared_type and str(declared_type) != note_type:
            logger.warning(
                f"Note {note_type}/{filename} declares type '{declared_type}', "
                f"using directory type '{note_type}'"
            )

        metadata = NoteMetadata(
            title=str(title),
            type=note_type,
            created=raw.get("created"),
            updated=raw.get("updated"),
            tags=raw.get("tags") or [],
            links=self._parse_links(raw.get("links"), f"{note_type}/{filename}"),
            extra={k: v for k, v in raw.items() if k not in RESERVED_METADATA_KEYS},
        )
        return metadata, body

    def render(self, metadata: NoteMetadata, body: str) -> str:
        """Serialize metadata and body back into a note file."""
        post = frontmatter.Post(body)
        post.metadata.update(metadata.to_frontmatter())
        return frontmatter.dumps(post, sort_keys=False) + "\n"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _title_from_body(body: str) -> str:
        for line in body.splitlines():
            if line.startswith("# "):
                return line[2:].strip()
        return ""

    @staticmethod
    def _parse_links(raw_links: Any, note_ref: str) -> List[NoteLink]:
        """Parse the frontmatter ``links`` array, skipping malformed entries."""
        if not raw_links:
            return []
        if not isinstance(raw_links, list):
            logger.warning(f"Ignoring non-list 'links' frontmatter in {note_ref}")
            return []
        links: List[NoteLink] = []
        for entry in raw_links:
            if not isinstance(entry, dict):
                logger.warning(f"Ignoring malformed link entry in {note_ref}: {entry!r}")
                continue
            try:
                links.append(NoteLink(**entry))
            except PydanticValidationError as e:
                logger.warning(f"Ignoring invalid link entry in {note_ref}: {e}")
        return links
