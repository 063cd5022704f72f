"""Data models for the Typenote MCP server."""

import datetime
import re
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from typenote_mcp.exceptions import ErrorCode, ValidationError

# Note types and filename stems are single path segments
SAFE_SEGMENT_PATTERN = re.compile(r"^[\w][\w\-. ]*$")

# Frontmatter keys owned by NoteMetadata's fixed fields
RESERVED_METADATA_KEYS = frozenset(
    {"title", "type", "created", "updated", "tags", "links"}
)


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def utc_timestamp() -> str:
    """Current UTC time as an ISO-8601 string."""
    return utc_now().isoformat()


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC."""
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def parse_timestamp(value: Optional[str]) -> datetime.datetime:
    """Parse an ISO-8601 timestamp for ordering.

    Unparseable or missing values sort before every real timestamp.
    """
    if not value:
        return datetime.datetime.min.replace(tzinfo=timezone.utc)
    try:
        return ensure_timezone_aware(
            datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        )
    except ValueError:
        return datetime.datetime.min.replace(tzinfo=timezone.utc)


def _coerce_timestamp(value: Any) -> Any:
    """YAML loads unquoted ISO timestamps as datetimes; keep them as strings."""
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value).isoformat()
    if isinstance(value, datetime.date):
        return value.isoformat()
    return value


def validate_safe_path_component(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a single path segment.

    Raises:
        ValidationError: If the value is empty, contains separators or
            parent directory references, or has unsafe characters.
    """
    if not value:
        raise ValidationError(
            f"{field_name} cannot be empty",
            field=field_name,
            code=ErrorCode.INVALID_IDENTIFIER,
        )
    if ".." in value:
        raise ValidationError(
            f"{field_name} cannot contain '..' (path traversal)",
            field=field_name,
            value=value,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    if "/" in value or "\\" in value:
        raise ValidationError(
            f"{field_name} cannot contain path separators",
            field=field_name,
            value=value,
            code=ErrorCode.INVALID_IDENTIFIER,
        )
    if not SAFE_SEGMENT_PATTERN.match(value):
        raise ValidationError(
            f"{field_name} contains invalid characters",
            field=field_name,
            value=value,
            code=ErrorCode.INVALID_IDENTIFIER,
        )
    return value


def normalize_note_id(identifier: str, default_type: str) -> str:
    """Normalize a note identifier to ``type/stem``.

    Accepts ``type/stem``, ``type/stem.md`` or a bare ``stem`` (which is
    placed in ``default_type``).

    Raises:
        ValidationError: If the identifier is malformed.
    """
    if identifier is None or not identifier.strip():
        raise ValidationError(
            "Note identifier cannot be empty",
            field="identifier",
            code=ErrorCode.INVALID_IDENTIFIER,
        )
    value = identifier.strip()
    if value.endswith(".md"):
        value = value[:-3]
    parts = value.split("/")
    if len(parts) == 1:
        note_type, stem = default_type, parts[0]
    elif len(parts) == 2:
        note_type, stem = parts
    else:
        raise ValidationError(
            f"Invalid note identifier '{identifier}': expected 'type/filename'",
            field="identifier",
            value=identifier,
            code=ErrorCode.INVALID_IDENTIFIER,
        )
    validate_safe_path_component(note_type, "Note type")
    validate_safe_path_component(stem, "Note filename")
    return f"{note_type}/{stem}"


class Relationship(str, Enum):
    """Semantic relationship carried by a frontmatter link."""
    REFERENCES = "references"
    FOLLOWS_UP = "follows-up"
    CONTRADICTS = "contradicts"
    SUPPORTS = "supports"
    MENTIONS = "mentions"
    DEPENDS_ON = "depends-on"
    BLOCKS = "blocks"
    RELATED_TO = "related-to"


class NoteLink(BaseModel):
    """A typed link stored in the owning note's frontmatter."""
    target: str = Field(..., description="Identifier of the target note")
    relationship: Relationship
    created: str = Field(default_factory=utc_timestamp)
    context: Optional[str] = None

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("created", mode="before")
    @classmethod
    def _coerce_created(cls, v: Any) -> Any:
        return _coerce_timestamp(v)

    def to_frontmatter(self) -> Dict[str, Any]:
        """Serialize as a frontmatter array entry."""
        return self.model_dump(mode="json", exclude_none=True)


def _is_yaml_value(value: Any) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, (datetime.date, datetime.datetime)):
        return True
    if isinstance(value, list):
        return all(_is_yaml_value(item) for item in value)
    if isinstance(value, dict):
        return all(
            isinstance(k, str) and _is_yaml_value(v) for k, v in value.items()
        )
    return False


class NoteMetadata(BaseModel):
    """Frontmatter of a note.

    The fixed fields cover what the link and search engines rely on. Any
    other frontmatter key lives in ``extra`` and is round-tripped as is.
    """
    title: str
    type: str
    created: Optional[str] = None
    updated: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    links: List[NoteLink] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
    }

    @field_validator("created", "updated", mode="before")
    @classmethod
    def _coerce_timestamps(cls, v: Any) -> Any:
        return _coerce_timestamp(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, v: Any) -> Any:
        """Accept a comma-separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        if isinstance(v, list):
            return [str(t).strip() for t in v if str(t).strip()]
        return v

    @field_validator("extra")
    @classmethod
    def _validate_extra(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in v.items():
            if not isinstance(key, str) or not key.strip():
                raise ValueError("Metadata keys must be non-empty strings")
            if key in RESERVED_METADATA_KEYS:
                raise ValueError(f"Metadata key '{key}' is reserved")
            if not _is_yaml_value(value):
                raise ValueError(
                    f"Metadata value for '{key}' is not a YAML scalar, list or mapping"
                )
        return v

    def find_link(self, target: str, relationship: Relationship) -> Optional[NoteLink]:
        """Return the link with this target and relationship, if any."""
        for link in self.links:
            if link.target == target and link.relationship == relationship:
                return link
        return None

    def to_frontmatter(self) -> Dict[str, Any]:
        """Flatten into an ordered frontmatter mapping."""
        data: Dict[str, Any] = {"title": self.title, "type": self.type}
        if self.created:
            data["created"] = self.created
        if self.updated:
            data["updated"] = self.updated
        data["tags"] = list(self.tags)
        if self.links:
            data["links"] = [link.to_frontmatter() for link in self.links]
        data.update(self.extra)
        return data


class Note(BaseModel):
    """A note loaded from the vault."""
    id: str = Field(..., description="'type/filename' identifier without extension")
    type: str
    filename: str = Field(..., description="File name including the .md extension")
    title: str
    content: str = Field(default="", description="Markdown body without frontmatter")
    metadata: NoteMetadata
    path: str
    created: Optional[str] = None
    updated: Optional[str] = None
    size: int = 0
    content_hash: str = ""

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
    }

    @property
    def stem(self) -> str:
        return self.filename[:-3] if self.filename.endswith(".md") else self.filename

    @property
    def tags(self) -> List[str]:
        return self.metadata.tags

    @property
    def links(self) -> List[NoteLink]:
        return self.metadata.links


class Position(BaseModel):
    """Character span of a wikilink within the content it was parsed from."""
    start: int
    end: int


class WikiLink(BaseModel):
    """A parsed ``[[target|display]]`` occurrence."""
    target: str
    display: str
    type: Optional[str] = None
    filename: Optional[str] = None
    raw: str
    position: Position


class LinkParseResult(BaseModel):
    wikilinks: List[WikiLink] = Field(default_factory=list)
    content: str


class NoteLookup(BaseModel):
    """Minimal note description used for link suggestions."""
    title: str
    type: str
    filename: str


class LinkSuggestion(BaseModel):
    target: str
    display: str
    type: str
    filename: str
    title: str
    relevance: float = 1.0


class LinkableText(BaseModel):
    """A span of plain text that matches an existing note title."""
    text: str
    position: Position
    suggestions: List[LinkSuggestion] = Field(default_factory=list)


class ExternalLinkType(str, Enum):
    URL = "url"
    IMAGE = "image"
    EMBED = "embed"


class ExtractedWikilink(BaseModel):
    target_title: str
    link_text: Optional[str] = None
    line_number: int
    target_note_id: Optional[str] = None


class ExternalLink(BaseModel):
    url: str
    title: Optional[str] = None
    line_number: int
    link_type: ExternalLinkType = ExternalLinkType.URL


class LinkExtractionResult(BaseModel):
    wikilinks: List[ExtractedWikilink] = Field(default_factory=list)
    external_links: List[ExternalLink] = Field(default_factory=list)


class StoredWikilink(BaseModel):
    """A wikilink row as held in the link index."""
    source_note_id: str
    target_note_id: Optional[str] = None
    target_title: str
    link_text: Optional[str] = None
    line_number: Optional[int] = None
    source_title: Optional[str] = None


class StoredExternalLink(BaseModel):
    note_id: str
    url: str
    title: Optional[str] = None
    line_number: Optional[int] = None
    link_type: ExternalLinkType = ExternalLinkType.URL


class NoteLinksView(BaseModel):
    """Outgoing and incoming link rows for one note."""
    outgoing_internal: List[StoredWikilink] = Field(default_factory=list)
    outgoing_external: List[StoredExternalLink] = Field(default_factory=list)
    incoming: List[StoredWikilink] = Field(default_factory=list)


class NoteRewriteOutcome(BaseModel):
    """Result of rewriting wikilinks in one linking note."""
    note_id: str
    links_updated: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class RenameReport(BaseModel):
    """Aggregate result of propagating a title change to linking notes."""
    notes_updated: int = 0
    links_updated: int = 0
    outcomes: List[NoteRewriteOutcome] = Field(default_factory=list)

    @property
    def failures(self) -> List[NoteRewriteOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def updated_note_ids(self) -> List[str]:
        return [o.note_id for o in self.outcomes if o.succeeded and o.links_updated]


class RenameResult(BaseModel):
    """Outcome of renaming a note's title."""
    note_id: str
    old_title: str
    new_title: str
    broken_links_resolved: int = 0
    report: RenameReport = Field(default_factory=RenameReport)


class LinkMigrationReport(BaseModel):
    """Outcome of re-extracting links for a batch of notes."""
    processed: int = 0
    wikilinks: int = 0
    external_links: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)


class SearchIndexEntry(BaseModel):
    """Cached search view of a note."""
    content: str
    title: str
    type: str
    tags: List[str] = Field(default_factory=list)
    updated: str
