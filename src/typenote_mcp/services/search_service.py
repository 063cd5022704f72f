"""Service for searching and discovering notes."""

import logging
import math
import operator
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Optional, Pattern, Sequence, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError

from typenote_mcp.config import config
from typenote_mcp.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    SearchError,
    StorageError,
    ValidationError,
)
from typenote_mcp.models.db_models import DBNote
from typenote_mcp.models.schema import SearchIndexEntry, parse_timestamp, utc_now
from typenote_mcp.observability import traced
from typenote_mcp.services.note_service import NoteService
from typenote_mcp.storage.search_index import SearchIndex

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 10
CONTENT_WEIGHT = 5
TAG_WEIGHT = 3

# Words this short are ignored by similarity scoring
MIN_SIMILARITY_WORD_LENGTH = 3

COMPARISON_OPERATORS = {
    "=": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}
METADATA_OPERATORS = tuple(COMPARISON_OPERATORS) + ("LIKE", "IN")
METADATA_KEY_PATTERN = re.compile(r"^[\w-]+$")
SORT_FIELDS = ("title", "type", "created", "updated", "size")
DATE_FILTER_PATTERN = re.compile(r"^(\d+)([dwmy])$")
DATE_FILTER_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}


@dataclass
class SearchResult:
    """A note matched by a search, with its relevance score."""

    id: str
    title: str
    type: str
    filename: str
    path: str
    score: int
    snippet: str
    last_updated: str
    tags: List[str] = field(default_factory=list)


@dataclass
class SimilarNote:
    id: str
    title: str
    type: str
    similarity: float


@dataclass
class RebuildResult:
    indexed_notes: int
    timestamp: str


@dataclass
class TagCount:
    tag: str
    count: int


@dataclass
class MetadataFilter:
    """Condition on a custom frontmatter key.

    ``IN`` takes a list or a comma-separated string. Notes without the key
    never match, whatever the operator.
    """

    key: str
    value: Any
    operator: str = "="


@dataclass
class SortRule:
    field: str
    order: str = "desc"


@dataclass
class AdvancedSearchResult:
    results: List[SearchResult]
    total: int
    has_more: bool


def parse_date_filter(value: str, field_name: str = "date") -> str:
    """Turn a relative age such as ``7d``, ``2w``, ``3m`` or ``1y`` into a cutoff.

    Months count as 30 days and years as 365.

    Returns:
        The cutoff as an ISO-8601 UTC timestamp.

    Raises:
        ValidationError: If the value is not a number followed by d, w, m or y.
    """
    match = DATE_FILTER_PATTERN.match((value or "").strip().lower())
    if not match:
        raise ValidationError(
            f"Invalid date filter '{value}': use a number followed by d, w, m or y",
            field=field_name,
            value=value,
        )
    amount, unit = int(match.group(1)), match.group(2)
    cutoff = utc_now() - timedelta(days=amount * DATE_FILTER_DAYS[unit])
    return cutoff.isoformat()


def _count_matches(pattern: Pattern[str], text: str) -> int:
    """Count non-empty matches of ``pattern`` in ``text``."""
    return sum(1 for m in pattern.finditer(text) if m.end() > m.start())


def _word_frequencies(text: str) -> Counter:
    cleaned = re.sub(r"[^\w\s]", " ", text.lower())
    return Counter(
        word for word in cleaned.split() if len(word) >= MIN_SIMILARITY_WORD_LENGTH
    )


def _cosine_similarity(a: Counter, b: Counter) -> float:
    if not a or not b:
        return 0.0
    dot = sum(count * b[word] for word, count in a.items() if word in b)
    norm_a = math.sqrt(sum(c * c for c in a.values()))
    norm_b = math.sqrt(sum(c * c for c in b.values()))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class SearchService:
    """Literal and regex search over the persisted search index."""

    def __init__(
        self,
        note_service: Optional[NoteService] = None,
        search_index: Optional[SearchIndex] = None,
    ):
        """Initialize the search service.

        Args:
            note_service: Note CRUD service, used to resolve identifiers and
                file paths.
            search_index: Index to query. Defaults to the note service's
                write-through index.
        """
        self.note_service = note_service or NoteService()
        self.index = search_index or self.note_service.search_index

    # ------------------------------------------------------------------
    # Text search
    # ------------------------------------------------------------------

    @traced("search_notes")
    def search_notes(
        self,
        query: Optional[str] = None,
        type_filter: Optional[str] = None,
        limit: Optional[int] = 10,
        use_regex: bool = False,
    ) -> List[SearchResult]:
        """Search notes by literal terms or a regular expression.

        A blank query lists notes, most recently updated first. Otherwise a
        note scores 10 per title match, 5 per content match and 3 per tag
        match, summed over every occurrence (and every term in literal
        mode). Only notes scoring above zero are returned, best first.

        Args:
            query: Whitespace-separated terms, or a pattern when use_regex.
            type_filter: Only search notes of this type.
            limit: Maximum number of results; None for no limit.
            use_regex: Treat the query as a case-insensitive regex.

        Raises:
            ValidationError: If the regex does not compile or limit < 1.
            SearchError: If the search index cannot be read.
        """
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1", field="limit", value=limit)

        if query is None or not query.strip():
            entries = self._filtered_entries(type_filter, query)
            ordered = sorted(entries, key=self._recency_key)
            return [
                self._to_result(note_id, entry, 0, [])
                for note_id, entry in ordered[:limit]
            ]

        # Compile first so a bad pattern never loads or rebuilds the index
        patterns = self._compile_query(query, use_regex)
        entries = self._filtered_entries(type_filter, query)
        scored: List[Tuple[int, str, SearchIndexEntry]] = []
        for note_id, entry in entries:
            score = self._score(entry, patterns)
            if score > 0:
                scored.append((score, note_id, entry))

        scored.sort(
            key=lambda item: (-item[0],) + self._recency_key((item[1], item[2]))
        )
        return [
            self._to_result(note_id, entry, score, patterns)
            for score, note_id, entry in scored[:limit]
        ]

    @staticmethod
    def _compile_query(query: str, use_regex: bool) -> List[Pattern[str]]:
        if use_regex:
            try:
                return [re.compile(query, re.IGNORECASE)]
            except re.error as e:
                raise ValidationError(
                    f"Invalid regular expression: {e}",
                    field="query",
                    value=query,
                    code=ErrorCode.SEARCH_INVALID_QUERY,
                ) from e
        return [re.compile(re.escape(term), re.IGNORECASE) for term in query.split()]

    @staticmethod
    def _score(entry: SearchIndexEntry, patterns: Sequence[Pattern[str]]) -> int:
        score = 0
        for pattern in patterns:
            score += TITLE_WEIGHT * _count_matches(pattern, entry.title)
            score += CONTENT_WEIGHT * _count_matches(pattern, entry.content)
            score += TAG_WEIGHT * sum(_count_matches(pattern, tag) for tag in entry.tags)
        return score

    @staticmethod
    def build_snippet(
        content: str,
        patterns: Sequence[Pattern[str]],
        length: Optional[int] = None,
    ) -> str:
        """Excerpt around the first match, with matches wrapped in ``**``.

        Without a content match the excerpt is the start of the content.
        ``...`` marks text cut on either side.
        """
        length = length or config.snippet_length
        text = content.replace("\r", "").replace("\n", " ")

        spans: List[Tuple[int, int]] = []
        for pattern in patterns:
            spans.extend(m.span() for m in pattern.finditer(text) if m.end() > m.start())

        if not spans:
            excerpt = text[:length].rstrip()
            return f"{excerpt}..." if len(text) > length else excerpt

        spans.sort()
        first_start, first_end = spans[0]
        lead = max(0, (length - (first_end - first_start)) // 2)
        start = max(0, first_start - lead)
        end = min(len(text), start + length)
        start = max(0, min(start, end - length))

        merged: List[List[int]] = []
        for span_start, span_end in spans:
            if span_start < start or span_end > end:
                continue
            if merged and span_start <= merged[-1][1]:
                merged[-1][1] = max(merged[-1][1], span_end)
            else:
                merged.append([span_start, span_end])

        parts: List[str] = []
        cursor = start
        for span_start, span_end in merged:
            parts.append(text[cursor:span_start])
            parts.append(f"**{text[span_start:span_end]}**")
            cursor = span_end
        parts.append(text[cursor:end])

        snippet = "".join(parts)
        if start > 0:
            snippet = f"...{snippet}"
        if end < len(text):
            snippet = f"{snippet}..."
        return snippet

    # ------------------------------------------------------------------
    # Structured search
    # ------------------------------------------------------------------

    @traced("search_notes_advanced")
    def search_notes_advanced(
        self,
        note_type: Optional[str] = None,
        metadata_filters: Optional[Sequence[MetadataFilter]] = None,
        updated_within: Optional[str] = None,
        updated_before: Optional[str] = None,
        created_within: Optional[str] = None,
        created_before: Optional[str] = None,
        content_contains: Optional[str] = None,
        sort: Optional[Sequence[SortRule]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AdvancedSearchResult:
        """Filter notes on type, custom metadata, dates and content.

        Runs against the notes table rather than the search index. All
        conditions must hold. Date filters take relative ages (see
        :func:`parse_date_filter`): ``*_within`` keeps notes newer than the
        cutoff, ``*_before`` keeps notes older than it. Without sort rules
        results come most recently updated first; note id always breaks ties.

        Args:
            note_type: Only notes of this type.
            metadata_filters: Conditions on custom frontmatter keys.
            updated_within: Updated within this age, e.g. ``7d``.
            updated_before: Last updated longer ago than this age.
            created_within: Created within this age.
            created_before: Created longer ago than this age.
            content_contains: Case-insensitive substring of the body.
            sort: Ordering on title, type, created, updated or size.
            limit: Page size.
            offset: Number of matching notes to skip.

        Returns:
            The page of results, the total match count and whether more
            pages follow.

        Raises:
            ValidationError: If a filter, sort rule or paging value is invalid.
            SearchError: If the database query fails.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1", field="limit", value=limit)
        if offset < 0:
            raise ValidationError("offset cannot be negative", field="offset", value=offset)

        conditions = []
        if note_type:
            conditions.append(DBNote.type == note_type)
        for metadata_filter in metadata_filters or []:
            conditions.append(self._metadata_condition(metadata_filter))
        date_filters = (
            ("updated_within", updated_within, DBNote.updated, operator.ge),
            ("updated_before", updated_before, DBNote.updated, operator.le),
            ("created_within", created_within, DBNote.created, operator.ge),
            ("created_before", created_before, DBNote.created, operator.le),
        )
        for field_name, value, column, compare in date_filters:
            if value:
                conditions.append(compare(column, parse_date_filter(value, field_name)))
        patterns: List[Pattern[str]] = []
        if content_contains:
            conditions.append(DBNote.content.contains(content_contains, autoescape=True))
            patterns.append(re.compile(re.escape(content_contains), re.IGNORECASE))

        stmt = select(DBNote)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        order_by = self._order_by(sort)

        try:
            with self.note_service.repository.session_factory() as session:
                total = session.scalar(select(func.count()).select_from(stmt.subquery()))
                rows = session.scalars(
                    stmt.order_by(*order_by).limit(limit).offset(offset)
                ).all()
        except SQLAlchemyError as e:
            raise SearchError(f"Advanced search failed: {e}") from e

        results = [
            SearchResult(
                id=row.id,
                title=row.title,
                type=row.type,
                filename=row.filename,
                path=row.path,
                score=0,
                snippet=self.build_snippet(row.content, patterns),
                last_updated=row.updated or "",
                tags=list(row.tags or []),
            )
            for row in rows
        ]
        logger.debug(
            f"Advanced search matched {total} notes, returning {len(results)} "
            f"from offset {offset}"
        )
        return AdvancedSearchResult(
            results=results,
            total=total,
            has_more=offset + len(results) < total,
        )

    @staticmethod
    def _metadata_condition(metadata_filter: MetadataFilter):
        key = (metadata_filter.key or "").strip()
        if not METADATA_KEY_PATTERN.match(key):
            raise ValidationError(
                "Metadata filter keys may only contain letters, digits, '_' and '-'",
                field="metadata_filters",
                value=key,
            )
        op_name = (metadata_filter.operator or "=").strip().upper()
        if op_name not in METADATA_OPERATORS:
            raise ValidationError(
                f"Metadata operator must be one of: {', '.join(METADATA_OPERATORS)}",
                field="metadata_filters",
                value=metadata_filter.operator,
            )

        stored = func.json_extract(DBNote.extra, f'$."{key}"')
        value = metadata_filter.value
        if op_name == "IN":
            if isinstance(value, str):
                value = [item.strip() for item in value.split(",") if item.strip()]
            elif not isinstance(value, (list, tuple)):
                value = [value]
            return stored.in_(list(value))
        if op_name == "LIKE":
            return stored.like(str(value))
        return COMPARISON_OPERATORS[op_name](stored, value)

    @staticmethod
    def _order_by(sort: Optional[Sequence[SortRule]]) -> list:
        if not sort:
            return [DBNote.updated.desc(), DBNote.id.asc()]
        order_by = []
        for rule in sort:
            if rule.field not in SORT_FIELDS:
                raise ValidationError(
                    f"Sort field must be one of: {', '.join(SORT_FIELDS)}",
                    field="sort",
                    value=rule.field,
                )
            order = (rule.order or "desc").lower()
            if order not in ("asc", "desc"):
                raise ValidationError(
                    "Sort order must be 'asc' or 'desc'", field="sort", value=rule.order
                )
            column = getattr(DBNote, rule.field)
            order_by.append(column.asc() if order == "asc" else column.desc())
        order_by.append(DBNote.id.asc())
        return order_by

    # ------------------------------------------------------------------
    # Tags and similarity
    # ------------------------------------------------------------------

    def search_by_tags(
        self, tags: Sequence[str], match_all: bool = False
    ) -> List[SearchResult]:
        """Notes carrying any (or, with match_all, every) of the tags.

        Tags compare case-insensitively. Results are ordered by most recent
        update. An empty tag list matches nothing.
        """
        wanted = {tag.strip().lower() for tag in tags if tag and tag.strip()}
        if not wanted:
            return []

        matches = []
        for note_id, entry in self.index.entries.items():
            note_tags = {tag.lower() for tag in entry.tags}
            hit = wanted <= note_tags if match_all else bool(wanted & note_tags)
            if hit:
                matches.append((note_id, entry))

        matches.sort(key=self._recency_key)
        return [self._to_result(note_id, entry, 0, []) for note_id, entry in matches]

    def get_all_tags(self) -> List[TagCount]:
        """Every tag in the vault with its note count, most used first."""
        counts: Counter = Counter()
        for entry in self.index.entries.values():
            counts.update(set(entry.tags))
        return [
            TagCount(tag=tag, count=count)
            for tag, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    @traced("find_similar_notes")
    def find_similar_notes(self, note_id: str, limit: int = 5) -> List[SimilarNote]:
        """Notes whose wording is closest to the given note.

        Similarity is the cosine of word-frequency vectors over title and
        content. Notes at or below the configured threshold are dropped.

        Raises:
            NoteNotFoundError: If the note is not in the index.
        """
        note_id = self.note_service.normalize_id(note_id)
        entries = self.index.entries
        source = entries.get(note_id)
        if source is None:
            raise NoteNotFoundError(note_id)

        source_vector = _word_frequencies(f"{source.title} {source.content}")
        similar: List[SimilarNote] = []
        for other_id, entry in entries.items():
            if other_id == note_id:
                continue
            similarity = _cosine_similarity(
                source_vector, _word_frequencies(f"{entry.title} {entry.content}")
            )
            if similarity > config.similarity_threshold:
                similar.append(
                    SimilarNote(
                        id=other_id,
                        title=entry.title,
                        type=entry.type,
                        similarity=round(similarity, 4),
                    )
                )

        similar.sort(key=lambda s: (-s.similarity, s.id))
        return similar[:limit]

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    @traced("rebuild_search_index")
    def rebuild_search_index(self) -> RebuildResult:
        """Rescan the vault and replace the search index."""
        indexed = self.index.rebuild()
        return RebuildResult(indexed_notes=indexed, timestamp=self.index.last_updated)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _filtered_entries(
        self, type_filter: Optional[str], query: Optional[str] = None
    ) -> List[Tuple[str, SearchIndexEntry]]:
        try:
            entries = self.index.entries
        except StorageError as e:
            raise SearchError(
                f"Search index unavailable: {e.message}", query=query
            ) from e
        return [
            (note_id, entry)
            for note_id, entry in entries.items()
            if type_filter is None or entry.type == type_filter
        ]

    @staticmethod
    def _recency_key(item: Tuple[str, SearchIndexEntry]):
        note_id, entry = item
        return (-parse_timestamp(entry.updated).timestamp(), note_id)

    def _to_result(
        self,
        note_id: str,
        entry: SearchIndexEntry,
        score: int,
        patterns: Sequence[Pattern[str]],
    ) -> SearchResult:
        stem = note_id.split("/", 1)[-1]
        return SearchResult(
            id=note_id,
            title=entry.title,
            type=entry.type,
            filename=f"{stem}.md",
            path=str(self.note_service.repository.note_path(note_id)),
            score=score,
            snippet=self.build_snippet(entry.content, patterns),
            last_updated=entry.updated,
            tags=list(entry.tags),
        )
