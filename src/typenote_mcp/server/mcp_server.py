"""MCP server implementation for Typenote."""

import logging
import uuid
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from typenote_mcp.config import config
from typenote_mcp.exceptions import TypenoteError, ValidationError
from typenote_mcp.observability import metrics, timed_operation
from typenote_mcp.services.link_service import LinkManager
from typenote_mcp.services.note_service import NoteService
from typenote_mcp.services.search_service import (
    MetadataFilter,
    SearchResult,
    SearchService,
    SortRule,
)

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB

SERVER_INSTRUCTIONS = (
    "Typed markdown notes. Identifiers are 'type/filename' (without .md). "
    "Link notes with link_notes, find them with search_notes, and use "
    "rename_note so wikilinks in other notes follow a title change."
)


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_metadata_filters(
    raw_filters: Optional[List[Dict[str, Any]]],
) -> List[MetadataFilter]:
    filters = []
    for i, raw in enumerate(raw_filters or []):
        if not isinstance(raw, dict) or not raw.get("key"):
            raise ValidationError(
                f"metadata_filters[{i}] needs a key", field="metadata_filters"
            )
        if raw.get("value") is None:
            raise ValidationError(
                f"metadata_filters[{i}] needs a value", field="metadata_filters"
            )
        filters.append(
            MetadataFilter(
                key=raw["key"], value=raw["value"], operator=raw.get("operator") or "="
            )
        )
    return filters


def _format_search_results(results: List[SearchResult], heading: str) -> str:
    if not results:
        return "No matching notes found."
    lines = [f"{heading} ({len(results)}):", ""]
    for i, result in enumerate(results, 1):
        score = f" [score {result.score}]" if result.score else ""
        lines.append(f"{i}. {result.title} ({result.id}){score}")
        if result.tags:
            lines.append(f"   Tags: {', '.join(result.tags)}")
        lines.append(f"   Updated: {result.last_updated}")
        if result.snippet:
            lines.append(f"   {result.snippet}")
        lines.append("")
    return "\n".join(lines).rstrip()


class TypenoteMcpServer:
    """MCP server for Typenote."""

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine for the note index.
                When None the repository creates its own.
        """
        self.mcp = FastMCP(config.server_name, instructions=SERVER_INSTRUCTIONS)
        self.note_service = NoteService(engine=engine)
        self.link_manager = LinkManager(self.note_service)
        self.search_service = SearchService(self.note_service)
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        self.note_service.initialize()
        logger.info("Typenote MCP server initialized")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, TypenoteError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="create_note")
        def create_note(
            title: str,
            content: str = "",
            note_type: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Create a new note.
            Args:
                title: The title of the note (also used for the filename)
                content: Markdown body of the note
                note_type: Type directory for the note (defaults to the configured type)
                tags: Comma-separated list of tags (optional)
            """
            with timed_operation("create_note", title=title[:30]) as op:
                try:
                    if len(content) > MAX_CONTENT_LENGTH:
                        return f"Error: Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
                    note = self.note_service.create_note(
                        title=title,
                        content=content,
                        note_type=note_type,
                        tags=_split_csv(tags),
                    )
                    op["note_id"] = note.id
                    return f"Note created successfully with ID: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="get_note")
        def get_note(identifier: str) -> str:
            """Retrieve a note with its metadata.
            Args:
                identifier: Note identifier ('type/filename' or a bare filename)
            """
            with timed_operation("get_note", identifier=identifier):
                try:
                    note = self.note_service.get_note(identifier)
                    lines = [
                        f"# {note.title}",
                        f"ID: {note.id}",
                        f"Type: {note.type}",
                        f"Created: {note.created}",
                        f"Updated: {note.updated}",
                    ]
                    if note.tags:
                        lines.append(f"Tags: {', '.join(note.tags)}")
                    if note.links:
                        lines.append("Links:")
                        for link in note.links:
                            context = f" ({link.context})" if link.context else ""
                            lines.append(
                                f"- {link.relationship.value} -> {link.target}{context}"
                            )
                    lines.extend(["", note.content])
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="update_note")
        def update_note(identifier: str, content: str) -> str:
            """Replace the body of a note, keeping its metadata.
            Args:
                identifier: Note identifier
                content: New markdown body
            """
            with timed_operation("update_note", identifier=identifier):
                try:
                    if len(content) > MAX_CONTENT_LENGTH:
                        return f"Error: Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
                    note = self.note_service.update_note(identifier, content)
                    return f"Note updated successfully: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="rename_note")
        def rename_note(identifier: str, new_title: str) -> str:
            """Change a note's title and update wikilinks that point to it.
            Args:
                identifier: Note identifier
                new_title: The new title
            """
            with timed_operation("rename_note", identifier=identifier) as op:
                try:
                    result = self.note_service.rename_note(identifier, new_title)
                    report = result.report
                    op["links_updated"] = report.links_updated
                    lines = [
                        f"Renamed {result.note_id}: '{result.old_title}' -> '{result.new_title}'",
                        f"Broken links resolved: {result.broken_links_resolved}",
                        f"Notes with updated wikilinks: {report.notes_updated}",
                        f"Total wikilinks updated: {report.links_updated}",
                    ]
                    if report.failures:
                        lines.append("Failed to update:")
                        for failure in report.failures:
                            lines.append(f"- {failure.note_id}: {failure.error}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="delete_note")
        def delete_note(identifier: str) -> str:
            """Delete a note. Wikilinks pointing to it become broken links.
            Args:
                identifier: Note identifier
            """
            with timed_operation("delete_note", identifier=identifier):
                try:
                    self.note_service.delete_note(identifier)
                    return f"Note deleted successfully: {identifier}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="link_notes")
        def link_notes(
            source_id: str,
            target_id: str,
            relationship: str = "references",
            bidirectional: bool = True,
            context: Optional[str] = None,
        ) -> str:
            """Create a typed link between two notes.
            Args:
                source_id: Identifier of the source note
                target_id: Identifier of the target note
                relationship: references, follows-up, contradicts, supports, mentions, depends-on, blocks or related-to
                bidirectional: Also add the reverse relationship on the target note
                context: Optional description of why the notes are linked
            """
            with timed_operation("link_notes", source=source_id, target=target_id):
                try:
                    result = self.link_manager.link_notes(
                        source_id,
                        target_id,
                        relationship=relationship,
                        bidirectional=bidirectional,
                        context=context,
                    )
                    created = result.link_created
                    message = (
                        f"Link created: {created.source} "
                        f"-[{created.relationship.value}]-> {created.target}"
                    )
                    if result.reverse_link_created:
                        message += " (reverse link added)"
                    return message
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="remove_link")
        def remove_link(source_id: str, target_id: str, relationship: str) -> str:
            """Remove a typed link from the source note.
            Args:
                source_id: Identifier of the source note
                target_id: Identifier of the target note
                relationship: Relationship of the link to remove
            """
            with timed_operation("remove_link", source=source_id, target=target_id):
                try:
                    removed = self.link_manager.remove_link(
                        source_id, target_id, relationship
                    )
                    if not removed:
                        return f"No {relationship} link from {source_id} to {target_id}"
                    return f"Link removed: {source_id} -[{relationship}]-> {target_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="get_note_links")
        def get_note_links(identifier: str) -> str:
            """Show typed links, wikilinks, external links and backlinks of a note.
            Args:
                identifier: Note identifier
            """
            with timed_operation("get_note_links", identifier=identifier):
                try:
                    links = self.link_manager.get_links_for_note(identifier)
                    view = self.note_service.get_note_links(identifier)
                    lines = [f"Typed links ({len(links)}):"]
                    lines.extend(
                        f"- {link.relationship.value} -> {link.target}" for link in links
                    )
                    lines.append(f"Wikilinks ({len(view.outgoing_internal)}):")
                    for link in view.outgoing_internal:
                        status = link.target_note_id or "BROKEN"
                        lines.append(
                            f"- line {link.line_number}: [[{link.target_title}]] -> {status}"
                        )
                    lines.append(f"External links ({len(view.outgoing_external)}):")
                    lines.extend(
                        f"- line {link.line_number}: {link.url} ({link.link_type.value})"
                        for link in view.outgoing_external
                    )
                    lines.append(f"Backlinks ({len(view.incoming)}):")
                    lines.extend(
                        f"- {link.source_note_id} (line {link.line_number})"
                        for link in view.incoming
                    )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="find_broken_links")
        def find_broken_links() -> str:
            """List wikilinks whose target note does not exist."""
            with timed_operation("find_broken_links") as op:
                try:
                    broken = self.note_service.link_extractor.find_broken_links()
                    op["result_count"] = len(broken)
                    if not broken:
                        return "No broken links found."
                    lines = [f"Broken links ({len(broken)}):"]
                    lines.extend(
                        f"- {link.source_note_id} line {link.line_number}: [[{link.target_title}]]"
                        for link in broken
                    )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="get_backlinks")
        def get_backlinks(identifier: str) -> str:
            """List notes whose wikilinks point to this note.
            Args:
                identifier: Note identifier
            """
            with timed_operation("get_backlinks", identifier=identifier):
                try:
                    note = self.note_service.get_note(identifier)
                    backlinks = self.note_service.link_extractor.get_backlinks(note.id)
                    if not backlinks:
                        return f"No backlinks to {note.id}."
                    lines = [f"Backlinks to {note.id} ({len(backlinks)}):"]
                    lines.extend(
                        f"- {link.source_title or link.source_note_id} "
                        f"({link.source_note_id}, line {link.line_number})"
                        for link in backlinks
                    )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="suggest_links")
        def suggest_links(identifier: str) -> str:
            """Find plain-text mentions of other notes' titles that could become wikilinks.
            Args:
                identifier: Note identifier
            """
            with timed_operation("suggest_links", identifier=identifier):
                try:
                    matches = self.note_service.suggest_links(identifier)
                    if not matches:
                        return "No link suggestions."
                    lines = [f"Link suggestions ({len(matches)}):"]
                    for match in matches:
                        targets = ", ".join(
                            f"[[{s.target}|{s.display}]]" for s in match.suggestions
                        )
                        lines.append(
                            f"- '{match.text}' at {match.position.start}: {targets}"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="search_notes")
        def search_notes(
            query: Optional[str] = None,
            note_type: Optional[str] = None,
            limit: int = 10,
            use_regex: bool = False,
        ) -> str:
            """Search notes by text or regular expression.
            Args:
                query: Search terms, or a pattern when use_regex is true (empty lists recent notes)
                note_type: Restrict results to one note type
                limit: Maximum number of results
                use_regex: Treat the query as a case-insensitive regular expression
            """
            with timed_operation("search_notes", query=(query or "")[:30]) as op:
                try:
                    results = self.search_service.search_notes(
                        query=query,
                        type_filter=note_type,
                        limit=limit,
                        use_regex=use_regex,
                    )
                    op["result_count"] = len(results)
                    return _format_search_results(results, "Found notes")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="search_notes_advanced")
        def search_notes_advanced(
            note_type: Optional[str] = None,
            metadata_filters: Optional[List[Dict[str, Any]]] = None,
            updated_within: Optional[str] = None,
            updated_before: Optional[str] = None,
            created_within: Optional[str] = None,
            created_before: Optional[str] = None,
            content_contains: Optional[str] = None,
            sort: Optional[List[Dict[str, str]]] = None,
            limit: int = 50,
            offset: int = 0,
        ) -> str:
            """Filter notes by type, custom metadata, dates and content.
            Args:
                note_type: Restrict results to one note type
                metadata_filters: List of {key, value, operator}; operator is one of =, !=, >, <, >=, <=, LIKE, IN (default =)
                updated_within: Updated within a relative age such as 7d, 2w, 3m or 1y
                updated_before: Last updated longer ago than a relative age
                created_within: Created within a relative age
                created_before: Created longer ago than a relative age
                content_contains: Case-insensitive text the body must contain
                sort: List of {field, order}; field is title, type, created, updated or size, order is asc or desc
                limit: Maximum number of results
                offset: Number of matching notes to skip
            """
            with timed_operation("search_notes_advanced", note_type=note_type) as op:
                try:
                    response = self.search_service.search_notes_advanced(
                        note_type=note_type,
                        metadata_filters=_parse_metadata_filters(metadata_filters),
                        updated_within=updated_within,
                        updated_before=updated_before,
                        created_within=created_within,
                        created_before=created_before,
                        content_contains=content_contains,
                        sort=[
                            SortRule(field=rule.get("field", ""), order=rule.get("order", "desc"))
                            for rule in sort or []
                        ],
                        limit=limit,
                        offset=offset,
                    )
                    op["result_count"] = len(response.results)
                    if not response.results:
                        return f"No matching notes found (total {response.total})."
                    first = offset + 1
                    last = offset + len(response.results)
                    output = _format_search_results(
                        response.results, f"Notes {first}-{last} of {response.total}"
                    )
                    if response.has_more:
                        output += f"\n\nMore results available with offset={last}."
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="search_by_tags")
        def search_by_tags(tags: str, match_all: bool = False) -> str:
            """Find notes by tag.
            Args:
                tags: Comma-separated list of tags
                match_all: Require every tag instead of any
            """
            with timed_operation("search_by_tags", tags=tags[:30]):
                try:
                    results = self.search_service.search_by_tags(
                        _split_csv(tags), match_all=match_all
                    )
                    return _format_search_results(results, "Tagged notes")
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="list_tags")
        def list_tags() -> str:
            """List all tags with the number of notes using them."""
            with timed_operation("list_tags"):
                try:
                    tags = self.search_service.get_all_tags()
                    if not tags:
                        return "No tags found."
                    return "\n".join(f"- {t.tag} ({t.count})" for t in tags)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="find_similar_notes")
        def find_similar_notes(identifier: str, limit: int = 5) -> str:
            """Find notes with similar wording.
            Args:
                identifier: Note identifier
                limit: Maximum number of results
            """
            with timed_operation("find_similar_notes", identifier=identifier):
                try:
                    similar = self.search_service.find_similar_notes(identifier, limit=limit)
                    if not similar:
                        return "No similar notes found."
                    lines = [f"Similar notes ({len(similar)}):"]
                    lines.extend(
                        f"- {s.title} ({s.id}) similarity {s.similarity:.2f}"
                        for s in similar
                    )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="rebuild_search_index")
        def rebuild_search_index() -> str:
            """Rebuild the search index from the note files."""
            with timed_operation("rebuild_search_index"):
                try:
                    result = self.search_service.rebuild_search_index()
                    return (
                        f"Search index rebuilt: {result.indexed_notes} notes "
                        f"at {result.timestamp}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="migrate_links")
        def migrate_links() -> str:
            """Re-extract wikilinks and external links for every note."""
            with timed_operation("migrate_links"):
                try:
                    report = self.note_service.migrate_links()
                    lines = [
                        f"Processed {report.processed} notes: "
                        f"{report.wikilinks} wikilinks, "
                        f"{report.external_links} external links"
                    ]
                    if report.errors:
                        lines.append(f"Errors ({len(report.errors)}):")
                        lines.extend(
                            f"- {note_id}: {error}"
                            for note_id, error in report.errors.items()
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="get_metrics")
        def get_metrics() -> str:
            """Show operation counts, error counts and timings for this server."""
            summary = metrics.get_summary()
            lines = [
                f"Uptime: {summary['uptime_seconds']:.0f}s",
                f"Operations: {summary['total_operations']} "
                f"({summary['total_errors']} errors)",
            ]
            for name, data in sorted(metrics.get_metrics().items()):
                lines.append(
                    f"- {name}: {data['count']} calls, "
                    f"avg {data['avg_duration_ms']}ms, {data['error_count']} errors"
                )
            return "\n".join(lines)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
