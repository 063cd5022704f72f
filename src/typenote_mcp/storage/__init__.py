"""Storage layer for the Typenote MCP server."""

from typenote_mcp.storage.link_extractor import LinkExtractor
from typenote_mcp.storage.markdown_parser import MarkdownParser
from typenote_mcp.storage.note_repository import NoteRepository
from typenote_mcp.storage.search_index import SearchIndex

__all__ = [
    "LinkExtractor",
    "MarkdownParser",
    "NoteRepository",
    "SearchIndex",
]
