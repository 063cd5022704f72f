"""
Typenote MCP - typed markdown notes with a wikilink graph, served over MCP.

Notes live as markdown files with YAML frontmatter, one directory per note
type. The package keeps the semantic links between notes consistent with the
inline ``[[wikilink]]`` syntax in their bodies, and provides scored literal and
regex search over the vault through a persisted index.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("typenote-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
