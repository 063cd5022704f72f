"""Data models for the Typenote MCP server."""
