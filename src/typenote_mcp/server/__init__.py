"""MCP server for Typenote."""
