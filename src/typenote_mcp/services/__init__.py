"""Services for the Typenote MCP server."""
