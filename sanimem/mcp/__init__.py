"""MCP tool boundary for sanimem (requires the `mcp` extra for the server)."""
