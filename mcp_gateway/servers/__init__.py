"""Reference downstream MCP servers used by the examples and tests."""
