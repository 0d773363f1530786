"""
MCP Gateway Test Suite

Structure:
- unit/: fast tests against in-memory fakes
- integration/: tests that spawn the echo server and the gateway itself
"""
