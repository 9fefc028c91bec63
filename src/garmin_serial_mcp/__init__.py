"""Garmin serial link packet protocol and MCP server."""

__version__ = "0.1.0"
