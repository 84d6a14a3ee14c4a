"""Logging setup for MCP Switchboard."""
