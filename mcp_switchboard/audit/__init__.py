"""Structured event recording for MCP Switchboard."""

from mcp_switchboard.audit.logger import (
    AuditRecorder,
    NullRecorder,
    Recorder,
    safe_record,
)

__all__ = ["AuditRecorder", "NullRecorder", "Recorder", "safe_record"]
