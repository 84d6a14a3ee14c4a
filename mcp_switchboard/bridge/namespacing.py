"""Namespaced capability keys.

Tools are exposed as ``<backend>__<tool>`` and resources as
``<backend>://<original uri>``. Reversal only ever removes the fixed
``<backend><separator>`` prefix of a known backend, so original names that
themselves contain the separator round-trip unchanged.
"""

from typing import Optional

from mcp_switchboard.constants import RESOURCE_SEPARATOR, TOOL_SEPARATOR


def tool_prefix(backend: str) -> str:
    return f"{backend}{TOOL_SEPARATOR}"


def resource_prefix(backend: str) -> str:
    return f"{backend}{RESOURCE_SEPARATOR}"


def namespace_tool(backend: str, original_name: str) -> str:
    """Build the exposed key for a backend tool."""
    return tool_prefix(backend) + original_name


def namespace_resource(backend: str, original_uri: str) -> str:
    """Build the exposed URI for a backend resource."""
    return resource_prefix(backend) + original_uri


def strip_tool(backend: str, key: str) -> str:
    """Return the original tool name behind *key*.

    Raises :class:`ValueError` if *key* is not owned by *backend*.
    """
    prefix = tool_prefix(backend)
    if not key.startswith(prefix):
        raise ValueError(f"Tool key '{key}' is not namespaced for backend '{backend}'")
    return key[len(prefix) :]


def strip_resource(backend: str, key: str) -> str:
    """Return the original resource URI behind *key*.

    Raises :class:`ValueError` if *key* is not owned by *backend*.
    """
    prefix = resource_prefix(backend)
    if not key.startswith(prefix):
        raise ValueError(f"Resource URI '{key}' is not namespaced for backend '{backend}'")
    return key[len(prefix) :]


def tool_owner(key: str) -> Optional[str]:
    """Backend name encoded in a tool key, or ``None``.

    Backend names never contain the separator nor end with ``_``, so the
    first separator occurrence is where the backend name ends.
    """
    backend, sep, rest = key.partition(TOOL_SEPARATOR)
    if not sep or not backend or not rest:
        return None
    return backend


def resource_owner(key: str) -> Optional[str]:
    """Backend name encoded in a resource key, or ``None``."""
    backend, sep, rest = key.partition(RESOURCE_SEPARATOR)
    if not sep or not backend or not rest:
        return None
    return backend
