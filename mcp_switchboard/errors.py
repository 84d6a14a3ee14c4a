"""Custom exception classes for MCP Switchboard."""

from typing import Optional


class SwitchboardError(Exception):
    """Base class for all custom exceptions in MCP Switchboard."""

    pass


class ConfigurationError(SwitchboardError):
    """Raised when loading or validating the configuration file fails."""

    pass


class ConnectionFailedError(SwitchboardError):
    """Raised when a backend process cannot be spawned or its handshake fails."""

    def __init__(
        self,
        message: str,
        svr_name: Optional[str] = None,
        orig_exc: Optional[BaseException] = None,
    ):
        self.svr_name = svr_name
        self.orig_exc = orig_exc

        full_msg = "Connection failed"
        if svr_name:
            full_msg += f" (server: {svr_name})"
        full_msg += f": {message}"
        if orig_exc:
            full_msg += f" (original error: {type(orig_exc).__name__})"
        super().__init__(full_msg)


class NotConnectedError(SwitchboardError):
    """Raised when an operation targets a backend that is not serving."""

    def __init__(self, svr_name: str, state: str):
        self.svr_name = svr_name
        self.state = state
        super().__init__(f"Backend '{svr_name}' is not connected (state: {state}).")


class BackendError(SwitchboardError):
    """
    Raised when a backend reports a failure for a call or read.

    The backend's own message is kept verbatim in :attr:`backend_message`.
    """

    def __init__(
        self,
        message: str,
        svr_name: Optional[str] = None,
        orig_exc: Optional[BaseException] = None,
    ):
        self.svr_name = svr_name
        self.orig_exc = orig_exc
        self.backend_message = message

        full_msg = "Backend server error"
        if svr_name:
            full_msg += f" (server: {svr_name})"
        full_msg += f": {message}"
        if orig_exc:
            full_msg += f" (original error: {type(orig_exc).__name__})"
        super().__init__(full_msg)


class CapabilityNotFoundError(SwitchboardError):
    """Raised when no registry entry matches a namespaced key."""

    kind = "capability"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"{self.kind.capitalize()} '{key}' not found in any connected backend.")


class ToolNotFoundError(CapabilityNotFoundError):
    kind = "tool"


class ResourceNotFoundError(CapabilityNotFoundError):
    kind = "resource"


class DuplicateBackendError(SwitchboardError):
    """Raised when a backend name is registered twice."""

    def __init__(self, svr_name: str):
        self.svr_name = svr_name
        super().__init__(f"Backend '{svr_name}' is already registered.")


class OperationTimeoutError(SwitchboardError, TimeoutError):
    """Raised when a backend operation exceeds its time bound."""

    def __init__(self, operation: str, timeout: float, svr_name: Optional[str] = None):
        self.operation = operation
        self.timeout = timeout
        self.svr_name = svr_name
        where = f" on '{svr_name}'" if svr_name else ""
        super().__init__(f"{operation}{where} timed out after {timeout:g}s.")


class SubscriptionClosedError(SwitchboardError):
    """Raised when reading from an event subscription that is closed and drained."""

    def __init__(self) -> None:
        super().__init__("Event subscription is closed.")
