"""Shared constants for MCP Switchboard."""

SERVER_NAME = "MCP Switchboard"
SERVER_VERSION = "0.1.0"

# Namespacing
TOOL_SEPARATOR = "__"
RESOURCE_SEPARATOR = "://"

# Logging defaults
LOG_DIR = "logs"
DEFAULT_LOG_LEVEL = "INFO"

# Backend operation timeouts (seconds)
CONNECT_TIMEOUT = 30.0
MCP_INIT_TIMEOUT = 15.0
CAP_FETCH_TIMEOUT = 10.0
CALL_TIMEOUT = 60.0
READ_TIMEOUT = 60.0
PROBE_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0

# Health supervision
HEALTH_CHECK_INTERVAL = 30.0
UNHEALTHY_THRESHOLD = 3

# Reconnect backoff
RECONNECT_BASE_DELAY = 1.0
RECONNECT_FACTOR = 2.0
RECONNECT_MAX_DELAY = 60.0
RECONNECT_MAX_ATTEMPTS = 5

# Parallel connect fan-out
CONNECT_CONCURRENCY = 8

# Event subscriptions
EVENT_QUEUE_SIZE = 100
