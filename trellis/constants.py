"""Engine-wide defaults."""

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_LEASE_TTL = 300.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_SERVICE_TIMEOUT = 30.0
DEFAULT_RETENTION_HOURS = 168
DEFAULT_MAX_GATEWAY_DEPTH = 100
DEFAULT_CONTEXT_WRITE_ATTEMPTS = 3

SYSTEM_ACTOR = "system"
SERVICE_WORKER_ACTOR = "service-worker"
AGENT_WORKER_ACTOR = "agent-worker"
