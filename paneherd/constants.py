"""Constants shared across paneherd.

Values here are protocol or platform facts, not user settings. User-tunable
timings live in `paneherd.config.schema`.
"""

# Controller endpoints
DEFAULT_PORT = 4096
SESSION_STATUS_PATH = "/session/status"
HEALTH_PATH = "/health"
EVENT_STREAM_PATH = "/event"

# HTTP timeouts (seconds)
STATUS_REQUEST_TIMEOUT_S = 2.0
HEALTH_REQUEST_TIMEOUT_S = 1.5
SERVER_CHECK_TIMEOUT_S = 3.0
SERVER_CHECK_ATTEMPTS = 2
SERVER_CHECK_RETRY_DELAY_S = 0.25

# Event stream reconnect backoff
EVENT_STREAM_INITIAL_BACKOFF_S = 1.0
EVENT_STREAM_MAX_BACKOFF_S = 30.0

# Child session panes
ATTACH_SIGNATURE = "opencode attach"
ATTACH_COMMAND_TEMPLATE = "opencode attach {server_url} --session {session_id}"
PANE_ENV = {"OPENCODE_HIDE_SUBAGENT_HEADER": "1"}
PANE_TITLE_MAX_CHARS = 30
PANE_SESSION_TAG = "paneherd_session"
DEFAULT_PANE_TITLE = "Subagent"
SESSION_CREATED_EVENT = "session.created"
IDLE_STATUS = "idle"

# Spawn queue internals
SPAWN_BASE_BACKOFF_S = 0.25
SPAWN_STALE_THRESHOLD_S = 30.0

# Process reaping
REAP_TERM_WAIT_S = 2.0
REAP_KILL_WAIT_S = 1.0
REAP_PORT_START = DEFAULT_PORT
REAP_QUERY_ATTEMPTS = 3
REAP_QUERY_RETRY_DELAY_S = 1.0
SERVER_PROCESS_MARKERS = ("opencode", "node", "bun")

# Logging
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "~/.local/state/paneherd/paneherd.log"
