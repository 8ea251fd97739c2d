"""Constants used across NTM.

Cadences and timeouts here are defaults; most can be overridden through
environment variables (see ntm.config).
"""

# tmux
TMUX_FIELD_SEPARATOR = "_NTM_SEP_"
TMUX_SUBPROCESS_TIMEOUT_S = 5.0

# Dashboard ticker
TICK_INTERVAL_MS = 100
MIN_TICK_INTERVAL_MS = 100

# Refresh cadences (milliseconds)
PANE_REFRESH_MS = 1_000
STATUS_REFRESH_MS = 10_000
ALERTS_REFRESH_MS = 3_000
BEADS_REFRESH_MS = 5_000
METRICS_REFRESH_MS = 10_000
ROUTING_REFRESH_MS = 10_000
HISTORY_REFRESH_MS = 10_000
FILES_REFRESH_MS = 10_000
CASS_REFRESH_MS = 15 * 60 * 1_000
SCAN_REFRESH_MS = 60_000
DCG_REFRESH_MS = 5 * 60 * 1_000
CHECKPOINT_REFRESH_MS = 30_000
HANDOFF_REFRESH_MS = 30_000
MAIL_REFRESH_MS = 30_000
MAIL_INBOX_REFRESH_MS = 30_000
SPAWN_ACTIVE_REFRESH_MS = 500
SPAWN_IDLE_REFRESH_MS = 2_000

# Fetch timeouts (seconds)
SESSION_FETCH_TIMEOUT_S = 8.0
STATUS_FETCH_TIMEOUT_S = 6.0
SCAN_FETCH_TIMEOUT_S = 15.0
MAIL_FETCH_TIMEOUT_S = 5.0
DCG_FETCH_TIMEOUT_S = 5.0
BEADS_FETCH_TIMEOUT_S = 5.0
CASS_FETCH_TIMEOUT_S = 20.0
DEFAULT_FETCH_TIMEOUT_S = 10.0
PANE_CAPTURE_TIMEOUT_S = 2.0
INBOX_FETCH_TIMEOUT_S = 2.0
INBOX_FETCH_WORKERS = 4
INBOX_FETCH_LIMIT = 5

# Pane capture
PANE_OUTPUT_LINES = 50
PANE_CAPTURE_BUDGET = 20
METRICS_CAPTURE_LINES = 2_000

# Status detection
CLASSIFY_TAIL_CHARS = 800
RECENT_ACTIVITY_S = 5.0
VELOCITY_EMA_ALPHA = 0.3
VELOCITY_RESET_AFTER_S = 120.0
COMPACTION_RECOVERY_COOLDOWN_S = 300.0

# Alerts
CONTEXT_WARNING_PERCENT = 85.0
CONTEXT_CRITICAL_PERCENT = 95.0
STALLED_AFTER_S = 300.0

# Checkpoints
CHECKPOINT_RECENT_S = 30 * 60
CHECKPOINT_STALE_S = 60 * 60

# Metrics cost estimate: USD per million tokens (blended)
COST_PER_MILLION_TOKENS = 10.0

# Timeline
TIMELINE_MAX_AGE_S = 24 * 60 * 60

# Coordinator
COORD_POLL_INTERVAL_S = 5.0
COORD_DIGEST_INTERVAL_S = 5 * 60.0
COORD_MIN_POLL_INTERVAL_S = 0.1
COORD_MIN_DIGEST_INTERVAL_S = 10.0
COORD_IDLE_THRESHOLD_S = 30.0
COORD_EVENT_BUFFER = 100
COORD_CONFLICT_CHECK_EVERY = 3
COORD_HUMAN_AGENT = "Human"
DIGEST_STALLED_AFTER_S = 10 * 60
ASSIGN_IMPACT_MAX_CHARS = 1_500

# Agent Mail
AGENT_MAIL_DEFAULT_URL = "http://127.0.0.1:8765/mcp/"
AGENT_MAIL_TIMEOUT_S = 10.0
AGENT_MAIL_PROGRAM = "ntm"
AGENT_MAIL_MODEL = "coordinator"
# Sender name when the session has no registered Agent Mail identity.
DEFAULT_SESSION_AGENT_NAME = "NTM-Coordinator"

# Compaction recovery prompt
COMPACTION_RECOVERY_PROMPT = (
    "Your context was just compacted. Reread AGENTS.md and any files you were "
    "editing so they are fresh in your mind, then continue where you left off."
)
