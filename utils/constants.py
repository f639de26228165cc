"""Engine defaults. Every value here can be overridden from config."""

# Adapter call bound when a rule does not set timeout_seconds.
DEFAULT_QUERY_TIMEOUT_SECONDS = 30

# A refresh only appends history when the value moved by more than this
# fraction of the last recorded value.
HISTORY_NOISE_TOLERANCE = 0.02
HISTORY_NOISE_FLOOR = 1e-9

DEFAULT_EVALUATION_WINDOW_SECONDS = 300
DEFAULT_STEP_SECONDS = 60
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_POLL_INTERVAL_SECONDS = 1

CORRELATION_LOOKBACK_SECONDS = 3600

# Consecutive failures of one rule before the scheduler logs CRITICAL.
FAILURE_ESCALATION_THRESHOLD = 5

SYSTEM_ACTOR = "system"
AUTO_RESOLUTION = "condition cleared"

DEFAULT_RESOURCE_TYPE = "server"
DEFAULT_RESOURCE_SELECTOR = "instance"

VALID_OPERATORS = ("<", ">", "<=", ">=", "==", "!=")
