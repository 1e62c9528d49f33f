"""Constants used throughout the Pullman codebase."""

# Data format names, as understood by the coordinator
XML_DATAFORMAT_NAME = "application/xml"
JSON_DATAFORMAT_NAME = "application/json"

# Fetch defaults (milliseconds unless noted)
DEFAULT_MAX_TASKS = 10
DEFAULT_LOCK_DURATION_MS = 20_000
DEFAULT_ASYNC_RESPONSE_TIMEOUT_MS = 10_000

# Backoff defaults (seconds)
DEFAULT_BACKOFF_INITIAL_SECONDS = 0.5
DEFAULT_BACKOFF_MAX_SECONDS = 60.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_JITTER = 0.25

# Failure report defaults
DEFAULT_RETRIES = 3
DEFAULT_RETRY_TIMEOUT_MS = 10_000

# Timing constants (seconds)
DEFAULT_POLL_INTERVAL_SECONDS = 0.0
CAPACITY_WAIT_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0

# Coordinator limits on integer variable types
INTEGER_MIN = -(2**31)
INTEGER_MAX = 2**31 - 1
