"""
feeledger constants

Values shared by every component and by independent chain verifiers.
"""

import hashlib

# Hash that the first history entry must declare as its predecessor.
# SHA-256("feeledger:genesis"); every verifier derives the same value.
GENESIS_HASH: str = hashlib.sha256(b"feeledger:genesis").hexdigest()

HISTORY_LOG_VERSION: str = "1.0.0"
TRACKER_STATE_VERSION: int = 1

# Asset id used for allocations that could not be tied to any tracked asset
UNATTRIBUTED_ASSET_ID: str = "UNATTRIBUTED"

# Label assigned to dynamically discovered assets until one is known
UNKNOWN_LABEL: str = "UNKNOWN"

# Recent-activity accumulators only reflect the last 24 hours
ACTIVITY_WINDOW_MS: int = 24 * 60 * 60 * 1000

# Poll interval bounds (seconds)
MIN_POLL_INTERVAL_SECONDS: float = 1.0
MAX_POLL_INTERVAL_SECONDS: float = 300.0
DEFAULT_POLL_INTERVAL_SECONDS: float = 5.0

# Idempotency window for processed transaction ids
MAX_PROCESSED_TRANSACTIONS: int = 10_000
PROCESSED_TRANSACTION_TTL_SECONDS: float = 7 * 24 * 60 * 60

# Tracker state backups kept next to the state file
STATE_BACKUP_COUNT: int = 3

# Cycles between label lookups for assets still labelled UNKNOWN
LABEL_RETRY_CYCLES: int = 60
