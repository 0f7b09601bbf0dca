"""Central configuration for paths, limits and timings."""

import os
from pathlib import Path

# Data directory, override with DIAGRAM_SESSIONS_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("DIAGRAM_SESSIONS_DATA_DIR", str(Path.home() / ".diagram-sessions"))
)

# Database paths
SQLITE_PATH = DATA_DIR / "sessions.db"

# Durable store quota in bytes (0 disables the check)
STORE_QUOTA_BYTES = int(os.environ.get("DIAGRAM_SESSIONS_STORE_QUOTA_BYTES", "0"))

# Record key prefix inside the key-value store
KEY_PREFIX = "diagram-sessions"
ANONYMOUS_USER_ID = "anonymous"

# Diagram limits
MAX_XML_SIZE = int(os.environ.get("DIAGRAM_SESSIONS_MAX_XML_SIZE", "5000000"))  # characters
MAX_DIAGRAM_VERSIONS = int(os.environ.get("DIAGRAM_SESSIONS_MAX_DIAGRAM_VERSIONS", "50"))

# Auto-save debounce windows
LOCAL_SAVE_DEBOUNCE_SECONDS = 0.8
CLOUD_SAVE_DEBOUNCE_SECONDS = 0.3

# Stale-while-revalidate TTLs
LIST_STALE_SECONDS = 60.0
DETAIL_STALE_SECONDS = 30.0
LIST_PAGE_SIZE = 50

# Outbox push and retry policy
SYNC_PUSH_DELAY_SECONDS = 1.0
SYNC_MAX_RETRIES = int(os.environ.get("DIAGRAM_SESSIONS_SYNC_MAX_RETRIES", "3"))
SYNC_RETRY_MIN_SECONDS = 1.0
SYNC_RETRY_MAX_SECONDS = 10.0

# Remote store
REMOTE_URL = os.environ.get("DIAGRAM_SESSIONS_REMOTE_URL", "")
REMOTE_TIMEOUT_SECONDS = float(os.environ.get("DIAGRAM_SESSIONS_REMOTE_TIMEOUT", "10"))
BEACON_TIMEOUT_SECONDS = 2.0

# Local cache housekeeping
MAX_CACHED_CONVERSATIONS_SIGNED_IN = 30
MAX_CACHED_CONVERSATIONS_ANONYMOUS = 100
STALE_PAYLOAD_DAYS = 30
QUOTA_EVICT_PAYLOAD_COUNT = 5
QUOTA_EVICT_META_COUNT = 3

# Titles
TITLE_MAX_CHARS = 24

# Fingerprint xml boundary slice
FINGERPRINT_EDGE_CHARS = 100
