import os

# --------------------------------------------------
# LIVENESS
# --------------------------------------------------

# One canonical window for "is this user online". Anything older is offline
# regardless of the stored status flag.
STALE_AFTER_SECONDS = int(os.environ.get("PRESENCE_STALE_AFTER_SECONDS", "300"))

# How often an active client re-asserts liveness
HEARTBEAT_INTERVAL_SECONDS = float(os.environ.get("PRESENCE_HEARTBEAT_SECONDS", "15"))

# --------------------------------------------------
# POLLING / REFRESH
# --------------------------------------------------

POLL_INTERVAL_SECONDS = float(os.environ.get("PRESENCE_POLL_SECONDS", "10"))
JITTER_RATIO = float(os.environ.get("PRESENCE_JITTER_RATIO", "0.1"))
MAX_BACKOFF_FACTOR = int(os.environ.get("PRESENCE_MAX_BACKOFF_FACTOR", "4"))

# How often the tracker flushes coalesced heartbeats and sweeps dead sessions
SWEEP_INTERVAL_SECONDS = float(os.environ.get("PRESENCE_SWEEP_SECONDS", "1"))

# --------------------------------------------------
# STORE
# --------------------------------------------------

STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "5"))

# Upper bound on one scheduler tick. Must stay above STORE_TIMEOUT_SECONDS so a
# hung query fails inside the observer instead of being cancelled from outside.
TICK_TIMEOUT_SECONDS = float(os.environ.get("PRESENCE_TICK_TIMEOUT_SECONDS", str(STORE_TIMEOUT_SECONDS * 2)))

# Bus events arriving within this window collapse into one nearby re-query
OBSERVER_DEBOUNCE_SECONDS = float(os.environ.get("PRESENCE_OBSERVER_DEBOUNCE_SECONDS", "0.2"))

# Offline write on leave / sign-out
LEAVE_ATTEMPTS = int(os.environ.get("PRESENCE_LEAVE_ATTEMPTS", "3"))
LEAVE_RETRY_DELAY_SECONDS = float(os.environ.get("PRESENCE_LEAVE_RETRY_DELAY_SECONDS", "0.5"))

# --------------------------------------------------
# RADIUS DEFAULTS
# --------------------------------------------------

DEFAULT_RADIUS_KM = float(os.environ.get("DEFAULT_RADIUS_KM", "10"))
ANCHOR_RADIUS_KM = float(os.environ.get("ANCHOR_RADIUS_KM", "2"))
MAX_RADIUS_KM = float(os.environ.get("MAX_RADIUS_KM", "50"))

# --------------------------------------------------
# LIMITS
# --------------------------------------------------

REQUEST_MESSAGES_LIMIT = 100
NEARBY_MESSAGES_LIMIT = 50

# Per-subscriber queue on the in-process change bus
BUS_QUEUE_SIZE = int(os.environ.get("BUS_QUEUE_SIZE", "256"))
