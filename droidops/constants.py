from __future__ import annotations

SERVICE_NAME = "droidops"
SERVICE_VERSION = "0.1.0"

DEFAULT_STRESS_URLS = [
    "https://www.wikipedia.org",
    "https://news.ycombinator.com",
    "https://developer.android.com",
]

DEFAULT_STATE_PATH = "~/.droidops/state.json"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 50000

MAX_BODY_BYTES = 1024 * 1024
MAX_BULK_JOBS = 50
MAX_HISTORY_QUERY = 600
DEFAULT_HISTORY_QUERY = 120

DEFAULT_CONFIG = {
    "adb_path": "adb",
    "adb_timeout_seconds": 20,
    "event_history_limit": 600,
    "job_history_limit": 300,
    "heartbeat_seconds": 15,
    "display_timezone": "utc",
}
