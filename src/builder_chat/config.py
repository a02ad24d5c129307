import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_DIR / "data"
SQLITE_PATH = Path(os.environ.get("SQLITE_PATH", str(DATA_DIR / "store.db")))
# Unset disables resumable streams; live streaming is unaffected
STREAM_STORE_PATH = os.environ.get("STREAM_STORE_PATH") or None

MODEL = os.environ.get("MODEL", "claude-sonnet-4-5-20250929")
ROOT_PATH = os.environ.get("ROOT_PATH", "")
AUTH_SECRET = os.environ.get("AUTH_SECRET", "dev-secret-change-me")
API_KEY_ENCRYPTION_KEY = os.environ.get("API_KEY_ENCRYPTION_KEY") or None

MAX_AGENT_TURNS = 5
MAX_TURN_DURATION_SECS = 60
ENTITLEMENT_WINDOW_HOURS = 24
RESUME_REPLAY_WINDOW_SECS = 15
STREAM_CHANNEL_SIZE = 256
STREAM_POLL_INTERVAL_SECS = 0.25
SHUTDOWN_GRACE_SECS = 10
