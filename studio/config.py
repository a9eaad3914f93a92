import os
from pathlib import Path

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY", "")
GEMINI_BASE_URL = os.environ.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
VEO_MODEL = os.environ.get("VEO_MODEL", "veo-2.0-generate-001")
VEO_ASPECT_RATIO = os.environ.get("VEO_ASPECT_RATIO", "16:9")
DATA_DIR = Path(os.environ.get("DATA_DIR", "/data"))
VIDEOS_DIR = DATA_DIR / "videos"
POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", "10"))
MAX_POLL_DURATION_SECONDS = float(os.environ.get("MAX_POLL_DURATION_SECONDS", "600"))
SESSION_COOKIE = "studio_session"
MAX_SESSIONS = int(os.environ.get("MAX_SESSIONS", "100"))
