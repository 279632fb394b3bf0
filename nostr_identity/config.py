import os
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
BASE_DIR = Path(os.getenv("NOSTR_BASE_DIR", "./nostr_data"))
DB_PATH = BASE_DIR / "identity.db"

# ---------------------------------------------------------------------------
# Relays
# ---------------------------------------------------------------------------
RELAY_URLS = [
    u.strip() for u in os.getenv("RELAY_URLS", "wss://communities2.nos.social").split(",") if u.strip()
]
NOSTRCONNECT_RELAY = os.getenv("NOSTRCONNECT_RELAY", "wss://relay.nsec.app/")
RELAY_TIMEOUT = float(os.getenv("RELAY_TIMEOUT", "10"))

# ---------------------------------------------------------------------------
# Remote signing (NIP-46)
# ---------------------------------------------------------------------------
BUNKER_CONNECT_TIMEOUT = float(os.getenv("BUNKER_CONNECT_TIMEOUT", "300"))
SIGNER_REQUEST_TIMEOUT = float(os.getenv("SIGNER_REQUEST_TIMEOUT", "30"))
EXTENSION_WAIT_TIMEOUT = float(os.getenv("EXTENSION_WAIT_TIMEOUT", "3"))

APP_URL = os.getenv("APP_URL", "https://peek.verse.app")
APP_DISPLAY_NAME = os.getenv("APP_DISPLAY_NAME", "peek.verse.app")
APP_ICON_URL = os.getenv("APP_ICON_URL", f"{APP_URL}/pwa-192x192.png")

# ---------------------------------------------------------------------------
# Keycast (hosted bunker accounts)
# ---------------------------------------------------------------------------
KEYCAST_URL = os.getenv("KEYCAST_URL", "https://oauth.divine.video")
KEYCAST_TIMEOUT = int(os.getenv("KEYCAST_TIMEOUT", "15"))
KEYCAST_MAX_RETRIES = int(os.getenv("KEYCAST_MAX_RETRIES", "3"))

# ---------------------------------------------------------------------------
# Push notification service
# ---------------------------------------------------------------------------
PUSH_SERVICE_NPUB = os.getenv(
    "PUSH_SERVICE_NPUB",
    "npub1nel9egkn5rjvdl4rw9udq7ptzawryuxjd54k7t7c6glr2g3fhsrstf9rj8",
)
APP_NAME = os.getenv("APP_NAME", "peek")
TOKEN_EXPIRATION_SECONDS = int(os.getenv("TOKEN_EXPIRATION_SECONDS", str(30 * 24 * 60 * 60)))  # 30 days
REFRESH_THRESHOLD_SECONDS = int(os.getenv("REFRESH_THRESHOLD_SECONDS", str(25 * 24 * 60 * 60)))  # 25 days
PUSH_REFRESH_ENABLED = os.getenv("PUSH_REFRESH_ENABLED", "true").lower() in ("true", "1", "yes")
PUSH_REFRESH_INTERVAL = int(os.getenv("PUSH_REFRESH_INTERVAL", str(6 * 60 * 60)))

# ---------------------------------------------------------------------------
# Local API
# ---------------------------------------------------------------------------
API_PORT = int(os.getenv("API_PORT", "8765"))
API_HOST = os.getenv("API_HOST", "127.0.0.1")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s  %(name)-28s  %(levelname)-7s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def ensure_directories():
    BASE_DIR.mkdir(parents=True, exist_ok=True)
