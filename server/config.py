import os
from dotenv import load_dotenv

# Load environment variables before anything reads them
load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "30"))

# Sweep worker
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "2"))
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
STARTING_SOON_MINUTES = int(os.getenv("STARTING_SOON_MINUTES", "15"))

# Compare-and-set retry budget for a single PlaceBid/BuyNow/settlement call
CAS_MAX_RETRIES = int(os.getenv("CAS_MAX_RETRIES", "5"))
CAS_BACKOFF_MS = int(os.getenv("CAS_BACKOFF_MS", "10"))

# Anti-snipe cap used when an auction does not set max_extensions
DEFAULT_MAX_EXTENSIONS = int(os.getenv("DEFAULT_MAX_EXTENSIONS", "10"))

# Notifications
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "3"))

# Process layout
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
RUN_SWEEP_WORKER = os.getenv("RUN_SWEEP_WORKER", "true").lower() in ("1", "true", "yes")
