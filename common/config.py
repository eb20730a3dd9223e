import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: local / gcp / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

# Local backend: every sub-directory of this root is a bucket
LOCAL_STORAGE_DIR = Path(os.getenv("LOCAL_STORAGE_DIR", str(BASE_DIR / "data" / "buckets")))

AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
GCP_PROJECT = os.getenv("GCP_PROJECT")

# Input limits
MAX_BYTES = int(os.getenv("MAX_BYTES", "10485760"))  # 10MB
MAX_PIXELS = int(os.getenv("MAX_PIXELS", "8294400"))  # 3840x2160
MAX_REGIONS = int(os.getenv("MAX_REGIONS", "20"))
MAX_BATCH_ITEMS = int(os.getenv("MAX_BATCH_ITEMS", "10"))

# Output defaults
DEFAULT_FORMAT = os.getenv("DEFAULT_FORMAT", "webp")
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "85"))

if DEFAULT_FORMAT not in ("webp", "jpeg"):
    raise ValueError(f"DEFAULT_FORMAT must be webp or jpeg, got {DEFAULT_FORMAT!r}")
if not 1 <= DEFAULT_QUALITY <= 100:
    raise ValueError(f"DEFAULT_QUALITY must be between 1 and 100, got {DEFAULT_QUALITY}")

# Webhooks
WEBHOOK_URL = os.getenv("WEBHOOK_URL") or None
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
WEBHOOK_RETRY_DELAYS = (1, 5, 10)  # seconds to wait after attempt 1, 2, 3
WEBHOOK_MAX_ATTEMPTS = 3

# Job store
JOB_TTL_HOURS = float(os.getenv("JOB_TTL_HOURS", "24"))
MAX_JOBS = int(os.getenv("MAX_JOBS", "1000"))
ESTIMATED_MS_PER_ITEM = 500

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

SERVICE_VERSION = "1.0.0"
