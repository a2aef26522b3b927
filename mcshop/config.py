import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./mcshop.db")
DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.environ.get("DB_POOL_TIMEOUT", "30"))
# 0: pool size on postgres, 10 on sqlite
DB_GATE_LIMIT = int(os.environ.get("DB_GATE_LIMIT", "0"))
APP_URL = os.environ.get("APP_URL", "http://localhost:8000").rstrip("/")
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")

# payment authority (Flow)
FLOW_API_KEY = os.environ.get("FLOW_API_KEY", "")
FLOW_SECRET_KEY = os.environ.get("FLOW_SECRET_KEY", "")
FLOW_ENVIRONMENT = os.environ.get("FLOW_ENVIRONMENT", "sandbox").lower()
FLOW_CURRENCY = os.environ.get("FLOW_CURRENCY", "CLP")

HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "15"))

# identity provider (hosted auth); empty disables bearer-token lookups
IDENTITY_URL = os.environ.get("IDENTITY_URL", "").rstrip("/")
IDENTITY_API_KEY = os.environ.get("IDENTITY_API_KEY", "")

MOJANG_PROFILE_URL = os.environ.get(
    "MOJANG_PROFILE_URL",
    "https://api.mojang.com/users/profiles/minecraft"
)

STORAGE_DIR = os.environ.get("STORAGE_DIR", "./storage")
DOWNLOAD_TTL_SECONDS = int(os.environ.get("DOWNLOAD_TTL_SECONDS", "86400"))

# fulfillment
DISPATCH_MAX_RETRIES = int(os.environ.get("DISPATCH_MAX_RETRIES", "5"))
DISPATCH_RETRY_INTERVAL = float(
    os.environ.get("DISPATCH_RETRY_INTERVAL", "60")
)
PENDING_ORDERS_LIMIT = 10
# how long a push or a plugin poll holds a minecraft order before another
# path may pick it up
DISPATCH_LEASE_SECONDS = float(
    os.environ.get("DISPATCH_LEASE_SECONDS", "120")
)

RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "memory").lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.environ.get("LOG_JSON", "1") not in ("0", "false", "no")

# (max requests, window seconds) per path prefix; first match wins
RATE_LIMITS = [
    ("/downloads/", (30, 60)),
    ("/api/downloads/generate", (20, 60)),
    ("/api/licenses/verify", (100, 60)),
    ("/api/minecraft/plugin/", (120, 60)),
    ("/api/payment/webhook", (120, 60)),
    ("/api/admin/", (20, 60)),
]
RATE_LIMIT_DEFAULT = (60, 60)
