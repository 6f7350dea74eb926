import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite+aiosqlite:///./boxoffice.db"
)

# 'mock' | 'mollie'
PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "mock").lower()
MOLLIE_API_KEY = os.environ.get("MOLLIE_API_KEY", "")
MOLLIE_API_URL = os.environ.get("MOLLIE_API_URL", "https://api.mollie.com/v2")

# provider gives up on a webhook after 15s, stay well below that
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "5.0"))

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")
WEBHOOK_URL = os.environ.get(
    "WEBHOOK_URL", f"{PUBLIC_BASE_URL}/payments/webhook"
)
CHECKOUT_RETURN_URL = os.environ.get(
    "CHECKOUT_RETURN_URL", f"{PUBLIC_BASE_URL}/orders/return"
)
MOCK_WEBHOOK_URL = os.environ.get("MOCK_WEBHOOK_URL", WEBHOOK_URL)

CURRENCY = os.getenv("CURRENCY", "EUR").upper()

AUTH_JWT_SECRET = os.environ.get(
    "AUTH_JWT_SECRET", "dev-secret-change-me-boxoffice-local-only"
)
AUTH_JWT_ALGORITHM = os.environ.get("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_AUDIENCE = os.environ.get("AUTH_JWT_AUDIENCE") or None
REFUND_ROLES = ("owner", "admin")
SCAN_ROLES = ("owner", "admin", "staff")

# guest access tokens for order lookup
ACCESS_TOKEN_MAX_AGE_SECONDS = int(
    os.getenv("ACCESS_TOKEN_MAX_AGE_SECONDS", str(365 * 24 * 3600))
)
# pending orders older than this are cancelled by the sweep
PENDING_ORDER_TTL_SECONDS = int(os.getenv("PENDING_ORDER_TTL_SECONDS", "3600"))

OPERATOR_EMAIL = os.environ.get("OPERATOR_EMAIL", "ops@localhost")
AUTO_REFUND_OVERBOOKED = os.getenv("AUTO_REFUND_OVERBOOKED", "0") == "1"

SLOW_OP_SECONDS = float(os.getenv("SLOW_OP_SECONDS", "1.0"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
