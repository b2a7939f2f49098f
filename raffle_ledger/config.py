import os
from decimal import Decimal

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./raffle.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

AUTH_SIGNING_SECRET = os.environ.get("AUTH_SIGNING_SECRET", "dev_secret_change_me")

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_dev_change_me")
WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", "300"))

CURRENCY = os.environ.get("CURRENCY", "usd").lower()
# Stripe rejects charges under $0.50
MIN_CHARGE_AMOUNT = Decimal(os.environ.get("MIN_CHARGE_AMOUNT", "0.50"))

# 100 points = $1 discount at checkout
POINTS_REDEMPTION_RATE = int(os.environ.get("POINTS_REDEMPTION_RATE", "100"))
MIN_POINTS_REDEMPTION = int(os.environ.get("MIN_POINTS_REDEMPTION", "100"))
DEFAULT_POINTS_PER_DOLLAR = Decimal(os.environ.get("DEFAULT_POINTS_PER_DOLLAR", "10"))

TICKET_NUMBER_PREFIX = os.environ.get("TICKET_NUMBER_PREFIX", "TMG")
TICKET_NUMBER_MAX_ATTEMPTS = int(os.environ.get("TICKET_NUMBER_MAX_ATTEMPTS", "50"))

# auto | on | off
TRANSACTIONS_MODE = os.environ.get("TRANSACTIONS_MODE", "auto").lower()

RATE_LIMIT_PER_MINUTE = int(os.environ.get("RATE_LIMIT_PER_MINUTE", "30"))
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
