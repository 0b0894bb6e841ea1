# backend/config/constants.py

# -----------------------------
# COMMISSION DEFAULTS
# -----------------------------
# Used only when app_settings is missing or has no value.

DEFAULT_GLOBAL_COMMISSION_RATE = 10.0        # % of line total
DEFAULT_DELIVERY_COMMISSION_RATE = 5.0       # % of order subtotal

# -----------------------------
# MONEY
# -----------------------------

MONEY_PLACES = 2

# -----------------------------
# ORDER LOCK
# -----------------------------

ORDER_LOCK_BACKOFF_SECONDS = 0.1

# -----------------------------
# QUERY LIMITS
# -----------------------------

MAX_WALLET_TRANSACTIONS_PAGE = 200
WALLET_AUDIT_LOOKBACK_HOURS = 24
WALLET_RECONCILE_MAX_ATTEMPTS = 3

# -----------------------------
# WITHDRAWALS
# -----------------------------

MIN_WITHDRAWAL_AMOUNT = 1.0
MAX_WITHDRAWAL_REQUESTS_PAGE = 200
