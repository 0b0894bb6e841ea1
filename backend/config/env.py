import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "t", "yes")


# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# Standalone mongod has no transactions; replica sets and Atlas do.
MONGO_TRANSACTIONS_ENABLED = _env_bool("MONGO_TRANSACTIONS_ENABLED", "true")

# =====================================================
# SETTLEMENT
# =====================================================
SETTLEMENT_MAX_RETRIES = int(os.getenv("SETTLEMENT_MAX_RETRIES", 3))
SETTLEMENT_RETRY_BACKOFF_SECONDS = float(os.getenv("SETTLEMENT_RETRY_BACKOFF_SECONDS", 0.2))

# =====================================================
# ORDER LOCK
# =====================================================
ORDER_LOCK_TTL_SECONDS = int(os.getenv("ORDER_LOCK_TTL_SECONDS", 30))
ORDER_LOCK_MAX_ATTEMPTS = int(os.getenv("ORDER_LOCK_MAX_ATTEMPTS", 5))

# =====================================================
# WORKERS
# =====================================================
RECONCILIATION_INTERVAL_SECONDS = int(os.getenv("RECONCILIATION_INTERVAL_SECONDS", 60 * 5))
WALLET_AUDIT_INTERVAL_SECONDS = int(os.getenv("WALLET_AUDIT_INTERVAL_SECONDS", 60 * 60))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")

    if not MONGO_TRANSACTIONS_ENABLED:
        raise RuntimeError("Production requires MONGO_TRANSACTIONS_ENABLED=true")
