import asyncio
import logging
from contextlib import asynccontextmanager

from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from config.env import (
    MONGO_TRANSACTIONS_ENABLED,
    SETTLEMENT_MAX_RETRIES,
    SETTLEMENT_RETRY_BACKOFF_SECONDS,
)
from utils.errors import SettlementUnavailable

logger = logging.getLogger(__name__)

# WriteConflict, NoSuchTransaction, LockTimeout
RETRYABLE_ERROR_CODES = {112, 251, 24}


# ==============================
# Transactions
# ==============================

def is_transient_error(exc: PyMongoError) -> bool:
    if exc.has_error_label("TransientTransactionError"):
        return True
    if exc.has_error_label("UnknownTransactionCommitResult"):
        return True
    if isinstance(exc, ConnectionFailure):
        return True
    return isinstance(exc, OperationFailure) and exc.code in RETRYABLE_ERROR_CODES


@asynccontextmanager
async def transaction_scope(db, enabled: bool = MONGO_TRANSACTIONS_ENABLED):
    """
    Yield a session bound to an open transaction, or None when the
    deployment has no transaction support. The transaction commits on a
    clean exit and aborts on any exception.
    """
    if not enabled:
        yield None
        return

    async with await db.client.start_session() as session:
        async with session.start_transaction():
            yield session


async def run_in_transaction(
    db,
    operation,
    *,
    label: str,
    order_id=None,
    retries: int = SETTLEMENT_MAX_RETRIES,
    backoff_seconds: float = SETTLEMENT_RETRY_BACKOFF_SECONDS,
    enabled: bool = MONGO_TRANSACTIONS_ENABLED,
):
    """
    Run `operation(session)` inside a transaction, retrying transient
    failures with exponential backoff. Raises SettlementUnavailable once
    the retry budget is spent; non-transient errors propagate unchanged.
    """
    attempt = 0
    while True:
        try:
            async with transaction_scope(db, enabled=enabled) as session:
                return await operation(session)
        except PyMongoError as e:
            if not is_transient_error(e):
                raise
            if attempt >= retries:
                logger.error(
                    "TRANSACTION_EXHAUSTED label=%s order=%s attempts=%s",
                    label, order_id, attempt + 1,
                )
                raise SettlementUnavailable(
                    f"{label} could not complete after {attempt + 1} attempts",
                    order_id=order_id,
                ) from e

            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(
                "TRANSACTION_RETRY label=%s order=%s attempt=%s delay=%.2fs error=%s",
                label, order_id, attempt, delay, e,
            )
            await asyncio.sleep(delay)
