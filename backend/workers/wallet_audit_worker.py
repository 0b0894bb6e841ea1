import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import WALLET_AUDIT_LOOKBACK_HOURS
from config.env import WALLET_AUDIT_INTERVAL_SECONDS
from database import get_db
from utils.wallet_service import reconcile_wallet_balance

logger = logging.getLogger(__name__)


async def run_wallet_audit(db, since: datetime | None = None) -> dict:
    """
    Rebuild cached balances from the ledger for every payee with ledger
    activity since `since`. Returns {payee_id: drift} for drifted payees.
    """
    since = since or datetime.utcnow() - timedelta(hours=WALLET_AUDIT_LOOKBACK_HOURS)

    active = await db.wallet_transactions.aggregate([
        {"$match": {"created_at": {"$gte": since}}},
        {"$group": {"_id": "$payee_id", "payee_type": {"$first": "$payee_type"}}},
    ]).to_list(None)

    drifted = {}
    for row in active:
        payee_id = row["_id"]
        payee_type = row["payee_type"]
        try:
            drift = await reconcile_wallet_balance(db, payee_id, payee_type)
        except Exception:
            logger.exception("WALLET_AUDIT_ERROR payee=%s", payee_id)
            continue
        if drift:
            drifted[payee_id] = drift

    logger.info("WALLET_AUDIT payees=%s drifted=%s", len(active), len(drifted))
    return drifted


async def wallet_audit_worker():
    db = get_db()

    while True:
        await run_wallet_audit(db)
        await asyncio.sleep(WALLET_AUDIT_INTERVAL_SECONDS)
