import logging
from datetime import datetime

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from config.constants import MAX_WALLET_TRANSACTIONS_PAGE, WALLET_RECONCILE_MAX_ATTEMPTS
from models.wallet import (
    PayeeType,
    TransactionStatus,
    TransactionType,
    WalletTransaction,
)
from utils.commission_calc import to_money
from utils.errors import NotFound
from utils.guards import parse_object_id

logger = logging.getLogger(__name__)


# ==============================
# Payee dispatch
# ==============================

def payee_collection(db, payee_type: PayeeType):
    payee_type = PayeeType(payee_type)
    if payee_type is PayeeType.SELLER:
        return db.sellers
    if payee_type is PayeeType.DELIVERY_AGENT:
        return db.delivery_agents
    raise ValueError(f"Unsupported payee type: {payee_type}")


def make_reference(prefix: str, order_id, payee_id, token) -> str:
    """Wallet references are unique per (order, payee, commission)."""
    return f"{prefix}-{order_id}-{payee_id}-{token}"


# ==============================
# Core: Append-only ledger write
# ==============================

async def append_wallet_transaction(
    db,
    *,
    payee_id,
    payee_type: PayeeType,
    amount,
    txn_type: TransactionType,
    description: str,
    reference: str,
    order_id: ObjectId | None = None,
    commission_id: ObjectId | None = None,
    session=None,
) -> dict:
    """
    Write one ledger entry and move the cached balance by the same signed
    amount. Both writes share the caller's session. Replaying a reference
    that already exists returns the stored entry and moves nothing.
    """
    magnitude = to_money(amount)
    if magnitude <= 0:
        raise ValueError("Wallet transaction amount must be positive")

    payee_oid = parse_object_id(payee_id, "payee")
    payees = payee_collection(db, payee_type)

    existing = await db.wallet_transactions.find_one({"reference": reference}, session=session)
    if existing:
        logger.info("WALLET_TXN_REPLAY reference=%s", reference)
        return existing

    if not await payees.find_one({"_id": payee_oid}, {"_id": 1}, session=session):
        raise NotFound(PayeeType(payee_type).value.lower(), payee_id)

    txn_type = TransactionType(txn_type)
    signed = magnitude if txn_type is TransactionType.CREDIT else -magnitude

    entry = WalletTransaction(
        payee_id=payee_oid,
        payee_type=payee_type,
        amount=float(signed),
        type=txn_type,
        description=description,
        reference=reference,
        status=TransactionStatus.COMPLETED,
        order_id=order_id,
        commission_id=commission_id,
    ).model_dump()

    try:
        result = await db.wallet_transactions.insert_one(entry, session=session)
    except DuplicateKeyError:
        # Concurrent writer won; its entry already moved the balance.
        logger.info("WALLET_TXN_REPLAY reference=%s", reference)
        return await db.wallet_transactions.find_one({"reference": reference}, session=session)
    entry["_id"] = result.inserted_id

    await payees.update_one(
        {"_id": payee_oid},
        {
            "$inc": {"balance": float(signed)},
            "$set": {"balance_updated_at": entry["created_at"]},
        },
        session=session,
    )
    return entry


async def credit_wallet(db, payee_id, payee_type, amount, description, reference, **kwargs):
    return await append_wallet_transaction(
        db,
        payee_id=payee_id,
        payee_type=payee_type,
        amount=amount,
        txn_type=TransactionType.CREDIT,
        description=description,
        reference=reference,
        **kwargs,
    )


async def debit_wallet(db, payee_id, payee_type, amount, description, reference, **kwargs):
    return await append_wallet_transaction(
        db,
        payee_id=payee_id,
        payee_type=payee_type,
        amount=amount,
        txn_type=TransactionType.DEBIT,
        description=description,
        reference=reference,
        **kwargs,
    )


# ==============================
# Wallet balance (derived only)
# ==============================

async def get_wallet_balance(db, payee_id, payee_type: PayeeType, session=None) -> float:
    pipeline = [
        {"$match": {
            "payee_id": parse_object_id(payee_id, "payee"),
            "payee_type": PayeeType(payee_type).value,
            "status": TransactionStatus.COMPLETED.value,
        }},
        {"$group": {
            "_id": None,
            "balance": {"$sum": "$amount"},
        }},
    ]

    result = await db.wallet_transactions.aggregate(pipeline, session=session).to_list(1)
    if not result:
        return 0.0

    return float(to_money(result[0]["balance"]))


async def reconcile_wallet_balance(
    db,
    payee_id,
    payee_type: PayeeType,
    attempts: int = WALLET_RECONCILE_MAX_ATTEMPTS,
) -> float:
    """
    Rebuild the cached balance from the ledger. Returns the drift that was
    corrected (cached minus ledger).

    The rewrite only lands if the cached balance is still the one that was
    read; a ledger write in between makes the pass start over. When every
    attempt loses that race the drift is reported but left in place for
    the next audit.
    """
    payee_oid = parse_object_id(payee_id, "payee")
    payees = payee_collection(db, payee_type)
    drift = 0.0

    for attempt in range(attempts):
        payee = await payees.find_one({"_id": payee_oid}, {"balance": 1})
        if not payee:
            raise NotFound(PayeeType(payee_type).value.lower(), payee_id)

        raw_cached = payee.get("balance")
        ledger_balance = await get_wallet_balance(db, payee_oid, payee_type)
        cached = float(to_money(raw_cached or 0))
        drift = float(to_money(cached - ledger_balance))
        if drift == 0:
            return 0.0

        res = await payees.update_one(
            {"_id": payee_oid, "balance": raw_cached},
            {"$set": {"balance": ledger_balance, "balance_updated_at": datetime.utcnow()}},
        )
        if res.matched_count == 1:
            logger.warning(
                "WALLET_DRIFT payee=%s type=%s cached=%s ledger=%s",
                payee_oid, PayeeType(payee_type).value, cached, ledger_balance,
            )
            return drift

        logger.info("WALLET_RECONCILE_RACE payee=%s attempt=%s", payee_oid, attempt + 1)

    logger.warning("WALLET_RECONCILE_CONTENDED payee=%s drift=%s", payee_oid, drift)
    return drift


async def list_wallet_transactions(db, payee_id, payee_type: PayeeType, limit: int = 50) -> list[dict]:
    limit = max(1, min(limit, MAX_WALLET_TRANSACTIONS_PAGE))
    cursor = db.wallet_transactions.find({
        "payee_id": parse_object_id(payee_id, "payee"),
        "payee_type": PayeeType(payee_type).value,
    }).sort("created_at", DESCENDING).limit(limit)
    return await cursor.to_list(limit)
