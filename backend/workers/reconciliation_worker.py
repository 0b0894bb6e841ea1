import asyncio
import logging
from datetime import datetime, timedelta

from config.env import RECONCILIATION_INTERVAL_SECONDS
from database import get_db
from models.order import OrderStatus, SettlementState
from utils.errors import SettlementUnavailable
from utils.order_effects import resume_pending_effects
from utils.order_lock import order_lock
from utils.settings_provider import SettingsProvider
from utils.settlement import replay_skipped_items, settle_order

STALE_SETTLEMENT_MINUTES = 10
logger = logging.getLogger(__name__)


async def _reconcile_order(db, order: dict, settings: SettingsProvider) -> bool:
    order_id = order["_id"]
    state = (order.get("settlement") or {}).get("status")

    # Settlement interrupted mid-way without a transaction
    if state == SettlementState.IN_PROGRESS.value:
        if order.get("status") != OrderStatus.DELIVERED.value:
            return False
        result = await settle_order(db, order_id, settings=settings, replay=True)
        return bool(result.created or result.credited)

    applied = await resume_pending_effects(db, order_id, settings=settings)
    resolved = await replay_skipped_items(db, order_id, settings=settings)
    return bool(applied or resolved)


async def report_stranded_reservations(db) -> list:
    """
    Cancelled or rejected orders that still hold reserved stock. Nothing
    releases these automatically; each one is logged for an operator.
    """
    orders = await db.orders.find(
        {
            "status": {"$in": [OrderStatus.CANCELLED.value, OrderStatus.REJECTED.value]},
            "inventory.reserved_item_ids": {"$exists": True, "$ne": []},
        },
        {"status": 1, "inventory.reserved_item_ids": 1},
    ).to_list(None)

    for order in orders:
        logger.warning(
            "RESERVATION_STRANDED order=%s status=%s items=%s",
            order["_id"], order["status"], len(order["inventory"]["reserved_item_ids"]),
        )
    return [order["_id"] for order in orders]


async def run_reconciliation_pass(db, settings: SettingsProvider | None = None) -> int:
    """
    One sweep over orders waiting on queued ledger work, skipped line
    items, or a settlement that stopped half-way. Orders flagged for
    manual review are left to an operator. Returns how many orders changed.
    """
    settings = settings or SettingsProvider(db)
    stale_before = datetime.utcnow() - timedelta(minutes=STALE_SETTLEMENT_MINUTES)
    touched = 0

    orders = await db.orders.find({
        "settlement.manual_review": {"$ne": True},
        "$or": [
            {"settlement.status": SettlementState.NEEDS_RECONCILIATION.value},
            {
                "settlement.status": SettlementState.IN_PROGRESS.value,
                "settlement.updated_at": {"$lt": stale_before},
            },
        ],
    }).to_list(None)

    for order in orders:
        order_id = order["_id"]
        try:
            async with order_lock(db, order_id, attempts=1):
                changed = await _reconcile_order(db, order, settings)
            if changed:
                touched += 1
                logger.info("RECONCILED order=%s", order_id)
        except SettlementUnavailable:
            # Busy or backend still contended; next sweep picks it up.
            logger.info("RECONCILIATION_DEFERRED order=%s", order_id)
        except Exception:
            # Never crash the worker for one bad order
            logger.exception("RECONCILIATION_ERROR order=%s", order_id)

    await report_stranded_reservations(db)
    return touched


async def reconciliation_worker():
    db = get_db()

    while True:
        await run_reconciliation_pass(db)
        await asyncio.sleep(RECONCILIATION_INTERVAL_SECONDS)
