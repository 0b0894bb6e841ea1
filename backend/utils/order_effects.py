import logging
from dataclasses import dataclass
from typing import ClassVar

from models.order import OrderStatus, SettlementState
from utils.guards import parse_object_id
from utils.errors import NotFound
from utils.inventory import (
    commit_order_inventory,
    release_order_inventory,
    reserve_order_inventory,
)
from utils.settlement import (
    reverse_commissions,
    reverse_order,
    set_settlement_state,
    settle_on_delivery,
    settle_order,
)

logger = logging.getLogger(__name__)


# ==============================
# Effect intents
# ==============================
# A transition emits an ordered tuple of these. `ledger` intents move
# money and may be queued on the order when no transaction is available.

@dataclass(frozen=True)
class ReserveInventory:
    kind: ClassVar[str] = "reserve_inventory"
    ledger: ClassVar[bool] = False


@dataclass(frozen=True)
class ReleaseInventory:
    kind: ClassVar[str] = "release_inventory"
    ledger: ClassVar[bool] = False


@dataclass(frozen=True)
class CommitInventory:
    kind: ClassVar[str] = "commit_inventory"
    ledger: ClassVar[bool] = False


@dataclass(frozen=True)
class SettleCommissions:
    kind: ClassVar[str] = "settle_commissions"
    ledger: ClassVar[bool] = True


@dataclass(frozen=True)
class ReverseCommissions:
    kind: ClassVar[str] = "reverse_commissions"
    ledger: ClassVar[bool] = True


EFFECTS_BY_KIND = {
    cls.kind: cls
    for cls in (
        ReserveInventory,
        ReleaseInventory,
        CommitInventory,
        SettleCommissions,
        ReverseCommissions,
    )
}


async def apply_effect(db, effect, order: dict, items: list[dict], *, settings, session=None):
    if isinstance(effect, ReserveInventory):
        return await reserve_order_inventory(db, order, items, session=session)
    if isinstance(effect, ReleaseInventory):
        return await release_order_inventory(db, order, items, session=session)
    if isinstance(effect, CommitInventory):
        return await commit_order_inventory(db, order, items, session=session)
    if isinstance(effect, SettleCommissions):
        return await settle_on_delivery(db, order["_id"], settings=settings, session=session)
    if isinstance(effect, ReverseCommissions):
        return await reverse_commissions(db, order["_id"], session=session)
    raise ValueError(f"Unknown effect: {effect!r}")


# ==============================
# Queued ledger intents
# ==============================

async def resume_pending_effects(db, order_id, *, settings=None) -> int:
    """
    Apply ledger intents queued on the order by a transition that could not
    get a transaction. Each intent leaves the queue only after it succeeds.
    """
    oid = parse_object_id(order_id, "order")
    order = await db.orders.find_one({"_id": oid})
    if not order:
        raise NotFound("order", order_id)

    pending = list((order.get("settlement") or {}).get("pending_effects") or [])
    applied = 0
    for kind in pending:
        effect_cls = EFFECTS_BY_KIND.get(kind)
        if effect_cls is None or not effect_cls.ledger:
            logger.error("PENDING_EFFECT_UNKNOWN order=%s kind=%s", oid, kind)
            continue

        if effect_cls is SettleCommissions:
            if order.get("status") == OrderStatus.DELIVERED.value:
                await settle_order(db, oid, settings=settings, replay=True)
            else:
                # Returned before the queued payout ran; nothing is owed.
                logger.info("PENDING_SETTLEMENT_DROPPED order=%s status=%s", oid, order.get("status"))
                await set_settlement_state(db, oid, SettlementState.REVERSED)
        else:
            result = await reverse_order(db, oid)
            if not result.reversed:
                await set_settlement_state(db, oid, SettlementState.REVERSED)

        await db.orders.update_one(
            {"_id": oid},
            {"$pull": {"settlement.pending_effects": kind}},
        )
        applied += 1
        logger.info("PENDING_EFFECT_APPLIED order=%s kind=%s", oid, kind)

    return applied
