import logging
from dataclasses import dataclass, field
from datetime import datetime

from bson import ObjectId
from pydantic import ValidationError
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from models.commission import (
    CommissionEntry,
    CommissionRecord,
    CommissionStatus,
    CommissionSummary,
)
from models.order import LineItem, OrderStatus, SettlementState
from models.wallet import PayeeType
from utils.commission_calc import calculate_commission, payee_earning, to_money
from utils.commission_rates import explain_seller_rate, resolve_delivery_rate
from utils.errors import NotFound
from utils.guards import parse_object_id
from utils.mongo import run_in_transaction
from utils.order_timeline import safe_record_order_event
from utils.settings_provider import SettingsProvider
from utils.wallet_service import credit_wallet, debit_wallet, make_reference

logger = logging.getLogger(__name__)

# A settlement in one of these states was interrupted and may be resumed.
RESUMABLE_STATES = {
    SettlementState.IN_PROGRESS.value,
    SettlementState.NEEDS_RECONCILIATION.value,
}


@dataclass
class SettlementResult:
    order_id: ObjectId
    noop: bool = False
    created: int = 0
    credited: float = 0.0
    skipped: list = field(default_factory=list)


@dataclass
class ReversalResult:
    order_id: ObjectId
    reversed: int = 0
    debited: float = 0.0


# ==============================
# Loading
# ==============================

async def _load_order(db, order_id, session=None) -> dict:
    oid = parse_object_id(order_id, "order")
    order = await db.orders.find_one({"_id": oid}, session=session)
    if not order:
        raise NotFound("order", order_id)
    return order


async def load_line_items(db, order: dict, session=None) -> list[tuple[ObjectId, dict | None]]:
    """Line items in order sequence; a missing or malformed item pairs with None."""
    item_ids = list(order.get("items") or [])
    if not item_ids:
        return []

    docs = await db.order_items.find({"_id": {"$in": item_ids}}, session=session).to_list(None)
    by_id = {}
    for doc in docs:
        try:
            LineItem.model_validate(doc)
        except ValidationError:
            logger.warning("LINE_ITEM_INVALID order=%s item=%s", order["_id"], doc.get("_id"))
            continue
        by_id[doc["_id"]] = doc

    return [(item_id, by_id.get(item_id)) for item_id in item_ids]


# ==============================
# Bookkeeping
# ==============================

async def set_settlement_state(db, order_id, state: SettlementState, session=None, **extra) -> None:
    now = datetime.utcnow()
    fields = {"settlement.status": state.value, "settlement.updated_at": now}
    if state is SettlementState.SETTLED:
        fields["settlement.settled_at"] = now
    if state is SettlementState.REVERSED:
        fields["settlement.reversed_at"] = now
    fields.update(extra)
    await db.orders.update_one({"_id": order_id}, {"$set": fields}, session=session)


async def _record_skip(db, order_id, line_item_id, payee_type: PayeeType, reason: str, session=None) -> None:
    logger.warning(
        "SETTLEMENT_SKIPPED order=%s item=%s payee_type=%s reason=%s",
        order_id, line_item_id, payee_type.value, reason,
    )
    now = datetime.utcnow()
    await db.settlement_skips.update_one(
        {
            "order_id": order_id,
            "line_item_id": line_item_id,
            "payee_type": payee_type.value,
            "replayed_at": None,
        },
        {
            "$set": {"reason": reason, "last_attempt_at": now},
            "$setOnInsert": {"created_at": now},
            "$inc": {"attempts": 1},
        },
        upsert=True,
        session=session,
    )


# ==============================
# Commission + credit pairs
# ==============================

async def _insert_commission(db, record: CommissionRecord, commission_id: ObjectId, session=None) -> dict:
    doc = record.model_dump()
    doc["_id"] = commission_id
    try:
        await db.commissions.insert_one(doc, session=session)
    except DuplicateKeyError:
        existing = await db.commissions.find_one(
            {
                "order_id": record.order_id,
                "line_item_id": record.line_item_id,
                "payee_id": record.payee_id,
            },
            session=session,
        )
        if existing:
            return existing
        raise
    return doc


async def _credit_commission(db, order: dict, commission: dict, description: str, session=None) -> float:
    """Credit the payee for a Paid commission. Replays are no-ops."""
    if commission["status"] != CommissionStatus.PAID.value:
        return 0.0

    amount = float(commission.get("credited_amount") or 0)
    if amount <= 0:
        return 0.0

    reference = commission["payment_reference"]
    if await db.wallet_transactions.find_one({"reference": reference}, {"_id": 1}, session=session):
        return 0.0

    await credit_wallet(
        db,
        commission["payee_id"],
        commission["payee_type"],
        amount,
        description,
        reference,
        order_id=order["_id"],
        commission_id=commission["_id"],
        session=session,
    )
    return amount


async def _settle_line_item(db, order: dict, item: dict, settings: SettingsProvider, session=None):
    seller_id = item["seller_id"]
    commission = await db.commissions.find_one(
        {"order_id": order["_id"], "line_item_id": item["_id"], "payee_id": seller_id},
        session=session,
    )
    created = commission is None

    if commission is None:
        resolution = await explain_seller_rate(
            db, item["product_id"], seller_id, settings=settings, session=session
        )
        breakdown = calculate_commission(item["total"], resolution.rate)
        commission_id = ObjectId()
        now = datetime.utcnow()

        logger.info(
            "COMMISSION order=%s item=%s rate=%s source=%s amount=%s net=%s",
            order["_id"], item["_id"], resolution.rate, resolution.source,
            breakdown.commission_amount, breakdown.net_earning,
        )

        record = CommissionRecord(
            order_id=order["_id"],
            line_item_id=item["_id"],
            payee_id=seller_id,
            payee_type=PayeeType.SELLER,
            order_amount=breakdown.base,
            commission_rate=breakdown.rate,
            commission_amount=breakdown.commission_amount,
            credited_amount=payee_earning(
                PayeeType.SELLER, breakdown.base, breakdown.commission_amount
            ),
            rate_source=resolution.source,
            status=CommissionStatus.PAID,
            paid_at=now,
            payment_reference=make_reference("CR", order["_id"], seller_id, commission_id),
            created_at=now,
            updated_at=now,
        )
        commission = await _insert_commission(db, record, commission_id, session=session)

    credited = await _credit_commission(
        db,
        order,
        commission,
        f"Sale proceeds from Order #{order.get('order_number', order['_id'])}",
        session=session,
    )
    return created, credited


async def _settle_delivery_leg(db, order: dict, settings: SettingsProvider, session=None):
    agent_id = parse_object_id(order["delivery_agent_id"], "delivery_agent")
    commission = await db.commissions.find_one(
        {
            "order_id": order["_id"],
            "line_item_id": None,
            "payee_id": agent_id,
            "payee_type": PayeeType.DELIVERY_AGENT.value,
        },
        session=session,
    )
    created = commission is None

    if commission is None:
        rate = await resolve_delivery_rate(db, order, settings=settings, session=session)
        breakdown = calculate_commission(rate.base, rate.rate, distance_based=rate.distance_based)
        commission_id = ObjectId()
        now = datetime.utcnow()

        logger.info(
            "DELIVERY_COMMISSION order=%s agent=%s base=%s rate=%s source=%s amount=%s",
            order["_id"], agent_id, rate.base, rate.rate, rate.source, breakdown.commission_amount,
        )

        record = CommissionRecord(
            order_id=order["_id"],
            line_item_id=None,
            payee_id=agent_id,
            payee_type=PayeeType.DELIVERY_AGENT,
            order_amount=breakdown.base,
            commission_rate=breakdown.rate,
            commission_amount=breakdown.commission_amount,
            credited_amount=payee_earning(
                PayeeType.DELIVERY_AGENT, breakdown.base, breakdown.commission_amount
            ),
            rate_source=rate.source,
            distance_based=rate.distance_based,
            status=CommissionStatus.PAID,
            paid_at=now,
            payment_reference=make_reference("CR", order["_id"], agent_id, commission_id),
            created_at=now,
            updated_at=now,
        )
        commission = await _insert_commission(db, record, commission_id, session=session)

    credited = await _credit_commission(
        db,
        order,
        commission,
        f"Delivery earning for order {order.get('order_number', order['_id'])}",
        session=session,
    )
    return created, credited


# ==============================
# Settlement
# ==============================

async def settle_on_delivery(
    db,
    order_id,
    *,
    settings: SettingsProvider | None = None,
    session=None,
    replay: bool = False,
) -> SettlementResult:
    """
    Create Paid commission records and wallet credits for a delivered
    order: one per line item and one for the delivery leg.

    Runs inside the caller's session. An order that already has commission
    records is a no-op unless its previous settlement was interrupted or
    `replay` is set; in those cases only the missing pairs are written.
    A line item whose seller (or the assigned agent) cannot be found, or
    whose commission cannot be computed from its stored values, is skipped
    and recorded in settlement_skips for replay.
    """
    settings = settings or SettingsProvider(db)
    order = await _load_order(db, order_id, session=session)
    oid = order["_id"]
    result = SettlementResult(order_id=oid)

    state = (order.get("settlement") or {}).get("status")
    has_commissions = await db.commissions.find_one({"order_id": oid}, {"_id": 1}, session=session)
    if has_commissions and not replay and state not in RESUMABLE_STATES:
        logger.info("SETTLEMENT_NOOP order=%s state=%s", oid, state)
        result.noop = True
        return result

    await set_settlement_state(db, oid, SettlementState.IN_PROGRESS, session=session)

    for item_id, item in await load_line_items(db, order, session=session):
        if item is None:
            await _record_skip(db, oid, item_id, PayeeType.SELLER, "line item not found", session=session)
            result.skipped.append(item_id)
            continue
        try:
            created, credited = await _settle_line_item(db, order, item, settings, session=session)
        except (NotFound, ValueError) as e:
            await _record_skip(db, oid, item_id, PayeeType.SELLER, str(e), session=session)
            result.skipped.append(item_id)
            continue
        result.created += int(created)
        result.credited += credited

    if order.get("delivery_agent_id"):
        try:
            created, credited = await _settle_delivery_leg(db, order, settings, session=session)
        except (NotFound, ValueError) as e:
            await _record_skip(db, oid, None, PayeeType.DELIVERY_AGENT, str(e), session=session)
            result.skipped.append(None)
        else:
            result.created += int(created)
            result.credited += credited

    result.credited = float(to_money(result.credited))
    final_state = SettlementState.NEEDS_RECONCILIATION if result.skipped else SettlementState.SETTLED
    await set_settlement_state(db, oid, final_state, session=session)

    await safe_record_order_event(
        db,
        order_id=oid,
        event="COMMISSIONS_SETTLED",
        actor_role="system",
        metadata={
            "created": result.created,
            "credited": result.credited,
            "skipped": len(result.skipped),
        },
        session=session,
    )
    logger.info(
        "SETTLEMENT_DONE order=%s created=%s credited=%s skipped=%s",
        oid, result.created, result.credited, len(result.skipped),
    )
    return result


async def settle_order(db, order_id, *, settings=None, replay: bool = False) -> SettlementResult:
    """Standalone settlement in its own retried transactional scope."""

    async def _run(session):
        return await settle_on_delivery(
            db, order_id, settings=settings, session=session, replay=replay
        )

    return await run_in_transaction(db, _run, label="settle_order", order_id=order_id)


# ==============================
# Reversal
# ==============================

async def reverse_commissions(db, order_id, *, session=None) -> ReversalResult:
    """
    Undo money that was actually moved: every Paid commission of the order
    gets an offsetting debit of what was credited and flips to Cancelled.
    Pending and Cancelled records are left alone.
    """
    oid = parse_object_id(order_id, "order")
    result = ReversalResult(order_id=oid)

    commissions = await db.commissions.find({"order_id": oid}, session=session).to_list(None)
    if not commissions:
        logger.info("REVERSAL_NOOP order=%s", oid)
        return result

    order = await db.orders.find_one({"_id": oid}, {"order_number": 1}, session=session) or {}
    order_number = order.get("order_number", oid)

    for commission in commissions:
        if commission.get("status") != CommissionStatus.PAID.value:
            continue

        amount = commission.get("credited_amount")
        if amount is None:
            amount = payee_earning(
                commission["payee_type"],
                commission["order_amount"],
                commission["commission_amount"],
            )

        # Debit first: its reference makes a replay safe if the flip below is lost.
        if amount > 0:
            await debit_wallet(
                db,
                commission["payee_id"],
                commission["payee_type"],
                amount,
                f"Commission reversal for cancelled order #{order_number}",
                make_reference("DR", oid, commission["payee_id"], commission["_id"]),
                order_id=oid,
                commission_id=commission["_id"],
                session=session,
            )

        now = datetime.utcnow()
        res = await db.commissions.update_one(
            {"_id": commission["_id"], "status": CommissionStatus.PAID.value},
            {"$set": {
                "status": CommissionStatus.CANCELLED.value,
                "cancelled_at": now,
                "updated_at": now,
            }},
            session=session,
        )
        if res.modified_count == 1:
            result.reversed += 1
            result.debited += float(amount)

    result.debited = float(to_money(result.debited))
    if result.reversed:
        await set_settlement_state(db, oid, SettlementState.REVERSED, session=session)
        await safe_record_order_event(
            db,
            order_id=oid,
            event="COMMISSIONS_REVERSED",
            actor_role="system",
            metadata={"reversed": result.reversed, "debited": result.debited},
            session=session,
        )

    logger.info("REVERSAL_DONE order=%s reversed=%s debited=%s", oid, result.reversed, result.debited)
    return result


async def reverse_order(db, order_id) -> ReversalResult:
    async def _run(session):
        return await reverse_commissions(db, order_id, session=session)

    return await run_in_transaction(db, _run, label="reverse_order", order_id=order_id)


# ==============================
# Summary
# ==============================

async def get_commission_summary(db, payee_id, payee_type: PayeeType) -> CommissionSummary:
    """
    Earning per record: seller gets order amount minus commission, a
    delivery agent gets the commission itself. `total` covers every
    record, `paid` and `pending` only their own status.
    """
    payee_type = PayeeType(payee_type)
    cursor = db.commissions.find({
        "payee_id": parse_object_id(payee_id, "payee"),
        "payee_type": payee_type.value,
    }).sort("created_at", DESCENDING)
    commissions = await cursor.to_list(None)

    total = paid = pending = to_money(0)
    entries = []
    for c in commissions:
        earning = to_money(payee_earning(payee_type, c["order_amount"], c["commission_amount"]))
        total += earning
        if c["status"] == CommissionStatus.PAID.value:
            paid += earning
        elif c["status"] == CommissionStatus.PENDING.value:
            pending += earning

        entries.append(CommissionEntry(
            id=str(c["_id"]),
            order_id=str(c["order_id"]),
            amount=c["commission_amount"],
            rate=c["commission_rate"],
            order_amount=c["order_amount"],
            status=c["status"],
            paid_at=c.get("paid_at"),
            created_at=c.get("created_at"),
        ))

    return CommissionSummary(
        total=float(total),
        paid=float(paid),
        pending=float(pending),
        count=len(entries),
        commissions=entries,
    )


# ==============================
# Preview (read-only)
# ==============================

async def preview_order_commissions(db, order_id, *, settings: SettingsProvider | None = None) -> dict:
    """
    What settlement would produce right now, grouped per seller, without
    writing anything.
    """
    settings = settings or SettingsProvider(db)
    order = await _load_order(db, order_id)

    sellers = {}
    for item_id, item in await load_line_items(db, order):
        if item is None:
            continue
        try:
            resolution = await explain_seller_rate(
                db, item["product_id"], item["seller_id"], settings=settings
            )
        except NotFound:
            logger.warning("PREVIEW_SELLER_MISSING order=%s item=%s", order["_id"], item_id)
            continue

        breakdown = calculate_commission(item["total"], resolution.rate)
        key = str(item["seller_id"])
        entry = sellers.setdefault(key, {
            "seller_id": key,
            "rate": breakdown.rate,
            "amount": to_money(0),
            "order_amount": to_money(0),
        })
        entry["amount"] += to_money(breakdown.commission_amount)
        entry["order_amount"] += to_money(breakdown.base)

    preview = {
        "seller": [
            {**e, "amount": float(e["amount"]), "order_amount": float(e["order_amount"])}
            for e in sellers.values()
        ],
        "delivery_agent": None,
    }

    if order.get("delivery_agent_id"):
        try:
            rate = await resolve_delivery_rate(db, order, settings=settings)
        except NotFound:
            logger.warning("PREVIEW_AGENT_MISSING order=%s", order["_id"])
        else:
            breakdown = calculate_commission(rate.base, rate.rate, distance_based=rate.distance_based)
            preview["delivery_agent"] = {
                "delivery_agent_id": str(order["delivery_agent_id"]),
                "amount": breakdown.commission_amount,
                "rate": breakdown.rate,
                "order_amount": breakdown.base,
                "distance_based": rate.distance_based,
            }

    return preview


# ==============================
# Replay of skipped items
# ==============================

async def replay_skipped_items(db, order_id, *, settings=None) -> int:
    """
    Retry settlement for items skipped earlier. Returns how many skips are
    now resolved.
    """
    oid = parse_object_id(order_id, "order")
    skips = await db.settlement_skips.find({"order_id": oid, "replayed_at": None}).to_list(None)
    if not skips:
        return 0

    order = await _load_order(db, oid)
    if order.get("status") != OrderStatus.DELIVERED.value:
        # Cancelled or returned since; there is nothing left to pay out.
        await db.settlement_skips.update_many(
            {"order_id": oid, "replayed_at": None},
            {"$set": {"replayed_at": datetime.utcnow(), "outcome": "order_not_delivered"}},
        )
        logger.info("SKIP_REPLAY_ABANDONED order=%s status=%s", oid, order.get("status"))
        return 0

    await settle_order(db, oid, settings=settings, replay=True)

    resolved = 0
    for skip in skips:
        query = {"order_id": oid, "payee_type": skip["payee_type"], "line_item_id": skip["line_item_id"]}
        if not await db.commissions.find_one(query, {"_id": 1}):
            continue
        await db.settlement_skips.update_one(
            {"_id": skip["_id"]},
            {"$set": {"replayed_at": datetime.utcnow()}},
        )
        resolved += 1

    logger.info("SKIP_REPLAY order=%s resolved=%s of=%s", oid, resolved, len(skips))
    return resolved
