import logging
from dataclasses import dataclass
from datetime import datetime

from pymongo import ReturnDocument

from config.env import MONGO_TRANSACTIONS_ENABLED
from models.order import OrderStatus, SettlementState
from utils.errors import (
    InvalidTransition,
    NotFound,
    PartialFailure,
    SettlementUnavailable,
)
from utils.guards import parse_object_id
from utils.mongo import run_in_transaction
from utils.order_effects import (
    CommitInventory,
    ReleaseInventory,
    ReserveInventory,
    ReverseCommissions,
    SettleCommissions,
    apply_effect,
)
from utils.order_hooks import notify_order_invalidated
from utils.order_lock import order_lock
from utils.order_timeline import safe_record_order_event
from utils.settings_provider import SettingsProvider
from utils.settlement import load_line_items

logger = logging.getLogger(__name__)

S = OrderStatus

# ======================================================
# TRANSITION TABLE (SINGLE SOURCE OF TRUTH)
# ======================================================

TRANSITIONS = {
    S.RECEIVED: (S.PENDING, S.CANCELLED, S.REJECTED),
    S.PENDING: (S.PROCESSED, S.CANCELLED, S.REJECTED),
    S.PROCESSED: (S.SHIPPED, S.CANCELLED, S.REJECTED),
    S.SHIPPED: (S.OUT_FOR_DELIVERY, S.CANCELLED, S.REJECTED),
    S.OUT_FOR_DELIVERY: (S.DELIVERED, S.CANCELLED, S.REJECTED),
    S.DELIVERED: (S.RETURNED,),
    S.CANCELLED: (),
    S.REJECTED: (),
    S.RETURNED: (),
}

# Reaching these ends live tracking for the order.
INVALIDATING_STATUSES = frozenset({S.DELIVERED, S.CANCELLED, S.RETURNED, S.REJECTED})

# Stock is held from Processed until delivery.
RELEASE_ON_CANCEL_FROM = frozenset({S.PROCESSED, S.SHIPPED})


@dataclass(frozen=True)
class TransitionResult:
    valid: bool
    current: str
    requested: str
    allowed: tuple = ()
    message: str | None = None


def _as_status(value) -> OrderStatus | None:
    try:
        return OrderStatus(value)
    except ValueError:
        return None


def allowed_transitions(current) -> tuple:
    status = _as_status(current)
    if status is None:
        return ()
    return tuple(s.value for s in TRANSITIONS[status])


def validate_transition(current, requested) -> TransitionResult:
    current_value = getattr(current, "value", current)
    requested_value = getattr(requested, "value", requested)
    allowed = allowed_transitions(current)

    if requested_value not in allowed:
        return TransitionResult(
            valid=False,
            current=current_value,
            requested=requested_value,
            allowed=allowed,
            message=(
                f"Cannot transition from {current_value} to {requested_value}. "
                f"Valid transitions: {', '.join(allowed)}"
            ),
        )

    return TransitionResult(valid=True, current=current_value, requested=requested_value, allowed=allowed)


def plan_transition_effects(current, requested) -> tuple:
    """Side effects owed by a (validated) transition, in application order."""
    current = OrderStatus(current)
    requested = OrderStatus(requested)

    if requested is S.PROCESSED:
        return (ReserveInventory(),)
    if requested is S.CANCELLED:
        if current in RELEASE_ON_CANCEL_FROM:
            return (ReleaseInventory(), ReverseCommissions())
        return ()
    if requested is S.DELIVERED:
        return (CommitInventory(), SettleCommissions())
    if requested is S.RETURNED:
        return (ReverseCommissions(),)
    return ()


# ======================================================
# APPLY
# ======================================================

async def _write_status(db, order: dict, target: OrderStatus, extra: dict, session=None) -> dict:
    now = datetime.utcnow()
    fields = {
        "status": target.value,
        "updated_at": now,
        f"{target.name.lower()}_at": now,
    }
    fields.update(extra)

    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "status": order["status"]},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if updated is None:
        raise SettlementUnavailable(
            f"Order {order['_id']} changed while transitioning", order_id=order["_id"]
        )
    return updated


async def _flag_for_manual_review(db, order_id, reason: str) -> None:
    # Status did not move; an operator decides whether to replay or undo.
    await db.orders.update_one(
        {"_id": order_id},
        {"$set": {
            "settlement.status": SettlementState.NEEDS_RECONCILIATION.value,
            "settlement.manual_review": True,
            "settlement.reconciliation_reason": reason,
            "settlement.updated_at": datetime.utcnow(),
        }},
    )


async def apply_order_transition(
    db,
    order_id,
    requested,
    *,
    settings: SettingsProvider | None = None,
    actor_role: str = "system",
    actor_id=None,
) -> dict:
    """
    Move an order to `requested`, applying its inventory and ledger effects
    and the status write in one transactional scope.

    Raises NotFound, InvalidTransition (order untouched),
    SettlementUnavailable (transaction unavailable after retries; when the
    transition owes ledger work the status still moves and the ledger work
    is queued on the order for the reconciliation worker) and
    PartialFailure (an effect failed after others were applied without a
    transaction; the order is flagged for reconciliation).
    """
    settings = settings or SettingsProvider(db)
    oid = parse_object_id(order_id, "order")

    async with order_lock(db, oid):
        order = await db.orders.find_one({"_id": oid})
        if not order:
            raise NotFound("order", order_id)

        current = order.get("status")
        check = validate_transition(current, requested)
        if not check.valid:
            logger.info("INVALID_TRANSITION order=%s from=%s to=%s", oid, current, check.requested)
            raise InvalidTransition(check.current, check.requested, check.allowed)

        target = OrderStatus(check.requested)
        effects = plan_transition_effects(current, target)
        items = [item for _, item in await load_line_items(db, order) if item is not None]
        applied = []

        async def _commit(session, deferred=()):
            if session is not None:
                # An aborted attempt left nothing behind.
                applied.clear()
            for effect in effects:
                if effect.ledger and deferred:
                    continue
                await apply_effect(db, effect, order, items, settings=settings, session=session)
                if effect.kind not in applied:
                    applied.append(effect.kind)

            extra = {}
            if deferred:
                queued = list((order.get("settlement") or {}).get("pending_effects") or [])
                queued += [kind for kind in deferred if kind not in queued]
                extra = {
                    "settlement.status": SettlementState.NEEDS_RECONCILIATION.value,
                    "settlement.pending_effects": queued,
                    "settlement.reconciliation_reason": "transaction unavailable",
                }

            updated = await _write_status(db, order, target, extra, session=session)
            await safe_record_order_event(
                db,
                order_id=oid,
                event="STATUS_CHANGED",
                actor_role=actor_role,
                actor_id=actor_id,
                metadata={
                    "from": check.current,
                    "to": target.value,
                    "effects": [e.kind for e in effects],
                    "deferred": list(deferred),
                },
                session=session,
            )
            return updated

        try:
            updated = await run_in_transaction(db, _commit, label="order_transition", order_id=oid)
        except SettlementUnavailable:
            ledger_kinds = [e.kind for e in effects if e.ledger]
            if not ledger_kinds:
                raise

            async def _commit_deferred(session):
                return await _commit(session, deferred=ledger_kinds)

            # Status moves, ledger work waits on the order for the reconciliation worker.
            updated = await run_in_transaction(
                db, _commit_deferred, label="order_transition_deferred", order_id=oid
            )
            logger.error("SETTLEMENT_DEFERRED order=%s effects=%s", oid, ledger_kinds)
            _notify(target, oid)
            raise SettlementUnavailable(
                f"Order {oid} moved to {target.value}; settlement queued for reconciliation",
                order_id=oid,
            )
        except Exception as e:
            if applied and not MONGO_TRANSACTIONS_ENABLED:
                logger.exception("PARTIAL_FAILURE order=%s applied=%s", oid, applied)
                await _flag_for_manual_review(
                    db,
                    oid,
                    f"{type(e).__name__} moving to {target.value} after {', '.join(applied)}",
                )
                raise PartialFailure(
                    f"Order {oid} transition to {target.value} failed after {', '.join(applied)}",
                    order_id=oid,
                    effect=applied[-1],
                ) from e
            raise

    logger.info("ORDER_TRANSITION order=%s from=%s to=%s", oid, check.current, target.value)
    _notify(target, oid)
    return updated


def _notify(target: OrderStatus, order_id) -> None:
    if target in INVALIDATING_STATUSES:
        notify_order_invalidated(order_id)
