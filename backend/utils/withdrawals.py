import logging
from datetime import datetime

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from config.constants import MAX_WITHDRAWAL_REQUESTS_PAGE
from models.wallet import PayeeType
from models.withdrawal import WithdrawalRequest, WithdrawalStatus
from utils.commission_calc import to_money
from utils.errors import (
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    OrderPipelineError,
    SettlementUnavailable,
)
from utils.guards import parse_object_id
from utils.mongo import run_in_transaction
from utils.wallet_service import credit_wallet, debit_wallet, get_wallet_balance

logger = logging.getLogger(__name__)

W = WithdrawalStatus

WITHDRAWAL_TRANSITIONS = {
    W.PENDING: (W.APPROVED, W.REJECTED),
    W.APPROVED: (W.COMPLETED, W.REJECTED),
    W.REJECTED: (),
    W.COMPLETED: (),
}


def debit_reference(request_id) -> str:
    return f"WD-{request_id}"


def refund_reference(request_id) -> str:
    return f"WR-{request_id}"


# ==============================
# Balances
# ==============================

async def pending_withdrawal_total(db, seller_id, session=None) -> float:
    pipeline = [
        {"$match": {
            "seller_id": parse_object_id(seller_id, "seller"),
            "status": W.PENDING.value,
        }},
        {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
    ]
    result = await db.withdrawal_requests.aggregate(pipeline, session=session).to_list(1)
    if not result:
        return 0.0
    return float(to_money(result[0]["total"]))


async def available_for_withdrawal(db, seller_id, session=None) -> float:
    """Ledger balance less what open requests already claim."""
    seller_oid = parse_object_id(seller_id, "seller")
    ledger = await get_wallet_balance(db, seller_oid, PayeeType.SELLER, session=session)
    pending = await pending_withdrawal_total(db, seller_oid, session=session)
    return float(max(to_money(0), to_money(ledger) - to_money(pending)))


# ==============================
# Requests
# ==============================

async def request_withdrawal(
    db,
    seller_id,
    amount,
    payment_method,
    account_details: str,
    remarks: str | None = None,
) -> dict:
    """
    Open a Pending request. Nothing moves in the wallet yet, but the
    amount counts against what later requests can ask for.
    Raises pydantic's ValidationError for an amount under the minimum or
    an unknown payment method.
    """
    seller_oid = parse_object_id(seller_id, "seller")
    if not await db.sellers.find_one({"_id": seller_oid}, {"_id": 1}):
        raise NotFound("seller", seller_id)

    record = WithdrawalRequest(
        seller_id=seller_oid,
        amount=float(to_money(amount)),
        payment_method=payment_method,
        account_details=account_details,
        remarks=remarks,
    )

    available = await available_for_withdrawal(db, seller_oid)
    if record.amount > available:
        logger.info(
            "WITHDRAWAL_REFUSED seller=%s amount=%s available=%s",
            seller_oid, record.amount, available,
        )
        raise InsufficientBalance(seller_oid, record.amount, available)

    doc = record.model_dump()
    result = await db.withdrawal_requests.insert_one(doc)
    doc["_id"] = result.inserted_id

    logger.info(
        "WITHDRAWAL_REQUESTED request=%s seller=%s amount=%s method=%s",
        doc["_id"], seller_oid, record.amount, doc["payment_method"],
    )
    return doc


async def get_withdrawal(db, request_id, session=None) -> dict:
    request = await db.withdrawal_requests.find_one(
        {"_id": parse_object_id(request_id, "withdrawal_request")},
        session=session,
    )
    if not request:
        raise NotFound("withdrawal_request", request_id)
    return request


async def list_withdrawals(db, *, seller_id=None, status=None, limit: int = 50) -> list[dict]:
    query = {}
    if seller_id is not None:
        query["seller_id"] = parse_object_id(seller_id, "seller")
    if status is not None:
        query["status"] = W(status).value

    limit = max(1, min(limit, MAX_WITHDRAWAL_REQUESTS_PAGE))
    cursor = db.withdrawal_requests.find(query).sort("created_at", DESCENDING).limit(limit)
    return await cursor.to_list(limit)


# ==============================
# Status changes
# ==============================

def _check_transition(request: dict, target: WithdrawalStatus) -> None:
    current = W(request["status"])
    allowed = WITHDRAWAL_TRANSITIONS[current]
    if target not in allowed:
        raise InvalidTransition(current.value, target.value, [s.value for s in allowed])


async def _set_status(db, request: dict, target: WithdrawalStatus, fields: dict, session=None) -> dict:
    updated = await db.withdrawal_requests.find_one_and_update(
        {"_id": request["_id"], "status": request["status"]},
        {"$set": {"status": target.value, "updated_at": datetime.utcnow(), **fields}},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if updated is None:
        raise SettlementUnavailable(f"Withdrawal request {request['_id']} changed while updating")
    return updated


async def _change_status(db, request_id, target: WithdrawalStatus, fields: dict, move_money=None) -> dict:
    """
    Claim the new status first, then move money. Without a transaction a
    failed money step puts the request back the way it was; with one the
    abort does.
    """
    async def _run(session):
        request = await get_withdrawal(db, request_id, session=session)
        _check_transition(request, target)
        updated = await _set_status(db, request, target, fields, session=session)

        if move_money is not None:
            try:
                await move_money(request, session)
            except (OrderPipelineError, ValueError, PyMongoError):
                if session is None:
                    await _set_status(
                        db,
                        updated,
                        W(request["status"]),
                        {k: request.get(k) for k in fields},
                    )
                    logger.warning(
                        "WITHDRAWAL_REVERTED request=%s to=%s", request["_id"], request["status"]
                    )
                raise

        logger.info(
            "WITHDRAWAL_%s request=%s seller=%s amount=%s",
            target.name, updated["_id"], updated["seller_id"], updated["amount"],
        )
        return updated

    return await run_in_transaction(db, _run, label=f"withdrawal_{target.name.lower()}")


async def approve_withdrawal(db, request_id, *, remarks: str | None = None) -> dict:
    """
    Pending -> Approved. Debits the seller's wallet once, under a
    reference derived from the request, and refuses to take the ledger
    balance below zero.
    """
    async def _debit(request, session):
        seller_id = request["seller_id"]
        balance = await get_wallet_balance(db, seller_id, PayeeType.SELLER, session=session)
        if to_money(balance) < to_money(request["amount"]):
            raise InsufficientBalance(seller_id, request["amount"], balance)

        await debit_wallet(
            db,
            seller_id,
            PayeeType.SELLER,
            request["amount"],
            f"Withdrawal via {request['payment_method']}",
            debit_reference(request["_id"]),
            session=session,
        )

    fields = {
        "approved_at": datetime.utcnow(),
        "debit_reference": debit_reference(parse_object_id(request_id, "withdrawal_request")),
    }
    if remarks is not None:
        fields["remarks"] = remarks
    return await _change_status(db, request_id, W.APPROVED, fields, _debit)


async def reject_withdrawal(db, request_id, *, remarks: str | None = None) -> dict:
    """
    A Pending request is closed without touching the wallet. An Approved
    one that was never paid out gets its debit credited back.
    """
    request_oid = parse_object_id(request_id, "withdrawal_request")

    async def _refund(request, session):
        if request["status"] != W.APPROVED.value:
            return
        await credit_wallet(
            db,
            request["seller_id"],
            PayeeType.SELLER,
            request["amount"],
            "Withdrawal rejected",
            refund_reference(request["_id"]),
            session=session,
        )
        await db.withdrawal_requests.update_one(
            {"_id": request["_id"]},
            {"$set": {"refund_reference": refund_reference(request["_id"])}},
            session=session,
        )

    fields = {"rejected_at": datetime.utcnow()}
    if remarks is not None:
        fields["remarks"] = remarks
    return await _change_status(db, request_oid, W.REJECTED, fields, _refund)


async def complete_withdrawal(db, request_id, *, payment_reference: str, remarks: str | None = None) -> dict:
    """Approved -> Completed once the payout has left through its channel."""
    if not payment_reference:
        raise ValueError("payment_reference is required")

    fields = {"completed_at": datetime.utcnow(), "payment_reference": payment_reference}
    if remarks is not None:
        fields["remarks"] = remarks
    return await _change_status(db, request_id, W.COMPLETED, fields)
