import asyncio

import pytest
from bson import ObjectId
from pydantic import ValidationError

from models.wallet import PayeeType
from models.withdrawal import WithdrawalStatus
from utils.errors import InsufficientBalance, InvalidTransition, NotFound
from utils.serializers import serialize_withdrawal
from utils.wallet_service import credit_wallet, debit_wallet, get_wallet_balance
from utils.withdrawals import (
    approve_withdrawal,
    available_for_withdrawal,
    complete_withdrawal,
    list_withdrawals,
    reject_withdrawal,
    request_withdrawal,
)


async def funded_seller(db, market, amount=100):
    seller = await market.seller()
    await credit_wallet(db, seller, PayeeType.SELLER, amount, "Sale", f"CR-{seller}")
    return seller


def test_approval_debits_wallet_once(db, market):
    async def run():
        seller = await funded_seller(db, market)
        request = await request_withdrawal(db, seller, 40, "UPI", " seller@upi ")
        approved = await approve_withdrawal(db, request["_id"])
        with pytest.raises(InvalidTransition):
            await approve_withdrawal(db, request["_id"])
        debits = await db.wallet_transactions.count_documents({"reference": f"WD-{request['_id']}"})
        return request, approved, debits, await get_wallet_balance(db, seller, PayeeType.SELLER)

    request, approved, debits, balance = asyncio.run(run())

    assert request["status"] == WithdrawalStatus.PENDING.value
    assert request["account_details"] == "seller@upi"
    assert approved["status"] == WithdrawalStatus.APPROVED.value
    assert approved["debit_reference"] == f"WD-{request['_id']}"
    assert debits == 1
    assert balance == 60.0


def test_pending_requests_count_against_available(db, market):
    async def run():
        seller = await funded_seller(db, market)
        await request_withdrawal(db, seller, 70, "Bank Transfer", "ACC-1")
        available = await available_for_withdrawal(db, seller)
        with pytest.raises(InsufficientBalance) as exc:
            await request_withdrawal(db, seller, 40, "Bank Transfer", "ACC-1")
        return available, exc.value

    available, error = asyncio.run(run())

    assert available == 30.0
    assert error.requested == 40.0
    assert error.available == 30.0


def test_request_validation(db, market):
    async def run(amount, method):
        seller = await funded_seller(db, market)
        await request_withdrawal(db, seller, amount, method, "ACC-1")

    with pytest.raises(ValidationError):
        asyncio.run(run(0.5, "UPI"))
    with pytest.raises(ValidationError):
        asyncio.run(run(10, "Cheque"))
    with pytest.raises(NotFound):
        asyncio.run(request_withdrawal(db, ObjectId(), 10, "UPI", "ACC-1"))


def test_rejecting_pending_request_moves_nothing(db, market):
    async def run():
        seller = await funded_seller(db, market)
        request = await request_withdrawal(db, seller, 50, "UPI", "seller@upi")
        rejected = await reject_withdrawal(db, request["_id"], remarks="Account mismatch")
        entries = await db.wallet_transactions.count_documents({"payee_id": seller})
        return rejected, entries, await available_for_withdrawal(db, seller)

    rejected, entries, available = asyncio.run(run())

    assert rejected["status"] == WithdrawalStatus.REJECTED.value
    assert rejected["remarks"] == "Account mismatch"
    assert entries == 1
    assert available == 100.0


def test_rejecting_approved_request_refunds_debit(db, market):
    async def run():
        seller = await funded_seller(db, market)
        request = await request_withdrawal(db, seller, 50, "UPI", "seller@upi")
        await approve_withdrawal(db, request["_id"])
        await reject_withdrawal(db, request["_id"])
        stored = await db.withdrawal_requests.find_one({"_id": request["_id"]})
        return stored, await get_wallet_balance(db, seller, PayeeType.SELLER)

    stored, balance = asyncio.run(run())

    assert stored["status"] == WithdrawalStatus.REJECTED.value
    assert stored["refund_reference"] == f"WR-{stored['_id']}"
    assert balance == 100.0


def test_approval_refuses_to_overdraw(db, market):
    async def run():
        seller = await funded_seller(db, market)
        request = await request_withdrawal(db, seller, 80, "UPI", "seller@upi")
        # A return lands between the request and its approval
        await debit_wallet(db, seller, PayeeType.SELLER, 50, "Returned order", "DR-return")

        with pytest.raises(InsufficientBalance):
            await approve_withdrawal(db, request["_id"])

        stored = await db.withdrawal_requests.find_one({"_id": request["_id"]})
        debits = await db.wallet_transactions.count_documents({"reference": f"WD-{request['_id']}"})
        return stored, debits, await get_wallet_balance(db, seller, PayeeType.SELLER)

    stored, debits, balance = asyncio.run(run())

    assert stored["status"] == WithdrawalStatus.PENDING.value
    assert stored.get("debit_reference") is None
    assert debits == 0
    assert balance == 50.0


def test_completion_requires_approval(db, market):
    async def run():
        seller = await funded_seller(db, market)
        request = await request_withdrawal(db, seller, 25, "Bank Transfer", "ACC-9")
        with pytest.raises(InvalidTransition) as exc:
            await complete_withdrawal(db, request["_id"], payment_reference="UTR-1")

        await approve_withdrawal(db, request["_id"])
        completed = await complete_withdrawal(db, request["_id"], payment_reference="UTR-1")
        with pytest.raises(InvalidTransition):
            await reject_withdrawal(db, request["_id"])
        return exc.value, completed, await get_wallet_balance(db, seller, PayeeType.SELLER)

    error, completed, balance = asyncio.run(run())

    assert error.allowed == ["Approved", "Rejected"]
    assert completed["status"] == WithdrawalStatus.COMPLETED.value
    assert completed["payment_reference"] == "UTR-1"
    assert balance == 75.0


def test_list_and_serialize(db, market):
    async def run():
        seller = await funded_seller(db, market)
        other = await funded_seller(db, market)
        first = await request_withdrawal(db, seller, 10, "UPI", "a@upi")
        await request_withdrawal(db, seller, 20, "UPI", "a@upi")
        await request_withdrawal(db, other, 30, "UPI", "b@upi")
        await approve_withdrawal(db, first["_id"])
        return (
            seller,
            await list_withdrawals(db, seller_id=seller),
            await list_withdrawals(db, seller_id=seller, status="Pending"),
        )

    seller, mine, pending = asyncio.run(run())

    assert len(mine) == 2
    assert [r["amount"] for r in pending] == [20.0]
    data = serialize_withdrawal(pending[0])
    assert data["seller_id"] == str(seller)
    assert data["payment_method"] == "UPI"


def test_unknown_request_is_not_found(db):
    with pytest.raises(NotFound):
        asyncio.run(approve_withdrawal(db, ObjectId()))
