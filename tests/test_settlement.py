import asyncio

import pytest
from bson import ObjectId

from models.order import SettlementState
from models.wallet import PayeeType
from utils import settlement
from utils.errors import NotFound
from utils.settings_provider import SettingsProvider
from utils.settlement import (
    get_commission_summary,
    preview_order_commissions,
    replay_skipped_items,
    reverse_order,
    settle_order,
)
from utils.wallet_service import get_wallet_balance


async def delivered_order(market, *, agent_rate=None, distance=None, seller_rates=(10, 0)):
    sellers = [await market.seller(commission_rate=rate) for rate in seller_rates]
    totals = [1000, 500, 250][: len(sellers)]
    lines = []
    for seller, total in zip(sellers, totals):
        lines.append((seller, await market.product(), 1, total))

    agent = None
    if agent_rate is not None:
        agent = await market.delivery_agent(commission_rate=agent_rate)

    order_id = await market.order(
        lines,
        status="Delivered",
        delivery_agent_id=agent,
        delivery_distance_km=distance,
    )
    return order_id, sellers, agent


def test_settlement_creates_paid_commissions_and_credits(db, market):
    async def run():
        order_id, sellers, _ = await delivered_order(market)
        result = await settle_order(db, order_id)
        balances = [await get_wallet_balance(db, s, PayeeType.SELLER) for s in sellers]
        events = await db.order_timeline.find({"event": "COMMISSIONS_SETTLED"}).to_list(None)
        return result, balances, events

    result, balances, events = asyncio.run(run())

    assert result.noop is False
    assert result.created == 2
    assert result.credited == 1350.0
    assert result.skipped == []
    assert balances == [900.0, 450.0]
    assert events[0]["metadata"]["created"] == 2


def test_settlement_is_idempotent(db, market):
    async def run():
        order_id, _, _ = await delivered_order(market, agent_rate=5)
        first = await settle_order(db, order_id)
        second = await settle_order(db, order_id)
        return (
            first,
            second,
            await db.commissions.count_documents({"order_id": order_id}),
            await db.wallet_transactions.count_documents({"order_id": order_id}),
        )

    first, second, commissions, transactions = asyncio.run(run())

    assert first.created == 3
    assert second.noop is True
    assert commissions == 3
    assert transactions == 3


def test_replay_fills_only_missing_pairs(db, market):
    async def run():
        order_id, sellers, _ = await delivered_order(market)
        await settle_order(db, order_id)

        # Drop one commission and its credit as if the write was lost.
        lost = await db.commissions.find_one({"payee_id": sellers[1]})
        await db.commissions.delete_one({"_id": lost["_id"]})
        await db.wallet_transactions.delete_one({"commission_id": lost["_id"]})
        await db.sellers.update_one({"_id": sellers[1]}, {"$set": {"balance": 0.0}})

        result = await settle_order(db, order_id, replay=True)
        return result, [await db.sellers.find_one({"_id": s}) for s in sellers]

    result, sellers = asyncio.run(run())

    assert result.created == 1
    assert result.credited == 450.0
    assert [s["balance"] for s in sellers] == [900.0, 450.0]


def test_delivery_agent_percentage_commission(db, market):
    async def run():
        order_id, _, agent = await delivered_order(market, agent_rate=5)
        await settle_order(db, order_id)
        commission = await db.commissions.find_one({"payee_id": agent})
        return commission, await db.delivery_agents.find_one({"_id": agent})

    commission, agent = asyncio.run(run())

    assert commission["payee_type"] == PayeeType.DELIVERY_AGENT.value
    assert commission["line_item_id"] is None
    assert commission["order_amount"] == 1500.0
    assert commission["commission_amount"] == 75.0
    assert agent["balance"] == 75.0


def test_delivery_agent_distance_commission(db, market):
    settings = SettingsProvider.static(
        delivery_config={"is_distance_based": True, "delivery_agent_km_rate": 8}
    )

    async def run():
        order_id, _, agent = await delivered_order(market, agent_rate=5, distance=12.5)
        await settle_order(db, order_id, settings=settings)
        return await db.commissions.find_one({"payee_id": agent})

    commission = asyncio.run(run())

    assert commission["commission_amount"] == 100.0
    assert commission["credited_amount"] == 100.0
    assert commission["distance_based"] is True
    assert commission["order_amount"] == 12.5


def test_missing_seller_is_skipped_and_replayed(db, market):
    async def run():
        order_id, sellers, _ = await delivered_order(market)
        gone = await db.sellers.find_one({"_id": sellers[1]})
        await db.sellers.delete_one({"_id": sellers[1]})

        result = await settle_order(db, order_id)
        state = (await market.get_order(order_id))["settlement"]["status"]
        skips = await db.settlement_skips.find({"order_id": order_id}).to_list(None)

        await db.sellers.insert_one(gone)
        resolved = await replay_skipped_items(db, order_id)
        final = await market.get_order(order_id)
        return result, state, skips, resolved, final

    result, state, skips, resolved, final = asyncio.run(run())

    assert result.created == 1
    assert len(result.skipped) == 1
    assert state == SettlementState.NEEDS_RECONCILIATION.value
    assert skips[0]["payee_type"] == PayeeType.SELLER.value
    assert "seller not found" in skips[0]["reason"]
    assert resolved == 1
    assert final["settlement"]["status"] == SettlementState.SETTLED.value


def test_missing_agent_does_not_block_sellers(db, market):
    async def run():
        order_id, _, agent = await delivered_order(market, agent_rate=5)
        await db.delivery_agents.delete_one({"_id": agent})
        result = await settle_order(db, order_id)
        return result

    result = asyncio.run(run())

    assert result.created == 2
    assert result.skipped == [None]


def test_skips_on_undelivered_order_are_abandoned(db, market):
    async def run():
        order_id, sellers, _ = await delivered_order(market)
        await db.sellers.delete_one({"_id": sellers[1]})
        await settle_order(db, order_id)
        await db.orders.update_one({"_id": order_id}, {"$set": {"status": "Returned"}})

        resolved = await replay_skipped_items(db, order_id)
        skip = await db.settlement_skips.find_one({"order_id": order_id})
        return resolved, skip

    resolved, skip = asyncio.run(run())

    assert resolved == 0
    assert skip["outcome"] == "order_not_delivered"
    assert skip["replayed_at"] is not None


def test_reversal_nets_wallets_to_zero(db, market):
    async def run():
        order_id, sellers, agent = await delivered_order(market, agent_rate=5)
        await settle_order(db, order_id)

        first = await reverse_order(db, order_id)
        second = await reverse_order(db, order_id)

        balances = [await get_wallet_balance(db, s, PayeeType.SELLER) for s in sellers]
        balances.append(await get_wallet_balance(db, agent, PayeeType.DELIVERY_AGENT))
        cached = [(await db.sellers.find_one({"_id": s}))["balance"] for s in sellers]
        statuses = {
            c["status"] for c in await db.commissions.find({"order_id": order_id}).to_list(None)
        }
        debits = await db.wallet_transactions.find({"type": "Debit"}).to_list(None)
        return first, second, balances, cached, statuses, debits, await market.get_order(order_id)

    first, second, balances, cached, statuses, debits, order = asyncio.run(run())

    assert first.reversed == 3
    assert first.debited == 1425.0
    assert second.reversed == 0
    assert balances == [0.0, 0.0, 0.0]
    assert cached == [0.0, 0.0]
    assert statuses == {"Cancelled"}
    assert all(d["amount"] < 0 for d in debits)
    assert all(d["reference"].startswith("DR-") for d in debits)
    assert order["settlement"]["status"] == SettlementState.REVERSED.value


def test_reversal_without_commissions_is_noop(db, market):
    async def run():
        order_id, _, _ = await delivered_order(market)
        return await reverse_order(db, order_id)

    result = asyncio.run(run())

    assert result.reversed == 0
    assert result.debited == 0.0


def test_commission_summary_per_payee_type(db, market):
    async def run():
        order_id, sellers, agent = await delivered_order(market, agent_rate=5)
        await settle_order(db, order_id)

        seller_summary = await get_commission_summary(db, sellers[0], PayeeType.SELLER)
        agent_summary = await get_commission_summary(db, str(agent), "DELIVERY_AGENT")

        await reverse_order(db, order_id)
        after_reversal = await get_commission_summary(db, sellers[0], PayeeType.SELLER)
        return seller_summary, agent_summary, after_reversal

    seller_summary, agent_summary, after_reversal = asyncio.run(run())

    # Sellers earn the order amount minus commission
    assert seller_summary.total == 900.0
    assert seller_summary.paid == 900.0
    assert seller_summary.pending == 0.0
    assert seller_summary.count == 1
    assert seller_summary.commissions[0].amount == 100.0

    # Delivery agents earn the commission itself
    assert agent_summary.total == 75.0
    assert agent_summary.paid == 75.0

    assert after_reversal.paid == 0.0
    assert after_reversal.total == 900.0
    assert after_reversal.commissions[0].status == "Cancelled"


def test_summary_for_payee_without_commissions(db):
    summary = asyncio.run(get_commission_summary(db, ObjectId(), PayeeType.SELLER))

    assert summary.count == 0
    assert summary.total == 0.0


def test_preview_writes_nothing(db, market):
    async def run():
        order_id, sellers, agent = await delivered_order(
            market, agent_rate=5, seller_rates=(10, 10, 20)
        )
        preview = await preview_order_commissions(db, order_id)
        return preview, sellers, agent, await db.commissions.count_documents({})

    preview, sellers, agent, commission_count = asyncio.run(run())

    assert commission_count == 0
    amounts = {p["seller_id"]: p["amount"] for p in preview["seller"]}
    assert amounts == {str(sellers[0]): 100.0, str(sellers[1]): 50.0, str(sellers[2]): 50.0}
    assert preview["delivery_agent"]["delivery_agent_id"] == str(agent)
    assert preview["delivery_agent"]["amount"] == 87.5


def test_settle_unknown_order(db):
    with pytest.raises(NotFound):
        asyncio.run(settle_order(db, ObjectId()))


def test_out_of_range_seller_rate_does_not_block_settlement(db, market):
    async def run():
        order_id, sellers, _ = await delivered_order(market, seller_rates=(150, 10))
        result = await settle_order(db, order_id)
        balances = [await get_wallet_balance(db, s, PayeeType.SELLER) for s in sellers]
        return result, balances, await market.get_order(order_id)

    result, balances, order = asyncio.run(run())

    assert result.created == 2
    assert result.skipped == []
    assert balances == [900.0, 450.0]
    assert order["settlement"]["status"] == SettlementState.SETTLED.value


def test_uncomputable_commission_is_skipped(db, market, monkeypatch):
    real_calculate = settlement.calculate_commission

    def refuse_small_lines(base, rate, **kwargs):
        if base == 500:
            raise ValueError("Commission base and rate cannot be negative")
        return real_calculate(base, rate, **kwargs)

    monkeypatch.setattr(settlement, "calculate_commission", refuse_small_lines)

    async def run():
        order_id, sellers, _ = await delivered_order(market)
        result = await settle_order(db, order_id)
        skips = await db.settlement_skips.find({"order_id": order_id}).to_list(None)
        first = await get_wallet_balance(db, sellers[0], PayeeType.SELLER)
        return result, skips, first, await market.get_order(order_id)

    result, skips, first, order = asyncio.run(run())

    assert result.created == 1
    assert len(result.skipped) == 1
    assert first == 900.0
    assert skips[0]["payee_type"] == PayeeType.SELLER.value
    assert "negative" in skips[0]["reason"]
    assert order["settlement"]["status"] == SettlementState.NEEDS_RECONCILIATION.value
