from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("order_number", ASCENDING)],
        name="orders_order_number_unique",
        unique=True,
    )
    await _create_index_safe(
        db.orders,
        [("settlement.status", ASCENDING), ("updated_at", ASCENDING)],
        name="orders_settlement_status_idx",
    )

    # Line items
    await _create_index_safe(
        db.order_items,
        [("order_id", ASCENDING)],
        name="order_items_order_idx",
    )

    # Inventory
    await _create_index_safe(
        db.inventory,
        [("product_id", ASCENDING)],
        name="inventory_product_unique",
        unique=True,
    )

    # Commissions: at most one per (order, line item, payee)
    await _create_index_safe(
        db.commissions,
        [("order_id", ASCENDING), ("line_item_id", ASCENDING), ("payee_id", ASCENDING)],
        name="commissions_order_item_payee_unique",
        unique=True,
    )
    await _create_index_safe(
        db.commissions,
        [("payee_id", ASCENDING), ("payee_type", ASCENDING), ("status", ASCENDING)],
        name="commissions_payee_status_idx",
    )

    # Wallet transactions
    await _create_index_safe(
        db.wallet_transactions,
        [("reference", ASCENDING)],
        name="wallet_transactions_reference_unique",
        unique=True,
    )
    await _create_index_safe(
        db.wallet_transactions,
        [("payee_id", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_transactions_payee_created_at_idx",
    )

    # Settlement skips
    await _create_index_safe(
        db.settlement_skips,
        [("order_id", ASCENDING), ("replayed_at", ASCENDING)],
        name="settlement_skips_order_replayed_idx",
    )

    # Timeline
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", DESCENDING)],
        name="order_timeline_order_created_at_idx",
    )

    # Withdrawal requests
    await _create_index_safe(
        db.withdrawal_requests,
        [("seller_id", ASCENDING), ("status", ASCENDING)],
        name="withdrawal_requests_seller_status_idx",
    )
    await _create_index_safe(
        db.withdrawal_requests,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="withdrawal_requests_status_created_at_idx",
    )
