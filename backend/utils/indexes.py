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
    # Wallets: one per owner
    await _create_index_safe(
        db.wallets,
        [("owner_id", ASCENDING), ("owner_type", ASCENDING)],
        name="wallets_owner_unique_idx",
        unique=True,
    )

    # Settlements: one per order
    await _create_index_safe(
        db.order_settlements,
        [("order_id", ASCENDING)],
        name="order_settlements_order_unique_idx",
        unique=True,
    )
    await _create_index_safe(
        db.order_settlements,
        [("cancellation_details.refund_id", ASCENDING)],
        name="order_settlements_refund_id_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.order_settlements,
        [("settlement_status", ASCENDING), ("escrow_status", ASCENDING)],
        name="order_settlements_status_idx",
    )

    # Commission configuration
    await _create_index_safe(
        db.restaurant_commissions,
        [("restaurant_id", ASCENDING)],
        name="restaurant_commissions_restaurant_unique_idx",
        unique=True,
    )
    await _create_index_safe(
        db.delivery_commission_rules,
        [("status", ASCENDING), ("min_distance_km", ASCENDING)],
        name="delivery_commission_rules_status_distance_idx",
    )

    # Orders (auto-reject sweep)
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="orders_status_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("refund_calculation_pending", ASCENDING)],
        name="orders_refund_calculation_pending_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("entity_type", ASCENDING), ("entity_id", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_entity_idx",
    )

    # Outbox
    await _create_index_safe(
        db.outbox,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="outbox_status_created_idx",
    )
