from app.tasks.billing import drain_side_effects, sync_subscriber_customer

__all__ = [
    "drain_side_effects",
    "sync_subscriber_customer",
]
