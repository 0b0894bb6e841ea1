import logging
from datetime import datetime

from utils.guards import optional_object_id, parse_object_id

logger = logging.getLogger(__name__)


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
    session=None,
):
    """
    Single source of truth for order timeline events.
    """

    doc = {
        "order_id": parse_object_id(order_id, "order"),
        "event": event,
        "actor_role": actor_role,
        "actor_id": optional_object_id(actor_id, "actor"),
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    await db.order_timeline.insert_one(doc, session=session)


async def safe_record_order_event(db, **kwargs) -> None:
    try:
        await record_order_event(db, **kwargs)
    except Exception:
        # Timeline must NEVER break a transition or settlement
        logger.exception("TIMELINE_ERROR order=%s event=%s", kwargs.get("order_id"), kwargs.get("event"))
