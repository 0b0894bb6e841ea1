import logging
from dataclasses import dataclass

from pydantic import ValidationError

from models.product import ProductTaxonomy
from utils.errors import NotFound
from utils.guards import parse_object_id, optional_object_id
from utils.settings_provider import SettingsProvider

logger = logging.getLogger(__name__)

# Narrowest first. (label, product field, collection)
TAXONOMY_LEVELS = (
    ("SubSubCategory", "sub_sub_category_id", "categories"),
    ("SubCategory", "sub_category_id", "sub_categories"),
    ("Category", "category_id", "categories"),
)


@dataclass(frozen=True)
class RateResolution:
    rate: float
    source: str


@dataclass(frozen=True)
class DeliveryRate:
    base: float
    rate: float
    distance_based: bool
    source: str


def _configured(value) -> float | None:
    # Zero and unset are the same thing for every override level.
    if value is None:
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    return rate if rate > 0 else None


def _configured_percentage(value, level: str, ref) -> float | None:
    rate = _configured(value)
    if rate is not None and rate > 100:
        logger.warning("COMMISSION_RATE_OUT_OF_RANGE level=%s ref=%s rate=%s", level, ref, rate)
        return None
    return rate


async def _taxonomy_rate(db, product: dict, session=None) -> RateResolution | None:
    try:
        taxonomy = ProductTaxonomy.model_validate(product)
    except ValidationError:
        logger.warning("PRODUCT_TAXONOMY_INVALID product=%s", product.get("_id"))
        return None

    for label, field, collection in TAXONOMY_LEVELS:
        node_id = getattr(taxonomy, field)
        if node_id is None:
            continue
        node = await db[collection].find_one({"_id": node_id}, session=session)
        if not node:
            continue
        rate = _configured_percentage(node.get("commission_rate"), label, node_id)
        if rate is not None:
            return RateResolution(rate, f"{label}: {node.get('name', node_id)}")
    return None


async def explain_seller_rate(
    db,
    product_id,
    seller_id,
    *,
    settings: SettingsProvider | None = None,
    session=None,
) -> RateResolution:
    """
    Resolve the commission percentage for one sold line item.

    Order: sub-sub-category, sub-category, category, seller, global
    setting, hard-coded default. Raises NotFound only when the seller is
    missing; a missing product just skips the taxonomy levels.
    """
    settings = settings or SettingsProvider(db)
    seller_oid = parse_object_id(seller_id, "seller")

    seller = await db.sellers.find_one({"_id": seller_oid}, session=session)
    if not seller:
        raise NotFound("seller", seller_id)

    product_oid = optional_object_id(product_id, "product")
    product = None
    if product_oid is not None:
        product = await db.products.find_one({"_id": product_oid}, session=session)

    if product:
        resolved = await _taxonomy_rate(db, product, session=session)
        if resolved:
            return resolved

    seller_rate = _configured_percentage(seller.get("commission_rate"), "Seller", seller_oid)
    if seller_rate is not None:
        return RateResolution(seller_rate, "Seller")

    return RateResolution(await settings.global_commission_rate(), "Global Default")


async def resolve_seller_rate(db, product_id, seller_id, *, settings=None, session=None) -> float:
    resolution = await explain_seller_rate(
        db, product_id, seller_id, settings=settings, session=session
    )
    return resolution.rate


async def resolve_delivery_rate(
    db,
    order: dict,
    *,
    settings: SettingsProvider | None = None,
    session=None,
) -> DeliveryRate:
    """
    Distance mode applies only when enabled in settings with a km rate and
    the order carries a positive distance. Otherwise the agent's own rate,
    then the settings default, applied as a percentage of subtotal.
    """
    settings = settings or SettingsProvider(db)

    agent_ref = order.get("delivery_agent_id")
    if agent_ref is None:
        raise NotFound("delivery_agent", None)

    agent = await db.delivery_agents.find_one(
        {"_id": parse_object_id(agent_ref, "delivery_agent")},
        session=session,
    )
    if not agent:
        raise NotFound("delivery_agent", agent_ref)

    km_rate = await settings.distance_km_rate()
    distance = _configured(order.get("delivery_distance_km"))
    if km_rate is not None and distance is not None:
        return DeliveryRate(
            base=distance,
            rate=km_rate,
            distance_based=True,
            source="Distance",
        )

    subtotal = float(order.get("subtotal") or 0)
    agent_rate = _configured_percentage(agent.get("commission_rate"), "DeliveryAgent", agent["_id"])
    if agent_rate is not None:
        return DeliveryRate(subtotal, agent_rate, False, "DeliveryAgent")

    return DeliveryRate(
        subtotal,
        await settings.default_delivery_commission_rate(),
        False,
        "Delivery Default",
    )
