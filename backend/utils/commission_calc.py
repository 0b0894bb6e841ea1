from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from config.constants import MONEY_PLACES
from models.wallet import PayeeType

_QUANT = Decimal(1).scaleb(-MONEY_PLACES)


def to_money(value) -> Decimal:
    """Round half away from zero to the money precision."""
    return Decimal(str(value)).quantize(_QUANT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionBreakdown:
    base: float
    rate: float
    commission_amount: float
    net_earning: float
    distance_based: bool = False


def calculate_commission(base, rate, *, distance_based: bool = False) -> CommissionBreakdown:
    """
    Percentage mode: commission = base * rate / 100, net = base - commission.
    Distance mode: base is the distance, rate is money per unit distance,
    and the commission is the payee's whole earning.
    """
    base_d = Decimal(str(base))
    rate_d = Decimal(str(rate))
    if base_d < 0 or rate_d < 0:
        raise ValueError("Commission base and rate cannot be negative")

    if distance_based:
        commission = to_money(base_d * rate_d)
        net = commission
    else:
        if rate_d > 100:
            raise ValueError("Commission rate cannot exceed 100%")
        commission = to_money(base_d * rate_d / 100)
        net = to_money(base_d - commission)

    return CommissionBreakdown(
        base=float(base_d),
        rate=float(rate_d),
        commission_amount=float(commission),
        net_earning=float(net),
        distance_based=distance_based,
    )


def payee_earning(payee_type: PayeeType, order_amount, commission_amount) -> float:
    # Sellers give up the commission; delivery agents are paid it.
    payee_type = PayeeType(payee_type)
    if payee_type is PayeeType.SELLER:
        return float(to_money(Decimal(str(order_amount)) - Decimal(str(commission_amount))))
    if payee_type is PayeeType.DELIVERY_AGENT:
        return float(to_money(commission_amount))
    raise ValueError(f"Unsupported payee type: {payee_type}")
