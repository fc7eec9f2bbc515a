import logging
import math
import os
from typing import Optional

from pydantic import BaseModel

from errors import ValidationError
from schemas import Bill, PickupRequest

logger = logging.getLogger(__name__)

PLATFORM_FEE = float(os.getenv("PLATFORM_FEE", "10.0"))
DEFAULT_RATE_PER_KG = float(os.getenv("DEFAULT_RATE_PER_KG", "5.0"))
CLAMP_NET_AMOUNT = os.getenv("CLAMP_NET_AMOUNT", "false").lower() in ("1", "true", "yes")


class BillAmounts(BaseModel):
    actual_weight: float
    rate_per_kg: float
    gross_amount: float
    platform_fee: float
    net_amount: float


def compute_bill(actual_weight: float, rate_per_kg: float, platform_fee: float = PLATFORM_FEE, clamp_net: Optional[bool] = None) -> BillAmounts:
    """Derive the amounts for a completed pickup.

    gross = weight * rate and net = gross - fee. A gross below the fee gives a
    negative net unless clamping is switched on.
    """
    if actual_weight is None or not math.isfinite(actual_weight) or actual_weight <= 0:
        raise ValidationError("actual_weight must be a positive, finite number")
    if rate_per_kg is None or not math.isfinite(rate_per_kg) or rate_per_kg < 0:
        raise ValidationError("rate_per_kg must be a finite, non-negative number")

    gross = actual_weight * rate_per_kg
    net = gross - platform_fee
    if clamp_net is None:
        clamp_net = CLAMP_NET_AMOUNT
    if clamp_net:
        net = max(net, 0.0)
    return BillAmounts(
        actual_weight=actual_weight,
        rate_per_kg=rate_per_kg,
        gross_amount=gross,
        platform_fee=platform_fee,
        net_amount=net,
    )


def resolve_rate(vendor_rates, vendor_id: str, waste_type: str) -> float:
    rate = vendor_rates.rate_for(vendor_id, waste_type)
    if rate is None:
        logger.warning(
            "Vendor %s has no rate for %s, billing at default %.2f/kg",
            vendor_id, waste_type, DEFAULT_RATE_PER_KG,
        )
        return DEFAULT_RATE_PER_KG
    return rate


def bill_for_request(request: PickupRequest, rate_per_kg: float) -> Bill:
    amounts = compute_bill(request.actual_weight, rate_per_kg)
    return Bill(
        request_id=request.id,
        citizen_id=request.citizen_id,
        vendor_id=request.assigned_vendor_id,
        waste_type=request.waste_type,
        **amounts.model_dump(),
    )
