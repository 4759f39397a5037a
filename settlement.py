"""
Fuel settlement: turns pickup/return fuel readings into a charge.
"""
import enum
import math
from dataclasses import dataclass
from typing import Optional

from errors import ValidationError
from models import BookingStatus
from pricing import FeeConfiguration


class FuelPhase(str, enum.Enum):
    PICKUP = "pickup"
    RETURN = "return"


# A pickup reading can be taken as soon as the vehicle is committed
PICKUP_RECORDABLE_STATUSES = (
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
    BookingStatus.COMPLETED,
    BookingStatus.PENDING_VERIFICATION,
    BookingStatus.PENDING_PAYMENT,
)

RETURN_RECORDABLE_STATUSES = (
    BookingStatus.ACTIVE,
    BookingStatus.COMPLETED,
)


@dataclass(frozen=True)
class FuelSettlement:
    pickup_level: Optional[float]
    return_level: Optional[float]
    shortfall: float
    charge: float

    @property
    def status(self) -> str:
        if self.pickup_level is None or self.return_level is None:
            return "pending"
        return "shortfall" if self.charge > 0 else "satisfactory"


def validate_fuel_level(level) -> float:
    """Fuel readings are percentages of a full tank."""
    if isinstance(level, bool):
        raise ValidationError("Fuel level must be a number")
    try:
        value = float(level)
    except (TypeError, ValueError):
        raise ValidationError("Fuel level must be a number") from None
    if math.isnan(value) or value < 0 or value > 100:
        raise ValidationError("Fuel level must be between 0 and 100")
    return value


def can_record_pickup(status: BookingStatus) -> bool:
    return status in PICKUP_RECORDABLE_STATUSES


def can_record_return(status: BookingStatus, pickup_level: Optional[float]) -> bool:
    return pickup_level is not None and status in RETURN_RECORDABLE_STATUSES


def calculate_fuel_settlement(
    pickup_level: Optional[float],
    return_level: Optional[float],
    config: FeeConfiguration,
) -> FuelSettlement:
    """
    Charge for the fuel missing at return. Always computed from the current
    pair of readings; returning with more fuel is never refunded.
    """
    if pickup_level is None or return_level is None:
        return FuelSettlement(pickup_level, return_level, shortfall=0.0, charge=0.0)

    shortfall = max(0.0, pickup_level - return_level)
    charge = round(shortfall * config.fuel_price_per_percent, 2)
    return FuelSettlement(pickup_level, return_level, shortfall=shortfall, charge=charge)
