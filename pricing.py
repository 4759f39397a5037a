"""
Pricing engine: pure functions from a booking request and a fee configuration
to an itemized price breakdown.

Nothing here reads ambient state. The fee configuration is always passed in,
so a quote is reproducible and an admin edit cannot change a computation that
is already running.
"""
import math
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta
from typing import Dict, Optional

from errors import ConfigurationError, ValidationError
from models import PaymentMethod

ONE_DAY = timedelta(days=1)

# (settings key, field) pairs that must be present for any price computation
REQUIRED_FEE_SETTINGS = (
    ("business_hours", "open"),
    ("business_hours", "close"),
    ("after_hours_fee", "amount"),
    ("cleaning_fee", "amount"),
    ("unlimited_km_fee", "amount_per_day"),
    ("fuel_charge_rate", "price_per_percent"),
)


def _parse_clock(value, key: str) -> time:
    if isinstance(value, time):
        return value
    try:
        hours, minutes = str(value).split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, TypeError):
        raise ConfigurationError(f"Invalid clock time for '{key}': {value!r}") from None


def _parse_amount(value, key: str) -> float:
    try:
        amount = float(value)
    except (ValueError, TypeError):
        raise ConfigurationError(f"Invalid amount for '{key}': {value!r}") from None
    if amount < 0 or math.isnan(amount):
        raise ConfigurationError(f"Amount for '{key}' must not be negative")
    return amount


@dataclass(frozen=True)
class FeeConfiguration:
    business_open: time
    business_close: time
    after_hours_fee: float
    cleaning_fee: float
    unlimited_km_fee_per_day: float
    fuel_price_per_percent: float

    @classmethod
    def from_settings(cls, settings: Dict[str, dict]) -> "FeeConfiguration":
        """
        Build the configuration from key/value settings rows.

        A missing key is an error, never a zero fee: substituting zero would
        under-charge every booking made while the setting is absent.
        """
        missing = [
            f"{key}.{field}"
            for key, field in REQUIRED_FEE_SETTINGS
            if not isinstance(settings.get(key), dict) or settings[key].get(field) is None
        ]
        if missing:
            raise ConfigurationError(f"Missing fee configuration: {', '.join(missing)}")

        config = cls(
            business_open=_parse_clock(settings["business_hours"]["open"], "business_hours.open"),
            business_close=_parse_clock(settings["business_hours"]["close"], "business_hours.close"),
            after_hours_fee=_parse_amount(settings["after_hours_fee"]["amount"], "after_hours_fee"),
            cleaning_fee=_parse_amount(settings["cleaning_fee"]["amount"], "cleaning_fee"),
            unlimited_km_fee_per_day=_parse_amount(
                settings["unlimited_km_fee"]["amount_per_day"], "unlimited_km_fee"
            ),
            fuel_price_per_percent=_parse_amount(
                settings["fuel_charge_rate"]["price_per_percent"], "fuel_charge_rate"
            ),
        )
        if config.business_open >= config.business_close:
            raise ConfigurationError("Business hours must open before they close")
        return config

    def to_settings(self) -> Dict[str, dict]:
        return {
            "business_hours": {
                "open": self.business_open.strftime("%H:%M"),
                "close": self.business_close.strftime("%H:%M"),
            },
            "after_hours_fee": {"amount": self.after_hours_fee},
            "cleaning_fee": {"amount": self.cleaning_fee},
            "unlimited_km_fee": {"amount_per_day": self.unlimited_km_fee_per_day},
            "fuel_charge_rate": {"price_per_percent": self.fuel_price_per_percent, "currency": "EUR"},
        }


@dataclass(frozen=True)
class Location:
    """Pickup/return point as snapshotted into a reservation."""
    name: str
    fee: float
    address: Optional[str] = None
    is_custom: bool = False


FIXED_LOCATIONS = {
    "headquarters": Location("Firmensitz", 0.0),
    "airport": Location("Flughafen", 20.0),
    "main_station": Location("Hauptbahnhof", 20.0),
}

CUSTOM_LOCATION_NAME = "Custom Location"
# A custom address always costs as much as the most expensive fixed point
CUSTOM_LOCATION_FEE = max(location.fee for location in FIXED_LOCATIONS.values())


def resolve_location(name: str, address: Optional[str] = None) -> Location:
    """
    Turn a location choice into a snapshot.
    Accepts a fixed location's code or display name; "custom" (or any
    unknown name) requires a free-text address.
    """
    key = (name or "").strip()
    for code, location in FIXED_LOCATIONS.items():
        if key.lower() in (code, location.name.lower()):
            return location

    address = (address or "").strip()
    if not address:
        raise ValidationError(f"Unknown location '{name}' and no custom address given")
    return Location(CUSTOM_LOCATION_NAME, CUSTOM_LOCATION_FEE, address=address, is_custom=True)


@dataclass(frozen=True)
class PriceBreakdown:
    rental_days: int
    daily_rate: float
    rental_cost: float
    cleaning_fee: float
    location_fees: float
    after_hours_fee: float
    unlimited_km_fee: float
    total: float
    payment_method: PaymentMethod
    deposit_amount: float
    remaining_amount: float

    @property
    def amount_due_now(self) -> float:
        """What the gateway should charge at checkout."""
        if self.payment_method == PaymentMethod.CASH:
            return self.deposit_amount
        return self.total

    def as_dict(self) -> dict:
        data = asdict(self)
        data["payment_method"] = self.payment_method.value
        data["amount_due_now"] = self.amount_due_now
        return data


def calculate_rental_days(pickup: datetime, return_date: datetime) -> int:
    """Started days between pickup and return, at least one."""
    if return_date <= pickup:
        raise ValidationError("Return date must be after pickup date")
    return max(1, math.ceil((return_date - pickup) / ONE_DAY))


def is_after_hours(moment, config: FeeConfiguration) -> bool:
    """Before opening, or at/after closing."""
    clock = moment.time() if isinstance(moment, datetime) else moment
    return clock < config.business_open or clock >= config.business_close


def requires_after_hours_fee(pickup: datetime, return_date: datetime, config: FeeConfiguration) -> bool:
    return is_after_hours(pickup, config) or is_after_hours(return_date, config)


def calculate_price(
    *,
    rental_days: int,
    daily_rate: float,
    pickup_location: Location,
    return_location: Location,
    after_hours: bool,
    unlimited_km: bool,
    config: FeeConfiguration,
    payment_method: PaymentMethod = PaymentMethod.CARD,
) -> PriceBreakdown:
    """
    Itemized price of a reservation. All components are additive and only the
    total is rounded (to cents).
    """
    if rental_days < 1:
        raise ValidationError("Rental must last at least one day")
    if daily_rate < 0:
        raise ValidationError("Daily rate must not be negative")

    rental_cost = rental_days * daily_rate
    cleaning_fee = config.cleaning_fee
    location_fees = pickup_location.fee + return_location.fee
    # Charged once even when both pickup and return fall outside business hours
    after_hours_fee = config.after_hours_fee if after_hours else 0.0
    unlimited_km_fee = rental_days * config.unlimited_km_fee_per_day if unlimited_km else 0.0

    total = round(rental_cost + cleaning_fee + location_fees + after_hours_fee + unlimited_km_fee, 2)

    deposit_amount = 0.0
    remaining_amount = 0.0
    if payment_method == PaymentMethod.CASH:
        deposit_amount = daily_rate
        remaining_amount = round(total - deposit_amount, 2)

    return PriceBreakdown(
        rental_days=rental_days,
        daily_rate=daily_rate,
        rental_cost=rental_cost,
        cleaning_fee=cleaning_fee,
        location_fees=location_fees,
        after_hours_fee=after_hours_fee,
        unlimited_km_fee=unlimited_km_fee,
        total=total,
        payment_method=payment_method,
        deposit_amount=deposit_amount,
        remaining_amount=remaining_amount,
    )


def price_booking(
    *,
    pickup: datetime,
    return_date: datetime,
    daily_rate: float,
    pickup_location: Location,
    return_location: Location,
    unlimited_km: bool,
    config: FeeConfiguration,
    payment_method: PaymentMethod = PaymentMethod.CARD,
) -> PriceBreakdown:
    """Derive day count and after-hours flag from the interval, then price it."""
    return calculate_price(
        rental_days=calculate_rental_days(pickup, return_date),
        daily_rate=daily_rate,
        pickup_location=pickup_location,
        return_location=return_location,
        after_hours=requires_after_hours_fee(pickup, return_date, config),
        unlimited_km=unlimited_km,
        config=config,
        payment_method=payment_method,
    )
