"""
Request and response bodies for the HTTP API.
"""
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from availability import combine_handover
from models import BookingStatus, PaymentMethod, PaymentStatus


class LocationIn(BaseModel):
    name: str = "headquarters"
    address: Optional[str] = None


class QuoteRequest(BaseModel):
    vehicle_id: int
    pickup_date: date
    return_date: date
    pickup_time: Optional[time] = None
    return_time: Optional[time] = None
    pickup_location: LocationIn = Field(default_factory=LocationIn)
    return_location: LocationIn = Field(default_factory=LocationIn)
    unlimited_km: bool = False
    payment_method: PaymentMethod = PaymentMethod.CARD

    @property
    def pickup(self) -> datetime:
        return combine_handover(self.pickup_date, self.pickup_time)

    @property
    def return_at(self) -> datetime:
        return combine_handover(self.return_date, self.return_time)


class ReservationCreate(QuoteRequest):
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_age: int
    notes: Optional[str] = None
    expected_total: Optional[float] = None
    success_url: str
    cancel_url: str


class ManualReservationCreate(QuoteRequest):
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_age: Optional[int] = None
    notes: Optional[str] = None
    contract_number: Optional[str] = None
    created_by: Optional[str] = None


class PriceBreakdownOut(BaseModel):
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
    amount_due_now: float


class AvailabilityOut(BaseModel):
    vehicle_id: int
    is_available: bool
    reason: Optional[str] = None
    conflict_type: Optional[str] = None
    warning: Optional[str] = None


class QuoteOut(BaseModel):
    vehicle_id: int
    pickup_date: datetime
    return_date: datetime
    pickup_location: str
    return_location: str
    price: PriceBreakdownOut
    availability: AvailabilityOut


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    vehicle_id: int
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    pickup_date: datetime
    return_date: datetime
    pickup_location: str
    pickup_location_address: Optional[str] = None
    return_location: str
    return_location_address: Optional[str] = None
    rental_days: int
    rental_cost: float
    cleaning_fee: float
    location_fees: float
    after_hours_fee: float
    unlimited_km: bool
    unlimited_km_fee: float
    total_price: float
    payment_method: PaymentMethod
    booking_status: BookingStatus
    payment_status: PaymentStatus
    pickup_fuel_level: Optional[float] = None
    return_fuel_level: Optional[float] = None
    fuel_charge: float
    deposit_amount: Optional[float] = None
    remaining_amount: Optional[float] = None
    notes: Optional[str] = None
    contract_number: Optional[str] = None


class CheckoutOut(BaseModel):
    reservation_id: int
    guest_token: str
    checkout_url: str
    price: PriceBreakdownOut


class VehicleListingOut(BaseModel):
    id: int
    brand: str
    model: str
    price_per_day: float
    minimum_age: int
    is_available: bool
    reason: Optional[str] = None
    warning: Optional[str] = None


class BlockIn(BaseModel):
    vehicle_id: int
    blocked_from: str
    blocked_until: str
    reason: Optional[str] = None
    contact_note: Optional[str] = None


class BlockUpdate(BaseModel):
    blocked_from: Optional[str] = None
    blocked_until: Optional[str] = None
    reason: Optional[str] = None
    contact_note: Optional[str] = None


class BlockOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    vehicle_id: int
    blocked_from: datetime
    blocked_until: datetime
    reason: str
    contact_note: Optional[str] = None
    created_by: Optional[str] = None


class FuelReadingIn(BaseModel):
    phase: str = Field(pattern="^(pickup|return)$")
    level: float


class FuelReadingOut(BaseModel):
    reservation_id: int
    phase: str
    level: float
    booking_status: BookingStatus
    transition: Optional[str] = None
    settlement_status: str
    fuel_charge: float


class FeeConfigurationOut(BaseModel):
    business_hours: dict
    after_hours_fee: dict
    cleaning_fee: dict
    unlimited_km_fee: dict
    fuel_charge_rate: dict


class FeeConfigurationIn(BaseModel):
    business_hours: Optional[dict] = None
    after_hours_fee: Optional[dict] = None
    cleaning_fee: Optional[dict] = None
    unlimited_km_fee: Optional[dict] = None
    fuel_charge_rate: Optional[dict] = None