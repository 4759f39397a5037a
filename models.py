"""
Database models for the application.
"""
import enum
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declarative_base, validates
from sqlalchemy.types import TypeDecorator

from config import BUSINESS_TIMEZONE
from errors import ValidationError

Base = declarative_base()


def utc_now():
    """Get current UTC datetime with timezone awareness."""
    return datetime.now(timezone.utc)


def local_now():
    """Current wall-clock time at the rental station (naive)."""
    return datetime.now(ZoneInfo(BUSINESS_TIMEZONE)).replace(tzinfo=None)


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "PendingPayment"
    PENDING_VERIFICATION = "PendingVerification"
    CONFIRMED = "Confirmed"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH = "cash"


class VehicleStatus(str, enum.Enum):
    AVAILABLE = "available"
    MAINTENANCE = "maintenance"
    RENTED = "rented"


# Statuses that occupy the vehicle for availability purposes
HOLDING_STATUSES = (
    BookingStatus.PENDING_PAYMENT,
    BookingStatus.PENDING_VERIFICATION,
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
)

PRE_ACTIVE_STATUSES = (
    BookingStatus.PENDING_PAYMENT,
    BookingStatus.PENDING_VERIFICATION,
    BookingStatus.CONFIRMED,
)

# Money has been taken from the customer
CAPTURED_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIAL)


# Spellings found in older rows, keyed by lowercase with separators removed
LEGACY_BOOKING_STATUS = {
    "pending": BookingStatus.PENDING_PAYMENT,
    "pendingpayment": BookingStatus.PENDING_PAYMENT,
    "pendingverification": BookingStatus.PENDING_VERIFICATION,
    "confirmed": BookingStatus.CONFIRMED,
    "active": BookingStatus.ACTIVE,
    "completed": BookingStatus.COMPLETED,
    "cancelled": BookingStatus.CANCELLED,
    "canceled": BookingStatus.CANCELLED,
    "expired": BookingStatus.EXPIRED,
}

LEGACY_PAYMENT_STATUS = {
    "pending": PaymentStatus.PENDING,
    "partial": PaymentStatus.PARTIAL,
    "depositpaid": PaymentStatus.PARTIAL,
    "paid": PaymentStatus.PAID,
    "completed": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
}

LEGACY_PAYMENT_METHOD = {
    "card": PaymentMethod.CARD,
    "stripe": PaymentMethod.CARD,
    "cash": PaymentMethod.CASH,
}

LEGACY_VEHICLE_STATUS = {
    "available": VehicleStatus.AVAILABLE,
    "maintenance": VehicleStatus.MAINTENANCE,
    "rented": VehicleStatus.RENTED,
}


def _status_key(value) -> str:
    return re.sub(r"[\s_\-]", "", str(value)).lower()


def _parser(enum_cls, table):
    def parse(value):
        if isinstance(value, enum_cls):
            return value
        try:
            return table[_status_key(value)]
        except KeyError:
            raise ValidationError(f"Unknown {enum_cls.__name__} value: {value!r}") from None

    parse.__name__ = f"parse_{enum_cls.__name__}"
    return parse


parse_booking_status = _parser(BookingStatus, LEGACY_BOOKING_STATUS)
parse_payment_status = _parser(PaymentStatus, LEGACY_PAYMENT_STATUS)
parse_payment_method = _parser(PaymentMethod, LEGACY_PAYMENT_METHOD)
parse_vehicle_status = _parser(VehicleStatus, LEGACY_VEHICLE_STATUS)


def spellings(table, *statuses):
    """Every stored spelling (as a _status_key) that reads back as one of statuses."""
    return sorted(key for key, value in table.items() if value in statuses)


HOLDING_STATUS_KEYS = spellings(LEGACY_BOOKING_STATUS, *HOLDING_STATUSES)
PENDING_PAYMENT_KEYS = spellings(LEGACY_BOOKING_STATUS, BookingStatus.PENDING_PAYMENT)
FAILED_PAYMENT_KEYS = spellings(LEGACY_PAYMENT_STATUS, PaymentStatus.FAILED)
UNPAID_PAYMENT_KEYS = spellings(LEGACY_PAYMENT_STATUS, PaymentStatus.PENDING, PaymentStatus.FAILED)


def status_key_sql(column: str) -> str:
    """_status_key() in SQL, for trigger and constraint bodies."""
    return f"lower(replace(replace(replace({column}, ' ', ''), '_', ''), '-', ''))"


def status_key(column):
    """_status_key() as a column expression; compare it against spellings(), never raw values."""
    stripped = func.replace(func.replace(func.replace(column, " ", ""), "_", ""), "-", "")
    return func.lower(stripped, type_=String)


class StatusType(TypeDecorator):
    """String column that always writes the canonical enum value and reads legacy spellings."""

    impl = String(32)
    cache_ok = True

    def __init__(self, parser, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.parser = parser

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.parser(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.parser(value)


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    brand = Column(String(80), nullable=False)
    model = Column(String(80), nullable=False)
    price_per_day = Column(Float, nullable=False)
    minimum_age = Column(Integer, nullable=False, default=21)
    status = Column(StatusType(parse_vehicle_status), nullable=False, default=VehicleStatus.AVAILABLE)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<Vehicle {self.id} {self.brand} {self.model}>"


class Reservation(Base):
    """A customer's hold on a vehicle for an interval, with payment and fuel state."""
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("pickup_date < return_date", name="ck_reservations_interval"),
        Index("ix_reservations_vehicle_interval", "vehicle_id", "pickup_date", "return_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)

    customer_name = Column(String(120), nullable=False)
    customer_email = Column(String(200), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    customer_age = Column(Integer, nullable=True)

    # Naive wall-clock times in BUSINESS_TIMEZONE
    pickup_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=False)

    pickup_location = Column(String(120), nullable=False)
    pickup_location_address = Column(String(300), nullable=True)
    pickup_location_fee = Column(Float, nullable=False, default=0.0)
    pickup_location_custom = Column(Boolean, nullable=False, default=False)
    return_location = Column(String(120), nullable=False)
    return_location_address = Column(String(300), nullable=True)
    return_location_fee = Column(Float, nullable=False, default=0.0)
    return_location_custom = Column(Boolean, nullable=False, default=False)

    rental_days = Column(Integer, nullable=False)
    rental_cost = Column(Float, nullable=False)
    cleaning_fee = Column(Float, nullable=False, default=0.0)
    location_fees = Column(Float, nullable=False, default=0.0)
    after_hours_fee = Column(Float, nullable=False, default=0.0)
    unlimited_km = Column(Boolean, nullable=False, default=False)
    unlimited_km_fee = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False)

    payment_method = Column(StatusType(parse_payment_method), nullable=False, default=PaymentMethod.CARD)
    booking_status = Column(StatusType(parse_booking_status), nullable=False, default=BookingStatus.PENDING_PAYMENT)
    payment_status = Column(StatusType(parse_payment_status), nullable=False, default=PaymentStatus.PENDING)

    pickup_fuel_level = Column(Float, nullable=True)
    return_fuel_level = Column(Float, nullable=True)
    fuel_charge = Column(Float, nullable=False, default=0.0)

    deposit_amount = Column(Float, nullable=True)
    remaining_amount = Column(Float, nullable=True)

    notes = Column(Text, nullable=True)
    contract_number = Column(String(80), nullable=True)
    guest_token = Column(String(64), nullable=False, unique=True, index=True)
    created_by = Column(String(120), nullable=True)

    gateway_session_id = Column(String(200), nullable=True, unique=True, index=True)
    gateway_payment_id = Column(String(200), nullable=True)
    hold_expires_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    deposit_paid_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @validates("total_price")
    def _validate_total_price(self, key, value):
        if (
            self.total_price is not None
            and value != self.total_price
            and self.payment_status in CAPTURED_PAYMENT_STATUSES
        ):
            raise ValidationError("Total price cannot change once payment has been captured")
        return value

    @property
    def payment_captured(self) -> bool:
        return self.payment_status in CAPTURED_PAYMENT_STATUSES

    def __repr__(self) -> str:
        return f"<Reservation {self.id} vehicle={self.vehicle_id} {self.booking_status}/{self.payment_status}>"


class VehicleBlock(Base):
    """Administrative unavailability of a vehicle (maintenance, phone booking, ...)."""
    __tablename__ = "vehicle_blocks"
    __table_args__ = (
        CheckConstraint("blocked_from < blocked_until", name="ck_vehicle_blocks_interval"),
        Index("ix_vehicle_blocks_vehicle_interval", "vehicle_id", "blocked_from", "blocked_until"),
    )

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    blocked_from = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=False)
    reason = Column(String(300), nullable=False, default="Phone reservation")
    contact_note = Column(Text, nullable=True)
    created_by = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<VehicleBlock {self.id} vehicle={self.vehicle_id} {self.blocked_from} - {self.blocked_until}>"


class Setting(Base):
    """Key/value site setting; fee configuration lives here."""
    __tablename__ = "settings"

    key = Column(String(80), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
