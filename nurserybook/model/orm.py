from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Numeric,
    Text,
    ForeignKey,
    Index,
    CheckConstraint,
)

from ..helpers import money, to_iso


Base = declarative_base()

# Booking statuses
B_PENDING = "pending"
B_APPROVED = "approved"
B_REJECTED = "rejected"
B_CANCELLED = "cancelled"
B_COMPLETED = "completed"

BOOKING_STATUSES = (B_PENDING, B_APPROVED, B_REJECTED, B_CANCELLED,
                    B_COMPLETED)
TERMINAL_STATUSES = (B_REJECTED, B_CANCELLED, B_COMPLETED)


# ----------------------------
# ORM models
# ----------------------------
class NurseryCenter(Base):
    __tablename__ = "nursery_centers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    location = Column(String, nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    contact = Column(String, nullable=True)
    email = Column(String, nullable=True)
    specialty = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "lat": self.lat,
            "lng": self.lng,
            "contact": self.contact,
            "email": self.email,
            "specialty": self.specialty,
            "is_active": bool(self.is_active),
        }


class Plant(Base):
    __tablename__ = "plants"
    __table_args__ = (
        CheckConstraint("stock_available >= 0", name="ck_plant_stock"),
        CheckConstraint("min_order_qty >= 1", name="ck_plant_min_qty"),
        Index("ix_plants_center_active", "center_id", "is_active"),
    )
    id = Column(String, primary_key=True)
    center_id = Column(String, ForeignKey("nursery_centers.id"),
                       nullable=False)
    name = Column(String, nullable=False)
    variety = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)  # whole units
    # only written through model.inventory
    stock_available = Column(Integer, nullable=False, default=0)
    min_order_qty = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)

    def variety_label(self) -> str:
        return self.variety or self.name or ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "center_id": self.center_id,
            "name": self.name,
            "variety": self.variety,
            "description": self.description,
            "unit_price": money(self.unit_price),
            "stock_available": self.stock_available,
            "min_order_qty": self.min_order_qty,
            "is_active": bool(self.is_active),
        }


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_booking_qty"),
        CheckConstraint("reserved_stock >= 0", name="ck_booking_reserved"),
        Index("ix_bookings_farmer", "farmer_id", "created_at"),
        Index("ix_bookings_status_expiry", "status",
              "reservation_expires_at"),
    )
    id = Column(String, primary_key=True)
    farmer_id = Column(String, nullable=False)
    center_id = Column(String, ForeignKey("nursery_centers.id"),
                       nullable=False)
    plant_id = Column(String, ForeignKey("plants.id"), nullable=False)
    plant_name = Column(String, nullable=False)

    unit_price = Column(Numeric(12, 2), nullable=False)  # snapshot
    quantity = Column(Integer, nullable=False)
    advance_percent = Column(Integer, nullable=False)
    amount_total = Column(Numeric(14, 2), nullable=False)
    amount_advance = Column(Numeric(14, 2), nullable=False)
    amount_balance = Column(Numeric(14, 2), nullable=False)
    currency = Column(String, nullable=False, default="INR")

    # pending | approved | rejected | cancelled | completed
    status = Column(String, nullable=False, default=B_PENDING)
    decision_notes = Column(Text, nullable=True)

    # payment sub-record
    advance_paid = Column(Boolean, nullable=False, default=False)
    advance_intent_id = Column(String, nullable=True)
    advance_txn_id = Column(String, nullable=True)
    advance_signature = Column(String, nullable=True)
    balance_paid = Column(Boolean, nullable=False, default=False)
    balance_intent_id = Column(String, nullable=True)
    balance_txn_id = Column(String, nullable=True)
    balance_signature = Column(String, nullable=True)

    reserved_stock = Column(Integer, nullable=False, default=0)
    reservation_expires_at = Column(Float, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "farmer_id": self.farmer_id,
            "center_id": self.center_id,
            "plant_id": self.plant_id,
            "plant_name": self.plant_name,
            "unit_price": money(self.unit_price),
            "quantity": self.quantity,
            "advance_percent": self.advance_percent,
            "amount_total": money(self.amount_total),
            "amount_advance": money(self.amount_advance),
            "amount_balance": money(self.amount_balance),
            "currency": self.currency,
            "status": self.status,
            "decision_notes": self.decision_notes or "",
            "payment": {
                "advance_paid": bool(self.advance_paid),
                "advance_intent_id": self.advance_intent_id,
                "advance_txn_id": self.advance_txn_id,
                "advance_signature": self.advance_signature,
                "balance_paid": bool(self.balance_paid),
                "balance_intent_id": self.balance_intent_id,
                "balance_txn_id": self.balance_txn_id,
            },
            "reserved_stock": self.reserved_stock,
            "reservation_expires_at": to_iso(self.reservation_expires_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
