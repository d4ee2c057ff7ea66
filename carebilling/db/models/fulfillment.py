"""
Fulfillment tables shared with the clinical and order subsystems.

Billing reads prescriptions and inserts reorders; the order status machine
itself lives elsewhere.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, ForeignKey, Enum as SQLEnum

from carebilling.db.database import Base
from carebilling.db.models.subscription import Vertical


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    consultation_id = Column(String(100), nullable=True)
    vertical = Column(SQLEnum(Vertical), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=True)
    consultation_id = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False, default="PRESCRIPTION_CREATED")

    delivery_address = Column(String(500), nullable=True)
    delivery_city = Column(String(100), nullable=True)
    delivery_pincode = Column(String(10), nullable=True)

    medication_cost = Column(BigInteger, nullable=False, default=0)
    delivery_cost = Column(BigInteger, nullable=False, default=0)
    total_amount = Column(BigInteger, nullable=False, default=0)

    is_reorder = Column(Boolean, default=False, nullable=False)
    parent_order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    needs_review = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
