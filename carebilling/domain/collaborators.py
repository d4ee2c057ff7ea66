"""
Order and Prescription collaborators.

Billing never owns fulfillment: it reads the latest active prescription and
asks the order side to create a reorder. The SQL implementations work on the
shared ``orders`` / ``prescriptions`` tables; tests and other deployments can
swap in their own.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carebilling.db.models.fulfillment import Order, Prescription
from carebilling.db.models.subscription import Vertical

REORDER_INITIAL_STATUS = "PRESCRIPTION_CREATED"


@dataclass(frozen=True)
class OrderDraft:
    patient_id: int
    prescription_id: int
    consultation_id: Optional[str]
    delivery_address: Optional[str]
    delivery_city: Optional[str]
    delivery_pincode: Optional[str]
    medication_cost: int
    delivery_cost: int
    total_amount: int
    is_reorder: bool
    parent_order_id: Optional[int]
    needs_review: bool


class OrderCollaborator(ABC):

    @abstractmethod
    async def create_order(self, draft: OrderDraft) -> Order:
        """Create an order and return it with its id assigned"""

    @abstractmethod
    async def find_latest_order(self, patient_id: int) -> Optional[Order]:
        """Most recent order of the patient, or None"""


class PrescriptionCollaborator(ABC):

    @abstractmethod
    async def find_latest_active_prescription(
        self, user_id: int, vertical: Vertical | str
    ) -> Optional[Prescription]:
        """Most recent active prescription for the user in a vertical, or None"""


class SqlOrderCollaborator(OrderCollaborator):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_order(self, draft: OrderDraft) -> Order:
        order = Order(
            patient_id=draft.patient_id,
            prescription_id=draft.prescription_id,
            consultation_id=draft.consultation_id,
            status=REORDER_INITIAL_STATUS,
            delivery_address=draft.delivery_address,
            delivery_city=draft.delivery_city,
            delivery_pincode=draft.delivery_pincode,
            medication_cost=draft.medication_cost,
            delivery_cost=draft.delivery_cost,
            total_amount=draft.total_amount,
            is_reorder=draft.is_reorder,
            parent_order_id=draft.parent_order_id,
            needs_review=draft.needs_review,
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)
        return order

    async def find_latest_order(self, patient_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.patient_id == patient_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


class SqlPrescriptionCollaborator(PrescriptionCollaborator):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_latest_active_prescription(
        self, user_id: int, vertical: Vertical | str
    ) -> Optional[Prescription]:
        result = await self.db.execute(
            select(Prescription)
            .where(
                Prescription.patient_id == user_id,
                Prescription.vertical == Vertical(vertical),
                Prescription.is_active == True,  # noqa: E712
            )
            .order_by(Prescription.created_at.desc(), Prescription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
