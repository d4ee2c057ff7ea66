"""
User Model - Patients

Owned by the accounts subsystem; billing only checks existence.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean

from carebilling.db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(20), unique=True, index=True, nullable=True)
    name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
