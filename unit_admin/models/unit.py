"""Organizational unit model definitions."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func
from sqlalchemy.orm import relationship

from unit_admin.database import Base


class Unit(Base):
    """An organizational unit, addressed by its DEPARTMENT/SUBUNIT full name."""
    __tablename__ = "units"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(50), unique=True, nullable=False)
    full_name = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    users = relationship("User", foreign_keys="User.unit_id", back_populates="unit")
