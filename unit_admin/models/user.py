"""User model definitions."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from unit_admin.database import Base
from unit_admin.models.unit import Unit


class Role(str, Enum):
    PENDING = "pending"
    ENCODER = "encoder"
    VIEWER = "viewer"
    CLERK = "clerk"
    ADMIN = "admin"


# Roles an administrator may hand out directly, and the narrower set used when approving registrations.
ASSIGNABLE_ROLES = (Role.ENCODER, Role.VIEWER, Role.CLERK, Role.ADMIN)
APPROVABLE_ROLES = (Role.ENCODER, Role.VIEWER, Role.CLERK)


class User(Base):
    """Represents an application user.

    ``exclusive_unit_id`` mirrors ``unit_id`` only while the user is a live
    (non-pending) holder of a DO unit. The unique constraint on it is the
    storage-level guarantee that a DO unit never has two live holders.
    """
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("exclusive_unit_id", name="uq_users_exclusive_unit_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    username = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False, default="")
    role = Column(String(20), nullable=False, default=Role.PENDING.value)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=True)
    exclusive_unit_id = Column(Integer, ForeignKey("units.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    unit = relationship(Unit, foreign_keys=[unit_id], back_populates="users")

    @property
    def is_pending(self) -> bool:
        return self.role == Role.PENDING.value
