import uuid
import enum
from sqlalchemy import Column, String, Boolean, DateTime, Enum, Uuid, func
from modqueue.core.db import Base

class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    CREATOR = "creator"
    CONSUMER = "consumer"

# Roles allowed into the moderation console
STAFF_ROLES = (UserRole.ADMIN, UserRole.MODERATOR)

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(Enum(UserRole), default=UserRole.CONSUMER, nullable=False)
    is_active = Column(Boolean, default=True)
    avatar_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
