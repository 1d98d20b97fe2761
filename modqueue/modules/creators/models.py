import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Uuid, func
from modqueue.core.db import Base

class CreatorModel(Base):
    """An AI character persona owned by a creator. Anchors and scans hang off this."""
    __tablename__ = "creator_models"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    creator_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    display_name = Column(String, nullable=False)
    avatar_url = Column(String, nullable=True)
    is_published = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
