# backend/models/offline_action.py

from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, JSON, ForeignKey, Index
from db import Base


class OfflineAction(Base):
    """Audit record of an action a client queued while offline."""

    __tablename__ = "offline_actions"
    __table_args__ = (
        Index("ix_offline_actions_user_client_id", "user_id", "client_action_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    action_type = Column(String(50), nullable=False)
    action_data = Column(JSON)
    timestamp = Column(DateTime, default=datetime.utcnow)  # client asserted
    client_action_id = Column(String(100))
    synced = Column(Boolean, default=False, nullable=False)
    synced_at = Column(DateTime)
    error = Column(Text)
