# backend/models/user.py

from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Boolean, JSON
from db import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    current_xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)
    badges = Column(JSON, default=list)  # [{name, icon, description, earnedAt}]
    offline_mode = Column(Boolean, default=False, nullable=False)
    join_date = Column(DateTime, default=datetime.utcnow)
