# backend/models/user_level.py

from sqlalchemy import Column, String, Integer, Text
from db import Base


class UserLevel(Base):
    __tablename__ = "user_levels"

    id = Column(Integer, primary_key=True, index=True)
    level = Column(Integer, unique=True, nullable=False)
    required_xp = Column(Integer, nullable=False)
    badge_name = Column(String(255), nullable=False)
    badge_icon = Column(String(255))
    badge_description = Column(Text)
