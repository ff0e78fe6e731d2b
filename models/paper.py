# backend/models/paper.py

from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, ForeignKey
from db import Base

PAPER_STATUSES = ("pending", "approved", "rejected")


class Paper(Base):
    __tablename__ = "papers"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    level = Column(String(50), nullable=False)
    year = Column(String(10))
    uploader_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    uploader_name = Column(String(255))
    content_type = Column(String(50), nullable=False)
    status = Column(String(50), default="pending", nullable=False)
    rejection_reason = Column(Text)
    file_type = Column(String(20))
    upload_date = Column(DateTime, default=datetime.utcnow)
    description = Column(Text)
    tags = Column(JSON, default=list)
    download_count = Column(Integer, default=0, nullable=False)
