# backend/models/quiz_attempt.py

from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, JSON, ForeignKey
from db import Base


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    quiz_id = Column(Integer, nullable=False)
    score = Column(Integer, nullable=False)
    total_questions = Column(Integer, nullable=False)
    answers = Column(JSON, nullable=False)
    completed_at = Column(DateTime, default=datetime.utcnow)
