#backend/main.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from db import get_db
from logging_config import setup_logging
from logic.errors import NotFound, StorageError
from logic.offline_sync import replay_offline_batch
from logic.progression import Progression, award_xp_to_user, get_level_definitions, next_level_for
from models.offline_action import OfflineAction
from models.paper import Paper
from models.quiz_attempt import QuizAttempt
from models.user import User

setup_logging()
logger = logging.getLogger("edushare")

MAX_INT = config.MAX_INT_COLUMN


# --------- App Setup ---------
app = FastAPI(title="Edushare Progression API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api")


# --------- Error Handlers ---------
@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"errors": jsonable_encoder(exc.errors())})


@app.exception_handler(SQLAlchemyError)
@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: Exception):
    # the request session is closed (and rolled back) by get_db
    logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --------- Pydantic Models ---------
class QuizSubmission(BaseModel):
    userId: int = Field(..., examples=[1])
    score: int = Field(..., ge=0, le=MAX_INT, examples=[7])
    totalQuestions: int = Field(..., ge=0, le=MAX_INT, examples=[10])


class QuizAttemptInput(BaseModel):
    userId: int = Field(..., examples=[1])
    answers: List[Any] = Field(..., examples=[[0, 2, 1]])
    score: int = Field(..., ge=0, le=MAX_INT)
    totalQuestions: int = Field(..., ge=0, le=MAX_INT)


class PaperInput(BaseModel):
    title: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    level: str = Field(..., min_length=1, examples=["level2"])
    year: Optional[str] = None
    uploaderId: int
    contentType: str = Field(..., examples=["pastPaper"])
    fileType: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = []


class PaperApproval(BaseModel):
    adminId: int


class PaperStatusUpdate(BaseModel):
    status: Literal["approved", "pending", "rejected"]
    rejectionReason: Optional[str] = None


class UserRef(BaseModel):
    userId: int


class OfflineActionInput(BaseModel):
    type: str = Field(..., examples=["quiz_attempt"])
    data: Dict[str, Any] = {}
    timestamp: Optional[datetime] = None
    clientActionId: Optional[str] = None


class OfflineSyncInput(BaseModel):
    userId: int
    actions: List[OfflineActionInput]


# --------- Serializers ---------
def paper_to_dict(paper: Paper) -> dict:
    return {
        "id": paper.id,
        "title": paper.title,
        "subject": paper.subject,
        "level": paper.level,
        "year": paper.year,
        "uploaderId": paper.uploader_id,
        "uploaderName": paper.uploader_name,
        "contentType": paper.content_type,
        "status": paper.status,
        "rejectionReason": paper.rejection_reason,
        "fileType": paper.file_type,
        "uploadDate": paper.upload_date.isoformat() if paper.upload_date else None,
        "description": paper.description,
        "tags": paper.tags or [],
        "downloadCount": paper.download_count,
    }


def quiz_attempt_to_dict(attempt: QuizAttempt) -> dict:
    return {
        "id": attempt.id,
        "userId": attempt.user_id,
        "quizId": attempt.quiz_id,
        "score": attempt.score,
        "totalQuestions": attempt.total_questions,
        "answers": attempt.answers,
        "completedAt": attempt.completed_at.isoformat() if attempt.completed_at else None,
    }


def offline_action_to_dict(action: OfflineAction) -> dict:
    return {
        "id": action.id,
        "userId": action.user_id,
        "actionType": action.action_type,
        "actionData": action.action_data,
        "timestamp": action.timestamp.isoformat() if action.timestamp else None,
        "clientActionId": action.client_action_id,
        "synced": action.synced,
        "syncedAt": action.synced_at.isoformat() if action.synced_at else None,
        "error": action.error,
    }


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


# --------- Quizzes ---------
@api.post("/quizzes/{quiz_id}/attempt")
def record_quiz_attempt(quiz_id: int, data: QuizAttemptInput, db: Session = Depends(get_db)):
    """Store a quiz attempt scored by the client. XP is granted by /attempt/submit."""
    get_user_or_404(db, data.userId)
    if data.score > data.totalQuestions:
        raise HTTPException(status_code=400, detail="Score cannot exceed total questions")

    attempt = QuizAttempt(
        user_id=data.userId,
        quiz_id=quiz_id,
        score=data.score,
        total_questions=data.totalQuestions,
        answers=data.answers,
        completed_at=datetime.utcnow(),
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)

    return quiz_attempt_to_dict(attempt)


@api.post("/quizzes/{quiz_id}/attempt/submit")
def submit_quiz_attempt(quiz_id: int, data: QuizSubmission, db: Session = Depends(get_db)):
    """Confirm a finished quiz and award XP for each correct answer."""
    result = award_xp_to_user(db, data.userId, data.score * config.QUIZ_XP_PER_CORRECT)
    db.commit()

    if result.level_up:
        return {
            "message": "Quiz submitted successfully",
            "xpEarned": result.xp_earned,
            "newXP": result.new_xp,
            "levelUp": True,
            "newLevel": result.new_level,
            "badge": result.badge_awarded,
        }

    return {
        "message": "Quiz submitted successfully",
        "xpEarned": result.xp_earned,
        "newXP": result.new_xp,
        "levelUp": False,
        "currentLevel": result.new_level,
    }


@api.get("/quizzes/user/{user_id}/attempts")
def list_quiz_attempts(user_id: int, db: Session = Depends(get_db)):
    attempts = (
        db.query(QuizAttempt)
        .filter(QuizAttempt.user_id == user_id)
        .order_by(QuizAttempt.completed_at.desc(), QuizAttempt.id.desc())
        .all()
    )
    return [quiz_attempt_to_dict(a) for a in attempts]


@api.post("/quizzes/paper/{paper_id}/approve")
def approve_paper(paper_id: int, data: PaperApproval, db: Session = Depends(get_db)):
    admin = db.get(User, data.adminId)
    if admin is None or not admin.is_admin:
        raise HTTPException(status_code=403, detail="Only admins can approve papers")

    paper = db.get(Paper, paper_id)
    if paper is None:
        raise NotFound("Paper", paper_id)

    paper.status = "approved"
    paper.rejection_reason = None
    logger.info("Paper %s approved by admin %s", paper_id, admin.id)

    uploader = db.get(User, paper.uploader_id)
    if uploader is None or uploader.is_admin:
        db.commit()
        return {"message": "Paper approved successfully"}

    result = award_xp_to_user(db, uploader.id, config.PAPER_APPROVAL_XP)
    db.commit()

    return {
        "message": "Paper approved successfully",
        "xpEarned": result.xp_earned,
        "newXP": result.new_xp,
        "newLevel": result.new_level,
        "badgeAwarded": result.badge_awarded,
    }


# --------- Papers ---------
@api.get("/papers")
def list_papers(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    subject: Optional[str] = None,
    tags: Optional[str] = None,
    userId: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Students only see approved papers; passing an admin's userId lists every status."""
    query = db.query(Paper)

    viewer = db.get(User, userId) if userId is not None else None
    if viewer is None or not viewer.is_admin:
        query = query.filter(Paper.status == "approved")

    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(or_(
            func.lower(Paper.title).like(pattern),
            func.lower(Paper.description).like(pattern),
        ))
    if subject:
        query = query.filter(func.lower(Paper.subject) == subject.lower())

    papers = query.order_by(Paper.upload_date.desc(), Paper.id.desc()).all()

    if tags:
        wanted = {t.strip().lower() for t in tags.split(",") if t.strip()}
        papers = [p for p in papers if any(str(t).lower() in wanted for t in (p.tags or []))]

    start = (page - 1) * limit
    return {
        "total": len(papers),
        "page": page,
        "limit": limit,
        "data": [paper_to_dict(p) for p in papers[start:start + limit]],
    }


@api.post("/papers", status_code=201)
def create_paper(data: PaperInput, db: Session = Depends(get_db)):
    uploader = get_user_or_404(db, data.uploaderId)

    paper = Paper(
        title=data.title,
        subject=data.subject,
        level=data.level,
        year=data.year,
        uploader_id=uploader.id,
        uploader_name=uploader.username,
        content_type=data.contentType,
        # admin uploads skip review
        status="approved" if uploader.is_admin else "pending",
        file_type=data.fileType,
        description=data.description,
        tags=data.tags,
        download_count=0,
    )
    db.add(paper)
    db.commit()
    db.refresh(paper)

    return paper_to_dict(paper)


@api.get("/papers/uploaded/{user_id}")
def list_uploaded_papers(user_id: int, db: Session = Depends(get_db)):
    papers = db.query(Paper).filter(Paper.uploader_id == user_id).order_by(Paper.id.asc()).all()
    return [paper_to_dict(p) for p in papers]


@api.get("/papers/admin/pending")
def list_pending_papers(db: Session = Depends(get_db)):
    papers = db.query(Paper).filter(Paper.status == "pending").order_by(Paper.upload_date.asc(), Paper.id.asc()).all()
    return [paper_to_dict(p) for p in papers]


@api.get("/papers/{paper_id}")
def get_paper(paper_id: int, db: Session = Depends(get_db)):
    paper = db.get(Paper, paper_id)
    if paper is None:
        raise NotFound("Paper", paper_id)
    return paper_to_dict(paper)


@api.put("/papers/{paper_id}/status")
def update_paper_status(paper_id: int, data: PaperStatusUpdate, db: Session = Depends(get_db)):
    paper = db.get(Paper, paper_id)
    if paper is None:
        raise NotFound("Paper", paper_id)

    paper.status = data.status
    paper.rejection_reason = data.rejectionReason if data.status == "rejected" else None
    db.commit()
    db.refresh(paper)

    return paper_to_dict(paper)


# --------- Levels & Progress ---------
@api.get("/levels")
def list_levels(db: Session = Depends(get_db)):
    return [
        {
            "level": lvl.level,
            "requiredXP": lvl.required_xp,
            "badgeName": lvl.badge_name,
            "badgeIcon": lvl.badge_icon,
            "badgeDescription": lvl.badge_description,
        }
        for lvl in get_level_definitions(db)
    ]


@api.get("/users/{user_id}/progress")
def get_user_progress(user_id: int, db: Session = Depends(get_db)):
    user = get_user_or_404(db, user_id)
    progression = Progression.from_user(user)

    return {
        "userId": user.id,
        "isAdmin": progression.is_admin,
        "currentXP": progression.current_xp,
        "level": progression.level,
        "badges": progression.badges,
        "nextLevel": next_level_for(get_level_definitions(db), progression),
    }


# --------- Offline Mode & Sync ---------
def _set_offline_mode(db: Session, user_id: int, enabled: bool):
    user = get_user_or_404(db, user_id)
    user.offline_mode = enabled
    db.commit()


@api.post("/offline/enable")
def enable_offline_mode(data: UserRef, db: Session = Depends(get_db)):
    _set_offline_mode(db, data.userId, True)
    return {"success": True, "message": "Offline mode enabled"}


@api.post("/offline/disable")
def disable_offline_mode(data: UserRef, db: Session = Depends(get_db)):
    _set_offline_mode(db, data.userId, False)
    return {"success": True, "message": "Offline mode disabled"}


@api.post("/sync/offline-data")
def sync_offline_data(data: OfflineSyncInput, db: Session = Depends(get_db)):
    actions = [action.model_dump() for action in data.actions]
    result = replay_offline_batch(db, data.userId, actions)
    db.commit()

    return {"success": True, **result}


@api.get("/sync/status/{user_id}")
def get_sync_status(user_id: int, db: Session = Depends(get_db)):
    user = get_user_or_404(db, user_id)

    pending = (
        db.query(func.count(OfflineAction.id))
        .filter(OfflineAction.user_id == user_id, OfflineAction.synced.is_(False))
        .scalar()
    )
    last_sync = (
        db.query(func.max(OfflineAction.synced_at))
        .filter(OfflineAction.user_id == user_id, OfflineAction.synced.is_(True))
        .scalar()
    )

    return {
        "userId": user.id,
        "offlineMode": user.offline_mode,
        "pendingSyncCount": pending,
        "lastSync": last_sync.isoformat() if last_sync else None,
        "status": "offline" if user.offline_mode else "online",
    }


@api.get("/offline/actions/{user_id}")
def get_offline_actions(user_id: int, synced: Optional[bool] = None, db: Session = Depends(get_db)):
    query = db.query(OfflineAction).filter(OfflineAction.user_id == user_id)
    if synced is not None:
        query = query.filter(OfflineAction.synced.is_(synced))

    actions = query.order_by(OfflineAction.timestamp.desc(), OfflineAction.id.desc()).all()
    return [offline_action_to_dict(a) for a in actions]


app.include_router(api)
