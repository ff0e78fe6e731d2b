# backend/logic/offline_sync.py
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from logic.errors import InvalidActionError, NotFound, StorageError
from logic.progression import apply_award
from models.offline_action import OfflineAction
from models.paper import Paper
from models.quiz_attempt import QuizAttempt
from models.user import User

logger = logging.getLogger(__name__)


def normalize_action_type(action_type) -> str:
    # clients send either quiz_attempt or quiz-attempt
    return str(action_type or "").strip().lower().replace("-", "_")


def _require(data: dict, *fields):
    missing = [f for f in fields if data.get(f) is None]
    if missing:
        raise InvalidActionError(f"Missing required fields: {', '.join(missing)}")


def _int_field(data: dict, name: str, minimum: int = None) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidActionError(f"{name} must be an integer")
    if minimum is not None and value < minimum:
        raise InvalidActionError(f"{name} must be >= {minimum}")
    if not -config.MAX_INT_COLUMN - 1 <= value <= config.MAX_INT_COLUMN:
        raise InvalidActionError(f"{name} is out of range")
    return value


def _parse_timestamp(value):
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise InvalidActionError(f"Invalid timestamp: {value}")


# --------- Action appliers ---------

def _apply_quiz_attempt(db: Session, user: User, data: dict):
    _require(data, "quizId", "score", "totalQuestions")
    db.add(QuizAttempt(
        user_id=user.id,
        quiz_id=_int_field(data, "quizId"),
        score=_int_field(data, "score", minimum=0),
        total_questions=_int_field(data, "totalQuestions", minimum=0),
        answers=data.get("answers") or [],
        # recorded at replay time, the client timestamp only goes to the audit row
        completed_at=datetime.utcnow(),
    ))
    db.flush()


def _apply_paper_upload(db: Session, user: User, data: dict):
    _require(data, "title", "subject", "level", "contentType")
    db.add(Paper(
        title=data["title"],
        subject=data["subject"],
        level=str(data["level"]),
        year=str(data["year"]) if data.get("year") is not None else None,
        uploader_id=user.id,
        uploader_name=user.username,
        content_type=data["contentType"],
        status="pending",
        file_type=data.get("fileType"),
        upload_date=datetime.utcnow(),
        description=data.get("description"),
        tags=data.get("tags") or [],
        download_count=0,
    ))
    db.flush()


def _apply_xp_update(db: Session, user: User, data: dict):
    _require(data, "xpEarned")
    apply_award(db, user, _int_field(data, "xpEarned", minimum=0))


ACTION_APPLIERS = {
    "quiz_attempt": _apply_quiz_attempt,
    "paper_upload": _apply_paper_upload,
    "xp_update": _apply_xp_update,
}


def _find_synced_duplicate(db: Session, user_id: int, client_action_id):
    if not client_action_id:
        return None
    return (
        db.query(OfflineAction)
        .filter_by(user_id=user_id, client_action_id=str(client_action_id), synced=True)
        .first()
    )


def _replay_one(db: Session, user: User, action: dict) -> dict:
    raw_type = action.get("type")
    action_type = normalize_action_type(raw_type)
    data = action.get("data") or {}
    client_action_id = action.get("clientActionId")

    applier = ACTION_APPLIERS.get(action_type)
    if applier is None:
        raise InvalidActionError(f"Unsupported action type: {raw_type}")
    if not isinstance(data, dict):
        raise InvalidActionError("Action data must be an object")

    now = datetime.utcnow()
    try:
        duplicate = _find_synced_duplicate(db, user.id, client_action_id)
        if duplicate is not None:
            logger.info("Skipping already synced action %s for user %s", client_action_id, user.id)
            return {"actionId": duplicate.id, "type": raw_type, "status": "duplicate"}

        # audit row and effect commit or roll back together
        with db.begin_nested():
            record = OfflineAction(
                user_id=user.id,
                action_type=action_type,
                action_data=data,
                timestamp=_parse_timestamp(action.get("timestamp")) or now,
                client_action_id=str(client_action_id) if client_action_id else None,
                synced=True,
                synced_at=now,
            )
            db.add(record)
            db.flush()
            applier(db, user, data)
    except SQLAlchemyError as e:
        raise StorageError(str(getattr(e, "orig", None) or e)) from e

    return {"actionId": record.id, "type": raw_type, "status": "synced"}


def _record_failure(db: Session, user_id: int, action: dict, error: Exception):
    try:
        timestamp = _parse_timestamp(action.get("timestamp"))
    except InvalidActionError:
        timestamp = None

    data = action.get("data")
    client_action_id = action.get("clientActionId")
    with db.begin_nested():
        db.add(OfflineAction(
            user_id=user_id,
            action_type=normalize_action_type(action.get("type")) or "unknown",
            action_data=data if isinstance(data, dict) else None,
            timestamp=timestamp or datetime.utcnow(),
            client_action_id=str(client_action_id) if client_action_id else None,
            synced=False,
            error=str(error),
        ))


def replay_offline_batch(db: Session, user_id: int, actions) -> dict:
    """
    Replay a client's queued offline actions in submission order.

    Each action is stored in the audit table and applied inside its own
    savepoint. A failing action is rolled back, kept in the audit table as
    unsynced with its error, and reported in failedActions; the rest of the
    batch carries on. An unknown user aborts before anything is written.
    The caller commits.
    """
    user = db.query(User).filter(User.id == user_id).with_for_update().populate_existing().first()
    if user is None:
        raise NotFound("User", user_id)

    synced_actions = []
    failed_actions = []

    for action in actions:
        try:
            synced_actions.append(_replay_one(db, user, action))
        except (InvalidActionError, StorageError) as e:
            logger.warning("Offline action %r failed for user %s: %s", action.get("type"), user_id, e)
            _record_failure(db, user_id, action, e)
            failed_actions.append({"type": action.get("type"), "error": str(e)})

    logger.info(
        "Offline sync for user %s: %d synced, %d failed",
        user_id, len(synced_actions), len(failed_actions),
    )

    return {
        "syncedCount": len(synced_actions),
        "failedCount": len(failed_actions),
        "syncedActions": synced_actions,
        "failedActions": failed_actions,
    }
