# backend/logic/progression.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from logic.errors import NotFound
from models.user import User
from models.user_level import UserLevel

logger = logging.getLogger(__name__)


@dataclass
class Progression:
    """Snapshot of the progression fields of a user row."""

    user_id: int
    current_xp: int = 0
    level: int = 1
    badges: list = field(default_factory=list)
    is_admin: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Progression":
        return cls(
            user_id=user.id,
            current_xp=user.current_xp or 0,
            level=user.level or 1,
            badges=list(user.badges or []),
            is_admin=bool(user.is_admin),
        )


@dataclass
class LevelDefinition:
    level: int
    required_xp: int
    badge_name: str
    badge_icon: Optional[str] = None
    badge_description: Optional[str] = None


@dataclass
class AwardResult:
    new_xp: int
    new_level: int
    level_up: bool
    badge_awarded: Optional[str]
    xp_earned: int
    badges: list


def award_xp(progression: Progression, levels, delta: int, now: datetime = None) -> AwardResult:
    """
    Add `delta` XP to a progression and check for a level-up.

    `levels` may hold LevelDefinition objects or UserLevel rows. They are
    scanned in ascending level order and the first definition above the
    current level whose threshold is met wins; the scan stops there, so a
    single award advances at most one level. The badge of that level is
    only added if no badge with the same name is already held.

    Admins never earn XP: their progression comes back unchanged.
    """
    if delta < 0:
        raise ValueError("XP delta must be non-negative")

    badges = list(progression.badges or [])

    if progression.is_admin:
        return AwardResult(
            new_xp=progression.current_xp,
            new_level=progression.level,
            level_up=False,
            badge_awarded=None,
            xp_earned=0,
            badges=badges,
        )

    new_xp = progression.current_xp + delta

    for definition in sorted(levels, key=lambda d: d.level):
        if definition.level > progression.level and definition.required_xp <= new_xp:
            badge_awarded = None
            if not any(b.get("name") == definition.badge_name for b in badges):
                badges.append({
                    "name": definition.badge_name,
                    "icon": definition.badge_icon,
                    "description": definition.badge_description,
                    "earnedAt": (now or datetime.utcnow()).isoformat(),
                })
                badge_awarded = definition.badge_name

            return AwardResult(
                new_xp=new_xp,
                new_level=definition.level,
                level_up=True,
                badge_awarded=badge_awarded,
                xp_earned=delta,
                badges=badges,
            )

    return AwardResult(
        new_xp=new_xp,
        new_level=progression.level,
        level_up=False,
        badge_awarded=None,
        xp_earned=delta,
        badges=badges,
    )


def get_level_definitions(db: Session) -> List[UserLevel]:
    return db.query(UserLevel).order_by(UserLevel.level.asc()).all()


def apply_award(db: Session, user: User, delta: int) -> AwardResult:
    """Run award_xp against a loaded user row and write the outcome back (flush, no commit)."""
    result = award_xp(Progression.from_user(user), get_level_definitions(db), delta)

    if user.is_admin:
        logger.debug("Skipping XP award for admin user %s", user.id)
        return result

    user.current_xp = result.new_xp
    user.level = result.new_level
    # new list so the JSON column is flagged dirty
    user.badges = result.badges
    db.flush()

    if result.level_up:
        logger.info(
            "User %s reached level %s with %s XP (badge: %s)",
            user.id, result.new_level, result.new_xp, result.badge_awarded,
        )
    return result


def award_xp_to_user(db: Session, user_id: int, delta: int) -> AwardResult:
    """
    Award XP to a stored user. Every place that grants XP goes through here.

    The row is read with SELECT ... FOR UPDATE so concurrent awards for the
    same user serialize on backends with row locks. The caller commits.
    """
    user = db.query(User).filter(User.id == user_id).with_for_update().populate_existing().first()
    if user is None:
        raise NotFound("User", user_id)
    return apply_award(db, user, delta)


def next_level_for(levels, progression: Progression) -> Optional[dict]:
    for definition in sorted(levels, key=lambda d: d.level):
        if definition.level > progression.level:
            return {
                "level": definition.level,
                "requiredXP": definition.required_xp,
                "badgeName": definition.badge_name,
                "xpRemaining": max(definition.required_xp - progression.current_xp, 0),
            }
    return None
