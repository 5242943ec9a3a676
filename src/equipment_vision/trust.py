"""Trusted-uploader policy used for auto-approval of gym images."""

from __future__ import annotations

from typing import Final

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_vision.db import Gym, GymManagementRole, User

TRUSTED_APP_ROLES: Final[frozenset[str]] = frozenset({"ADMIN", "MODERATOR"})
TRUSTED_GYM_ROLES: Final[frozenset[str]] = frozenset({"GYM_ADMIN", "GYM_MODERATOR"})


def is_trusted_uploader(session: Session, user_id: str | None, gym_id: str) -> bool:
    """Platform admins/moderators are trusted everywhere; gym staff only in their gym."""

    if not user_id:
        return False

    user = session.get(User, user_id)
    if user is not None and user.app_role in TRUSTED_APP_ROLES:
        return True

    role = session.execute(
        select(GymManagementRole.role).where(
            GymManagementRole.user_id == user_id,
            GymManagementRole.gym_id == gym_id,
        )
    ).scalar_one_or_none()
    return role in TRUSTED_GYM_ROLES


def can_auto_approve(session: Session, gym_id: str, user_id: str | None) -> bool:
    gym = session.get(Gym, gym_id)
    if gym is None or not gym.auto_approve_trusted_uploads:
        return False
    return is_trusted_uploader(session, user_id, gym_id)


__all__ = ["TRUSTED_APP_ROLES", "TRUSTED_GYM_ROLES", "can_auto_approve", "is_trusted_uploader"]
