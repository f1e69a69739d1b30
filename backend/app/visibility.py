import enum
import uuid

from sqlalchemy.orm import Session

from .errors import InvalidCategory, UnknownUser
from .identity import as_user_id
from .models import GroupMember, GroupRole, User, UserRole


class DataCategory(str, enum.Enum):
    attendance = "attendance"
    progress = "progress"
    stats = "stats"
    evaluations = "evaluations"


def parse_category(value) -> DataCategory:
    if isinstance(value, DataCategory):
        return value
    try:
        return DataCategory((value or "").strip().lower())
    except (ValueError, AttributeError):
        raise InvalidCategory("Invalid data category.") from None


def led_group_ids(db: Session, user_id: uuid.UUID) -> list[uuid.UUID]:
    rows = (
        db.query(GroupMember.group_id)
        .filter(GroupMember.user_id == user_id, GroupMember.role == GroupRole.leader.value)
        .all()
    )
    return [group_id for (group_id,) in rows]


def visible_user_ids(db: Session, requester_id, category) -> set[uuid.UUID]:
    """
    Ids of the users whose ``category`` records ``requester_id`` may read.

    Admins see everyone. A group leader sees every member of the groups they
    lead, themselves included. Everyone else sees only themselves. The
    category does not change the outcome yet, but it is validated so callers
    stay honest about what they are reading.
    """
    parse_category(category)
    user_id = as_user_id(requester_id)
    requester = db.get(User, user_id) if user_id else None
    if requester is None:
        raise UnknownUser("User not found.")

    if requester.role == UserRole.admin.value:
        return {uid for (uid,) in db.query(User.id).all()}

    visible = {requester.id}
    group_ids = led_group_ids(db, requester.id)
    if group_ids:
        rows = db.query(GroupMember.user_id).filter(GroupMember.group_id.in_(group_ids)).all()
        visible.update(uid for (uid,) in rows)
    return visible


def can_view(db: Session, viewer_id, target_id, category) -> bool:
    target = as_user_id(target_id)
    if target is None:
        return False
    return target in visible_user_ids(db, viewer_id, category)
