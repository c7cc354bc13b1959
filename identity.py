from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import Forbidden, NotAuthenticated
from models import GroupMember, MemberRole, User


@dataclass(frozen=True)
class Principal:
    id: int
    email: str
    active_group_id: Optional[int] = None


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="principal-token")


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def load_token(token: str, max_age_hours: int = 24 * 7) -> int:
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature as exc:
        raise NotAuthenticated("Invalid or expired token") from exc
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise NotAuthenticated("Invalid or expired token")
    return user_id


class IdentityProvider:
    """Resolves principals and group membership from the membership tables."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def principal_for(self, user_id: int) -> Principal:
        user = self.session.get(User, user_id)
        if not user:
            raise NotAuthenticated("Unknown principal")
        return Principal(
            id=user.id, email=user.email, active_group_id=user.active_group_id
        )

    def current_principal(self, token: Optional[str]) -> Principal:
        if not token:
            raise NotAuthenticated("Not authenticated")
        return self.principal_for(load_token(token))

    def role_of(self, principal: Principal, group_id: int) -> Optional[MemberRole]:
        return self.session.scalar(
            select(GroupMember.role).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == principal.id,
            )
        )

    def is_member(self, principal: Principal, group_id: int) -> bool:
        return self.role_of(principal, group_id) is not None

    def require_member(self, principal: Principal, group_id: int) -> MemberRole:
        role = self.role_of(principal, group_id)
        if role is None:
            raise Forbidden("Not a member of this group")
        return role
