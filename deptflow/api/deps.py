from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, selectinload

from deptflow.db import SessionLocal
from deptflow.errors import Unauthenticated, Unauthorized
from deptflow.models.directory import User, UserRole
from deptflow.services.auth import verify_token

bearer_scheme = HTTPBearer(auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    token = credentials.credentials if credentials else None
    identity = verify_token(token)
    user = db.get(User, identity.user_id, options=[selectinload(User.departments)])
    if user is None or not user.is_active:
        raise Unauthenticated("User not found or inactive")
    if identity.role != user.role.value:
        raise Unauthenticated("Role has changed, log in again")
    return user


def require_role(*roles: str):
    allowed = {UserRole(role) for role in roles}

    def _require_role(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise Unauthorized(
                "Insufficient role",
                details={"required": sorted(role.value for role in allowed)},
            )
        return user

    return _require_role


require_admin = require_role("ADMIN")
