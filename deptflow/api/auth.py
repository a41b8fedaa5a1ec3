from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from deptflow.api.deps import get_db
from deptflow.config import settings
from deptflow.schemas.auth import LoginRequest, TokenResponse
from deptflow.schemas.directory import UserRead
from deptflow.services import auth as auth_service

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = auth_service.authenticate(db, payload.username, payload.password)
    token = auth_service.create_access_token(user.id, user.username, user.role.value)
    return TokenResponse(
        access_token=token,
        expires_in=settings.jwt_expiry_minutes * 60,
        user=UserRead.model_validate(user),
    )
