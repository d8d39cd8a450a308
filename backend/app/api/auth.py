"""Phone registration, OTP verification, profile and device token endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.config import get_settings
from app.core.security import create_access_token, generate_otp, hash_otp, verify_otp
from app.database import get_db
from app.models import User
from app.schemas import (
    AuthResponse,
    ProfileUpdate,
    PushTokenUpdate,
    RegisterRequest,
    RegisterResponse,
    ResendOtpRequest,
    UserRead,
    VerifyOtpRequest,
)

router = APIRouter()
settings = get_settings()

logger = logging.getLogger(__name__)


def _otp_issued(user: User, otp: str) -> RegisterResponse:
    return RegisterResponse(
        user_id=user.id,
        phone=user.phone,
        otp_verified=user.otp_verified,
        otp=otp if settings.otp_echo_enabled else None,
    )


def _get_by_phone(phone: str, db: Session) -> User | None:
    return db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()


@router.post("/register", response_model=RegisterResponse)
def register_user(payload: RegisterRequest, db: Session = Depends(get_db)) -> RegisterResponse:
    """Create the user on first contact and (re)issue a one-time password.

    No token is returned here: access is granted only by ``/verify-otp``, so
    knowing a phone number is not enough to act as its owner. Profile fields
    of an existing account are left untouched.
    """

    user = _get_by_phone(payload.phone, db)
    if user is None:
        user = User(phone=payload.phone, country_code=payload.country_code, name=payload.name)
        db.add(user)

    otp = generate_otp()
    user.otp_hash = hash_otp(otp)
    db.commit()
    db.refresh(user)
    logger.info("Issued OTP for user %s", user.id)
    return _otp_issued(user, otp)


@router.post("/resend-otp", response_model=RegisterResponse)
def resend_otp(payload: ResendOtpRequest, db: Session = Depends(get_db)) -> RegisterResponse:
    user = _get_by_phone(payload.phone, db)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    otp = generate_otp()
    user.otp_hash = hash_otp(otp)
    db.commit()
    logger.info("Re-issued OTP for user %s", user.id)
    return _otp_issued(user, otp)


@router.post("/verify-otp", response_model=AuthResponse)
def verify_user_otp(payload: VerifyOtpRequest, db: Session = Depends(get_db)) -> AuthResponse:
    user = _get_by_phone(payload.phone, db)
    if user is None or not verify_otp(payload.otp, user.otp_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid OTP")

    user.otp_verified = True
    user.otp_hash = None
    db.commit()
    db.refresh(user)
    token = create_access_token({"sub": str(user.id)})
    return AuthResponse(access_token=token, user=UserRead.model_validate(user))


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: User = Depends(get_current_user)) -> User:
    return current_user


@router.patch("/me", response_model=UserRead)
def update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    for field, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(current_user, field, value)
    db.commit()
    db.refresh(current_user)
    return current_user


@router.get("", response_model=list[UserRead])
def list_users(
    search: str | None = Query(default=None, max_length=64),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[User]:
    """List other users, optionally filtered by a name or phone fragment."""

    stmt = select(User).where(User.id != current_user.id).order_by(User.id)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(User.name.ilike(pattern), User.phone.like(pattern)))
    return list(db.execute(stmt).scalars())


@router.get("/{user_id}", response_model=UserRead)
def read_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.put("/push-token", status_code=status.HTTP_204_NO_CONTENT)
def update_push_token(
    payload: PushTokenUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> None:
    """Store the device token used for push notifications."""

    current_user.push_token = payload.token
    db.commit()


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout_user(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> None:
    """Forget the device token so the signed-out device stops receiving pushes."""

    current_user.push_token = None
    db.commit()
    logger.info("User %s logged out", current_user.id)
