import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from polychat.db.models.user import User
from polychat.core.auth_dependency import get_db
from polychat.core.security import hash_password, verify_password, create_access_token
from polychat.schemas.auth import SignupRequest, SignupResponse, TokenResponse
from polychat.services.subscription_service import create_free_subscription, ensure_user_has_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/signup", status_code=status.HTTP_201_CREATED, response_model=SignupResponse)
def signup(payload: SignupRequest, db: Session = Depends(get_db)):
    """Register with email and password; the account starts on the Free plan."""
    email = payload.email.lower()
    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise HTTPException(status_code=409, detail="Email already registered")

    try:
        hashed = hash_password(payload.password)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid password")

    user = User(
        full_name=payload.full_name,
        email=email,
        password_hash=hashed,
        credits_remaining="0",
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    create_free_subscription(db, user)
    db.refresh(user)

    logger.info(f"User signed up: user_id={user.id}")
    return SignupResponse(
        message="User created successfully",
        user_id=user.id,
        credits_remaining=user.credits_remaining,
    )


@router.post("/login", response_model=TokenResponse)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    # OAuth2 form field is "username"; we treat it as email
    user = db.query(User).filter(User.email == form_data.username.lower()).first()

    if not user or not verify_password(form_data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    # Accounts created before plans existed get their Free subscription on first sign-in
    ensure_user_has_subscription(db, user)

    token = create_access_token({"sub": user.email})
    return TokenResponse(access_token=token)
