from typing import Optional
from fastapi import Depends, HTTPException, Query
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from polychat.core.security import decode_access_token
from polychat.db.session import SessionLocal
from polychat.db.models.user import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_db():
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(token: str = Depends(oauth2_scheme)):
    """Get current user email from JWT token."""
    email = decode_access_token(token)
    if email is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return email


def _load_user(email: str, db: Session) -> User:
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_user_obj(
    email: str = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> User:
    """Get current User object from JWT token."""
    return _load_user(email, db)


def get_current_user_from_query_token(
    token: Optional[str] = Query(None, description="Access token (EventSource cannot send headers)"),
    db: Session = Depends(get_db)
) -> User:
    """Resolve the user from a `?token=` query parameter, for event streams."""
    email = decode_access_token(token) if token else None
    if email is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return _load_user(email, db)
