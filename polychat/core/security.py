import logging
import bcrypt
from passlib.context import CryptContext
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError
from polychat.core.config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES

logger = logging.getLogger(__name__)

BCRYPT_MAX_BYTES = 72

# Verifies hashes written through passlib; new hashes use bcrypt directly
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _password_bytes(password: str) -> bytes:
    """UTF-8 bytes cut to bcrypt's 72-byte limit without splitting a character."""
    encoded = password.encode("utf-8")
    if len(encoded) <= BCRYPT_MAX_BYTES:
        return encoded
    logger.warning("Password exceeds 72 bytes, truncating before hashing")
    return encoded[:BCRYPT_MAX_BYTES].decode("utf-8", errors="ignore").encode("utf-8")


def hash_password(password: str) -> str:
    """
    Hash a password with bcrypt.

    Raises:
        ValueError: the password could not be hashed
    """
    try:
        return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")
    except (TypeError, ValueError) as e:
        logger.error(f"Password hashing failed: {e}")
        raise ValueError("Invalid password") from e


def verify_password(password: str, hashed: Optional[str]) -> bool:
    """
    Check a password against its stored hash.

    Accounts created through an external identity provider have no hash and
    never match.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        # Not a bcrypt-native hash; let passlib try
        try:
            return pwd_context.verify(password, hashed)
        except (ValueError, TypeError) as e:
            logger.warning(f"Password verification failed: {e}")
            return False


def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """Email (the `sub` claim) of a valid token, None otherwise."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")
