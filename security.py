import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from database import Store, get_db

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "hx_session")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def check_password_length(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def decode_access_token(token: Optional[str]) -> Optional[str]:
    """Return the user id carried by ``token`` or None if it is missing, expired or forged."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def user_from_token(store: Store, token: Optional[str]) -> Optional[dict]:
    user_id = decode_access_token(token)
    if user_id is None:
        return None
    return store.find_one("user", {"id": user_id})


def is_admin(user: Optional[dict]) -> bool:
    if not user:
        return False
    if user.get("role") == "admin":
        return True
    email = (user.get("email") or "").strip().lower()
    return bool(ADMIN_EMAIL) and email == ADMIN_EMAIL.strip().lower()


def get_optional_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    store: Store = Depends(get_db),
) -> Optional[dict]:
    return user_from_token(store, token or request.cookies.get(SESSION_COOKIE_NAME))


def get_current_user(user: Optional[dict] = Depends(get_optional_user)) -> dict:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_admin_user(current_user: dict = Depends(get_current_user)):
    if not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return current_user


def require_self(user_id: str, current_user: dict) -> None:
    if current_user["id"] != user_id:
        raise HTTPException(status_code=403, detail="Not allowed to act for another user")
