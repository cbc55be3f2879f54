import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from bson import ObjectId
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from pymongo.database import Database

from database import get_db, to_object_id
from errors import Forbidden, NotFound, Unauthorized
from settings import Settings

JWT_ALG = "HS256"

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", 12)),
)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: str, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.jwt_expires_min))
    return jwt.encode({"sub": str(user_id), "exp": expire}, settings.jwt_secret, algorithm=JWT_ALG)


def decode_access_token(token: str, settings: Settings) -> str:
    """Return the user id asserted by ``token``."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")
    uid = payload.get("sub")
    if not uid:
        raise Unauthorized("Invalid token")
    return uid


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    # The user is re-read on every request so is_admin always reflects the database
    if not token:
        raise Unauthorized("Not authenticated")
    uid = decode_access_token(token, settings)
    try:
        user = db["user"].find_one({"_id": to_object_id(uid)})
    except NotFound:
        raise Unauthorized("Invalid token")
    if not user:
        raise Unauthorized("User not found")
    return user


def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise Forbidden("Admin access required")
    return user


def user_id_of(user: Dict[str, Any]) -> str:
    uid = user["_id"]
    return str(uid) if isinstance(uid, ObjectId) else uid
