import hashlib
import secrets
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException

from database import get_db, now_utc
from schemas import User


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def new_token() -> str:
    return secrets.token_urlsafe(32)


def register_user(database, name: str, email: str, password: str, is_admin: bool = False) -> Dict[str, Any]:
    if database["user"].find_one({"email": email}):
        raise HTTPException(400, "Email already registered")
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        token=new_token(),
        is_admin=is_admin,
    ).model_dump()
    user["created_at"] = user["updated_at"] = now_utc()
    database["user"].insert_one(user)
    return user


def login_user(database, email: str, password: str) -> Dict[str, Any]:
    user = database["user"].find_one({"email": email})
    if not user or user.get("password_hash") != hash_password(password):
        raise HTTPException(401, "Invalid credentials")
    token = new_token()
    database["user"].update_one({"_id": user["_id"]}, {"$set": {"token": token, "updated_at": now_utc()}})
    user["token"] = token
    return user


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "is_admin": bool(user.get("is_admin")),
        "created_at": user.get("created_at"),
    }


def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> Dict[str, Any]:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(401, "Unauthorized")
    user = db["user"].find_one({"token": token})
    if not user:
        raise HTTPException(401, "Unauthorized")
    return user


def require_admin(user=Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(403, "Admin access required")
    return user
