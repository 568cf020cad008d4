from dataclasses import dataclass
from fastapi import Header, HTTPException
from typing import Optional
import os
import jwt


@dataclass
class UserContext:
    user_id: str
    email: Optional[str]
    role: str  # OWNER | ADMIN | EMPLOYEE
    access_token: Optional[str] = None  # Facebook token carried by the session, if any


def _dev_headers_allowed() -> bool:
    return os.getenv("DEV_AUTH_ALLOW", "0") == "1" or os.getenv("TESTING") == "1"


def get_user_context(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_role: Optional[str] = Header(default=None),
    x_fb_token: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> UserContext:
    # Prefer JWT if provided
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1]
        try:
            payload = jwt.decode(
                token,
                os.getenv("JWT_SECRET", "dev_secret"),
                algorithms=["HS256"],
                audience=os.getenv("JWT_AUDIENCE", "authenticated"),
            )
        except jwt.PyJWTError:
            raise HTTPException(status_code=401, detail="invalid_token")
        sub = payload.get("sub")
        if not sub:
            raise HTTPException(status_code=401, detail="invalid_token")
        return UserContext(
            user_id=str(sub),
            email=payload.get("email"),
            role=str(payload.get("role") or "OWNER").upper(),
            access_token=payload.get("fb_access_token"),
        )

    # Header identity only for local development and tests
    if x_user_id and _dev_headers_allowed():
        return UserContext(
            user_id=x_user_id,
            email=x_user_email,
            role=(x_role or "OWNER").upper(),
            access_token=x_fb_token,
        )
    raise HTTPException(status_code=401, detail="unauthorized")
