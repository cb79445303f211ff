"""
Session credentials: password hashing, JWT issuance and verification, cookies.

Two credentials are issued on login, both carrying userId, email, role,
roleLevel and restaurantId:
- access token, short lived (ACCESS_TOKEN_TTL_MINUTES), signed with JWT_SECRET
- refresh token, long lived (REFRESH_TOKEN_TTL_DAYS), signed with REFRESH_TOKEN_SECRET

Verification is purely cryptographic plus expiry; any failure raises
AuthenticationError and never yields a default role.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from fastapi import Response
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from config import Settings, get_settings
from errors import ERROR_CODES, AuthenticationError
from roles import ROLE_LEVELS, Role

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
BCRYPT_ROUNDS = 10


class Identity(BaseModel):
    """Decoded claims of a verified credential."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    user_id: str = Field(..., alias="userId")
    email: str
    role: Role
    role_level: int = Field(0, alias="roleLevel")
    restaurant_id: Optional[str] = Field(None, alias="restaurantId")

    def claims(self) -> Dict[str, Any]:
        return {
            "sub": self.user_id,
            "userId": self.user_id,
            "email": self.email,
            "role": self.role.value,
            "roleLevel": ROLE_LEVELS[self.role],
            "restaurantId": self.restaurant_id,
        }


class TokenPair(BaseModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    expires_in: int = Field(..., alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(BCRYPT_ROUNDS)).decode("utf-8")


# checked instead of a real hash when no account matches, so both paths cost one bcrypt round
MISSING_USER_HASH = bcrypt.hashpw(b"no-such-account", bcrypt.gensalt(BCRYPT_ROUNDS))


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    hashed = password_hash.encode("utf-8") if password_hash else MISSING_USER_HASH
    try:
        matched = bcrypt.checkpw(password.encode("utf-8"), hashed)
    except ValueError:
        # malformed stored hash
        return False
    return matched and bool(password_hash)


def identity_for_user(user: Dict[str, Any]) -> Identity:
    role = Role(user["role"])
    restaurant_id = user.get("restaurant_id")
    return Identity(
        user_id=str(user.get("id") or user.get("_id")),
        email=user["email"],
        role=role,
        role_level=ROLE_LEVELS[role],
        restaurant_id=str(restaurant_id) if restaurant_id else None,
    )


def _encode(identity: Identity, secret: str, ttl: timedelta, token_type: str, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    to_encode = {**identity.claims(), "type": token_type, "iat": now, "exp": now + ttl}
    return jwt.encode(to_encode, secret, algorithm=settings.jwt_algorithm)


def create_access_token(identity: Identity, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    ttl = timedelta(minutes=settings.access_token_ttl_minutes)
    return _encode(identity, settings.jwt_secret, ttl, "access", settings)


def create_refresh_token(identity: Identity, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    ttl = timedelta(days=settings.refresh_token_ttl_days)
    return _encode(identity, settings.refresh_token_secret, ttl, "refresh", settings)


def issue_token_pair(identity: Identity, settings: Optional[Settings] = None) -> TokenPair:
    settings = settings or get_settings()
    return TokenPair(
        access_token=create_access_token(identity, settings),
        refresh_token=create_refresh_token(identity, settings),
        expires_in=settings.access_token_ttl_minutes * 60,
    )


def _decode(token: str, secret: str, token_type: str, settings: Settings) -> Identity:
    label = "Access" if token_type == "access" else "Refresh"
    try:
        data = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AuthenticationError(f"{label} token expired", code=ERROR_CODES["TOKEN_EXPIRED"])
    except JWTError:
        raise AuthenticationError(f"Invalid {label.lower()} token", code=ERROR_CODES["INVALID_TOKEN"])

    if data.get("type") != token_type:
        raise AuthenticationError("Invalid token type", code=ERROR_CODES["INVALID_TOKEN"])
    try:
        identity = Identity.model_validate(data)
    except PydanticValidationError:
        raise AuthenticationError(f"Invalid {label.lower()} token claims", code=ERROR_CODES["INVALID_TOKEN"])
    # the level is always derived from the role, never trusted from the claim
    return identity.model_copy(update={"role_level": ROLE_LEVELS[identity.role]})


def verify_access_token(token: str, settings: Optional[Settings] = None) -> Identity:
    settings = settings or get_settings()
    return _decode(token, settings.jwt_secret, "access", settings)


def verify_refresh_token(token: str, settings: Optional[Settings] = None) -> Identity:
    settings = settings or get_settings()
    return _decode(token, settings.refresh_token_secret, "refresh", settings)


def set_auth_cookies(response: Response, pair: TokenPair, settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")
