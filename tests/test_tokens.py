from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from config import get_settings
from conftest import identity_for
from errors import ERROR_CODES, AuthenticationError
from roles import Role
from tokens import (
    create_access_token,
    create_refresh_token,
    hash_password,
    identity_for_user,
    issue_token_pair,
    verify_access_token,
    verify_password,
    verify_refresh_token,
)


def test_access_token_round_trip():
    """A freshly issued token decodes to the same userId and role."""
    identity = identity_for(Role.RESTAURANT_OWNER, restaurant_id="r-42")
    decoded = verify_access_token(create_access_token(identity))
    assert decoded.user_id == identity.user_id
    assert decoded.role is Role.RESTAURANT_OWNER
    assert decoded.email == identity.email
    assert decoded.restaurant_id == "r-42"
    assert decoded.role_level == 3


def test_refresh_token_round_trip():
    identity = identity_for(Role.CUSTOMER)
    pair = issue_token_pair(identity)
    assert verify_refresh_token(pair.refresh_token).user_id == identity.user_id
    assert pair.expires_in == 15 * 60


def test_claims_carry_camel_case_fields():
    identity = identity_for(Role.DELIVERY_GUY)
    settings = get_settings()
    claims = jwt.decode(create_access_token(identity), settings.jwt_secret, algorithms=["HS256"])
    assert claims["userId"] == identity.user_id
    assert claims["role"] == "DELIVERY_GUY"
    assert claims["roleLevel"] == 2
    assert claims["type"] == "access"
    assert claims["exp"] - claims["iat"] == 15 * 60


def test_refresh_token_lives_seven_days():
    settings = get_settings()
    claims = jwt.decode(
        create_refresh_token(identity_for(Role.CUSTOMER)), settings.refresh_token_secret, algorithms=["HS256"]
    )
    assert claims["type"] == "refresh"
    assert claims["exp"] - claims["iat"] == 7 * 24 * 60 * 60


def test_refresh_token_is_not_an_access_token():
    pair = issue_token_pair(identity_for(Role.CUSTOMER))
    with pytest.raises(AuthenticationError):
        verify_access_token(pair.refresh_token)
    with pytest.raises(AuthenticationError):
        verify_refresh_token(pair.access_token)


def test_expired_token_is_rejected_with_its_own_code():
    settings = get_settings()
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = jwt.encode(
        {**identity_for(Role.CUSTOMER).claims(), "type": "access", "iat": past, "exp": past + timedelta(minutes=15)},
        settings.jwt_secret,
        algorithm="HS256",
    )
    with pytest.raises(AuthenticationError) as exc:
        verify_access_token(token)
    assert exc.value.code == ERROR_CODES["TOKEN_EXPIRED"]
    assert exc.value.status_code == 401


def test_tampered_or_foreign_token_is_rejected():
    identity = identity_for(Role.CUSTOMER)
    forged = jwt.encode({**identity.claims(), "type": "access"}, "someone_else", algorithm="HS256")
    with pytest.raises(AuthenticationError) as exc:
        verify_access_token(forged)
    assert exc.value.code == ERROR_CODES["INVALID_TOKEN"]
    with pytest.raises(AuthenticationError):
        verify_access_token("not-a-jwt")


def test_unknown_role_claim_never_defaults():
    settings = get_settings()
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {"userId": "u1", "email": "x@gmail.com", "role": "ROOT", "type": "access", "iat": now, "exp": now + timedelta(minutes=5)},
        settings.jwt_secret,
        algorithm="HS256",
    )
    with pytest.raises(AuthenticationError):
        verify_access_token(token)


def test_role_level_comes_from_role_not_claim():
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims = {**identity_for(Role.CUSTOMER).claims(), "roleLevel": 4, "type": "access"}
    token = jwt.encode({**claims, "iat": now, "exp": now + timedelta(minutes=5)}, settings.jwt_secret, algorithm="HS256")
    assert verify_access_token(token).role_level == 1


def test_password_hashing():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("secret123", None)
    assert not verify_password("secret123", "not-a-bcrypt-hash")


def test_identity_for_user_document():
    identity = identity_for_user(
        {"id": "u9", "email": "chef@restaurant.com", "role": "RESTAURANT_OWNER", "restaurant_id": "r9"}
    )
    assert identity.role is Role.RESTAURANT_OWNER
    assert identity.role_level == 3
    assert identity.restaurant_id == "r9"
