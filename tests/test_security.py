import jwt
import pytest
from fastapi import HTTPException

from clinic_messaging.core.config import get_settings
from clinic_messaging.utils.dependencies import identity_from_token
from clinic_messaging.utils.security import create_access_token, decode_access_token
from conftest import ALICE


def test_token_round_trip():
    token = create_access_token(ALICE, role="nurse")

    claims = decode_access_token(token)
    assert claims["sub"] == ALICE
    assert claims["role"] == "nurse"
    assert identity_from_token(token) == {"_id": ALICE, "role": "nurse"}


def test_expired_token_is_401():
    token = create_access_token(ALICE, expires_minutes=-5)

    with pytest.raises(HTTPException) as exc_info:
        identity_from_token(token)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Token has expired"


def test_token_signed_with_another_secret_is_401():
    settings = get_settings()
    token = jwt.encode({"sub": ALICE, "exp": 4102444800}, "someone-else", algorithm=settings.jwt_algorithm)

    with pytest.raises(HTTPException) as exc_info:
        identity_from_token(token)
    assert exc_info.value.status_code == 401


def test_token_without_subject_is_401():
    settings = get_settings()
    token = jwt.encode({"exp": 4102444800}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    with pytest.raises(HTTPException):
        identity_from_token(token)
