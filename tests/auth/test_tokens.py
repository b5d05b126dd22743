import time

import jwt
import pytest

from app.core.config import settings
from app.services.auth.tokens import InvalidAccessToken, decode_access_token


def _token(**claims):
    payload = {"sub": "u1", "aud": settings.jwt_audience, "exp": int(time.time()) + 300}
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


class TestDecodeAccessToken:
    def test_valid(self):
        token = _token()
        principal = decode_access_token(token)
        assert principal.user_id == "u1"
        assert principal.access_token == token

    def test_expired(self):
        with pytest.raises(InvalidAccessToken):
            decode_access_token(_token(exp=int(time.time()) - 10))

    def test_wrong_audience(self):
        with pytest.raises(InvalidAccessToken):
            decode_access_token(_token(aud="someone-else"))

    def test_missing_subject(self):
        with pytest.raises(InvalidAccessToken):
            decode_access_token(_token(sub=None))

    def test_wrong_key(self):
        token = jwt.encode(
            {"sub": "u1", "aud": settings.jwt_audience, "exp": int(time.time()) + 300},
            "another-secret-key-0123456789abcdef",
            algorithm="HS256",
        )
        with pytest.raises(InvalidAccessToken):
            decode_access_token(token)

    def test_garbage(self):
        with pytest.raises(InvalidAccessToken):
            decode_access_token("not-a-jwt")
