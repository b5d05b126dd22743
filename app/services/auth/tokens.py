"""Access-token verification for inbound requests (tokens are issued by the identity backend)."""
from dataclasses import dataclass

import jwt

from app.core.config import settings


class InvalidAccessToken(Exception):
    pass


@dataclass
class Principal:
    user_id: str
    access_token: str


def decode_access_token(token: str) -> Principal:
    """Verify signature, expiry and audience; `sub` is the user id. Raises InvalidAccessToken."""
    options = {"require": ["exp", "sub"]}
    kwargs = {}
    if settings.jwt_audience:
        kwargs["audience"] = settings.jwt_audience
    else:
        options["verify_aud"] = False
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options=options,
            **kwargs,
        )
    except jwt.InvalidTokenError as exc:
        raise InvalidAccessToken(str(exc)) from exc
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise InvalidAccessToken("token has no subject")
    return Principal(user_id=user_id, access_token=token)
