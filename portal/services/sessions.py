import datetime as dt
from typing import Any, Dict, Optional

from jwt import decode as jwt_decode, encode as jwt_encode, InvalidTokenError

from portal.data.records import User

SESSION_ALGORITHM = "HS256"


def issue_session(user: User, secret: str, ttl: dt.timedelta, now: Optional[dt.datetime] = None) -> str:
    """Mint a signed bearer credential for a resolved user.

    The ttl is chosen by the caller per entry path (OAuth vs password/code).
    """
    issued = now or dt.datetime.now(dt.timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user.id,
        "userId": user.id,
        "iat": int(issued.timestamp()),
        "exp": int((issued + ttl).timestamp()),
    }
    if user.discord_id:
        claims["discordId"] = user.discord_id
    return jwt_encode(claims, secret, algorithm=SESSION_ALGORITHM)


def decode_session(token: str, secret: str) -> Dict[str, Any]:
    claims = jwt_decode(token, secret, algorithms=[SESSION_ALGORITHM])
    if not claims.get("userId"):
        raise InvalidTokenError("Missing userId claim")
    return claims


def verify_bearer_token(authorization: Optional[str], secret: str) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidTokenError("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise InvalidTokenError("Missing bearer token")
    return decode_session(token, secret)
