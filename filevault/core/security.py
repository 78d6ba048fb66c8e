from datetime import datetime, timedelta, timezone
from jose import jwt

ALGORITHM = "HS256"

def create_jwt(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    data = payload.copy()
    data.update({"iat": int(now.timestamp()), "exp": int((now + expires_delta).timestamp())})
    return jwt.encode(data, secret, algorithm=ALGORITHM)

def issue_requester_token(user_id, organization_id, permissions, secret: str, expires_delta: timedelta) -> str:
    """Token carrying the claims ``get_requester`` reads: ``sub``, ``org`` and ``perms``."""
    claims = {"perms": sorted(str(p) for p in (permissions or []))}
    if user_id:
        claims["sub"] = str(user_id)
    if organization_id:
        claims["org"] = str(organization_id)
    return create_jwt(claims, secret, expires_delta)

def decode_jwt(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=[ALGORITHM])
