import hmac
import uuid

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from filevault.core.config import settings
from filevault.core.security import decode_jwt
from filevault.services.access_control import PERMISSION_MANAGE_FILES, Requester

bearer = HTTPBearer(auto_error=False)

def _uuid_claim(claims: dict, name: str) -> uuid.UUID | None:
    raw = str(claims.get(name) or "").strip()
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Invalid token claim: {name}")

def get_requester(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> Requester:
    if not creds:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    try:
        claims = decode_jwt(creds.credentials, settings.JWT_SECRET)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    perms = claims.get("perms") or []
    if isinstance(perms, str):
        perms = perms.split(",")
    return Requester(
        user_id=_uuid_claim(claims, "sub"),
        organization_id=_uuid_claim(claims, "org"),
        permissions=frozenset(str(p).strip() for p in perms if str(p).strip()),
    )

def require_permission(permission: str):
    def _inner(requester: Requester = Depends(get_requester)) -> Requester:
        if not requester.has_permission(permission):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return requester
    return _inner

require_file_manager = require_permission(PERMISSION_MANAGE_FILES)

def verify_webhook_token(x_webhook_token: str | None = Header(default=None)) -> None:
    expected = str(settings.STORAGE_WEBHOOK_TOKEN or "").strip()
    if not expected or not hmac.compare_digest(str(x_webhook_token or "").strip().encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid webhook token")
