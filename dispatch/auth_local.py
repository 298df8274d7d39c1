from datetime import datetime, timedelta, timezone
import jwt
from typing import Optional
from .core_settings import get_settings

settings = get_settings()

def create_access_token(subject: str, role: str, expires_minutes: int = 60, suspended: bool = False,
                        pharmacy_id: Optional[str] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "suspended": suspended,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if pharmacy_id:
        payload["pharmacy_id"] = pharmacy_id
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError:
        return None
