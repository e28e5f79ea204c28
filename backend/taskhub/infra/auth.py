from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt


def create_access_token(subject: str, role: str, ttl_minutes: int, secret: str) -> str:
    now = datetime.now(tz=timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "exp": now + timedelta(minutes=ttl_minutes),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    return jwt.decode(token, secret, algorithms=["HS256"], options={"require": ["sub", "exp"]})
