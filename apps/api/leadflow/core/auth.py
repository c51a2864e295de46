from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from leadflow.core.config import get_settings


@dataclass(slots=True)
class Principal:
    id: str
    role: str
    email: str | None = None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


def decode_principal(token: str) -> Principal | None:
    if not token:
        return None

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not isinstance(role, str):
        return None
    email = payload.get("email")
    return Principal(id=str(subject), role=role, email=str(email) if email else None)


def encode_principal(principal: Principal, expires_in: timedelta = timedelta(hours=1)) -> str:
    settings = get_settings()
    claims: dict[str, Any] = {
        "sub": principal.id,
        "role": principal.role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if principal.email:
        claims["email"] = principal.email
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_principal(request: Request) -> Principal | None:
    principal = decode_principal(bearer_token(request))
    context = getattr(request.state, "context", None)
    if principal is not None and context is not None:
        context.user_id = principal.id
    return principal
