import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


logger = logging.getLogger("app.auth")


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


ANONYMOUS = "anonymous"


async def get_current_user(request: Request) -> AuthUser:
    """Decode the bearer token into an AuthUser; missing or invalid tokens yield an anonymous guest."""
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.info("auth.invalid_token", extra={"error": str(exc)})
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    subject = str(payload.get("sub", ANONYMOUS))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
