from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, Header, HTTPException, status

from app.auth.jwt import JwtError, decode_jwt, jwt_http_exception
from app.config import allowed_roles_list, settings

CUSTOMER = "CUSTOMER"
STAFF = "STAFF"
ADMIN = "ADMIN"
STAFF_ROLES = (STAFF, ADMIN)


@dataclass
class AuthContext:
    user_id: str
    role: str
    email: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


def get_auth_context(authorization: str | None = Header(default=None)) -> AuthContext:
    if not authorization or not authorization.startswith("Bearer "):
        raise jwt_http_exception("Missing bearer token")

    token = authorization.removeprefix("Bearer ").strip()
    try:
        claims = decode_jwt(token, settings.jwt_secret)
    except JwtError as err:
        raise jwt_http_exception("Invalid JWT") from err

    role = claims.get("role")
    user_id = claims.get("sub")
    if role not in allowed_roles_list() or not isinstance(user_id, str) or not user_id:
        raise jwt_http_exception("Invalid JWT claims")

    email = claims.get("email")
    return AuthContext(
        user_id=user_id, role=role, email=email if isinstance(email, str) else None
    )


def require_roles(*roles: str) -> Callable[[AuthContext], AuthContext]:
    def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return auth

    return dependency


require_staff = require_roles(*STAFF_ROLES)
require_admin = require_roles(ADMIN)


def ensure_owner_or_staff(auth: AuthContext, owner_id: str) -> None:
    """Customers only see their own orders; staff see all."""
    if auth.is_staff or auth.user_id == owner_id:
        return
    # non-owners get the same 404 as a missing order
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
